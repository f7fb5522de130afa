"""Background job infrastructure.

The Celery app drives the periodic refund retry tick; the in-process
DelayedTaskQueue carries the short deferred forwards of the HTTP process.
"""
from .config.celery import celery_app
from .deferred import DelayedTaskQueue

__all__ = ["celery_app", "DelayedTaskQueue"]
