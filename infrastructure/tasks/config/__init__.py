from .celery import celery_app
from .beat import CELERY_BEAT_SCHEDULE, REFUND_RETRY_TASK

__all__ = ["celery_app", "CELERY_BEAT_SCHEDULE", "REFUND_RETRY_TASK"]
