"""Celery beat schedule configuration.

The refund retry tick runs on a jittered period computed once per process so
several beat instances do not fire in lockstep; overlapping ticks are still
safe because each retry epoch can only be claimed once.
"""
from __future__ import annotations

from application.services.refund_retry_scheduler import tick_interval_seconds
from core.settings import reconciliation_settings

REFUND_RETRY_TASK = "refunds.retry_overdue"

CELERY_BEAT_SCHEDULE = {
    "refund-retry-tick": {
        "task": REFUND_RETRY_TASK,
        "schedule": tick_interval_seconds(reconciliation_settings.policy),
        "options": {"queue": "refunds", "expires": reconciliation_settings.policy.scheduler_base_seconds},
    },
}
