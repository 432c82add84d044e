"""Celery beat schedule: daily maintenance of idempotency keys and the webhook inbox."""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "cleanup-expired-idempotency-keys": {
        "task": "payments.cleanup_expired_idempotency_keys",
        "schedule": crontab(hour=3, minute=0),
    },
    "cleanup-old-webhooks": {
        # retention comes from PAYMENT__WEBHOOK__RETENTION_DAYS when no kwarg is given
        "task": "payments.cleanup_old_webhooks",
        "schedule": crontab(hour=3, minute=30),
    },
}
