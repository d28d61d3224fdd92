"""Celery app and scheduled maintenance tasks."""

import logging

from celery import Celery
from celery.schedules import crontab

from access_schema.core.config import settings

logger = logging.getLogger("access_schema.tasks")

celery_app = Celery(
    "access_schema",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=300,
    task_time_limit=600,
    beat_schedule={
        "cleanup-expired-roles": {
            "task": "cleanup_expired_roles",
            "schedule": crontab(hour=3, minute=0),
        },
        "cleanup-audit-logs": {
            "task": "cleanup_audit_logs",
            "schedule": crontab(hour=3, minute=30),
        },
    },
)


@celery_app.task(name="cleanup_expired_roles")
def cleanup_expired_roles() -> dict:
    """Flip one batch of expired assignments inactive."""
    from access_schema.core.container import get_access_schema
    from access_schema.db.session import SessionLocal

    db = SessionLocal()
    try:
        count = get_access_schema().assignments.cleanup_expired(db)
        logger.info("Expired %d role assignments", count)
        return {"expired": count}
    finally:
        db.close()


@celery_app.task(name="cleanup_audit_logs")
def cleanup_audit_logs() -> dict:
    """Delete one batch of audit records past the retention window."""
    from access_schema.core.container import get_access_schema
    from access_schema.db.session import SessionLocal

    db = SessionLocal()
    try:
        deleted = get_access_schema().audit.cleanup_logs(db)
        logger.info("Deleted %d audit records", deleted)
        return {"deleted": deleted}
    finally:
        db.close()
