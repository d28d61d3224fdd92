"""Audit service — append-only trail of grant/check decisions and mutations."""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_schema.core.clock import utcnow
from access_schema.models.audit_log import AuditLog
from access_schema.services.cache_service import CacheService

logger = logging.getLogger("access_schema.audit")

LOG_LEVELS = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3}


def level_priority(level: str) -> int:
    return LOG_LEVELS.get(level.upper(), 1)


class AuditService:
    """Records immutable audit log entries.

    Writing is best-effort: a failing insert is rolled back and reported on
    the operational logger, never raised to the caller of the primary
    operation.
    """

    def __init__(
        self,
        cache: CacheService,
        enabled: bool = True,
        min_level: str = "INFO",
        retention_days: int = 90,
        cleanup_batch: int = 1000,
        logs_ttl: int = 300,
    ):
        self.cache = cache
        self.enabled = enabled
        self.min_level = min_level
        self.retention_days = retention_days
        self.cleanup_batch = cleanup_batch
        self.logs_ttl = logs_ttl

    def should_log(self, level: str) -> bool:
        return self.enabled and level_priority(level) >= level_priority(self.min_level)

    @staticmethod
    def _build_entry(
        user_id: Optional[int],
        action: str,
        role_path: Optional[str],
        context: Optional[Dict[str, Any]],
        performed_by: Optional[int],
        level: str,
    ) -> AuditLog:
        context_data = dict(context or {})
        context_data["log_level"] = level
        ip_address = context_data.pop("ip", None)
        user_agent = context_data.pop("user_agent", None)
        return AuditLog(
            user_id=int(user_id or 0),
            action=action,
            role_path=(role_path or "")[:255],
            context_json=json.dumps(context_data, default=str),
            level=level,
            performed_by=performed_by,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            created_at=utcnow(),
        )

    def log_event(
        self,
        db: Session,
        user_id: Optional[int],
        action: str,
        role_path: Optional[str] = "",
        context: Optional[Dict[str, Any]] = None,
        performed_by: Optional[int] = None,
        level: str = "INFO",
    ) -> Optional[AuditLog]:
        """Write a single audit record.

        Args:
            action: e.g. "role_added", "access_denied", "expired_roles_cleaned"
            context: free-form bag; ``ip`` and ``user_agent`` are lifted into columns.

        Commits immediately, so callers must have committed their own work first.
        Returns None when the level is filtered out or the write failed.
        """
        if not self.should_log(level):
            return None

        entry = self._build_entry(user_id, action, role_path, context, performed_by, level)
        try:
            db.add(entry)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Audit write failed for action %s", action)
            return None

        self.cache.delete("audit", f"recent:{entry.user_id}")
        return entry

    def log_batch(self, db: Session, events: Iterable[Dict[str, Any]]) -> int:
        """Write many records in one commit. Returns the number written."""
        entries: List[AuditLog] = []
        for event in events:
            level = event.get("level", "INFO")
            if not self.should_log(level):
                continue
            entries.append(self._build_entry(
                event.get("user_id"),
                event["action"],
                event.get("role_path", ""),
                event.get("context"),
                event.get("performed_by"),
                level,
            ))
        if not entries:
            return 0

        try:
            db.add_all(entries)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Audit batch write failed (%d events)", len(entries))
            return 0

        for user_id in {e.user_id for e in entries}:
            self.cache.delete("audit", f"recent:{user_id}")
        return len(entries)

    def log_permission_check(
        self,
        db: Session,
        user_id: int,
        target_path: str,
        granted: bool,
        reason: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        context = dict(context or {})
        context["reason"] = reason
        return self.log_event(
            db,
            user_id,
            "access_granted" if granted else "access_denied",
            target_path,
            context,
            level="INFO" if granted else "WARN",
        )

    def cleanup_logs(self, db: Session, retention_days: Optional[int] = None) -> int:
        """Delete records older than the retention window, one bounded batch per call."""
        retention_days = self.retention_days if retention_days is None else retention_days
        if retention_days <= 0:
            return 0

        cutoff = utcnow() - timedelta(days=retention_days)
        try:
            ids = [
                row.id for row in db.query(AuditLog.id)
                .filter(AuditLog.created_at < cutoff)
                .order_by(AuditLog.id)
                .limit(self.cleanup_batch)
                .all()
            ]
            if not ids:
                return 0
            deleted = db.query(AuditLog).filter(AuditLog.id.in_(ids)).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Audit retention cleanup failed")
            return 0

        self.cache.invalidate_pattern("audit:*")
        self.log_event(db, 0, "logs_cleaned", "", {
            "deleted_count": deleted,
            "retention_days": retention_days,
        }, performed_by=0)
        return deleted

    def get_user_logs(self, db: Session, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent records about one principal, cached briefly."""
        cached = self.cache.get_json("audit", f"recent:{user_id}")
        if cached is not None:
            return cached[:limit]

        logs = [
            self.to_dict(log) for log in db.query(AuditLog)
            .filter(AuditLog.user_id == user_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
            .all()
        ]
        self.cache.set_json("audit", f"recent:{user_id}", logs, self.logs_ttl)
        return logs

    @staticmethod
    def query_logs(
        db: Session,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        role_path: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """Query audit logs with filters and pagination."""
        query = db.query(AuditLog)

        if user_id is not None:
            query = query.filter(AuditLog.user_id == user_id)
        if action:
            query = query.filter(AuditLog.action == action)
        if role_path:
            query = query.filter(AuditLog.role_path.like(f"{role_path}%"))

        total = query.count()
        logs = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

        return {
            "logs": logs,
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    @staticmethod
    def to_dict(log: AuditLog) -> Dict[str, Any]:
        return {
            "id": log.id,
            "user_id": log.user_id,
            "action": log.action,
            "role_path": log.role_path,
            "context": json.loads(log.context_json) if log.context_json else {},
            "level": log.level,
            "performed_by": log.performed_by,
            "ip_address": log.ip_address,
            "user_agent": log.user_agent,
            "created_at": log.created_at.isoformat() if log.created_at else None,
        }
