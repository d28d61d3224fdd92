"""Audit log model — append-only."""

from sqlalchemy import Column, Integer, String, Text, DateTime, Index, func
from access_schema.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for grant/check decisions and mutations.

    This table is APPEND-ONLY: rows are never updated, and only the
    retention cleanup deletes them.
    """
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("idx_audit_user_action", "user_id", "action"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, default=0)
    action = Column(String(64), nullable=False, index=True)  # e.g. "role_added"
    role_path = Column(String(255), nullable=False, default="")
    context_json = Column(Text, nullable=True)
    level = Column(String(8), nullable=False, default="INFO")
    performed_by = Column(Integer, nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)
