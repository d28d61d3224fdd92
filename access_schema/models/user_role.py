"""Role assignment model (principal <-> role junction)."""

from sqlalchemy import (
    Column, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, func
)
from sqlalchemy.orm import relationship
from access_schema.db.base import Base


class UserRole(Base):
    """Direct assignment of a role node to a principal.

    One row per (user_id, role_id). A row whose ``expires_at`` has passed is
    logically inactive until the expiry sweep flips ``is_active``.
    """
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    granted_at = Column(DateTime, server_default=func.now(), nullable=False)
    granted_by = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    role = relationship("Role", lazy="select")
