"""Role tree node model."""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, func
)
from sqlalchemy.orm import relationship
from access_schema.db.base import Base


class Role(Base):
    """A node of the hierarchical role namespace, e.g. ``org/council/admin``.

    ``full_path`` is the ``/``-joined chain of ancestor slugs and is fixed at
    insert time; ``depth`` is the number of ancestors (0 for roots).
    """
    __tablename__ = "roles"
    __table_args__ = (
        # NULL parent_id values compare distinct, so roots rely on full_path uniqueness
        UniqueConstraint("slug", "parent_id", name="uq_roles_slug_parent"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(Integer, ForeignKey("roles.id"), nullable=True, index=True)
    name = Column(String(191), nullable=False)
    slug = Column(String(191), nullable=False)
    full_path = Column(String(767), unique=True, nullable=False, index=True)
    depth = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    parent = relationship("Role", remote_side=[id], lazy="select")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "name": self.name,
            "slug": self.slug,
            "full_path": self.full_path,
            "depth": self.depth,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, full_path={self.full_path!r})>"
