"""Models package — import all models so metadata.create_all can discover them."""

from access_schema.models.role import Role
from access_schema.models.user_role import UserRole
from access_schema.models.audit_log import AuditLog

__all__ = ["Role", "UserRole", "AuditLog"]
