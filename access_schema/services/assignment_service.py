"""Assignment service — grants, revocations, bulk saves and expiry of principal roles."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_schema.core.clock import to_naive_utc, utcnow
from access_schema.core.exceptions import (
    AccessSchemaError,
    AlreadyAssignedError,
    AssignmentRejectedError,
    RoleNotFoundError,
    RoleNotRegisteredError,
    StorageError,
    ValidationError,
)
from access_schema.models.role import Role
from access_schema.models.user_role import UserRole
from access_schema.services.audit_service import AuditService
from access_schema.services.cache_service import CacheService
from access_schema.services.policies import (
    AllowAll,
    AssignmentValidator,
    ConflictPolicy,
    NoConflicts,
)
from access_schema.services.role_tree_service import RoleTreeService

logger = logging.getLogger("access_schema.assignments")


@dataclass
class RoleSnapshot:
    """Direct roles of a principal plus the earliest upcoming expiry among them."""

    roles: List[str] = field(default_factory=list)
    next_expiry: Optional[datetime] = None

    def ttl_bound(self, ttl: int, now: Optional[datetime] = None) -> int:
        """Clip ``ttl`` so a cache entry never outlives the next expiry."""
        if self.next_expiry is None:
            return ttl
        remaining = (self.next_expiry - (now or utcnow())).total_seconds()
        return max(0, min(ttl, math.floor(remaining)))

    def to_json(self) -> Dict[str, Any]:
        return {
            "roles": self.roles,
            "next_expiry": self.next_expiry.isoformat() if self.next_expiry else None,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RoleSnapshot":
        expiry = data.get("next_expiry")
        return cls(
            roles=list(data.get("roles", [])),
            next_expiry=datetime.fromisoformat(expiry) if expiry else None,
        )


class AssignmentService:
    """Maps principals to their directly assigned role paths.

    Never creates an assignment that references a missing or inactive role.
    Every successful mutation invalidates the principal's cache namespace
    before it returns. Revocations also bump the namespace before they
    commit, so when Redis cannot take the bump nothing is revoked and
    ``StorageError`` is raised instead.
    """

    def __init__(
        self,
        tree: RoleTreeService,
        cache: CacheService,
        audit: AuditService,
        conflict_policy: Optional[ConflictPolicy] = None,
        validator: Optional[AssignmentValidator] = None,
        max_roles: int = 50,
        roles_ttl: int = 3600,
        cleanup_batch: int = 100,
    ):
        self.tree = tree
        self.cache = cache
        self.audit = audit
        self.conflict_policy = conflict_policy or NoConflicts()
        self.validator = validator or AllowAll()
        self.max_roles = max_roles
        self.roles_ttl = roles_ttl
        self.cleanup_batch = cleanup_batch

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def rejection_reason(self, user_id: int, new_role: str, existing_roles: Sequence[str]) -> Optional[str]:
        """Why an assignment would be refused, or None when it is allowed."""
        if self.conflict_policy.conflicts(new_role, existing_roles):
            return "role_conflict"
        if len(existing_roles) >= self.max_roles:
            return "max_roles_exceeded"
        if not self.validator.validate(user_id, new_role, existing_roles):
            return "custom_validation_failed"
        return None

    def validate_assignment(self, user_id: int, new_role: str, existing_roles: Sequence[str]) -> bool:
        return self.rejection_reason(user_id, new_role, existing_roles) is None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_roles(self, db: Session, user_id: int, include_expired: bool) -> RoleSnapshot:
        now = utcnow()
        query = (
            db.query(Role.full_path, UserRole.expires_at)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                Role.is_active.is_(True),
            )
        )
        if not include_expired:
            query = query.filter(or_(UserRole.expires_at.is_(None), UserRole.expires_at > now))

        inactive = [f"{p}/" for p in self.tree.inactive_paths(db)]
        roles = set()
        next_expiry = None
        for full_path, expires_at in query.all():
            # A role under a soft-deleted ancestor is unreachable
            if any(full_path.startswith(prefix) for prefix in inactive):
                continue
            roles.add(full_path)
            if expires_at is not None and expires_at > now:
                if next_expiry is None or expires_at < next_expiry:
                    next_expiry = expires_at
        return RoleSnapshot(sorted(roles), next_expiry)

    def get_role_snapshot(
        self, db: Session, user_id: int, include_expired: bool = False, use_cache: bool = True
    ) -> RoleSnapshot:
        # Scope is read before the load so a concurrent revoke orphans the write
        namespace = self.cache.user_scope(user_id)
        key = f"roles:{1 if include_expired else 0}"
        if use_cache:
            cached = self.cache.get_json(namespace, key)
            if cached is not None:
                return RoleSnapshot.from_json(cached)

        snapshot = self._load_roles(db, user_id, include_expired)
        self.cache.set_json(namespace, key, snapshot.to_json(), snapshot.ttl_bound(self.roles_ttl))
        return snapshot

    def get_roles(
        self, db: Session, user_id: int, include_expired: bool = False, use_cache: bool = True
    ) -> List[str]:
        """Directly assigned role paths, sorted; no parent inheritance."""
        return list(self.get_role_snapshot(db, user_id, include_expired, use_cache).roles)

    def get_roles_with_inheritance(self, db: Session, user_id: int, include_expired: bool = False) -> List[str]:
        """Direct roles plus every registered ancestor of each of them."""
        all_roles = set()
        for role in self.get_roles(db, user_id, include_expired):
            all_roles.add(role)
            all_roles.update(self.tree.get_parent_paths(db, role))
        return sorted(all_roles)

    def get_users_by_role(
        self,
        db: Session,
        role_path: str,
        include_children: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[int]:
        """Principals currently holding ``role_path`` (or a descendant of it)."""
        node = self.tree.get_node(db, role_path)
        if node is None:
            return []
        role_ids = [node.id]
        if include_children:
            role_ids += self.tree.get_descendants(db, node.id)

        now = utcnow()
        query = (
            db.query(UserRole.user_id)
            .filter(
                UserRole.role_id.in_(role_ids),
                UserRole.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
            )
            .distinct()
            .order_by(UserRole.user_id)
            .offset(offset)
        )
        if limit:
            query = query.limit(limit)
        return [row.user_id for row in query.all()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _grant(
        self,
        db: Session,
        user_id: int,
        role_path: str,
        performed_by: Optional[int],
        expires_at: Optional[datetime],
        current_roles: Optional[List[str]] = None,
    ) -> None:
        node = self.tree.get_node(db, role_path)
        if node is None or not self.tree.exists(db, role_path):
            raise RoleNotRegisteredError(f"Role '{role_path}' is not registered")

        now = utcnow()
        row = (
            db.query(UserRole)
            .filter(UserRole.user_id == user_id, UserRole.role_id == node.id)
            .with_for_update()
            .first()
        )
        if row is not None and row.is_active and (row.expires_at is None or row.expires_at > now):
            raise AlreadyAssignedError(f"User {user_id} already holds '{role_path}'")

        existing = current_roles if current_roles is not None else self._load_roles(db, user_id, False).roles
        reason = self.rejection_reason(user_id, role_path, existing)
        if reason is not None:
            raise AssignmentRejectedError(reason)

        if row is None:
            db.add(UserRole(
                user_id=user_id,
                role_id=node.id,
                granted_at=now,
                granted_by=performed_by,
                expires_at=expires_at,
                is_active=True,
            ))
        else:
            # Inactive or expired row for the same pair is reused in place
            row.is_active = True
            row.granted_at = now
            row.granted_by = performed_by
            row.expires_at = expires_at
        db.flush()

    @staticmethod
    def _revoke(db: Session, user_id: int, role_id: int) -> int:
        return (
            db.query(UserRole)
            .filter(UserRole.user_id == user_id, UserRole.role_id == role_id)
            .delete(synchronize_session=False)
        )

    @staticmethod
    def _require(user_id: int, role_path: Optional[str]) -> str:
        role_path = (role_path or "").strip()
        if not user_id or not role_path:
            raise ValidationError("user_id and role_path are required")
        return role_path

    def add_role(
        self,
        db: Session,
        user_id: int,
        role_path: str,
        performed_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Assign a registered role to a principal.

        Returns False (and changes nothing) when the role is already held or
        the assignment is rejected by conflict rules, the role limit or the
        custom validator.

        Raises:
            ValidationError: missing inputs or an ``expires_at`` in the past.
            RoleNotRegisteredError: ``role_path`` is not an active role.
            StorageError: the backing store failed.
        """
        role_path = self._require(user_id, role_path)
        expires = to_naive_utc(expires_at) if expires_at else None
        if expires is not None and expires <= utcnow():
            raise ValidationError("expires_at must be in the future")
        ctx = dict(context or {})

        try:
            self._grant(db, user_id, role_path, performed_by, expires)
            db.commit()
        except RoleNotRegisteredError:
            db.rollback()
            ctx["reason"] = "role_not_registered"
            self.audit.log_event(db, user_id, "role_add_invalid", role_path, ctx, performed_by, "ERROR")
            raise
        except AlreadyAssignedError:
            db.rollback()
            logger.warning("Role %s already assigned to user %s", role_path, user_id)
            ctx["reason"] = "already_assigned"
            self.audit.log_event(db, user_id, "role_add_skipped", role_path, ctx, performed_by, "WARN")
            return False
        except AssignmentRejectedError as e:
            db.rollback()
            logger.warning("Role %s rejected for user %s: %s", role_path, user_id, e.message)
            ctx.update({"reason": "validation_failed", "detail": e.message})
            self.audit.log_event(db, user_id, "role_add_blocked", role_path, ctx, performed_by, "WARN")
            return False
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to add role %s to user %s", role_path, user_id)
            raise StorageError(f"Failed to add role: {e}") from e

        # A stale entry left by a failed invalidation can only deny
        self.cache.invalidate_user(user_id, strict=False)
        ctx["expires_at"] = expires.isoformat() if expires else None
        self.audit.log_event(db, user_id, "role_added", role_path, ctx, performed_by, "INFO")
        return True

    def remove_role(
        self,
        db: Session,
        user_id: int,
        role_path: str,
        performed_by: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Revoke a role from a principal.

        A path that was never registered raises ``RoleNotFoundError``; a
        registered role the principal does not hold is a no-op success.
        ``StorageError`` means the revocation could not be confirmed in the
        cache; it is rolled back unless the database had already committed.
        """
        role_path = self._require(user_id, role_path)
        ctx = dict(context or {})

        node = self.tree.find_node(db, role_path)
        if node is None:
            ctx["reason"] = "role_not_found"
            self.audit.log_event(db, user_id, "role_remove_invalid", role_path, ctx, performed_by, "ERROR")
            raise RoleNotFoundError(f"Role '{role_path}' was never registered")

        namespace = self.cache.user_namespace(user_id)
        try:
            removed = self._revoke(db, user_id, node.id)
            if removed:
                self.cache.bump(namespace)
            db.commit()
        except StorageError:
            db.rollback()
            logger.error("Role %s not removed from user %s: cache unavailable", role_path, user_id)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to remove role %s from user %s", role_path, user_id)
            raise StorageError(f"Failed to remove role: {e}") from e

        if not removed:
            return True

        self.cache.invalidate_user(user_id)
        self.audit.log_event(db, user_id, "role_removed", role_path, ctx, performed_by, "INFO")
        return True

    def save_roles(
        self,
        db: Session,
        user_id: int,
        desired_roles: Sequence[str],
        performed_by: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Make the principal's direct roles equal ``desired_roles``.

        Additions are applied before removals in one transaction. Any single
        failure rolls back the whole update and returns False; an unreachable
        cache rolls it back too but raises ``StorageError``.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        desired = sorted({r.strip() for r in desired_roles if r and r.strip()})
        current = self._load_roles(db, user_id, include_expired=False).roles
        to_add = [r for r in desired if r not in current]
        to_remove = [r for r in current if r not in desired]
        ctx = dict(context or {})

        working = list(current)
        try:
            for role in to_add:
                self._grant(db, user_id, role, performed_by, None, current_roles=working)
                working.append(role)
            for role in to_remove:
                node = self.tree.find_node(db, role)
                if node is None:
                    raise RoleNotFoundError(f"Role '{role}' was never registered")
                self._revoke(db, user_id, node.id)
            if to_remove:
                self.cache.bump(self.cache.user_namespace(user_id))
            db.commit()
        except StorageError:
            db.rollback()
            logger.error("Bulk role update for user %s rolled back: cache unavailable", user_id)
            raise
        except AccessSchemaError as e:
            db.rollback()
            logger.warning("Bulk role update for user %s rolled back: %s", user_id, e.message)
            ctx.update({"error": e.message, "added": to_add, "removed": to_remove})
            self.audit.log_event(db, user_id, "roles_bulk_update_failed", "", ctx, performed_by, "WARN")
            return False
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Bulk role update for user %s failed", user_id)
            raise StorageError(f"Failed to save roles: {e}") from e

        self.cache.invalidate_user(user_id, strict=bool(to_remove))
        if to_add or to_remove:
            ctx.update({"added": to_add, "removed": to_remove})
            self.audit.log_event(db, user_id, "roles_bulk_updated", "", ctx, performed_by, "INFO")
        return True

    def cleanup_expired(self, db: Session) -> int:
        """Flip up to ``cleanup_batch`` expired assignments inactive. Safe to re-run."""
        now = utcnow()
        try:
            expired: List[Tuple[int, int]] = [
                (row.id, row.user_id) for row in db.query(UserRole.id, UserRole.user_id)
                .filter(
                    UserRole.expires_at.isnot(None),
                    UserRole.expires_at < now,
                    UserRole.is_active.is_(True),
                )
                .order_by(UserRole.id)
                .limit(self.cleanup_batch)
                .all()
            ]
            if not expired:
                return 0
            count = (
                db.query(UserRole)
                .filter(UserRole.id.in_([rid for rid, _ in expired]), UserRole.is_active.is_(True))
                .update({UserRole.is_active: False}, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Expired role cleanup failed")
            raise StorageError(f"Failed to clean up expired roles: {e}") from e

        stale: List[int] = []
        for user_id in sorted({uid for _, uid in expired}):
            try:
                self.cache.invalidate_user(user_id)
            except StorageError:
                stale.append(user_id)
        if count:
            self.audit.log_event(db, 0, "expired_roles_cleaned", "", {"count": count}, performed_by=0)
        if stale:
            raise StorageError(f"Cache invalidation failed for users {stale}")
        return count
