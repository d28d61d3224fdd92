"""Permission evaluator — decides whether a principal may act on a role path."""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy.orm import Session

from access_schema.core.exceptions import ValidationError
from access_schema.core.paths import ancestor_paths, has_wildcard, path_hash
from access_schema.services.assignment_service import AssignmentService, RoleSnapshot
from access_schema.services.audit_service import AuditService
from access_schema.services.cache_service import CacheService
from access_schema.services.pattern_compiler import PatternCompiler
from access_schema.services.policies import (
    CapabilityMap,
    DenyParentAccess,
    ParentAccessPolicy,
    StaticCapabilityMap,
)
from access_schema.services.role_tree_service import RoleTreeService

logger = logging.getLogger("access_schema.permissions")

PermissionEntry = Union[str, Dict[str, Any]]


@dataclass
class Decision:
    granted: bool
    reason: str
    match_type: Optional[str] = None
    cached: bool = False


class PermissionEvaluator:
    """Combines the role tree, the assignment store and the pattern compiler.

    Decision order, first match wins:

    1. empty inputs deny
    2. cached decision
    3. no roles assigned deny
    4. wildcard mode: grant when any held role matches the pattern
    5. unregistered target deny, then exact, child and inherited matches

    Every unexpected failure denies.
    """

    def __init__(
        self,
        tree: RoleTreeService,
        assignments: AssignmentService,
        compiler: PatternCompiler,
        cache: CacheService,
        audit: AuditService,
        parent_policy: Optional[ParentAccessPolicy] = None,
        capability_map: Optional[CapabilityMap] = None,
        decision_ttl: int = 300,
    ):
        self.tree = tree
        self.assignments = assignments
        self.compiler = compiler
        self.cache = cache
        self.audit = audit
        self.parent_policy = parent_policy or DenyParentAccess()
        self.capability_map = capability_map or StaticCapabilityMap()
        self.decision_ttl = decision_ttl

    @staticmethod
    def _decision_key(target_path: str, include_children: bool, allow_wildcards: bool) -> str:
        return f"perm:{path_hash(target_path)}:{int(include_children)}:{int(allow_wildcards)}"

    # ------------------------------------------------------------------
    # Core algorithm
    # ------------------------------------------------------------------

    def evaluate(
        self,
        db: Session,
        user_id: int,
        target_path: str,
        include_children: bool = False,
        allow_wildcards: bool = False,
    ) -> Decision:
        target_path = (target_path or "").strip()
        if not user_id or not target_path:
            return Decision(False, "invalid_input")

        # Scope is read before the load so a concurrent revoke orphans the write
        namespace = self.cache.user_scope(user_id)
        key = self._decision_key(target_path, include_children, allow_wildcards)
        cached = self.cache.get_json(namespace, key)
        if cached is not None:
            return Decision(cached["granted"], cached["reason"], cached.get("match_type"), cached=True)

        try:
            snapshot = self.assignments.get_role_snapshot(db, user_id)
            decision = self._decide(db, snapshot.roles, target_path, include_children, allow_wildcards)
        except Exception:
            logger.exception("Permission check failed for user %s on %s; denying", user_id, target_path)
            return Decision(False, "evaluation_error")

        payload = asdict(decision)
        payload.pop("cached")
        self.cache.set_json(namespace, key, payload, snapshot.ttl_bound(self.decision_ttl))
        return decision

    def _decide(
        self,
        db: Session,
        roles: Sequence[str],
        target_path: str,
        include_children: bool,
        allow_wildcards: bool,
    ) -> Decision:
        if not roles:
            return Decision(False, "no_roles_assigned")

        if allow_wildcards and has_wildcard(target_path):
            matcher = self.compiler.compile(target_path)
            if any(matcher.test(role) for role in roles):
                return Decision(True, "wildcard_match", "wildcard")
            return Decision(False, "wildcard_no_match")

        if not self.tree.exists(db, target_path):
            return Decision(False, "role_not_registered")

        held = set(roles)
        if target_path in held:
            return Decision(True, "access_granted", "exact")

        if include_children:
            # A deeper held role grants the shallower target
            prefix = f"{target_path}/"
            if any(role.startswith(prefix) for role in roles):
                return Decision(True, "access_granted", "child")

        for ancestor in ancestor_paths(target_path):
            if ancestor in held and self.parent_policy.grants(ancestor, target_path):
                return Decision(True, "access_granted", "inherited")

        return Decision(False, "access_denied")

    # ------------------------------------------------------------------
    # Public checks
    # ------------------------------------------------------------------

    def check_permission(
        self,
        db: Session,
        user_id: int,
        target_path: str,
        include_children: bool = False,
        allow_wildcards: bool = False,
        log: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        decision = self.evaluate(db, user_id, target_path, include_children, allow_wildcards)
        if log and decision.reason != "invalid_input":
            audit_context = dict(context or {})
            audit_context.update({
                "match_type": decision.match_type,
                "include_children": include_children,
                "allow_wildcards": allow_wildcards,
                "cached": decision.cached,
            })
            self.audit.log_permission_check(
                db, user_id, target_path.strip(), decision.granted, decision.reason, audit_context
            )
        return decision.granted

    def check_permissions_batch(
        self,
        db: Session,
        user_id: int,
        permissions: Iterable[PermissionEntry],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, bool]:
        """Evaluate many targets; one DEBUG audit record covers the whole batch.

        Entries are plain paths or dicts with ``path`` and optional
        ``include_children`` / ``allow_wildcards`` flags. Results are keyed by
        path, so a path may repeat only with the same flags.

        Raises:
            ValidationError: a path is listed twice with different flags.
        """
        checks: Dict[str, Tuple[bool, bool]] = {}
        for entry in permissions:
            if isinstance(entry, str):
                path, flags = entry, (False, False)
            else:
                path = entry.get("path", "")
                flags = (bool(entry.get("include_children", False)), bool(entry.get("allow_wildcards", False)))
            path = (path or "").strip()
            if not path:
                continue
            if checks.setdefault(path, flags) != flags:
                raise ValidationError(f"'{path}' is listed more than once with different flags")

        results: Dict[str, bool] = {
            path: self.check_permission(db, user_id, path, include_children, allow_wildcards, log=False)
            for path, (include_children, allow_wildcards) in checks.items()
        }

        audit_context = dict(context or {})
        audit_context.update({
            "permissions": list(results),
            "granted": [path for path, ok in results.items() if ok],
        })
        self.audit.log_event(db, user_id, "batch_permission_check", "", audit_context, level="DEBUG")
        return results

    def user_can(self, db: Session, user_id: int, pattern: str) -> bool:
        """Silent wildcard-enabled check, for content gating."""
        return self.check_permission(db, user_id, pattern, allow_wildcards=True, log=False)

    matches_pattern = user_can

    def matches_any(self, db: Session, user_id: int, patterns: Sequence[str]) -> bool:
        if not patterns:
            return False
        namespace = self.cache.user_scope(user_id)
        digest = hashlib.md5(json.dumps(sorted(patterns)).encode("utf-8")).hexdigest()
        key = f"any:{digest}"
        cached = self.cache.get_json(namespace, key)
        if cached is not None:
            return bool(cached)

        result = any(self.user_can(db, user_id, pattern) for pattern in patterns)
        snapshot: RoleSnapshot = self.assignments.get_role_snapshot(db, user_id)
        self.cache.set_json(namespace, key, result, snapshot.ttl_bound(self.decision_ttl))
        return result

    def matches_all(self, db: Session, user_id: int, patterns: Sequence[str]) -> bool:
        if not patterns:
            return False
        return all(self.user_can(db, user_id, pattern) for pattern in patterns)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def get_user_permissions(self, db: Session, user_id: int) -> Dict[str, List[str]]:
        """Roles, mapped capabilities and restrictions of one principal."""
        namespace = self.cache.user_scope(user_id)
        cached = self.cache.get_json(namespace, "permissions")
        if cached is not None:
            return cached

        snapshot = self.assignments.get_role_snapshot(db, user_id)
        capabilities: List[str] = []
        for role in snapshot.roles:
            for capability in self.capability_map.capabilities(role):
                if capability not in capabilities:
                    capabilities.append(capability)

        permissions = {
            "roles": list(snapshot.roles),
            "capabilities": capabilities,
            "restrictions": self.capability_map.restrictions(user_id, snapshot.roles),
        }
        self.cache.set_json(namespace, "permissions", permissions, snapshot.ttl_bound(self.decision_ttl))
        return permissions

    def user_has_capability(self, db: Session, user_id: int, capability: str) -> bool:
        return capability in self.get_user_permissions(db, user_id)["capabilities"]
