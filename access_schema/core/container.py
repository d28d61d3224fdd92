"""Service wiring: builds every service from one ``Settings`` object."""

from typing import Optional

from access_schema.core.config import Settings, settings as default_settings
from access_schema.services.assignment_service import AssignmentService
from access_schema.services.audit_service import AuditService
from access_schema.services.cache_service import CacheService
from access_schema.services.pattern_compiler import PatternCompiler
from access_schema.services.permission_service import PermissionEvaluator
from access_schema.services.policies import (
    AllowAll,
    AssignmentValidator,
    CapabilityMap,
    ConflictPolicy,
    NoConflicts,
    ParentAccessPolicy,
    PatternConflictPolicy,
    StaticCapabilityMap,
    parent_policy_from_settings,
)
from access_schema.services.role_tree_service import RoleTreeService


class AccessSchema:
    """Holds the role tree, assignment store, evaluator, cache and audit trail.

    Policies default to what the settings describe and can be replaced per
    deployment by passing them explicitly.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        cache: Optional[CacheService] = None,
        conflict_policy: Optional[ConflictPolicy] = None,
        validator: Optional[AssignmentValidator] = None,
        parent_policy: Optional[ParentAccessPolicy] = None,
        capability_map: Optional[CapabilityMap] = None,
    ):
        self.settings = config or default_settings
        s = self.settings

        self.cache = cache or CacheService(
            url=s.REDIS_URL, prefix=s.CACHE_PREFIX, enabled=s.CACHE_ENABLED
        )
        self.audit = AuditService(
            self.cache,
            enabled=s.AUDIT_ENABLED,
            min_level=s.AUDIT_LOG_LEVEL,
            retention_days=s.AUDIT_RETENTION_DAYS,
            cleanup_batch=s.AUDIT_CLEANUP_BATCH,
            logs_ttl=s.TREE_CACHE_TTL,
        )
        self.compiler = PatternCompiler(capacity=s.PATTERN_CACHE_SIZE)
        self.tree = RoleTreeService(
            self.cache,
            self.audit,
            max_depth=s.MAX_ROLE_DEPTH,
            exists_ttl=s.ROLE_CACHE_TTL,
            tree_ttl=s.TREE_CACHE_TTL,
        )
        if conflict_policy is None:
            conflict_policy = PatternConflictPolicy(s.ROLE_CONFLICTS) if s.ROLE_CONFLICTS else NoConflicts()
        self.assignments = AssignmentService(
            self.tree,
            self.cache,
            self.audit,
            conflict_policy=conflict_policy,
            validator=validator or AllowAll(),
            max_roles=s.MAX_ROLES_PER_USER,
            roles_ttl=s.ROLE_CACHE_TTL,
            cleanup_batch=s.EXPIRY_CLEANUP_BATCH,
        )
        self.permissions = PermissionEvaluator(
            self.tree,
            self.assignments,
            self.compiler,
            self.cache,
            self.audit,
            parent_policy=parent_policy or parent_policy_from_settings(s.PARENT_GRANTS_ACCESS),
            capability_map=capability_map or StaticCapabilityMap(s.ROLE_CAPABILITIES),
            decision_ttl=s.DECISION_CACHE_TTL,
        )


_access_schema: Optional[AccessSchema] = None


def get_access_schema() -> AccessSchema:
    """Process-wide container used by the API, the CLI and the Celery tasks."""
    global _access_schema
    if _access_schema is None:
        _access_schema = AccessSchema()
    return _access_schema
