"""Role tree service — registration, existence, traversal and deletion of role nodes."""

import logging
from collections import deque
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_schema.core.exceptions import (
    AccessSchemaError,
    DepthExceededError,
    ResourceNotFoundError,
    RoleInactiveError,
    StorageError,
    ValidationError,
)
from access_schema.core.paths import ancestor_paths, path_hash, slugify, split_path
from access_schema.models.role import Role
from access_schema.models.user_role import UserRole
from access_schema.services.audit_service import AuditService
from access_schema.services.cache_service import CacheService

logger = logging.getLogger("access_schema.role_tree")

TREE_NAMESPACE = "tree"


class RoleTreeService:
    """Owns node identity and path integrity of the role namespace.

    Every mutation runs in one transaction on the caller's session and
    flushes the cache before returning.
    """

    def __init__(
        self,
        cache: CacheService,
        audit: AuditService,
        max_depth: int = 10,
        exists_ttl: int = 3600,
        tree_ttl: int = 300,
    ):
        self.cache = cache
        self.audit = audit
        self.max_depth = max_depth
        self.exists_ttl = exists_ttl
        self.tree_ttl = tree_ttl

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _validate_segments(self, segments: Sequence[str]) -> List[str]:
        names = [s.strip() for s in segments if isinstance(s, str) and s.strip()]
        if not names:
            raise ValidationError("Role path must contain at least one non-empty segment")
        for name in names:
            if not slugify(name):
                raise ValidationError(f"Segment '{name}' has no usable characters")
        if len(names) - 1 > self.max_depth:
            raise DepthExceededError(
                f"Role path depth {len(names) - 1} exceeds the maximum of {self.max_depth}"
            )
        return names

    @staticmethod
    def _find_child(db: Session, slug: str, parent_id: Optional[int]) -> Optional[Role]:
        query = db.query(Role).filter(Role.slug == slug)
        if parent_id is None:
            query = query.filter(Role.parent_id.is_(None))
        else:
            query = query.filter(Role.parent_id == parent_id)
        return query.first()

    def _insert_path(
        self, db: Session, names: List[str], created_by: Optional[int]
    ) -> Tuple[Role, int]:
        """Walk/create the chain of nodes. Returns the leaf and how many nodes were inserted."""
        parent: Optional[Role] = None
        created = 0
        for name in names:
            slug = slugify(name)
            node = self._find_child(db, slug, parent.id if parent else None)
            if node is not None:
                if not node.is_active:
                    raise RoleInactiveError(f"Role '{node.full_path}' has been deactivated")
                parent = node
                continue

            depth = parent.depth + 1 if parent else 0
            if depth > self.max_depth:
                raise DepthExceededError(
                    f"Role depth {depth} exceeds the maximum of {self.max_depth}"
                )
            node = Role(
                parent_id=parent.id if parent else None,
                name=name,
                slug=slug,
                full_path=f"{parent.full_path}/{slug}" if parent else slug,
                depth=depth,
                created_by=created_by,
                is_active=True,
            )
            db.add(node)
            db.flush()
            created += 1
            parent = node
        return parent, created

    def register_path(
        self, db: Session, segments: Sequence[str], created_by: Optional[int] = None
    ) -> int:
        """Register a role path from its segments and return the leaf node id.

        Idempotent: existing nodes are reused, so registering the same path
        twice returns the same id and inserts nothing the second time.

        Raises:
            ValidationError: empty path or a segment with no usable characters.
            DepthExceededError: the leaf would be deeper than ``max_depth``.
            RoleInactiveError: the chain runs through a soft-deleted node.
            StorageError: the backing store failed; nothing was written.
        """
        names = self._validate_segments(segments)
        try:
            node, created = self._insert_path(db, names, created_by)
            node_id, full_path = node.id, node.full_path
            db.commit()
        except AccessSchemaError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to register role path %s", "/".join(names))
            raise StorageError(f"Failed to register role path: {e}") from e

        if created:
            # New nodes only turn stale denials into grants
            self.cache.flush(strict=False)
            self.audit.log_event(
                db, 0, "role_registered", full_path, {"created_nodes": created},
                performed_by=created_by,
            )
        return node_id

    def register_paths(
        self, db: Session, paths: Sequence[Sequence[str]], created_by: Optional[int] = None
    ) -> Dict[str, List[Any]]:
        """Register many paths in one transaction.

        Invalid paths are reported in ``failed`` and skipped; a storage failure
        rolls back the whole batch.
        """
        registered: List[str] = []
        failed: List[Dict[str, str]] = []
        created_total = 0
        try:
            for segments in paths:
                label = "/".join(s for s in segments if isinstance(s, str))
                try:
                    names = self._validate_segments(segments)
                    node, created = self._insert_path(db, names, created_by)
                except AccessSchemaError as e:
                    failed.append({"path": label, "error": e.message})
                    continue
                registered.append(node.full_path)
                created_total += created
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Bulk role registration failed")
            raise StorageError(f"Failed to register role paths: {e}") from e

        if created_total:
            self.cache.flush(strict=False)
            self.audit.log_event(
                db, 0, "roles_registered", "", {
                    "registered": registered,
                    "failed": failed,
                    "created_nodes": created_total,
                },
                performed_by=created_by,
            )
        return {"registered": registered, "failed": failed}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, db: Session, full_path: str) -> bool:
        """Whether ``full_path`` names an active node whose ancestors are all active."""
        if not full_path or not full_path.strip():
            return False

        scope = self.cache.versioned(TREE_NAMESPACE)
        key = f"exists:{path_hash(full_path)}"
        cached = self.cache.get_json(scope, key)
        if cached is not None:
            return bool(cached)

        result = self._lookup_exists(db, full_path.strip())
        self.cache.set_json(scope, key, result, self.exists_ttl)
        return result

    def _lookup_exists(self, db: Session, path: str) -> bool:
        direct = db.query(Role.id).filter(
            Role.full_path == path, Role.is_active.is_(True)
        ).first()
        if direct is not None:
            return self._ancestors_active(db, path)

        # Un-normalized call sites: walk segment by segment over active nodes
        parent_id = None
        for part in split_path(path):
            query = db.query(Role.id).filter(Role.slug == slugify(part), Role.is_active.is_(True))
            if parent_id is None:
                query = query.filter(Role.parent_id.is_(None))
            else:
                query = query.filter(Role.parent_id == parent_id)
            row = query.first()
            if row is None:
                return False
            parent_id = row.id
        return parent_id is not None

    @staticmethod
    def _ancestors_active(db: Session, path: str) -> bool:
        ancestors = ancestor_paths(path)
        if not ancestors:
            return True
        inactive = db.query(Role.id).filter(
            Role.full_path.in_(ancestors), Role.is_active.is_(False)
        ).first()
        return inactive is None

    @staticmethod
    def get_node(db: Session, full_path: str) -> Optional[Role]:
        """Active node with exactly this full path."""
        return db.query(Role).filter(
            Role.full_path == full_path.strip(), Role.is_active.is_(True)
        ).first()

    @staticmethod
    def find_node(db: Session, full_path: str) -> Optional[Role]:
        """Node with this full path, active or not."""
        return db.query(Role).filter(Role.full_path == full_path.strip()).first()

    @staticmethod
    def inactive_paths(db: Session) -> List[str]:
        return [row.full_path for row in db.query(Role.full_path).filter(Role.is_active.is_(False)).all()]

    @staticmethod
    def get_descendants(db: Session, node_id: int, include_inactive: bool = False) -> List[int]:
        """Breadth-first list of descendant ids (active only unless ``include_inactive``)."""
        descendants: List[int] = []
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            query = db.query(Role.id).filter(Role.parent_id == current)
            if not include_inactive:
                query = query.filter(Role.is_active.is_(True))
            children = [row.id for row in query.order_by(Role.id).all()]
            descendants.extend(children)
            queue.extend(children)
        return descendants

    def get_tree(
        self, db: Session, parent_id: Optional[int] = None, max_depth: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Nested children arrays under ``parent_id`` (roots when None).

        ``max_depth`` bounds how many levels below the first are materialized;
        it defaults to the configured maximum role depth.
        """
        max_depth = self.max_depth if max_depth is None else max_depth
        scope = self.cache.versioned(TREE_NAMESPACE)
        key = f"tree:{parent_id or 0}:{max_depth}"
        cached = self.cache.get_json(scope, key)
        if cached is not None:
            return cached

        by_parent: Dict[Optional[int], List[Role]] = {}
        for node in db.query(Role).filter(Role.is_active.is_(True)).order_by(Role.name).all():
            by_parent.setdefault(node.parent_id, []).append(node)

        def build(pid: Optional[int], remaining: int) -> List[Dict[str, Any]]:
            branch = []
            for node in by_parent.get(pid, []):
                item = node.to_dict()
                item["children"] = build(node.id, remaining - 1) if remaining > 0 else []
                branch.append(item)
            return branch

        tree = build(parent_id, max_depth)
        self.cache.set_json(scope, key, tree, self.tree_ttl)
        return tree

    @staticmethod
    def flatten_tree(nodes: List[Dict[str, Any]]) -> List[str]:
        """Depth-first list of every full path in a materialized tree."""
        paths: List[str] = []
        for node in nodes:
            paths.append(node["full_path"])
            paths.extend(RoleTreeService.flatten_tree(node.get("children", [])))
        return paths

    def get_all_roles(self, db: Session, force_refresh: bool = False) -> List[Dict[str, Any]]:
        """Every active node ordered by full path."""
        scope = self.cache.versioned(TREE_NAMESPACE)
        if not force_refresh:
            cached = self.cache.get_json(scope, "all_roles")
            if cached is not None:
                return cached

        roles = [node.to_dict() for node in db.query(Role).filter(Role.is_active.is_(True)).order_by(Role.full_path).all()]
        self.cache.set_json(scope, "all_roles", roles, self.exists_ttl)
        return roles

    def get_parent_paths(self, db: Session, role_path: str) -> List[str]:
        """Registered ancestors of ``role_path``, nearest first."""
        return [p for p in ancestor_paths(role_path.strip()) if self.exists(db, p)]

    def warm_caches(self, db: Session) -> int:
        """Pre-compute the all-roles list and existence of the shallow paths."""
        roles = self.get_all_roles(db, force_refresh=True)
        common = [r["full_path"] for r in roles if r["depth"] <= 2]
        for path in common:
            self.exists(db, path)
        return len(common)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    @staticmethod
    def _purge_assignments(db: Session, role_ids: List[int]) -> int:
        return db.query(UserRole).filter(UserRole.role_id.in_(role_ids)).delete(synchronize_session=False)

    @staticmethod
    def _purge_nodes(db: Session, role_ids: List[int]) -> None:
        # Deepest first so no row is deleted while a child still references it
        for role_id in reversed(role_ids):
            db.query(Role).filter(Role.id == role_id).delete(synchronize_session=False)

    def delete_role(
        self,
        db: Session,
        node_id: int,
        cascade: bool = False,
        performed_by: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Soft-delete a node, or hard-delete it with its subtree and their assignments.

        Both branches are a single transaction: on failure nothing changes and
        ``StorageError`` is raised. The cache is bumped before the commit, so
        an unreachable Redis also leaves the node in place.
        """
        node = db.get(Role, node_id)
        if node is None:
            raise ResourceNotFoundError(f"Role {node_id} not found")
        full_path = node.full_path

        removed_ids: List[int] = [node_id]
        removed_assignments = 0
        try:
            if cascade:
                removed_ids += self.get_descendants(db, node_id, include_inactive=True)
                removed_assignments = self._purge_assignments(db, removed_ids)
                self._purge_nodes(db, removed_ids)
            else:
                node.is_active = False
            self.cache.bump()
            db.commit()
        except StorageError:
            db.rollback()
            logger.error("Role %s not deleted: cache unavailable", full_path)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Failed to delete role %s", full_path)
            raise StorageError(f"Failed to delete role: {e}") from e

        self.cache.flush()
        audit_context = dict(context or {})
        audit_context.update({
            "cascade": cascade,
            "removed_nodes": len(removed_ids) if cascade else 0,
            "removed_assignments": removed_assignments,
        })
        self.audit.log_event(db, 0, "role_deleted", full_path, audit_context, performed_by=performed_by)
        return True
