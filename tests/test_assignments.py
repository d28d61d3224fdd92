"""Tests for role assignments."""

from datetime import timedelta

import pytest
import redis

from access_schema.core.clock import utcnow
from access_schema.core.exceptions import (
    RoleNotFoundError,
    RoleNotRegisteredError,
    StorageError,
    ValidationError,
)
from access_schema.models.audit_log import AuditLog
from access_schema.models.user_role import UserRole
from access_schema.services.policies import AssignmentValidator, PatternConflictPolicy


def refuse(*args, **kwargs):
    raise redis.ConnectionError("connection refused")


def actions(db, action):
    return db.query(AuditLog).filter(AuditLog.action == action).all()


@pytest.fixture
def tree(db, schema):
    for path in (
        ["org", "council", "admin"],
        ["org", "council", "member"],
        ["org", "finance", "treasurer"],
        ["org", "finance", "auditor"],
        ["chronicles", "mckn", "hst"],
    ):
        schema.tree.register_path(db, path)
    return schema.tree


class TestAddRole:
    def test_grant(self, db, schema, tree):
        assert schema.assignments.add_role(db, 42, "org/council/admin", performed_by=1)
        assert schema.assignments.get_roles(db, 42) == ["org/council/admin"]
        assert len(actions(db, "role_added")) == 1

    def test_unregistered_role(self, db, schema, tree):
        with pytest.raises(RoleNotRegisteredError):
            schema.assignments.add_role(db, 42, "org/nowhere")
        assert db.query(UserRole).count() == 0
        assert actions(db, "role_add_invalid")[0].level == "ERROR"

    def test_empty_inputs(self, db, schema, tree):
        with pytest.raises(ValidationError):
            schema.assignments.add_role(db, 42, "  ")
        with pytest.raises(ValidationError):
            schema.assignments.add_role(db, 0, "org/council/admin")

    def test_expiry_in_the_past_rejected(self, db, schema, tree):
        with pytest.raises(ValidationError):
            schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() - timedelta(hours=1))

    def test_already_assigned(self, db, schema, tree):
        assert schema.assignments.add_role(db, 42, "org/council/admin")
        assert not schema.assignments.add_role(db, 42, "org/council/admin")
        assert db.query(UserRole).count() == 1
        assert len(actions(db, "role_add_skipped")) == 1

    def test_max_roles_limit(self, db, schema, tree):
        schema.assignments.max_roles = 2
        schema.assignments.add_role(db, 42, "org/council/admin")
        schema.assignments.add_role(db, 42, "org/council/member")
        before = schema.assignments.get_roles(db, 42)

        assert not schema.assignments.add_role(db, 42, "chronicles/mckn/hst")
        assert schema.assignments.get_roles(db, 42) == before
        assert actions(db, "role_add_blocked")[0].level == "WARN"

    def test_conflict_policy(self, db, schema, tree):
        schema.assignments.conflict_policy = PatternConflictPolicy({"org/*/treasurer": ["org/*/auditor"]})
        schema.assignments.add_role(db, 42, "org/finance/auditor")
        assert not schema.assignments.add_role(db, 42, "org/finance/treasurer")
        assert schema.assignments.add_role(db, 7, "org/finance/treasurer")

    def test_custom_validator(self, db, schema, tree):
        class OnlyCouncil(AssignmentValidator):
            def validate(self, user_id, new_role, existing_roles):
                return new_role.startswith("org/council/")

        schema.assignments.validator = OnlyCouncil()
        assert schema.assignments.add_role(db, 42, "org/council/admin")
        assert not schema.assignments.add_role(db, 42, "chronicles/mckn/hst")

    def test_regrant_after_expiry_reuses_row(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() + timedelta(hours=1))
        row = db.query(UserRole).one()
        row.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()
        schema.cache.invalidate_user(42)

        assert schema.assignments.add_role(db, 42, "org/council/admin")
        row = db.query(UserRole).one()
        assert row.expires_at is None
        assert row.is_active


class TestRemoveRole:
    def test_remove(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        assert schema.assignments.remove_role(db, 42, "org/council/admin")
        assert schema.assignments.get_roles(db, 42) == []
        assert len(actions(db, "role_removed")) == 1

    def test_not_assigned_is_noop(self, db, schema, tree):
        assert schema.assignments.remove_role(db, 42, "org/council/admin")
        assert actions(db, "role_removed") == []

    def test_never_registered(self, db, schema, tree):
        with pytest.raises(RoleNotFoundError):
            schema.assignments.remove_role(db, 42, "org/ghost")
        assert len(actions(db, "role_remove_invalid")) == 1

    def test_remove_from_soft_deleted_role(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        node = tree.get_node(db, "org/council/admin")
        tree.delete_role(db, node.id)
        assert schema.assignments.remove_role(db, 42, "org/council/admin")
        assert db.query(UserRole).count() == 0


class TestGetRoles:
    def test_sorted_direct_roles_only(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/finance/treasurer")
        schema.assignments.add_role(db, 42, "chronicles/mckn/hst")
        assert schema.assignments.get_roles(db, 42) == ["chronicles/mckn/hst", "org/finance/treasurer"]

    def test_expired_roles_excluded(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() + timedelta(hours=1))
        db.query(UserRole).update({UserRole.expires_at: utcnow() - timedelta(seconds=1)})
        db.commit()
        assert schema.assignments.get_roles(db, 42, use_cache=False) == []
        assert schema.assignments.get_roles(db, 42, include_expired=True, use_cache=False) == ["org/council/admin"]

    def test_cache_ttl_clipped_to_expiry(self, db, schema, tree, redis_client):
        schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() + timedelta(seconds=90))
        schema.assignments.get_roles(db, 42)
        (key,) = redis_client.keys("test:user:42:*:roles:0")
        ttl = redis_client.ttl(key)
        assert 0 < ttl <= 90

    def test_roles_under_inactive_ancestor_hidden(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        council = tree.get_node(db, "org/council")
        tree.delete_role(db, council.id)
        assert schema.assignments.get_roles(db, 42) == []

    def test_with_inheritance(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        assert schema.assignments.get_roles_with_inheritance(db, 42) == [
            "org", "org/council", "org/council/admin",
        ]

    def test_users_by_role(self, db, schema, tree):
        schema.assignments.add_role(db, 3, "org/council/admin")
        schema.assignments.add_role(db, 1, "org/council/member")
        schema.assignments.add_role(db, 2, "org/council/admin")
        assert schema.assignments.get_users_by_role(db, "org/council/admin") == [2, 3]
        assert schema.assignments.get_users_by_role(db, "org/council", include_children=True) == [1, 2, 3]
        assert schema.assignments.get_users_by_role(db, "org/council", include_children=True, limit=2) == [1, 2]
        assert schema.assignments.get_users_by_role(db, "org/ghost") == []


class TestSaveRoles:
    def test_diff_applied(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        schema.assignments.add_role(db, 42, "org/council/member")

        assert schema.assignments.save_roles(db, 42, ["org/council/member", "chronicles/mckn/hst"])
        assert schema.assignments.get_roles(db, 42) == ["chronicles/mckn/hst", "org/council/member"]
        record = actions(db, "roles_bulk_updated")[0]
        assert "chronicles/mckn/hst" in record.context_json
        assert "org/council/admin" in record.context_json

    def test_single_failure_rolls_back_everything(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")

        assert not schema.assignments.save_roles(db, 42, ["org/finance/treasurer", "org/missing"])
        assert schema.assignments.get_roles(db, 42, use_cache=False) == ["org/council/admin"]
        assert db.query(UserRole).count() == 1

    def test_unchanged_set_writes_no_record(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin")
        assert schema.assignments.save_roles(db, 42, ["org/council/admin"])
        assert actions(db, "roles_bulk_updated") == []


class TestCleanupExpired:
    def test_expired_rows_flipped(self, db, schema, tree):
        schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() + timedelta(hours=1))
        schema.assignments.add_role(db, 42, "org/council/member")
        db.query(UserRole).filter(UserRole.expires_at.isnot(None)).update(
            {UserRole.expires_at: utcnow() - timedelta(minutes=5)}
        )
        db.commit()

        assert schema.assignments.cleanup_expired(db) == 1
        assert schema.assignments.cleanup_expired(db) == 0
        assert db.query(UserRole).filter(UserRole.is_active.is_(False)).count() == 1
        assert schema.assignments.get_roles(db, 42, include_expired=True) == ["org/council/member"]
        assert len(actions(db, "expired_roles_cleaned")) == 1

    def test_batch_bound(self, db, schema, tree):
        schema.assignments.cleanup_batch = 2
        for user_id in (1, 2, 3):
            schema.assignments.add_role(db, user_id, "org/council/admin", expires_at=utcnow() + timedelta(hours=1))
        db.query(UserRole).update({UserRole.expires_at: utcnow() - timedelta(minutes=5)})
        db.commit()

        assert schema.assignments.cleanup_expired(db) == 2
        assert schema.assignments.cleanup_expired(db) == 1


class TestCacheConsistency:
    def test_revoke_fails_when_cache_cannot_be_invalidated(self, db, schema, tree, redis_client, monkeypatch):
        schema.assignments.add_role(db, 7, "org/council/admin")
        assert schema.permissions.check_permission(db, 7, "org/council/admin")

        monkeypatch.setattr(redis_client, "incr", refuse)
        monkeypatch.setattr(redis_client, "scan_iter", refuse)
        with pytest.raises(StorageError):
            schema.assignments.remove_role(db, 7, "org/council/admin")

        # Nothing was revoked, so the cached grant is still correct
        assert schema.assignments.get_roles(db, 7, use_cache=False) == ["org/council/admin"]
        assert actions(db, "role_removed") == []

        monkeypatch.undo()
        assert schema.assignments.remove_role(db, 7, "org/council/admin")
        assert not schema.permissions.check_permission(db, 7, "org/council/admin")
        assert schema.assignments.get_roles(db, 7) == []

    def test_save_roles_fails_when_cache_cannot_be_invalidated(self, db, schema, tree, redis_client, monkeypatch):
        schema.assignments.add_role(db, 7, "org/council/admin")
        assert schema.permissions.check_permission(db, 7, "org/council/admin")

        monkeypatch.setattr(redis_client, "incr", refuse)
        with pytest.raises(StorageError):
            schema.assignments.save_roles(db, 7, ["org/finance/auditor"])
        assert schema.assignments.get_roles(db, 7, use_cache=False) == ["org/council/admin"]

    def test_grant_survives_cache_outage(self, db, schema, tree, redis_client, monkeypatch):
        monkeypatch.setattr(redis_client, "incr", refuse)
        assert schema.assignments.add_role(db, 7, "org/council/admin")
        assert schema.assignments.get_roles(db, 7, use_cache=False) == ["org/council/admin"]

    def test_cleanup_reports_failed_invalidation(self, db, schema, tree, redis_client, monkeypatch):
        schema.assignments.add_role(db, 42, "org/council/admin", expires_at=utcnow() + timedelta(hours=1))
        db.query(UserRole).update({UserRole.expires_at: utcnow() - timedelta(minutes=5)})
        db.commit()

        monkeypatch.setattr(redis_client, "incr", refuse)
        with pytest.raises(StorageError):
            schema.assignments.cleanup_expired(db)
        assert db.query(UserRole).filter(UserRole.is_active.is_(True)).count() == 0

    def test_revoke_between_load_and_cache_write(self, db, schema, tree, monkeypatch):
        schema.assignments.add_role(db, 7, "org/council/admin")
        load_roles = schema.assignments._load_roles
        revoked = []

        def load_then_revoke(session, user_id, include_expired):
            snapshot = load_roles(session, user_id, include_expired)
            if not revoked:
                revoked.append(user_id)
                schema.assignments.remove_role(session, user_id, "org/council/admin")
            return snapshot

        monkeypatch.setattr(schema.assignments, "_load_roles", load_then_revoke)

        # The in-flight check answers from what it read
        assert schema.permissions.check_permission(db, 7, "org/council/admin")
        assert revoked == [7]

        # but nothing it computed is served afterwards
        assert schema.assignments.get_roles(db, 7) == []
        assert not schema.permissions.check_permission(db, 7, "org/council/admin")
