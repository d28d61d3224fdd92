"""Tests for the permission evaluator."""

from datetime import timedelta

import pytest

from access_schema.core.clock import utcnow
from access_schema.core.exceptions import ValidationError
from access_schema.models.audit_log import AuditLog
from access_schema.models.user_role import UserRole
from access_schema.services.policies import AllowParentAccess, StaticCapabilityMap


@pytest.fixture
def admin(db, schema):
    schema.tree.register_path(db, ["org", "council", "admin"])
    schema.tree.register_path(db, ["org", "council", "sub", "admin"])
    schema.tree.register_path(db, ["org", "finance"])
    schema.assignments.add_role(db, 7, "org/council/admin")
    return 7


class TestExactAndChild:
    def test_exact_match(self, db, schema, admin):
        decision = schema.permissions.evaluate(db, admin, "org/council/admin")
        assert decision.granted
        assert decision.match_type == "exact"

    def test_shallower_target_needs_include_children(self, db, schema, admin):
        assert not schema.permissions.check_permission(db, admin, "org/council")
        decision = schema.permissions.evaluate(db, admin, "org/council", include_children=True)
        assert decision.granted
        assert decision.match_type == "child"

    def test_deeper_target_not_granted_by_default(self, db, schema):
        schema.tree.register_path(db, ["org", "council", "admin"])
        schema.assignments.add_role(db, 7, "org/council")
        assert not schema.permissions.check_permission(db, 7, "org/council/admin", include_children=True)

    def test_child_match_needs_segment_boundary(self, db, schema):
        schema.tree.register_path(db, ["org", "council"])
        schema.tree.register_path(db, ["org", "councilor"])
        schema.assignments.add_role(db, 7, "org/councilor")
        assert not schema.permissions.check_permission(db, 7, "org/council", include_children=True)

    def test_unrelated_target(self, db, schema, admin):
        decision = schema.permissions.evaluate(db, admin, "org/finance", include_children=True)
        assert not decision.granted
        assert decision.reason == "access_denied"


class TestDenials:
    def test_unregistered_path_denies_even_if_held(self, db, schema, admin):
        db.add(UserRole(user_id=9, role_id=schema.tree.get_node(db, "org/finance").id))
        db.commit()
        decision = schema.permissions.evaluate(db, 9, "nonexistent/path", include_children=True)
        assert not decision.granted
        assert decision.reason == "role_not_registered"

    def test_no_roles(self, db, schema, admin):
        assert schema.permissions.evaluate(db, 99, "org/council/admin").reason == "no_roles_assigned"

    def test_invalid_input(self, db, schema, admin):
        assert schema.permissions.evaluate(db, admin, "  ").reason == "invalid_input"
        assert schema.permissions.evaluate(db, 0, "org/council/admin").reason == "invalid_input"
        assert not schema.permissions.check_permission(db, admin, "")

    def test_expired_assignment_denies(self, db, schema):
        schema.tree.register_path(db, ["org", "temp"])
        schema.assignments.add_role(db, 5, "org/temp", expires_at=utcnow() + timedelta(hours=1))
        assert schema.permissions.check_permission(db, 5, "org/temp")
        db.query(UserRole).update({UserRole.expires_at: utcnow() - timedelta(seconds=1)})
        db.commit()
        schema.cache.invalidate_user(5)
        assert not schema.permissions.check_permission(db, 5, "org/temp")

    def test_orphaned_role_denies(self, db, schema, admin):
        council = schema.tree.get_node(db, "org/council")
        schema.tree.delete_role(db, council.id)
        assert not schema.permissions.check_permission(db, admin, "org/council/admin")

    def test_internal_error_fails_closed(self, db, schema, admin, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(schema.assignments, "get_role_snapshot", explode)
        decision = schema.permissions.evaluate(db, admin, "org/council/admin")
        assert not decision.granted
        assert decision.reason == "evaluation_error"


class TestParentInheritance:
    def test_off_by_default(self, db, schema):
        schema.tree.register_path(db, ["org", "council", "admin"])
        schema.assignments.add_role(db, 7, "org")
        assert not schema.permissions.check_permission(db, 7, "org/council/admin")

    def test_opt_in_policy(self, db, schema):
        schema.permissions.parent_policy = AllowParentAccess()
        schema.tree.register_path(db, ["org", "council", "admin"])
        schema.assignments.add_role(db, 7, "org")
        decision = schema.permissions.evaluate(db, 7, "org/council/admin")
        assert decision.granted
        assert decision.match_type == "inherited"


class TestWildcards:
    def test_single_segment(self, db, schema, admin):
        assert schema.permissions.check_permission(db, admin, "org/*/admin", allow_wildcards=True)
        assert not schema.permissions.check_permission(db, admin, "org/*", allow_wildcards=True)

    def test_double_star(self, db, schema, admin):
        decision = schema.permissions.evaluate(db, admin, "org/**", allow_wildcards=True)
        assert decision.granted
        assert decision.reason == "wildcard_match"

    def test_no_match(self, db, schema, admin):
        decision = schema.permissions.evaluate(db, admin, "chronicles/**", allow_wildcards=True)
        assert not decision.granted
        assert decision.reason == "wildcard_no_match"

    def test_pattern_without_wildcard_mode_is_a_path(self, db, schema, admin):
        decision = schema.permissions.evaluate(db, admin, "org/*/admin")
        assert decision.reason == "role_not_registered"

    def test_user_can_and_combinators(self, db, schema, admin):
        assert schema.permissions.user_can(db, admin, "org/council/*")
        assert schema.permissions.matches_pattern(db, admin, "**/admin")
        assert schema.permissions.matches_any(db, admin, ["chronicles/**", "org/**"])
        assert schema.permissions.matches_any(db, admin, ["chronicles/**", "org/**"])
        assert not schema.permissions.matches_any(db, admin, ["chronicles/**"])
        assert not schema.permissions.matches_any(db, admin, [])
        assert schema.permissions.matches_all(db, admin, ["org/**", "org/council/*"])
        assert not schema.permissions.matches_all(db, admin, ["org/**", "chronicles/**"])

    def test_silent_checks_write_no_audit(self, db, schema, admin):
        before = db.query(AuditLog).count()
        schema.permissions.user_can(db, admin, "org/**")
        assert db.query(AuditLog).count() == before


class TestCaching:
    def test_second_check_is_cached(self, db, schema, admin):
        assert not schema.permissions.evaluate(db, admin, "org/council/admin").cached
        assert schema.permissions.evaluate(db, admin, "org/council/admin").cached

    def test_grant_invalidates_cached_denial(self, db, schema, admin):
        assert not schema.permissions.check_permission(db, admin, "org/finance")
        schema.assignments.add_role(db, admin, "org/finance")
        assert schema.permissions.check_permission(db, admin, "org/finance")

    def test_revoke_invalidates_cached_grant(self, db, schema, admin):
        assert schema.permissions.check_permission(db, admin, "org/council/admin")
        schema.assignments.remove_role(db, admin, "org/council/admin")
        assert not schema.permissions.check_permission(db, admin, "org/council/admin")

    def test_decision_ttl_clipped_to_expiry(self, db, schema, redis_client):
        schema.tree.register_path(db, ["org", "temp"])
        schema.assignments.add_role(db, 5, "org/temp", expires_at=utcnow() + timedelta(seconds=30))
        schema.permissions.check_permission(db, 5, "org/temp")
        keys = [k for k in redis_client.keys("test:user:5:*:perm:*")]
        assert len(keys) == 1
        assert 0 < redis_client.ttl(keys[0]) <= 30

    def test_cache_disabled_gives_identical_answers(self, db, schema, uncached_schema):
        script = [
            ("register", ["org", "council", "admin"]),
            ("register", ["org", "finance"]),
            ("grant", 1, "org/council/admin"),
            ("check", 1, "org/council/admin", False, False),
            ("check", 1, "org/council", True, False),
            ("check", 1, "org/council", False, False),
            ("check", 1, "org/*/admin", False, True),
            ("grant", 1, "org/finance"),
            ("check", 1, "org/finance", False, False),
            ("revoke", 1, "org/council/admin"),
            ("check", 1, "org/council/admin", False, False),
            ("check", 1, "org/**", False, True),
            ("delete", "org/finance"),
            ("check", 1, "org/finance", False, False),
            ("check", 2, "org/finance", False, False),
        ]

        def run(engine_schema):
            answers = []
            for step in script:
                op = step[0]
                if op == "register":
                    engine_schema.tree.register_path(db, step[1])
                elif op == "grant":
                    engine_schema.assignments.add_role(db, step[1], step[2])
                elif op == "revoke":
                    engine_schema.assignments.remove_role(db, step[1], step[2])
                elif op == "delete":
                    node = engine_schema.tree.get_node(db, step[1])
                    engine_schema.tree.delete_role(db, node.id, cascade=True)
                else:
                    answers.append(engine_schema.permissions.check_permission(db, *step[1:]))
            return answers

        cached_answers = run(schema)
        # Reset the store between runs
        db.query(UserRole).delete()
        db.query(AuditLog).delete()
        from access_schema.models.role import Role
        for role in db.query(Role).order_by(Role.depth.desc()).all():
            db.delete(role)
            db.flush()
        db.commit()

        assert run(uncached_schema) == cached_answers
        assert cached_answers == [True, True, False, True, True, False, True, False, False]


class TestBatchAndLogging:
    def test_check_permission_audits_decision(self, db, schema, admin):
        schema.permissions.check_permission(db, admin, "org/council/admin", context={"ip": "10.0.0.1"})
        schema.permissions.check_permission(db, admin, "org/finance")
        granted = db.query(AuditLog).filter(AuditLog.action == "access_granted").one()
        denied = db.query(AuditLog).filter(AuditLog.action == "access_denied").one()
        assert granted.ip_address == "10.0.0.1"
        assert '"match_type": "exact"' in granted.context_json
        assert denied.level == "WARN"

    def test_log_false_writes_nothing(self, db, schema, admin):
        before = db.query(AuditLog).count()
        schema.permissions.check_permission(db, admin, "org/council/admin", log=False)
        assert db.query(AuditLog).count() == before

    def test_batch(self, db, schema, admin):
        schema.audit.min_level = "DEBUG"
        results = schema.permissions.check_permissions_batch(db, admin, [
            "org/council/admin",
            {"path": "org/council", "include_children": True},
            {"path": "org/*/admin", "allow_wildcards": True},
            "org/finance",
        ])
        assert results == {
            "org/council/admin": True,
            "org/council": True,
            "org/*/admin": True,
            "org/finance": False,
        }
        assert db.query(AuditLog).filter(AuditLog.action.in_(["access_granted", "access_denied"])).count() == 0
        record = db.query(AuditLog).filter(AuditLog.action == "batch_permission_check").one()
        assert record.level == "DEBUG"

    def test_batch_record_filtered_at_info(self, db, schema, admin):
        schema.permissions.check_permissions_batch(db, admin, ["org/council/admin"])
        assert db.query(AuditLog).filter(AuditLog.action == "batch_permission_check").count() == 0

    def test_batch_repeated_path_needs_same_flags(self, db, schema, admin):
        results = schema.permissions.check_permissions_batch(db, admin, [
            "org/council", {"path": "org/council"}, " org/council ",
        ])
        assert results == {"org/council": False}

        with pytest.raises(ValidationError):
            schema.permissions.check_permissions_batch(db, admin, [
                "org/council",
                {"path": "org/council", "include_children": True},
            ])


class TestScenario:
    def test_chronicles(self, db, schema):
        schema.tree.register_path(db, ["chronicles", "mckn", "hst"])
        schema.tree.register_path(db, ["chronicles", "other"])
        schema.assignments.add_role(db, 42, "chronicles/mckn/hst")

        assert schema.permissions.check_permission(db, 42, "chronicles/mckn/hst")
        assert schema.permissions.check_permission(db, 42, "chronicles/mckn", include_children=True)
        assert not schema.permissions.check_permission(db, 42, "chronicles/other")

        schema.assignments.remove_role(db, 42, "chronicles/mckn/hst")
        assert not schema.permissions.check_permission(db, 42, "chronicles/mckn/hst")


class TestCapabilities:
    def test_user_permissions(self, db, schema, admin):
        schema.permissions.capability_map = StaticCapabilityMap({
            "org/*/admin": ["edit_posts", "publish_posts"],
            "org/**": ["read"],
        })
        permissions = schema.permissions.get_user_permissions(db, admin)
        assert permissions["roles"] == ["org/council/admin"]
        assert permissions["capabilities"] == ["edit_posts", "publish_posts", "read"]
        assert permissions["restrictions"] == []
        assert schema.permissions.user_has_capability(db, admin, "publish_posts")
        assert not schema.permissions.user_has_capability(db, admin, "delete_users")
