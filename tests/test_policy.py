"""
tests/test_policy.py -- Unit tests for the access rule table and its renderings.

Coverage:
  - check(): owner access, cross-subject denial, anonymous denial, elevated bypass
  - check(): per-resource grants (audit_logs owners may only read)
  - predicate(): admits exactly the rows check() allows, for every sample
  - render_policies(): RLS DDL shape, per-command policies, custom elevated roles
"""

from __future__ import annotations

import itertools

import pytest
from sqlalchemy import Column, MetaData, String, Table, create_engine, select

from auth.models import Subject
from auth.policy import ALL_PERMISSIONS, RULE_TABLE, Permission, check, predicate, render_policies

ALICE = Subject(id="alice")
BOB = Subject(id="bob")
SERVICE = Subject(id=None, role="service_role", elevated=True)
ADMIN_USER = Subject(id="carol", role="service_role", elevated=True)


class TestCheck:
    @pytest.mark.parametrize("permission", list(Permission))
    def test_owner_may_act_on_own_profile(self, permission: Permission) -> None:
        assert check(ALICE, "alice", permission)

    @pytest.mark.parametrize("subject_id", ["alice", "bob", "11111111-aaaa-4aaa-8aaa-111111111111"])
    def test_every_subject_has_every_permission_on_itself(self, subject_id: str) -> None:
        subject = Subject(id=subject_id)
        assert all(check(subject, subject_id, p).allow for p in Permission)

    @pytest.mark.parametrize("permission", list(Permission))
    def test_other_subject_is_denied(self, permission: Permission) -> None:
        assert not check(ALICE, "bob", permission)
        assert not check(BOB, "alice", permission)

    @pytest.mark.parametrize("permission", list(Permission))
    def test_no_subject_is_denied(self, permission: Permission) -> None:
        assert not check(None, "alice", permission)
        assert not check(None, None, permission)

    @pytest.mark.parametrize("permission", list(Permission))
    def test_elevated_subject_is_allowed_everywhere(self, permission: Permission) -> None:
        assert check(SERVICE, "alice", permission)
        assert check(SERVICE, "alice", permission, resource="audit_logs")

    def test_subject_without_id_never_matches_owner_rule(self) -> None:
        assert not check(Subject(id=None), None, Permission.READ)

    def test_audit_logs_owner_may_only_read(self) -> None:
        assert check(ALICE, "alice", Permission.READ, resource="audit_logs")
        assert not check(ALICE, "alice", Permission.UPDATE, resource="audit_logs")
        assert not check(ALICE, "alice", Permission.DELETE, resource="audit_logs")

    def test_permission_accepts_plain_strings(self) -> None:
        assert check(ALICE, "alice", "read")
        assert not check(ALICE, "bob", "read")

    def test_unknown_resource_raises(self) -> None:
        with pytest.raises(ValueError, match="No access rules"):
            check(ALICE, "alice", Permission.READ, resource="invoices")

    def test_decision_is_truthy_object(self) -> None:
        decision = check(ALICE, "alice", Permission.READ)
        assert decision.allow is True
        assert bool(decision) is True


class TestPredicateAgreesWithCheck:
    """The SQL predicate and check() must agree for every (subject, owner, permission) sample."""

    OWNERS = ["alice", "bob", "carol"]
    SUBJECTS = [None, ALICE, BOB, Subject(id="dave"), SERVICE, ADMIN_USER, Subject(id=None)]

    @pytest.fixture
    def table_engine(self):
        engine = create_engine("sqlite:///:memory:")
        metadata = MetaData()
        table = Table("rows", metadata, Column("owner", String, primary_key=True))
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(table.insert(), [{"owner": o} for o in self.OWNERS])
        yield table, engine
        engine.dispose()

    @pytest.mark.parametrize("resource", sorted(RULE_TABLE))
    def test_agreement(self, table_engine, resource: str) -> None:
        table, engine = table_engine
        for subject, permission in itertools.product(self.SUBJECTS, list(Permission)):
            guard = predicate(subject, permission, resource, table.c.owner)
            with engine.connect() as conn:
                visible = {r.owner for r in conn.execute(select(table.c.owner).where(guard))}
            expected = {o for o in self.OWNERS if check(subject, o, permission, resource=resource)}
            assert visible == expected, (subject, permission, resource)


class TestRenderPolicies:
    def test_enables_rls_on_every_table(self) -> None:
        ddl = render_policies()
        for policy in RULE_TABLE.values():
            assert f"ALTER TABLE public.{policy.table} ENABLE ROW LEVEL SECURITY;" in ddl

    def test_owner_profile_rule_renders_for_all(self) -> None:
        ddl = render_policies()
        assert 'CREATE POLICY "own_profile" ON public.profiles FOR ALL USING (auth.uid() = subject_id);' in ddl
        assert not any('"own_profile_' in stmt for stmt in ddl)

    def test_full_access_rule_renders_for_all(self) -> None:
        ddl = render_policies()
        stmt = next(s for s in ddl if s.startswith('CREATE POLICY "elevated_full_access_profiles"'))
        assert "FOR ALL" in stmt
        assert "'service_role'" in stmt

    def test_every_create_is_preceded_by_drop(self) -> None:
        ddl = render_policies()
        for i, stmt in enumerate(ddl):
            if stmt.startswith("CREATE POLICY"):
                name = stmt.split('"')[1]
                assert ddl[i - 1].startswith(f'DROP POLICY IF EXISTS "{name}"')

    def test_custom_roles_and_schema(self) -> None:
        ddl = render_policies(elevated_roles=("service_role", "support"), schema="app")
        assert "ALTER TABLE app.audit_logs ENABLE ROW LEVEL SECURITY;" in ddl
        assert any("IN ('service_role', 'support')" in s for s in ddl)

    def test_audit_owner_rule_is_read_only(self) -> None:
        ddl = render_policies()
        names = [s.split('"')[1] for s in ddl if s.startswith("CREATE POLICY")]
        assert "read_own_audit_logs_read" in names
        assert not any(n.startswith("read_own_audit_logs_") and n != "read_own_audit_logs_read" for n in names)


def test_all_permissions_covers_enum() -> None:
    assert ALL_PERMISSIONS == frozenset(Permission)
