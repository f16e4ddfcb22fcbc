"""
auth/policy.py -- The access rule table and its three renderings.

One table, three consumers:
  check()           -- the in-process boolean decision, called per protected
                       operation (defense-in-depth).
  predicate()       -- a SQLAlchemy expression the store appends to every
                       guarded statement (the authoritative enforcement point).
  render_policies() -- PostgreSQL row-level security DDL for deployments where
                       the tables live in the provider's database.

Each Rule knows how to answer all three questions, so a rule cannot be added
to one rendering and forgotten in another.

Evaluation order for check() (first match wins):
  1. no subject                      -> deny
  2. subject.id == resource owner    -> allow (on audit_logs, read only)
  3. subject carries elevated role   -> allow
  4. anything else                   -> deny

Layer rule: no imports from api/ or web/. Pure module -- no I/O, no settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import ColumnElement, false, or_, true

from auth.models import AuthorizationDecision, Subject


class Permission(str, Enum):
    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ALL_PERMISSIONS: frozenset[Permission] = frozenset(Permission)

_OWNER = "owner"
_ELEVATED = "elevated"

# PostgreSQL command keyword per permission.
_SQL_COMMANDS = {
    Permission.READ: "SELECT",
    Permission.INSERT: "INSERT",
    Permission.UPDATE: "UPDATE",
    Permission.DELETE: "DELETE",
}


@dataclass(frozen=True)
class Rule:
    """A single grant: who it matches (owner or elevated) and what it allows."""

    name: str
    kind: str  # _OWNER or _ELEVATED
    grants: frozenset[Permission]

    def matches(self, subject: Subject, owner_id: str | None) -> bool:
        if self.kind == _OWNER:
            return subject.id is not None and owner_id is not None and subject.id == owner_id
        return subject.elevated

    def clause(self, subject: Subject, owner_column) -> ColumnElement:
        if self.kind == _OWNER:
            if subject.id is None:
                return false()
            return owner_column == subject.id
        return true() if subject.elevated else false()

    def condition_sql(self, owner_column_name: str, elevated_roles: tuple[str, ...]) -> str:
        if self.kind == _OWNER:
            return f"auth.uid() = {owner_column_name}"
        roles = ", ".join(f"'{r}'" for r in elevated_roles)
        return f"COALESCE(auth.jwt() ->> 'role', '') IN ({roles})"


@dataclass(frozen=True)
class ResourcePolicy:
    table: str
    owner_column: str
    rules: tuple[Rule, ...]


# ---------------------------------------------------------------------------
# The rule table
# ---------------------------------------------------------------------------

RULE_TABLE: dict[str, ResourcePolicy] = {
    "profiles": ResourcePolicy(
        table="profiles",
        owner_column="subject_id",
        rules=(
            Rule("own_profile", _OWNER, ALL_PERMISSIONS),
            Rule("elevated_full_access_profiles", _ELEVATED, ALL_PERMISSIONS),
        ),
    ),
    "audit_logs": ResourcePolicy(
        table="audit_logs",
        owner_column="actor_id",
        rules=(
            Rule("read_own_audit_logs", _OWNER, frozenset({Permission.READ})),
            Rule("elevated_full_access_audit_logs", _ELEVATED, ALL_PERMISSIONS),
        ),
    ),
}


def _policy_for(resource: str) -> ResourcePolicy:
    try:
        return RULE_TABLE[resource]
    except KeyError:
        raise ValueError(f"No access rules defined for resource {resource!r}") from None


# ---------------------------------------------------------------------------
# Rendering 1: callable decision
# ---------------------------------------------------------------------------


def check(
    subject: Subject | None,
    resource_owner: str | None,
    permission: Permission | str,
    resource: str = "profiles",
) -> AuthorizationDecision:
    """Decide whether subject may exercise permission on a row owned by resource_owner.

    Pure and cheap -- call it on every protected operation. The store applies
    predicate() with the same rules, so a route that forgets to call this
    still cannot read or write another subject's rows.
    """
    policy = _policy_for(resource)
    permission = Permission(permission)
    if subject is None:
        return AuthorizationDecision(allow=False)
    for rule in policy.rules:
        if permission in rule.grants and rule.matches(subject, resource_owner):
            return AuthorizationDecision(allow=True)
    # Extension point: role/subscription rules would be appended to RULE_TABLE.
    return AuthorizationDecision(allow=False)


# ---------------------------------------------------------------------------
# Rendering 2: SQL predicate for the store
# ---------------------------------------------------------------------------


def predicate(subject: Subject | None, permission: Permission | str, resource: str, owner_column) -> ColumnElement:
    """Return a WHERE-clause fragment that admits exactly the rows check() would allow."""
    policy = _policy_for(resource)
    permission = Permission(permission)
    if subject is None:
        return false()
    clauses = [rule.clause(subject, owner_column) for rule in policy.rules if permission in rule.grants]
    if not clauses:
        return false()
    return or_(*clauses)


# ---------------------------------------------------------------------------
# Rendering 3: PostgreSQL row-level security DDL
# ---------------------------------------------------------------------------


def render_policies(elevated_roles: tuple[str, ...] = ("service_role",), schema: str = "public") -> list[str]:
    """Render RULE_TABLE as idempotent PostgreSQL RLS statements.

    Rules granting every permission become a single FOR ALL policy; other
    rules get one policy per command. INSERT uses WITH CHECK, UPDATE uses
    both USING and WITH CHECK, SELECT/DELETE use USING.
    """
    statements: list[str] = []
    for policy in RULE_TABLE.values():
        table = f"{schema}.{policy.table}"
        statements.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
        for rule in policy.rules:
            cond = rule.condition_sql(policy.owner_column, elevated_roles)
            if rule.grants == ALL_PERMISSIONS:
                statements.append(f'DROP POLICY IF EXISTS "{rule.name}" ON {table};')
                statements.append(f'CREATE POLICY "{rule.name}" ON {table} FOR ALL USING ({cond});')
                continue
            for perm in sorted(rule.grants, key=lambda p: list(Permission).index(p)):
                command = _SQL_COMMANDS[perm]
                name = f"{rule.name}_{perm.value}"
                statements.append(f'DROP POLICY IF EXISTS "{name}" ON {table};')
                if perm is Permission.INSERT:
                    body = f"WITH CHECK ({cond})"
                elif perm is Permission.UPDATE:
                    body = f"USING ({cond}) WITH CHECK ({cond})"
                else:
                    body = f"USING ({cond})"
                statements.append(f'CREATE POLICY "{name}" ON {table} FOR {command} {body};')
    return statements
