"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores, the
synchronizer and routes do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Session:
    """A provider-verified session, alive for one request/response cycle.

    subject_id, email, user_metadata and role come from the provider's
    verified-claims endpoint, never from the cookie or header itself.
    access_token is empty when the secondary token fetch failed -- the
    identity is still verified in that case.

    Never persisted server-side. The cookies that carry the tokens belong to
    the browser; the provider owns expiry.
    """

    subject_id: str
    email: str
    access_token: str = ""
    refresh_token: str | None = None
    expires_at: int | None = None  # unix seconds, as reported by the provider
    role: str = "authenticated"
    user_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Subject:
    """The authorization-facing view of a caller: who, and with which role.

    elevated is computed once by whoever builds the Subject (the session
    resolver or the service-credential check) from the configured
    elevated_roles, so the pure evaluator never reads settings.
    """

    id: str | None
    role: str = "authenticated"
    elevated: bool = False


@dataclass
class Identity:
    """Local mirror of the provider's user record.

    Profiles reference this row with ON DELETE CASCADE so a profile can never
    outlive the identity it belongs to.
    """

    subject_id: str
    email: str = ""
    user_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Profile:
    """Per-user profile row. Exactly one per subject_id."""

    subject_id: str
    email: str = ""
    full_name: str = ""
    avatar_url: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict form used for audit before/after documents and JSON responses."""
        return {
            "subject_id": self.subject_id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AuditEvent:
    """One recorded sensitive action. Append-only: no update or delete path exists."""

    action: str
    actor_id: str | None = None  # None = unauthenticated actor
    resource_type: str | None = None
    resource_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class ProcedureResult:
    """Uniform result of the storage-side procedures.

    code is one of FOUND, CREATED, UPDATED, USER_NOT_FOUND, NOT_FOUND,
    FORBIDDEN, CONFLICT. profile is set on success only.
    """

    success: bool
    code: str
    message: str
    profile: Profile | None = None


@dataclass
class AuthorizationDecision:
    """Result of policy.check(). Truthy when access is allowed."""

    allow: bool

    def __bool__(self) -> bool:
        return self.allow


@dataclass
class PermissionCheckResult:
    authorized: bool
    profile: Profile | None = None
    reason: str | None = None
