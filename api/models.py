"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditEvent, Profile

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Password length is checked in the route against PASSWORD_MIN_LENGTH so the
    minimum stays configurable.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/auth/profile.

    Merge semantics: omitted (or null) fields keep their stored value.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=320)
    full_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class IdentityHook(BaseModel):
    """Request body for POST /api/v1/auth/hooks/identity (database webhook shape)."""

    type: str
    table: Optional[str] = None
    schema_name: Optional[str] = Field(default=None, alias="schema")
    record: Optional[dict[str, Any]] = None
    old_record: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """A profile as returned to clients."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str
    full_name: str
    avatar_url: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            subject_id=profile.subject_id,
            email=profile.email,
            full_name=profile.full_name,
            avatar_url=profile.avatar_url,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


class BasicInfoResponse(BaseModel):
    """Public subset of a profile, for GET /api/v1/auth/profiles/{subject_id}."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str
    full_name: str
    avatar_url: str


class SessionResponse(BaseModel):
    """Response for login and signup.

    Tokens travel in httpOnly cookies; the body carries only who signed in.
    confirmation_required is true when signup is waiting on an e-mail link.
    """

    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    email: str
    expires_at: Optional[int] = None
    confirmation_required: bool = False


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str
    role: str
    profile: ProfileResponse


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    login_url: str


class AuditEventResponse(BaseModel):
    """One row in GET /api/v1/auth/audit."""

    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id or 0,
            action=event.action,
            actor_id=event.actor_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            before=event.before,
            after=event.after,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=event.created_at,
        )


class SyncResponse(BaseModel):
    """Response for POST /api/v1/auth/hooks/identity."""

    model_config = ConfigDict(frozen=True)

    status: str
    subject_id: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
