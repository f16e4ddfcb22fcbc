"""
api/routes/v1/auth.py -- Authentication, profile and audit REST endpoints.

Routes:
  POST  /api/v1/auth/login                   -- password sign-in; sets token cookies
  POST  /api/v1/auth/signup                  -- register; sets cookies unless confirmation is pending
  POST  /api/v1/auth/logout                  -- revoke at the provider; clears cookies
  POST  /api/v1/auth/reset-password          -- send a password reset e-mail
  GET   /api/v1/auth/providers               -- list enabled OAuth providers (public)
  GET   /api/v1/auth/me                      -- current session + profile (provisioned on first use)
  PATCH /api/v1/auth/profile                 -- merge-update own profile (audited)
  GET   /api/v1/auth/profiles/{subject_id}   -- basic profile info, subject to the profiles rule
  GET   /api/v1/auth/audit                   -- audit events visible to the caller
  POST  /api/v1/auth/hooks/identity          -- upstream user-record notifications (elevated only)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 5/minute).
  [M5] Cache-Control: no-store on every response that sets or clears tokens.
  [M8] Wrong e-mail and wrong password return the same "bad_credentials" error.
  [M9] /reset-password answers the same way whether or not the e-mail exists.
  Tokens only travel in httpOnly cookies; response bodies never carry them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuditEventResponse,
    BasicInfoResponse,
    IdentityHook,
    LoginRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    ProfilePatch,
    ProfileResponse,
    ResetPasswordRequest,
    SessionResponse,
    SignupRequest,
    SyncResponse,
)
from auth import audit
from auth.audit import AuditRecorder
from auth.dependencies import (
    get_current_session,
    get_current_subject,
    get_recorder,
    get_resolver,
    get_store,
    get_synchronizer,
    require_elevated,
    try_get_current_session,
)
from auth.models import Session, Subject
from auth.policy import Permission
from auth.profiles import IdentityEvent, ProfileSynchronizer
from auth.provider import (
    IdentityProviderClient,
    ProviderError,
    ProviderRequestError,
    VerificationFailure,
    get_provider_client,
)
from auth.session import (
    SessionResolver,
    authenticate_user,
    check_user_permission,
    clear_session_cookies,
    get_user_basic_info,
    set_session_cookies,
)
from auth.store import ProfileStore
from core.config import get_settings

logger = logging.getLogger("authgate.api.auth")

# Auth policy:
# - POST  /auth/login, /auth/signup, /auth/reset-password:  public
# - POST  /auth/logout:                 public -- clearing cookies needs no prior auth
# - GET   /auth/providers:              public -- login page renders OAuth buttons from it
# - GET   /auth/me, PATCH /auth/profile: requires a verified session
# - GET   /auth/profiles/{id}:          requires a verified session + profiles read rule
# - GET   /auth/audit:                  requires a session or service credential; rows filtered by rule
# - POST  /auth/hooks/identity:         requires an elevated service credential
router = APIRouter()

_SYNC_STATUS_CODES = {"not_found": 404, "forbidden": 403, "error": 409}


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("User-Agent")


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(_login_rate_limit)  # [H2] under @router: FastAPI must register the wrapper
def login(
    request: Request,
    body: LoginRequest,
    provider: IdentityProviderClient = Depends(get_provider_client),
) -> JSONResponse:
    """Sign in with e-mail and password; set the token cookies."""
    if not get_settings().enable_email_login:
        raise HTTPException(
            status_code=404,
            detail={"code": "email_login_disabled", "message": "E-mail sign-in is disabled."},
        )
    try:
        tokens = provider.sign_in_with_password(body.email, body.password)
    except (VerificationFailure, ProviderRequestError):
        logger.info("Password sign-in rejected")
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid e-mail or password."}},  # [M8]
        )
        return _no_store(resp)

    resp = JSONResponse(
        content=SessionResponse(
            subject_id=tokens.user.get("id"),
            email=tokens.user.get("email") or body.email,
            expires_at=tokens.expires_at,
        ).model_dump(),
    )
    set_session_cookies(resp, tokens)
    return _no_store(resp)


@router.post("/auth/signup", response_model=SessionResponse)
def signup(
    body: SignupRequest,
    provider: IdentityProviderClient = Depends(get_provider_client),
) -> JSONResponse:
    """Register a new account with the identity provider.

    When the provider requires e-mail confirmation no session exists yet;
    the response says so and the confirmation link lands on /auth/callback.
    """
    cfg = get_settings()
    if not cfg.enable_email_login:
        raise HTTPException(
            status_code=404,
            detail={"code": "email_login_disabled", "message": "E-mail sign-up is disabled."},
        )
    if len(body.password) < cfg.password_min_length:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "weak_password",
                "message": f"Password must be at least {cfg.password_min_length} characters.",
            },
        )
    try:
        tokens = provider.sign_up(body.email, body.password, cfg.callback_url)
    except ProviderRequestError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "signup_rejected", "message": exc.message},
        ) from exc

    if tokens is None:
        resp = JSONResponse(content=SessionResponse(email=body.email, confirmation_required=True).model_dump())
        return _no_store(resp)
    resp = JSONResponse(
        content=SessionResponse(
            subject_id=tokens.user.get("id"),
            email=tokens.user.get("email") or body.email,
            expires_at=tokens.expires_at,
        ).model_dump(),
    )
    set_session_cookies(resp, tokens)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session | None = Depends(try_get_current_session),
    provider: IdentityProviderClient = Depends(get_provider_client),
    recorder: AuditRecorder = Depends(get_recorder),
) -> JSONResponse:
    """Revoke the session at the provider (best effort) and clear the cookies.

    Cookies are cleared even when the provider call fails: the browser is
    signed out locally either way.
    """
    if session is not None:
        if session.access_token:
            try:
                provider.sign_out(session.access_token)
            except ProviderError as exc:
                logger.warning("Provider sign-out failed for %s: %s", session.subject_id, exc)
        ip_address, user_agent = _client_meta(request)
        background_tasks.add_task(
            recorder.record,
            session.subject_id,
            audit.SIGN_OUT,
            "sessions",
            session.subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        # Keep the cookie refresh middleware from re-issuing what we clear.
        request.state.session = None

    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_session_cookies(resp)
    return _no_store(resp)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    provider: IdentityProviderClient = Depends(get_provider_client),
) -> MessageResponse:
    """Ask the provider to e-mail a reset link. Same answer for unknown e-mails [M9]."""
    try:
        provider.reset_password(body.email, get_settings().reset_password_url)
    except ProviderRequestError as exc:
        logger.info("Password reset request rejected by provider: %s", exc)
    return MessageResponse(message="If that address has an account, a reset link is on its way.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render.
    """
    return [OAuthProviderInfo(name=name, login_url=f"/login/oauth/{name}") for name in get_settings().oauth_providers]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_current_session),
    resolver: SessionResolver = Depends(get_resolver),
    synchronizer: ProfileSynchronizer = Depends(get_synchronizer),
) -> MeResponse:
    """Return the verified session and the caller's profile, provisioning it on first use."""
    profile = authenticate_user(resolver, synchronizer, request, defer=background_tasks.add_task)
    if profile is None:
        raise HTTPException(
            status_code=502,
            detail={"code": "profile_unavailable", "message": "Profile could not be loaded."},
        )
    return MeResponse(
        subject_id=session.subject_id,
        email=session.email,
        role=session.role,
        profile=ProfileResponse.from_profile(profile),
    )


@router.patch("/auth/profile", response_model=ProfileResponse)
def update_profile(
    request: Request,
    body: ProfilePatch,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_current_session),
    resolver: SessionResolver = Depends(get_resolver),
    synchronizer: ProfileSynchronizer = Depends(get_synchronizer),
) -> ProfileResponse:
    """Merge-update the caller's own profile. Omitted fields keep their values."""
    subject = resolver.subject_for(session)
    partial = body.model_dump(exclude_none=True)
    ip_address, user_agent = _client_meta(request)

    # The profile may not exist yet if this is the caller's first request.
    provisioned = synchronizer.get_or_create(subject, session.subject_id, defer=background_tasks.add_task)
    if not provisioned.ok:
        raise HTTPException(
            status_code=_SYNC_STATUS_CODES.get(provisioned.status, 502),
            detail={"code": provisioned.status, "message": provisioned.message or "Profile unavailable."},
        )

    result = synchronizer.update(
        subject,
        session.subject_id,
        partial,
        defer=background_tasks.add_task,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    if not result.ok or result.profile is None:
        raise HTTPException(
            status_code=_SYNC_STATUS_CODES.get(result.status, 500),
            detail={"code": result.status, "message": result.message or "Profile update failed."},
        )
    return ProfileResponse.from_profile(result.profile)


@router.get("/auth/profiles/{subject_id}", response_model=BasicInfoResponse)
def get_profile(
    request: Request,
    subject_id: str,
    background_tasks: BackgroundTasks,
    resolver: SessionResolver = Depends(get_resolver),
    synchronizer: ProfileSynchronizer = Depends(get_synchronizer),
    store: ProfileStore = Depends(get_store),
    recorder: AuditRecorder = Depends(get_recorder),
) -> BasicInfoResponse:
    """Return basic profile info for subject_id, if the profiles read rule admits the caller.

    Denials are audited as access.denied.
    """
    decision = check_user_permission(
        resolver, synchronizer, request, subject_id, Permission.READ, defer=background_tasks.add_task
    )
    if not decision.authorized:
        if decision.reason == "unauthenticated":
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "Authentication required."},
            )
        ip_address, user_agent = _client_meta(request)
        # Inline: background tasks are dropped when the route raises.
        recorder.record(
            resolver.subject(request),
            audit.ACCESS_DENIED,
            "profiles",
            subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You may not view this profile."},
        )

    profile = get_user_basic_info(store, resolver.subject(request), subject_id)
    if profile is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Profile not found."},
        )
    return BasicInfoResponse(
        subject_id=profile.subject_id,
        email=profile.email,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
    )


@router.get("/auth/audit", response_model=list[AuditEventResponse])
def list_audit(
    limit: int = Query(default=100, ge=1, le=500),
    subject: Subject = Depends(get_current_subject),
    store: ProfileStore = Depends(get_store),
) -> list[AuditEventResponse]:
    """Newest audit events the caller may read: own events, or all for elevated callers."""
    return [AuditEventResponse.from_event(e) for e in store.list_audit_events(subject, limit=limit)]


# ---------------------------------------------------------------------------
# Provider notifications (elevated only)
# ---------------------------------------------------------------------------


@router.post("/auth/hooks/identity", response_model=SyncResponse)
def identity_hook(
    body: IdentityHook,
    background_tasks: BackgroundTasks,
    subject: Subject = Depends(require_elevated),
    synchronizer: ProfileSynchronizer = Depends(get_synchronizer),
) -> SyncResponse:
    """Apply an upstream user-record change (created, updated, deleted) to the local profile.

    Payload is the database-webhook shape: {"type": "INSERT"|"UPDATE"|"DELETE",
    "record": {...}, "old_record": {...}}.
    """
    try:
        event = IdentityEvent.from_webhook(body.model_dump(by_alias=True))
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_event", "message": str(exc)},
        ) from exc

    result = synchronizer.handle_identity_event(event, defer=background_tasks.add_task)
    logger.info("Identity event %s for %s -> %s", event.type, event.subject_id, result.status)
    if result.status in ("forbidden", "error"):
        raise HTTPException(
            status_code=_SYNC_STATUS_CODES[result.status],
            detail={"code": result.status, "message": result.message or "Identity sync failed."},
        )
    return SyncResponse(status=result.status, subject_id=event.subject_id)
