"""
auth/session.py -- Turn an inbound request into a verified Session, or None.

Trust model:
  The cookies and Authorization header a browser sends are claims, not
  facts. The only way a request becomes a Session is a round trip to the
  provider's verified-claims endpoint (GET /user) with the presented access
  token, or a refresh-token grant the provider answers with a user object.
  Nothing here decodes a user token locally to learn who the caller is.

  The one local verification is for service credentials: the provider's
  service key is an HS256 JWT with role=service_role and no user behind it,
  so there is nothing to round-trip. It is accepted only with a valid
  signature under PROVIDER_JWT_SECRET (python-jose), never unverified.

Failure is normal:
  resolve() returns None for every failure -- no credential, expired,
  malformed, revoked, provider unreachable. No credential costs no network
  call, and the result is cached on request.state so dependencies can call
  resolve() as often as they like within one request.

Secondary token fetch:
  After the identity is verified, get_session() supplies token material for
  provider calls made later in the request (refreshing it when due). If that
  fails, the Session keeps its verified identity with access_token="".

Cookie helpers:
  set_session_cookies() / clear_session_cookies() write the token cookies.
  httponly + samesite=lax, secure when SECURE_COOKIES=true. refreshed_tokens()
  lets the API middleware re-issue cookies after a refresh during resolution.

Layer rule: no imports from api/ or web/. fastapi/starlette types are allowed
here because resolution is driven by the request object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from jose import JWTError, jwt
from starlette.requests import Request

from auth.models import PermissionCheckResult, Profile, Session, Subject
from auth.policy import Permission, check
from auth.profiles import ProfileSynchronizer
from auth.provider import IdentityProviderClient, ProviderError, ProviderSession
from auth.store import ProfileStore
from core.config import get_settings

logger = logging.getLogger("authgate.auth.session")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
EXPIRES_COOKIE = "expires_at"

_STATE_RESOLVED = "auth_session_resolved"


@dataclass
class Credentials:
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = None

    def __bool__(self) -> bool:
        return bool(self.access_token or self.refresh_token)


def read_credentials(request: Request) -> Credentials:
    """Collect token material from cookies, then the Authorization header.

    Cookie first (browser flow), Bearer second (API clients). The values are
    unverified at this point.
    """
    access_token = request.cookies.get(ACCESS_COOKIE)
    if not access_token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            access_token = auth_header[7:].strip() or None
    expires_raw = request.cookies.get(EXPIRES_COOKIE)
    try:
        expires_at = int(expires_raw) if expires_raw else None
    except ValueError:
        expires_at = None
    return Credentials(
        access_token=access_token,
        refresh_token=request.cookies.get(REFRESH_COOKIE),
        expires_at=expires_at,
    )


def session_from_claims(claims: dict[str, Any], tokens: ProviderSession | None = None) -> Session:
    """Build a Session from the provider's verified user object."""
    return Session(
        subject_id=str(claims["id"]),
        email=claims.get("email") or "",
        role=claims.get("role") or "authenticated",
        user_metadata=claims.get("user_metadata") or {},
        access_token=tokens.access_token if tokens else "",
        refresh_token=tokens.refresh_token if tokens else None,
        expires_at=tokens.expires_at if tokens else None,
    )


def verify_service_credential(token: str | None, jwt_secret: str, elevated_roles: list[str]) -> Subject | None:
    """Return an elevated Subject if token is a correctly signed service credential.

    Tokens without a valid HS256 signature, or whose role is not elevated,
    return None.
    """
    if not token or not jwt_secret:
        return None
    try:
        claims = jwt.decode(token, jwt_secret, algorithms=["HS256"], options={"verify_aud": False})
    except JWTError:
        return None
    role = claims.get("role")
    if role not in elevated_roles:
        return None
    return Subject(id=claims.get("sub"), role=role, elevated=True)


class SessionResolver:
    """Resolve requests to verified Sessions through the identity provider.

    Usage:
        resolver = SessionResolver(provider)
        session = resolver.resolve(request)   # Session or None
        subject = resolver.subject(request)   # Subject or None, for policy.check()
    """

    def __init__(
        self,
        provider: IdentityProviderClient,
        elevated_roles: list[str] | None = None,
        jwt_secret: str | None = None,
    ) -> None:
        cfg = get_settings()
        self.provider = provider
        self.elevated_roles = list(elevated_roles if elevated_roles is not None else cfg.elevated_roles)
        self.jwt_secret = jwt_secret if jwt_secret is not None else cfg.provider_jwt_secret

    def resolve(self, request: Request) -> Session | None:
        if getattr(request.state, _STATE_RESOLVED, False):
            return request.state.session
        session = self.resolve_credentials(read_credentials(request))
        request.state.session = session
        setattr(request.state, _STATE_RESOLVED, True)
        return session

    def resolve_credentials(self, creds: Credentials) -> Session | None:
        """Verify creds with the provider. Also used by the OAuth callback's fallback lookup."""
        if not creds:
            return None

        claims: dict[str, Any] | None = None
        if creds.access_token:
            try:
                claims = self.provider.verify_token(creds.access_token)
            except ProviderError as exc:
                logger.debug("Access token rejected: %s", exc)

        if claims is None:
            return self._resolve_via_refresh(creds)

        session = session_from_claims(claims)
        try:
            tokens = self.provider.get_session(creds.access_token, creds.refresh_token, creds.expires_at)
        except ProviderError as exc:
            logger.info("Token refresh for verified subject %s failed: %s", session.subject_id, exc)
            tokens = None
        if tokens is not None:
            session.access_token = tokens.access_token
            session.refresh_token = tokens.refresh_token
            session.expires_at = tokens.expires_at
        return session

    def _resolve_via_refresh(self, creds: Credentials) -> Session | None:
        if not creds.refresh_token:
            return None
        try:
            tokens = self.provider.refresh_session(creds.refresh_token)
        except ProviderError as exc:
            logger.debug("Refresh token rejected: %s", exc)
            return None
        if not tokens.user.get("id"):
            return None
        return session_from_claims(tokens.user, tokens)

    def subject_for(self, session: Session | None) -> Subject | None:
        if session is None:
            return None
        return Subject(id=session.subject_id, role=session.role, elevated=session.role in self.elevated_roles)

    def subject(self, request: Request) -> Subject | None:
        """Return the caller's Subject: verified user session first, then service credential."""
        session = self.resolve(request)
        if session is not None:
            return self.subject_for(session)
        return verify_service_credential(read_credentials(request).access_token, self.jwt_secret, self.elevated_roles)


# ---------------------------------------------------------------------------
# Request-level helpers
# ---------------------------------------------------------------------------


def get_current_user_id(resolver: SessionResolver, request: Request) -> str | None:
    session = resolver.resolve(request)
    return session.subject_id if session else None


def is_authenticated(resolver: SessionResolver, request: Request) -> bool:
    return get_current_user_id(resolver, request) is not None


def authenticate_user(
    resolver: SessionResolver,
    synchronizer: ProfileSynchronizer,
    request: Request,
    defer: Callable[..., Any] | None = None,
) -> Profile | None:
    """Resolve the session and return the caller's profile, provisioning it on first use.

    The returned profile carries the session's current email, full_name and
    avatar_url claims over the stored values, so the response reflects the
    provider even before passive sync has caught up. The stored row is not
    modified here.
    """
    session = resolver.resolve(request)
    if session is None:
        return None
    result = synchronizer.get_or_create(resolver.subject_for(session), session.subject_id, defer=defer)
    if not result.ok or result.profile is None:
        logger.warning("Profile unavailable for subject %s: %s", session.subject_id, result.status)
        return None
    profile = result.profile
    return Profile(
        subject_id=profile.subject_id,
        email=session.email or profile.email,
        full_name=session.user_metadata.get("full_name") or profile.full_name,
        avatar_url=session.user_metadata.get("avatar_url") or profile.avatar_url,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


def get_user_basic_info(store: ProfileStore, caller: Subject | None, subject_id: str) -> Profile | None:
    """Profile fields only, filtered by the profiles read rule."""
    return store.get_profile(caller, subject_id)


def check_user_permission(
    resolver: SessionResolver,
    synchronizer: ProfileSynchronizer,
    request: Request,
    subject_id: str,
    permission: Permission | str = Permission.READ,
    defer: Callable[..., Any] | None = None,
) -> PermissionCheckResult:
    """Decide whether the request may act on subject_id's resources.

    The caller is a verified user session or a signed service credential.
    The rule is evaluated before anything is written; only an admitted user
    session gets its own profile provisioned and returned.
    """
    subject = resolver.subject(request)
    if subject is None:
        return PermissionCheckResult(authorized=False, reason="unauthenticated")
    if not check(subject, subject_id, permission):
        return PermissionCheckResult(authorized=False, reason="forbidden")
    profile = None
    if subject.id is not None:
        profile = authenticate_user(resolver, synchronizer, request, defer=defer)
    return PermissionCheckResult(authorized=True, profile=profile)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookies(response, tokens: ProviderSession) -> None:
    """Write the provider's tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the tokens (XSS mitigation).
    samesite="lax": sent on top-level navigations, which the OAuth redirect
        back to /auth/callback is.
    """
    cfg = get_settings()
    common = {"httponly": True, "samesite": "lax", "secure": cfg.secure_cookies, "max_age": cfg.session_max_age_seconds}
    response.set_cookie(ACCESS_COOKIE, value=tokens.access_token, **common)
    if tokens.refresh_token:
        response.set_cookie(REFRESH_COOKIE, value=tokens.refresh_token, **common)
    if tokens.expires_at is not None:
        response.set_cookie(EXPIRES_COOKIE, value=str(tokens.expires_at), **common)


def refreshed_tokens(request: Request) -> ProviderSession | None:
    """Return the tokens to re-issue when resolving this request refreshed a cookie session.

    None when nothing was resolved, when the caller authenticated with a
    Bearer header (no cookies to rewrite), or when the token is unchanged.
    """
    session = getattr(request.state, "session", None)
    if session is None or not session.access_token:
        return None
    cookie_token = request.cookies.get(ACCESS_COOKIE)
    if not cookie_token and not request.cookies.get(REFRESH_COOKIE):
        return None
    if session.access_token == cookie_token:
        return None
    return ProviderSession(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
    )


def clear_session_cookies(response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, EXPIRES_COOKIE):
        response.delete_cookie(name)
