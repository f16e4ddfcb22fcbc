"""
auth/provider.py -- Thin client for the external identity provider.

The provider is a GoTrue-style REST service mounted at {PROVIDER_URL}/auth/v1.
This module only marshals: build the request, send it, turn the answer into
plain data. It makes no decisions about sessions, profiles or access -- the
session resolver, callback reconciler and profile synchronizer do that.

Error contract:
  Every failure leaves this module as a ProviderError subclass. Transport
  errors (requests.RequestException, 5xx) become NetworkFailure; rejected
  credentials become VerificationFailure; rejected codes become
  ExchangeFailure; unknown users become SubjectNotFound. Callers never see a
  requests exception or a provider-specific error body.

PKCE:
  start_oauth() generates the code verifier and S256 challenge with authlib's
  RFC 7636 helpers. The verifier is returned to the caller, which keeps it in
  the signed server-side session until the callback lands.

Handle lifetime:
  get_provider_client() is a memoizing factory. Constructing the client opens
  no connections, so calling it repeatedly (or clearing the cache in tests)
  is always safe.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode

import requests
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from core.config import get_settings

logger = logging.getLogger("authgate.auth.provider")

# Refresh a little before the provider's stated expiry so a token does not
# die between our check and the downstream call.
_EXPIRY_LEEWAY_SECONDS = 30


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Base class for every failure surfaced by the provider client."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class VerificationFailure(ProviderError):
    """Credential missing, expired, malformed or revoked."""


class ExchangeFailure(ProviderError):
    """Authorization code invalid, already consumed, or verifier mismatch."""


class SubjectNotFound(ProviderError):
    """The provider no longer has a user record for this subject."""


class NetworkFailure(ProviderError):
    """Provider unreachable, timed out, or answered with a 5xx."""


class ProviderRequestError(ProviderError):
    """Any other 4xx answer (weak password, user exists, bad e-mail, ...)."""


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------


@dataclass
class ProviderSession:
    """Token material returned by the provider.

    user holds the provider's user object when the endpoint returned one
    (password grant, PKCE grant, refresh grant). It is empty when the tokens
    were passed through without a round trip.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    user: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now if now is not None else time.time()) + _EXPIRY_LEEWAY_SECONDS


def _session_from_payload(payload: dict[str, Any]) -> ProviderSession:
    if not payload.get("access_token"):
        raise ProviderRequestError("Identity provider returned a session without an access token")
    expires_at = payload.get("expires_at")
    try:
        if expires_at is None and payload.get("expires_in") is not None:
            expires_at = int(time.time()) + int(payload["expires_in"])
        expires_at = int(expires_at) if expires_at is not None else None
    except (TypeError, ValueError) as exc:
        raise ProviderRequestError(f"Identity provider returned a malformed token expiry: {exc}") from exc
    return ProviderSession(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
        user=payload.get("user") or {},
    )


def _error_message(resp: requests.Response) -> tuple[str, str | None]:
    """Pull a human message and machine code out of a provider error body.

    GoTrue answers in a few shapes depending on the endpoint and version:
    {"error": ..., "error_description": ...}, {"msg": ..., "error_code": ...},
    {"message": ...}. Anything else falls back to the HTTP reason.
    """
    try:
        body = resp.json()
    except ValueError:
        return resp.reason or f"HTTP {resp.status_code}", None
    if not isinstance(body, dict):
        return resp.reason or f"HTTP {resp.status_code}", None
    message = body.get("error_description") or body.get("msg") or body.get("message") or body.get("error")
    code = body.get("error_code") or body.get("error")
    return str(message or resp.reason or f"HTTP {resp.status_code}"), (str(code) if code else None)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class IdentityProviderClient:
    """Call surface to the identity provider.

    Usage:
        client = IdentityProviderClient("https://id.example.com", anon_key="...")
        claims = client.verify_token(access_token)
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        service_key: str = "",
        timeout: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = f"{base_url.rstrip('/')}/auth/v1"
        self.anon_key = anon_key
        self.service_key = service_key
        self.timeout = timeout
        self._http = http or requests.Session()
        # Known API host; a long redirect chain here means something is wrong.
        self._http.max_redirects = 3

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        api_key: str | None = None,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        error_cls: type[ProviderError] = ProviderRequestError,
        not_found_cls: type[ProviderError] | None = None,
    ) -> dict[str, Any]:
        headers = {"apikey": api_key or self.anon_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.request(method, url, headers=headers, params=params, json=json, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkFailure(f"Identity provider unreachable: {exc}") from exc

        if resp.status_code >= 500:
            message, code = _error_message(resp)
            raise NetworkFailure(message, status=resp.status_code, code=code)
        if resp.status_code >= 400:
            message, code = _error_message(resp)
            if resp.status_code == 404 and not_found_cls is not None:
                raise not_found_cls(message, status=404, code=code)
            raise error_cls(message, status=resp.status_code, code=code)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderRequestError("Identity provider returned a non-JSON body", status=resp.status_code) from exc
        return data if isinstance(data, dict) else {"data": data}

    # ------------------------------------------------------------------
    # Verification and sessions
    # ------------------------------------------------------------------

    def verify_token(self, access_token: str) -> dict[str, Any]:
        """Return the provider's verified claims for access_token (GET /user).

        This is the only way the rest of the system learns who a caller is.
        Raises VerificationFailure when the provider rejects the token.
        """
        if not access_token:
            raise VerificationFailure("No access token supplied")
        claims = self._request("GET", "/user", token=access_token, error_cls=VerificationFailure)
        if not claims.get("id"):
            raise VerificationFailure("Provider returned claims without a subject id")
        return claims

    def exchange_code(self, code: str, code_verifier: str | None) -> ProviderSession:
        """Trade a one-time authorization code for a session (PKCE grant)."""
        if not code_verifier:
            # The verifier lives in the server-side session; a replayed or
            # cross-browser landing has none. The provider would reject it too.
            raise ExchangeFailure("No PKCE code verifier available for this landing")
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": code, "code_verifier": code_verifier},
            error_cls=ExchangeFailure,
        )
        return _session_from_payload(payload)

    def refresh_session(self, refresh_token: str) -> ProviderSession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
            error_cls=VerificationFailure,
        )
        return _session_from_payload(payload)

    def get_session(
        self,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_at: int | None = None,
    ) -> ProviderSession | None:
        """Return usable token material, refreshing it if the access token is due.

        No network call when the access token is still inside its lifetime.
        Returns None when there is nothing to work with.
        """
        current = ProviderSession(access_token=access_token or "", refresh_token=refresh_token, expires_at=expires_at)
        if access_token and not current.is_expired():
            return current
        if refresh_token:
            return self.refresh_session(refresh_token)
        return None

    # ------------------------------------------------------------------
    # Sign-in flows
    # ------------------------------------------------------------------

    def sign_in_with_password(self, email: str, password: str) -> ProviderSession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            error_cls=VerificationFailure,
        )
        return _session_from_payload(payload)

    def sign_up(self, email: str, password: str, redirect_to: str) -> ProviderSession | None:
        """Register a new user. Returns None while e-mail confirmation is pending."""
        payload = self._request(
            "POST",
            "/signup",
            params={"redirect_to": redirect_to},
            json={"email": email, "password": password},
        )
        if payload.get("access_token"):
            return _session_from_payload(payload)
        return None

    def start_oauth(self, provider: str, redirect_to: str) -> tuple[str, str]:
        """Build the provider authorization URL. Returns (url, code_verifier).

        No network call: the browser follows the URL, and the provider
        redirects back to redirect_to with ?code=... or ?error=...
        """
        code_verifier = generate_token(64)
        query = urlencode(
            {
                "provider": provider,
                "redirect_to": redirect_to,
                "code_challenge": create_s256_code_challenge(code_verifier),
                "code_challenge_method": "s256",
            }
        )
        return f"{self.base_url}/authorize?{query}", code_verifier

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "/logout", token=access_token, error_cls=VerificationFailure)

    def reset_password(self, email: str, redirect_to: str) -> None:
        self._request("POST", "/recover", params={"redirect_to": redirect_to}, json={"email": email})

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def get_user_by_id(self, subject_id: str) -> dict[str, Any]:
        """Fetch the provider's user record with the service credential.

        Raises SubjectNotFound if the provider has no such user.
        """
        if not self.service_key:
            raise ProviderRequestError("PROVIDER_SERVICE_KEY is not configured")
        return self._request(
            "GET",
            f"/admin/users/{subject_id}",
            token=self.service_key,
            api_key=self.service_key,
            not_found_cls=SubjectNotFound,
        )

    def close(self) -> None:
        self._http.close()


@lru_cache
def get_provider_client() -> IdentityProviderClient:
    """Return the process-wide provider client (memoized, side-effect-free to build).

    Use as a FastAPI dependency:
        @router.get("/x")
        def route(provider: IdentityProviderClient = Depends(get_provider_client)): ...

    Tests override it with app.dependency_overrides or cache_clear().
    """
    cfg = get_settings()
    return IdentityProviderClient(
        base_url=cfg.provider_url,
        anon_key=cfg.provider_anon_key,
        service_key=cfg.provider_service_key,
        timeout=cfg.provider_timeout_seconds,
    )
