"""
auth/callback.py -- Reconcile an OAuth redirect landing into Succeeded or Failed.

State machine (one run per landing):

    PENDING --error param-------------------------------------> FAILED
    PENDING --code param--> EXCHANGING_CODE --ok--------------> SUCCEEDED
                                            --ProviderError--> FALLBACK_LOOKUP
    PENDING --neither-----> FALLBACK_LOOKUP --session---------> SUCCEEDED
                                            --none------------> FAILED ("no session obtained")

Replay tolerance:
  A landing can be processed twice (double mount, back button, refresh
  before the URL was cleaned). The second run's code is already consumed or
  its PKCE verifier already popped, so the exchange fails and the run falls
  into FALLBACK_LOOKUP, which finds the session the first run established.
  Either way reconcile() returns an outcome; it does not raise for provider
  failures.

Every terminal outcome carries clean_url (the landing URL without code,
error and error_description) for history.replaceState, plus the redirect
target and delay the callback page should use.

Concurrency: reconcile() is a coroutine. Provider calls are blocking
requests calls and are awaited via starlette's run_in_threadpool, one at a
time, so one transition completes before the next begins. If the request is
abandoned mid-flight the coroutine is simply dropped.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit

from starlette.concurrency import run_in_threadpool

from auth.models import Session
from auth.provider import IdentityProviderClient, ProviderError, ProviderSession
from auth.session import Credentials, SessionResolver

logger = logging.getLogger("authgate.auth.callback")

TRANSIENT_PARAMS: frozenset[str] = frozenset({"code", "error", "error_description"})
NO_SESSION_MESSAGE = "no session obtained"
SUCCESS_MESSAGE = "Signed in. Redirecting..."


class CallbackState(str, Enum):
    PENDING = "pending"
    EXCHANGING_CODE = "exchanging_code"
    FALLBACK_LOOKUP = "fallback_lookup"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({CallbackState.SUCCEEDED, CallbackState.FAILED})


@dataclass
class CallbackOutcome:
    state: CallbackState = CallbackState.PENDING
    message: str = ""
    session: Session | None = None
    clean_url: str = ""
    redirect_to: str = ""
    delay_seconds: float = 0.0
    history: list[CallbackState] = field(default_factory=lambda: [CallbackState.PENDING])

    @property
    def succeeded(self) -> bool:
        return self.state is CallbackState.SUCCEEDED

    @property
    def tokens(self) -> ProviderSession | None:
        """Token material to persist as cookies, when the session has any."""
        if self.session is None or not self.session.access_token:
            return None
        return ProviderSession(
            access_token=self.session.access_token,
            refresh_token=self.session.refresh_token,
            expires_at=self.session.expires_at,
        )


def strip_transient_params(url: str) -> str:
    """Return the path-relative form of url without code/error/error_description.

    Other query parameters and the fragment are kept.
    """
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in TRANSIENT_PARAMS]
    clean = parts.path or "/"
    if kept:
        clean += "?" + urlencode(kept)
    if parts.fragment:
        clean += "#" + parts.fragment
    return clean


class OAuthCallbackReconciler:
    """Drive one redirect landing to a terminal state.

    Usage:
        reconciler = OAuthCallbackReconciler(provider, resolver, success_redirect="/", failure_redirect="/login")
        outcome = await reconciler.reconcile(str(request.url), code_verifier, read_credentials(request))
    """

    def __init__(
        self,
        provider: IdentityProviderClient,
        resolver: SessionResolver,
        success_redirect: str = "/",
        failure_redirect: str = "/login",
        success_delay: float = 1.5,
        failure_delay: float = 3.0,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.success_redirect = success_redirect
        self.failure_redirect = failure_redirect
        self.success_delay = success_delay
        self.failure_delay = failure_delay

    async def reconcile(
        self,
        url: str,
        code_verifier: str | None = None,
        credentials: Credentials | None = None,
    ) -> CallbackOutcome:
        outcome = CallbackOutcome(clean_url=strip_transient_params(url))
        params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))

        error = params.get("error_description") or params.get("error")
        if error:
            logger.info("OAuth callback returned an error: %s", params.get("error"))
            return self._fail(outcome, unquote(error))

        code = params.get("code")
        if code:
            self._transition(outcome, CallbackState.EXCHANGING_CODE)
            session = await self._exchange(code, code_verifier)
            if session is not None:
                return self._succeed(outcome, session)

        self._transition(outcome, CallbackState.FALLBACK_LOOKUP)
        session = await run_in_threadpool(self.resolver.resolve_credentials, credentials or Credentials())
        if session is not None:
            return self._succeed(outcome, session)
        return self._fail(outcome, NO_SESSION_MESSAGE)

    async def _exchange(self, code: str, code_verifier: str | None) -> Session | None:
        try:
            tokens = await run_in_threadpool(self.provider.exchange_code, code, code_verifier)
        except ProviderError as exc:
            # Expected on replay: code consumed or verifier already used.
            logger.warning("Code exchange failed, falling back to session lookup: %s", exc)
            return None
        # Identity comes from a verification round trip with the new token,
        # not from the user object embedded in the exchange response.
        return await run_in_threadpool(
            self.resolver.resolve_credentials,
            Credentials(tokens.access_token, tokens.refresh_token, tokens.expires_at),
        )

    def _transition(self, outcome: CallbackOutcome, state: CallbackState) -> None:
        if outcome.state in TERMINAL_STATES:
            raise RuntimeError(f"Callback already terminal ({outcome.state.value}); cannot move to {state.value}")
        logger.debug("OAuth callback %s -> %s", outcome.state.value, state.value)
        outcome.state = state
        outcome.history.append(state)

    def _succeed(self, outcome: CallbackOutcome, session: Session) -> CallbackOutcome:
        self._transition(outcome, CallbackState.SUCCEEDED)
        outcome.session = session
        outcome.message = SUCCESS_MESSAGE
        outcome.redirect_to = self.success_redirect
        outcome.delay_seconds = self.success_delay
        return outcome

    def _fail(self, outcome: CallbackOutcome, message: str) -> CallbackOutcome:
        self._transition(outcome, CallbackState.FAILED)
        outcome.message = message
        outcome.redirect_to = self.failure_redirect
        outcome.delay_seconds = self.failure_delay
        return outcome
