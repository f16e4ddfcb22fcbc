"""
tests/test_callback.py -- Tests for the OAuth callback reconciler.

Unit tests drive OAuthCallbackReconciler.reconcile() directly with
asyncio.run(). Integration tests go through /login/oauth/{provider} and
/auth/callback so the PKCE verifier really travels in the session cookie.

Coverage:
  - error / error_description -> Failed with the decoded message, no exchange
  - code + good verifier -> Succeeded via exchange
  - code + failing exchange + retrievable session -> Succeeded via fallback
  - No params and no session -> Failed "no session obtained"
  - Processing the same landing twice never raises and always terminates
  - clean_url strips only the transient parameters
  - Callback page escapes the provider's error text and sets cookies on success
"""

from __future__ import annotations

import asyncio

from auth.callback import (
    NO_SESSION_MESSAGE,
    CallbackState,
    OAuthCallbackReconciler,
    strip_transient_params,
)
from auth.provider import NetworkFailure
from auth.session import Credentials, SessionResolver
from tests.conftest import ALICE, GOOD_CODE, GOOD_VERIFIER, JWT_SECRET

CALLBACK = "http://localhost/auth/callback"


def _reconciler(provider) -> OAuthCallbackReconciler:
    return OAuthCallbackReconciler(
        provider,
        SessionResolver(provider, ["service_role"], JWT_SECRET),
        success_redirect="/",
        failure_redirect="/login",
        success_delay=1.5,
        failure_delay=3.0,
    )


def _run(reconciler: OAuthCallbackReconciler, url: str, verifier=None, credentials=None):
    return asyncio.run(reconciler.reconcile(url, verifier, credentials))


class TestReconcile:
    def test_error_param_fails_without_exchange(self, provider) -> None:
        outcome = _run(_reconciler(provider), f"{CALLBACK}?error=access_denied&error_description=User%20denied")

        assert outcome.state is CallbackState.FAILED
        assert outcome.message == "User denied"
        assert outcome.redirect_to == "/login"
        assert outcome.delay_seconds == 3.0
        assert outcome.clean_url == "/auth/callback"
        assert outcome.history == [CallbackState.PENDING, CallbackState.FAILED]
        provider.exchange_code.assert_not_called()

    def test_error_without_description_uses_error_code(self, provider) -> None:
        outcome = _run(_reconciler(provider), f"{CALLBACK}?error=server_error")
        assert outcome.message == "server_error"

    def test_error_wins_over_code(self, provider) -> None:
        outcome = _run(_reconciler(provider), f"{CALLBACK}?code={GOOD_CODE}&error=access_denied", GOOD_VERIFIER)
        assert outcome.state is CallbackState.FAILED
        provider.exchange_code.assert_not_called()

    def test_code_exchange_succeeds(self, provider) -> None:
        outcome = _run(_reconciler(provider), f"{CALLBACK}?code={GOOD_CODE}", GOOD_VERIFIER)

        assert outcome.succeeded
        assert outcome.session.subject_id == ALICE["id"]
        assert outcome.redirect_to == "/"
        assert outcome.delay_seconds == 1.5
        assert outcome.tokens.access_token == "token-alice"
        assert outcome.history == [CallbackState.PENDING, CallbackState.EXCHANGING_CODE, CallbackState.SUCCEEDED]
        provider.exchange_code.assert_called_once_with(GOOD_CODE, GOOD_VERIFIER)
        provider.verify_token.assert_called_with("token-alice")

    def test_failed_exchange_falls_back_to_existing_session(self, provider) -> None:
        outcome = _run(
            _reconciler(provider),
            f"{CALLBACK}?code=abc123",
            "wrong-verifier",
            Credentials(access_token="token-alice"),
        )

        assert outcome.state is CallbackState.SUCCEEDED
        assert outcome.session.subject_id == ALICE["id"]
        assert outcome.history == [
            CallbackState.PENDING,
            CallbackState.EXCHANGING_CODE,
            CallbackState.FALLBACK_LOOKUP,
            CallbackState.SUCCEEDED,
        ]

    def test_network_failure_during_exchange_falls_back(self, provider) -> None:
        provider.exchange_code.side_effect = NetworkFailure("connection reset")
        outcome = _run(_reconciler(provider), f"{CALLBACK}?code=abc123", GOOD_VERIFIER)
        assert outcome.state is CallbackState.FAILED
        assert outcome.message == NO_SESSION_MESSAGE

    def test_no_params_and_no_session_fails(self, provider) -> None:
        outcome = _run(_reconciler(provider), CALLBACK)
        assert outcome.state is CallbackState.FAILED
        assert outcome.message == "no session obtained"
        assert CallbackState.EXCHANGING_CODE not in outcome.history
        provider.verify_token.assert_not_called()

    def test_no_params_with_session_succeeds(self, provider) -> None:
        outcome = _run(_reconciler(provider), CALLBACK, credentials=Credentials(access_token="token-alice"))
        assert outcome.succeeded

    def test_same_landing_twice_never_raises(self, provider) -> None:
        reconciler = _reconciler(provider)
        url = f"{CALLBACK}?code={GOOD_CODE}"

        first = _run(reconciler, url, GOOD_VERIFIER)
        # Replay: the verifier was consumed, the browser now carries the first run's tokens.
        second = _run(reconciler, url, None, Credentials(access_token=first.tokens.access_token))
        # Replay from a browser without cookies.
        third = _run(reconciler, url, None, None)

        assert first.state is CallbackState.SUCCEEDED
        assert second.state is CallbackState.SUCCEEDED
        assert second.session.subject_id == first.session.subject_id
        assert third.state is CallbackState.FAILED
        assert third.message == NO_SESSION_MESSAGE


class TestCleanUrl:
    def test_strips_transient_params_only(self) -> None:
        url = f"{CALLBACK}?code=abc&next=%2Fdashboard&error=x&error_description=y"
        assert strip_transient_params(url) == "/auth/callback?next=%2Fdashboard"

    def test_keeps_fragment(self) -> None:
        assert strip_transient_params(f"{CALLBACK}?code=abc#section") == "/auth/callback#section"

    def test_bare_url(self) -> None:
        assert strip_transient_params(CALLBACK) == "/auth/callback"


class TestCallbackRoutes:
    def test_oauth_start_stores_verifier_and_redirects(self, api_client) -> None:
        resp = api_client.client.get("/login/oauth/google")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://id.example.com/auth/v1/authorize")
        assert resp.headers["cache-control"] == "no-store"
        api_client.provider.start_oauth.assert_called_once_with("google", "http://localhost:8000/auth/callback")

    def test_unknown_provider_is_rejected(self, api_client) -> None:
        resp = api_client.client.get("/login/oauth/myspace")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oauth_failed"
        api_client.provider.start_oauth.assert_not_called()

    def test_full_flow_then_replay(self, api_client) -> None:
        client, provider = api_client.client, api_client.provider
        client.get("/login/oauth/github")

        first = client.get(f"/auth/callback?code={GOOD_CODE}")
        assert first.status_code == 200
        assert "Signed in" in first.text
        assert first.cookies.get("access_token") == "token-alice"
        assert first.headers["cache-control"] == "no-store"
        provider.exchange_code.assert_called_once_with(GOOD_CODE, GOOD_VERIFIER)
        # Lazy provisioning on first sign-in.
        assert api_client.store.get_identity(ALICE["id"]) is not None

        # Back button / refresh: same URL again. Verifier is gone, cookies remain.
        second = client.get(f"/auth/callback?code={GOOD_CODE}")
        assert second.status_code == 200
        assert "Signed in" in second.text
        assert provider.exchange_code.call_args_list[-1].args == (GOOD_CODE, None)

    def test_error_page_escapes_provider_text(self, api_client) -> None:
        resp = api_client.client.get(
            "/auth/callback?error=access_denied&error_description=%3Cscript%3Ex%3C%2Fscript%3E"
        )
        assert resp.status_code == 200
        assert "Sign-in failed" in resp.text
        assert "<script>x</script>" not in resp.text
        assert "&lt;script&gt;x&lt;/script&gt;" in resp.text
        assert '"/auth/callback"' in resp.text
        assert "access_token" not in resp.headers.get("set-cookie", "")
        api_client.provider.exchange_code.assert_not_called()
