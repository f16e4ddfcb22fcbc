"""
tests/test_provider.py -- Unit tests for IdentityProviderClient's error contract.

The HTTP session is a MagicMock(spec=requests.Session), so no network is touched.

Coverage:
  - Token responses become ProviderSession (expires_in -> absolute expiry)
  - Malformed expiry values raise ProviderRequestError, not a bare ValueError
  - 5xx and transport errors are NetworkFailure; non-JSON bodies are ProviderRequestError
  - Rejected credentials are VerificationFailure
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest
import requests

from auth.provider import (
    IdentityProviderClient,
    NetworkFailure,
    ProviderError,
    ProviderRequestError,
    VerificationFailure,
)


def _response(status: int = 200, body=None) -> MagicMock:
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status
    resp.reason = "Error" if status >= 400 else "OK"
    if body is None:
        resp.content = b""
        resp.json.side_effect = ValueError("no body")
    elif isinstance(body, str):
        resp.content = body.encode()
        resp.json.side_effect = ValueError("not json")
    else:
        resp.content = b"{}"
        resp.json.return_value = body
    return resp


def _client(resp: MagicMock | None = None, exc: Exception | None = None) -> IdentityProviderClient:
    http = MagicMock(spec=requests.Session)
    if exc is not None:
        http.request.side_effect = exc
    else:
        http.request.return_value = resp
    return IdentityProviderClient("https://id.example.com", "anon-key", http=http)


class TestTokenPayloads:
    def test_expires_in_becomes_absolute_expiry(self) -> None:
        client = _client(_response(body={"access_token": "at", "refresh_token": "rt", "expires_in": 3600}))
        session = client.sign_in_with_password("a@example.com", "pw")
        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert abs(session.expires_at - (int(time.time()) + 3600)) <= 5

    @pytest.mark.parametrize("payload", [{"expires_in": "soon"}, {"expires_at": "tomorrow"}, {"expires_in": [1]}])
    def test_malformed_expiry_is_a_provider_error(self, payload: dict) -> None:
        client = _client(_response(body={"access_token": "at", **payload}))
        with pytest.raises(ProviderRequestError, match="malformed token expiry"):
            client.refresh_session("rt")

    def test_missing_access_token_is_a_provider_error(self) -> None:
        client = _client(_response(body={"refresh_token": "rt"}))
        with pytest.raises(ProviderRequestError):
            client.refresh_session("rt")


class TestErrorMapping:
    def test_server_error_is_network_failure(self) -> None:
        with pytest.raises(NetworkFailure):
            _client(_response(503, body={"msg": "down"})).verify_token("at")

    def test_transport_error_is_network_failure(self) -> None:
        with pytest.raises(NetworkFailure):
            _client(exc=requests.ConnectionError("refused")).verify_token("at")

    def test_rejected_token_is_verification_failure(self) -> None:
        with pytest.raises(VerificationFailure):
            _client(_response(401, body={"msg": "invalid JWT"})).verify_token("at")

    def test_non_json_body_is_provider_error(self) -> None:
        with pytest.raises(ProviderRequestError, match="non-JSON"):
            _client(_response(body="<html>")).verify_token("at")

    def test_every_failure_is_a_provider_error(self) -> None:
        client = _client(_response(body={"access_token": "at", "expires_in": "x"}))
        with pytest.raises(ProviderError):
            client.sign_in_with_password("a@example.com", "pw")
