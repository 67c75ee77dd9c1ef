# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Tests for the ESG OAuth token provider."""

from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from coreason_faers_submission.config import EsgSettings
from coreason_faers_submission.domain.enums import ErrorCategory
from coreason_faers_submission.esg.auth import TokenProvider
from coreason_faers_submission.exceptions import EsgApiError


def token_response(status_code: int = 200, payload: Any = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.json.return_value = payload if payload is not None else {"access_token": "tok-1", "expires_in": 3600}
    return response


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(name="http")
def http() -> MagicMock:
    """Mocked requests session answering the token endpoint."""
    session = MagicMock()
    session.post.return_value = token_response()
    return session


@pytest.fixture(name="clock")
def clock() -> FakeClock:
    """Controllable monotonic clock."""
    return FakeClock()


@pytest.fixture(name="provider")
def provider(settings: EsgSettings, http: MagicMock, clock: FakeClock) -> TokenProvider:
    """Token provider wired to the mocked session."""
    return TokenProvider(settings, http=http, clock=clock)


class TestTokenProvider:
    """Token acquisition and caching."""

    def test_token_request(self, provider: TokenProvider, http: MagicMock) -> None:
        """Client credentials are posted as a form to the token URL."""
        assert provider.get_token() == "tok-1"
        args, kwargs = http.post.call_args
        assert args == ("https://esg.example/oauth2/token",)
        assert kwargs["data"] == {
            "grant_type": "client_credentials",
            "client_id": "client-123",
            "client_secret": "secret-456",
        }
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["timeout"] == provider.settings.timeout

    def test_token_is_cached(self, provider: TokenProvider, http: MagicMock, clock: FakeClock) -> None:
        """A valid token is reused without another request."""
        provider.get_token()
        clock.now += 3000
        assert provider.get_token() == "tok-1"
        assert http.post.call_count == 1
        assert provider.is_valid is True

    def test_token_refreshed_inside_margin(self, provider: TokenProvider, http: MagicMock, clock: FakeClock) -> None:
        """Within sixty seconds of expiry a new token is requested."""
        provider.get_token()
        http.post.return_value = token_response(payload={"access_token": "tok-2", "expires_in": 3600})
        clock.now += 3541
        assert provider.is_valid is False
        assert provider.get_token() == "tok-2"
        assert http.post.call_count == 2

    def test_invalidate(self, provider: TokenProvider, http: MagicMock) -> None:
        """Invalidation forces re-authentication."""
        provider.get_token()
        provider.invalidate()
        assert provider.is_valid is False
        provider.get_token()
        assert http.post.call_count == 2

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_rejected_credentials(self, provider: TokenProvider, http: MagicMock, status_code: int) -> None:
        """401 and 403 are authentication errors and are not retryable."""
        http.post.return_value = token_response(status_code)
        with pytest.raises(EsgApiError, match="Invalid API credentials") as excinfo:
            provider.get_token()
        assert excinfo.value.category is ErrorCategory.AUTHENTICATION
        assert excinfo.value.http_status == status_code
        assert excinfo.value.retryable is False

    def test_other_http_failure(self, provider: TokenProvider, http: MagicMock) -> None:
        """Other failures carry the status and body."""
        http.post.return_value = token_response(500, text="upstream down")
        with pytest.raises(EsgApiError, match=r"HTTP 500\): upstream down"):
            provider.get_token()

    @pytest.mark.parametrize(
        "status_code, category",
        [(429, ErrorCategory.RATE_LIMIT), (503, ErrorCategory.SERVER_ERROR), (500, ErrorCategory.SERVER_ERROR)],
    )
    def test_transient_token_endpoint_failures_are_retryable(
        self, provider: TokenProvider, http: MagicMock, status_code: int, category: ErrorCategory
    ) -> None:
        """Throttling and outages at the token endpoint keep the retry policy's categories."""
        http.post.return_value = token_response(status_code, text="try later")
        with pytest.raises(EsgApiError) as excinfo:
            provider.get_token()
        assert excinfo.value.category is category
        assert excinfo.value.http_status == status_code
        assert excinfo.value.retryable is True
        assert provider.is_valid is False

    def test_timeout_is_network_error(self, provider: TokenProvider, http: MagicMock) -> None:
        """A timed-out token request is a retryable network error."""
        http.post.side_effect = requests.Timeout("slow")
        with pytest.raises(EsgApiError, match="timed out") as excinfo:
            provider.get_token()
        assert excinfo.value.category is ErrorCategory.NETWORK
        assert excinfo.value.retryable is True

    def test_connection_error_is_network_error(self, provider: TokenProvider, http: MagicMock) -> None:
        """Connection failures are network errors too."""
        http.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(EsgApiError) as excinfo:
            provider.get_token()
        assert excinfo.value.category is ErrorCategory.NETWORK

    def test_malformed_payload(self, provider: TokenProvider, http: MagicMock) -> None:
        """A response without a token is an authentication error."""
        http.post.return_value = token_response(payload={"token_type": "bearer"})
        with pytest.raises(EsgApiError, match="Malformed token response"):
            provider.get_token()
        assert provider.is_valid is False

    def test_missing_credentials(self, http: MagicMock) -> None:
        """Nothing is sent when credentials are not configured."""
        provider = TokenProvider(EsgSettings(), http=http)
        with pytest.raises(EsgApiError, match="No API credentials configured"):
            provider.get_token()
        http.post.assert_not_called()


class TestConnectionCheck:
    """Connection test reporting."""

    def test_success(self, provider: TokenProvider, http: MagicMock) -> None:
        """A fresh token is always requested."""
        provider.get_token()
        result = provider.test_connection()
        assert result.success is True
        assert result.token_valid is True
        assert result.environment == "test"
        assert result.latency_ms >= 0
        assert result.error is None
        assert http.post.call_count == 2

    def test_failure(self, provider: TokenProvider, http: MagicMock) -> None:
        """Failures are reported rather than raised."""
        http.post.return_value = token_response(401)
        result = provider.test_connection()
        assert result.success is False
        assert result.token_valid is False
        assert "Invalid API credentials" in result.error
