# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""OAuth 2.0 client-credentials token cache for the ESG API."""

import threading
import time
from collections.abc import Callable
from typing import Optional

import requests
from pydantic import BaseModel, ConfigDict

from coreason_faers_submission.config import EsgSettings, FaersConfig
from coreason_faers_submission.domain.enums import ErrorCategory
from coreason_faers_submission.esg.retry import classify_http_status
from coreason_faers_submission.exceptions import EsgApiError
from coreason_faers_submission.utils.logger import logger


class ConnectionTestResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    environment: str
    latency_ms: int
    token_valid: bool
    error: Optional[str] = None


class TokenProvider:
    """
    Requests and caches a bearer token.

    The cached token is reused until ``TOKEN_REFRESH_MARGIN_SECONDS`` before it
    expires. Safe to share between threads.
    """

    def __init__(
        self,
        settings: EsgSettings,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.http = http or requests.Session()
        self.clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @property
    def is_valid(self) -> bool:
        return self._token is not None and self.clock() < self._expires_at - FaersConfig.TOKEN_REFRESH_MARGIN_SECONDS

    def invalidate(self) -> None:
        """Drop the cached token so the next call re-authenticates."""
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def get_token(self) -> str:
        with self._lock:
            if self.is_valid:
                return self._token  # type: ignore[return-value]
            return self._refresh()

    def _refresh(self) -> str:
        if not self.settings.is_configured:
            raise EsgApiError(
                "No API credentials configured. Set FAERS_ESG_CLIENT_ID and FAERS_ESG_CLIENT_SECRET.",
                ErrorCategory.AUTHENTICATION,
            )

        url = self.settings.oauth_url
        try:
            response = self.http.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret.get_secret_value(),
                },
                headers={"Accept": "application/json", "User-Agent": FaersConfig.USER_AGENT},
                timeout=self.settings.timeout,
            )
        except requests.Timeout as e:
            logger.error(f"Token request to {url} timed out")
            raise EsgApiError(
                "Authentication request timed out. Please check your network connection.", ErrorCategory.NETWORK
            ) from e
        except requests.RequestException as e:
            logger.error(f"Token request to {url} failed: {e}")
            raise EsgApiError(f"Authentication request failed: {e}", ErrorCategory.NETWORK) from e

        if response.status_code in (401, 403):
            raise EsgApiError(
                "Invalid API credentials. Please verify your Client ID and Secret Key.",
                ErrorCategory.AUTHENTICATION,
                response.status_code,
            )
        if not response.ok:
            raise EsgApiError(
                f"Authentication failed (HTTP {response.status_code}): {response.text}",
                classify_http_status(response.status_code),
                response.status_code,
            )

        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as e:
            raise EsgApiError(f"Malformed token response: {e}", ErrorCategory.AUTHENTICATION) from e

        self._token = token
        self._expires_at = self.clock() + expires_in
        logger.info(f"ESG token obtained for {self.settings.environment} environment, expires in {expires_in:.0f}s")
        return token

    def test_connection(self) -> ConnectionTestResult:
        """Force a fresh token request and report how long it took."""
        self.invalidate()
        started = time.monotonic()
        try:
            self.get_token()
        except EsgApiError as e:
            return ConnectionTestResult(
                success=False,
                environment=self.settings.environment,
                latency_ms=int((time.monotonic() - started) * 1000),
                token_valid=False,
                error=str(e),
            )
        return ConnectionTestResult(
            success=True,
            environment=self.settings.environment,
            latency_ms=int((time.monotonic() - started) * 1000),
            token_valid=True,
        )
