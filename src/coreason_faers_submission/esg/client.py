# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""ESG NextGen REST client: create, upload, finalize and acknowledgment lookup."""

from typing import Any, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from coreason_faers_submission.config import EsgSettings, FaersConfig
from coreason_faers_submission.domain.enums import ErrorCategory
from coreason_faers_submission.domain.submission import Acknowledgment
from coreason_faers_submission.esg.auth import TokenProvider
from coreason_faers_submission.esg.retry import classify_http_status
from coreason_faers_submission.exceptions import EsgApiError
from coreason_faers_submission.utils.logger import logger


class CreatedSubmission(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    status: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class FinalizedSubmission(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    status: Optional[str] = None
    esg_core_id: str = Field(alias="esgCoreId")


def _error_message(response: requests.Response) -> str:
    message = f"ESG API error (HTTP {response.status_code})"
    body = response.text or ""
    try:
        parsed = response.json()
    except ValueError:
        return f"{message}: {body[:200]}" if body else message
    if isinstance(parsed, dict):
        for key in ("message", "error"):
            if isinstance(parsed.get(key), str):
                return parsed[key]
    return message


class EsgApiClient:
    """
    Thin wrapper over the four ESG endpoints.

    Every failure is raised as ``EsgApiError`` with a category; retry decisions
    belong to the caller. A 401 drops the cached token so the next call
    re-authenticates.
    """

    def __init__(
        self,
        settings: EsgSettings,
        http: Optional[requests.Session] = None,
        tokens: Optional[TokenProvider] = None,
    ) -> None:
        self.settings = settings
        self.http = http or requests.Session()
        self.tokens = tokens or TokenProvider(settings, self.http)

    @property
    def environment(self) -> str:
        return self.settings.environment

    def _url(self, path: str) -> str:
        return f"{self.settings.api_url.rstrip('/')}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        data: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> requests.Response:
        token = self.tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": FaersConfig.USER_AGENT,
        }
        if content_type:
            headers["Content-Type"] = content_type
        url = self._url(path)

        try:
            response = self.http.request(
                method, url, headers=headers, json=json_body, data=data, timeout=self.settings.timeout
            )
        except requests.Timeout as e:
            logger.warning(f"{method} {url} timed out")
            raise EsgApiError("Request timed out", ErrorCategory.NETWORK) from e
        except requests.ConnectionError as e:
            logger.warning(f"{method} {url} could not connect: {e}")
            raise EsgApiError(f"Network error: {e}", ErrorCategory.NETWORK) from e
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise EsgApiError(str(e), ErrorCategory.UNKNOWN) from e

        if not response.ok:
            if response.status_code == 401:
                self.tokens.invalidate()
            category = classify_http_status(response.status_code)
            message = _error_message(response)
            logger.warning(f"{method} {url} -> HTTP {response.status_code} ({category.value}): {message}")
            raise EsgApiError(message, category, response.status_code)
        return response

    @staticmethod
    def _parse(model: type[BaseModel], response: requests.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise EsgApiError(
                f"Unexpected response body from ESG API: {e}", ErrorCategory.UNKNOWN, response.status_code
            ) from e

    def authenticate(self) -> None:
        """Make sure a bearer token is cached."""
        self.tokens.get_token()

    def create_submission(self, submission_type: str = "ICSR") -> CreatedSubmission:
        response = self._request(
            "POST",
            "submissions",
            json_body={"submissionType": submission_type, "senderId": self.settings.sender_id},
            content_type="application/json",
        )
        created = self._parse(CreatedSubmission, response)
        logger.info(f"Created ESG submission {created.submission_id}")
        return created

    def upload_content(self, submission_id: str, xml: str) -> None:
        self._request(
            "PUT",
            f"submissions/{submission_id}/content",
            data=xml.encode("utf-8"),
            content_type="application/xml",
        )
        logger.info(f"Uploaded {len(xml)} chars to ESG submission {submission_id}")

    def finalize_submission(self, submission_id: str) -> FinalizedSubmission:
        response = self._request("POST", f"submissions/{submission_id}/finalize")
        finalized = self._parse(FinalizedSubmission, response)
        logger.info(f"Finalized ESG submission {submission_id} (core id {finalized.esg_core_id})")
        return finalized

    def get_acknowledgment(self, submission_id: str) -> Optional[Acknowledgment]:
        """
        Fetch the acknowledgment for a submission.

        Returns:
            The acknowledgment, or None while the ESG has not issued one yet (HTTP 404).
        """
        try:
            response = self._request("GET", f"submissions/{submission_id}/acknowledgment")
        except EsgApiError as e:
            if e.http_status == 404:
                return None
            raise
        return self._parse(Acknowledgment, response)
