# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Configuration module for the FAERS ICSR submission pipeline."""

from pathlib import Path
from typing import Any, Final, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FaersConfig:
    """Configuration constants for ICSR generation and ESG submission."""

    # Wire document
    XML_NAMESPACE: Final[str] = "urn:hl7-org:v3"
    XSI_NAMESPACE: Final[str] = "http://www.w3.org/2001/XMLSchema-instance"
    INTERACTION_ID: Final[str] = "MCCI_IN200100UV01"
    CONTROL_ACT_CODE: Final[str] = "MCCI_TE100100UV01"

    # OID roots (root + extension identifier pairs)
    OID_MESSAGE_ID: Final[str] = "2.16.840.1.113883.3.989.2.1.3.1"
    OID_REPORT_VERSION: Final[str] = "2.16.840.1.113883.3.989.2.1.3.4"
    OID_PRODUCT_ID: Final[str] = "2.16.840.1.113883.3.989.2.1.3.5"
    OID_SENDER_ID: Final[str] = "2.16.840.1.113883.3.989.2.1.3.13"
    OID_RECEIVER_ID: Final[str] = "2.16.840.1.113883.3.989.2.1.3.14"
    OID_BATCH_ID: Final[str] = "2.16.840.1.113883.3.989.2.1.3.22"
    OID_INTERACTION: Final[str] = "2.16.840.1.113883.1.6"
    OID_CONTROL_ACT: Final[str] = "2.16.840.1.113883.1.18"
    OID_E2B_CODES: Final[str] = "2.16.840.1.113883.3.989.2.1.1"
    OID_NCI_THESAURUS: Final[str] = "2.16.840.1.113883.3.26.1.1"
    OID_ADMINISTRATIVE_GENDER: Final[str] = "2.16.840.1.113883.5.1"
    OID_MEDDRA: Final[str] = "2.16.840.1.113883.6.163"

    # Routing identifiers (N.1.4 batch receiver)
    RECEIVER_POSTMARKET: Final[str] = "ZZFDA"
    RECEIVER_PREMARKET: Final[str] = "ZZFDA_PREMKT"
    DEFAULT_SENDER_ID: Final[str] = "Unknown"

    # ESG NextGen endpoints
    ESG_BASE_URLS: Final[dict[str, str]] = {
        "test": "https://api-test.fda.gov/esg/v1",
        "production": "https://api.fda.gov/esg/v1",
    }
    ESG_TOKEN_URLS: Final[dict[str, str]] = {
        "test": "https://api-test.fda.gov/esg/oauth2/token",
        "production": "https://api.fda.gov/esg/oauth2/token",
    }
    USER_AGENT: Final[str] = "FAERS-App/1.0"
    REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
    TOKEN_REFRESH_MARGIN_SECONDS: Final[int] = 60

    # Retry policy
    RETRY_BASE_DELAY_SECONDS: Final[float] = 1.0
    RETRY_MAX_DELAY_SECONDS: Final[float] = 30.0
    RETRY_MAX_JITTER_SECONDS: Final[float] = 1.0
    MAX_SUBMISSION_ATTEMPTS: Final[int] = 4

    # Acknowledgment polling
    POLLING_INTERVAL_SECONDS: Final[float] = 300.0
    POLLING_TIMEOUT_HOURS: Final[float] = 48.0
    POLLING_MAX_WORKERS: Final[int] = 8

    # Local storage
    DEFAULT_DATABASE_URL: Final[str] = "sqlite:///data/faers.db"
    DEFAULT_EXPORT_DIR: Final[Path] = Path("data/exports")

    # Follow-up due dates (days after new information received)
    FOLLOWUP_DUE_DAYS_EXPEDITED: Final[int] = 15
    FOLLOWUP_DUE_DAYS_STANDARD: Final[int] = 30


class EsgSettings(BaseSettings):
    """
    Runtime settings for the ESG NextGen API.

    Credentials are never part of ``FaersConfig``; they are loaded from ``FAERS_ESG_*``
    environment variables, and keyword arguments take precedence over the environment.
    """

    model_config = SettingsConfigDict(env_prefix="FAERS_ESG_", extra="ignore", frozen=True)

    environment: Literal["test", "production"] = "test"
    client_id: str = ""
    client_secret: SecretStr = SecretStr("")
    sender_id: str = Field(default=FaersConfig.DEFAULT_SENDER_ID, description="ESG account / sender identifier")
    base_url: Optional[str] = Field(default=None, description="Override for the API base URL")
    token_url: Optional[str] = Field(default=None, description="Override for the OAuth token URL")
    timeout: float = FaersConfig.REQUEST_TIMEOUT_SECONDS
    max_attempts: int = Field(default=FaersConfig.MAX_SUBMISSION_ATTEMPTS, ge=1)
    polling_interval: float = Field(default=FaersConfig.POLLING_INTERVAL_SECONDS, gt=0)
    polling_timeout_hours: float = Field(default=FaersConfig.POLLING_TIMEOUT_HOURS, gt=0)

    @field_validator("environment", mode="before")
    @classmethod
    def _lower_environment(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("base_url", "token_url", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        # An exported-but-empty variable means "use the environment default".
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def api_url(self) -> str:
        return self.base_url or FaersConfig.ESG_BASE_URLS[self.environment]

    @property
    def oauth_url(self) -> str:
        return self.token_url or FaersConfig.ESG_TOKEN_URLS[self.environment]

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret.get_secret_value())
