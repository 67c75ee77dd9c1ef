# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Result models returned by validation and XML generation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from coreason_faers_submission.domain.enums import MarketType, Severity


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = Field(description="Dotted path of the offending field, e.g. 'reactions[0].reaction_term'")
    message: str
    severity: Severity


class ValidationResult(BaseModel):
    """Outcome of ``ValidationEngine.validate``; ``valid`` is False only when an error is present."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)

    @property
    def blocking(self) -> list[ValidationIssue]:
        return [e for e in self.errors if e.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [e for e in self.errors if e.severity is Severity.WARNING]

    @property
    def infos(self) -> list[ValidationIssue]:
        return [e for e in self.errors if e.severity is Severity.INFO]


class GenerationOptions(BaseModel):
    """
    Inputs that would otherwise make generation non-deterministic.

    ``creation_time`` and ``message_id`` default to "now" and a random UUID when omitted;
    pass both to get byte-identical output across runs.
    """

    model_config = ConfigDict(frozen=True)

    market_type: MarketType = MarketType.POSTMARKET
    creation_time: Optional[datetime] = None
    message_id: Optional[str] = None
    sender_identifier: Optional[str] = Field(
        default=None, description="Batch sender id (N.1.3); defaults to the configured sender"
    )


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    xml: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    batch_receiver: Optional[str] = None


class BatchGenerationResult(BaseModel):
    """Batch envelope result; ``case_errors`` lists the cases left out and why."""

    model_config = ConfigDict(frozen=True)

    success: bool
    xml: Optional[str] = None
    included_case_ids: list[str] = Field(default_factory=list)
    case_errors: dict[str, list[str]] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    batch_receiver: Optional[str] = None
