# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Models for batches, submission attempts, acknowledgments and version history."""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from coreason_faers_submission.domain.enums import (
    AckType,
    AttemptStatus,
    BatchAckType,
    BatchCaseStatus,
    BatchStatus,
    BatchType,
    ErrorCategory,
    SubmissionStep,
)


class BatchCase(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    case_id: str
    validation_status: BatchCaseStatus = BatchCaseStatus.PENDING
    validation_errors: list[str] = Field(default_factory=list)
    added_at: Optional[datetime] = None


class SubmissionBatch(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    batch_number: str
    batch_type: BatchType
    status: BatchStatus
    case_count: int = 0
    valid_case_count: int = 0
    invalid_case_count: int = 0
    submission_mode: Optional[str] = None
    xml_filename: Optional[str] = None
    xml_file_path: Optional[str] = None
    esg_submission_id: Optional[str] = None
    esg_core_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    ack_type: Optional[BatchAckType] = None
    ack_details: Optional[str] = None
    last_error: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cases: list[BatchCase] = Field(default_factory=list)


class BatchCaseValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    safety_report_id: Optional[str] = None
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BatchValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: int
    total_cases: int
    valid_cases: int
    invalid_cases: int
    case_results: list[BatchCaseValidationResult] = Field(default_factory=list)
    is_valid: bool


class BatchCaseEligibility(BaseModel):
    """A case offered for a batch of a given type, flagged when it already sits in an active batch."""

    model_config = ConfigDict(frozen=True)

    case_id: str
    safety_report_id: Optional[str] = None
    report_type_classification: Optional[str] = None
    workflow_status: Optional[str] = None
    is_eligible: bool
    eligibility_reason: Optional[str] = None
    existing_batch_id: Optional[int] = None


class BatchExportResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    file_path: str
    case_count: int
    xml_size: int


class AckError(BaseModel):
    """One structured rejection reason carried by an acknowledgment."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    field: Optional[str] = None
    severity: str = "error"


class Acknowledgment(BaseModel):
    """Acknowledgment document returned by ``GET /submissions/{id}/acknowledgment``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    acknowledgment_type: AckType = Field(alias="acknowledgmentType")
    fda_core_id: Optional[str] = Field(default=None, alias="fdaCoreId")
    timestamp: Optional[datetime] = None
    details: Optional[str] = None
    errors: list[AckError] = Field(default_factory=list)

    @property
    def is_positive(self) -> bool:
        return self.acknowledgment_type.is_positive


class ApiSubmissionAttempt(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    case_id: Optional[str] = None
    batch_id: Optional[int] = None
    attempt_number: int
    environment: str
    status: AttemptStatus
    esg_submission_id: Optional[str] = None
    esg_core_id: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    http_status_code: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    ack_type: Optional[AckType] = None
    ack_timestamp: Optional[datetime] = None
    ack_fda_core_id: Optional[str] = None
    ack_errors: Optional[list[AckError]] = None


class SubmissionHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    case_id: Optional[str] = None
    batch_id: Optional[int] = None
    event_type: str
    details: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    created_at: datetime


class SubmissionProgress(BaseModel):
    """Snapshot handed to the progress callback after every protocol step."""

    model_config = ConfigDict(frozen=True)

    case_id: Optional[str] = None
    batch_id: Optional[int] = None
    attempt_number: int
    current_step: SubmissionStep
    steps_completed: int
    total_steps: int = 4
    elapsed_seconds: float = 0.0
    esg_submission_id: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None


class SubmissionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: Optional[str] = None
    batch_id: Optional[int] = None
    success: bool
    cancelled: bool = False
    attempts: int = 0
    esg_submission_id: Optional[str] = None
    esg_core_id: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None


class PollingStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_running: bool
    last_poll_at: Optional[datetime] = None
    cases_checked: int = 0
    acknowledged: int = 0
    rejected: int = 0
    needs_attention: int = 0
    errors: list[str] = Field(default_factory=list)


class CaseVersion(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    version: int
    parent_case_id: Optional[str] = None
    followup_type: Optional[str] = None
    followup_info_date: Optional[date] = None
    status: str
    workflow_status: Optional[str] = None
    is_nullified: bool = False
    nullification_reason_code: Optional[str] = None
    created_at: Optional[datetime] = None


class VersionChain(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_case_id: str
    versions: list[CaseVersion]
    is_nullified: bool

    @property
    def total_versions(self) -> int:
        return len(self.versions)


class VersionFieldChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    label: str
    section: str
    old_value: Any = None
    new_value: Any = None


class VersionComparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_case_id: str
    to_case_id: str
    from_version: int
    to_version: int
    changes: list[VersionFieldChange] = Field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return len(self.changes)


class FollowupDueDate(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    followup_type: Optional[str] = None
    is_expedited: bool
    due_date: date
    days_remaining: int
    is_overdue: bool
