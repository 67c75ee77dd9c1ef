# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Enumerations shared across the submission pipeline."""

from enum import Enum


class CaseStatus(str, Enum):
    """
    Coarse lifecycle status of a case version.

    Draft → Ready for Export → Exported → Submitting → Submitted → Acknowledged | Rejected,
    with Submission Failed reachable from Submitting and resumable.
    """

    DRAFT = "Draft"
    READY_FOR_EXPORT = "Ready for Export"
    EXPORTED = "Exported"
    SUBMITTING = "Submitting"
    SUBMITTED = "Submitted"
    ACKNOWLEDGED = "Acknowledged"
    REJECTED = "Rejected"
    SUBMISSION_FAILED = "Submission Failed"


class BatchStatus(str, Enum):
    CREATED = "created"
    VALIDATING = "validating"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    EXPORTING = "exporting"
    EXPORTED = "exported"
    SUBMITTED = "submitted"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """A batch holds its member cases until it is acknowledged, rejected or failed."""
        return self not in (BatchStatus.ACKNOWLEDGED, BatchStatus.REJECTED, BatchStatus.FAILED)


class BatchType(str, Enum):
    EXPEDITED = "expedited"
    NON_EXPEDITED = "non_expedited"
    PSR = "psr"
    FOLLOWUP = "followup"

    @property
    def number_prefix(self) -> str:
        return self.value[:3].upper()


class BatchAckType(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PARTIAL = "partial"


class BatchCaseStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ReportClassification(str, Enum):
    EXPEDITED = "expedited"
    NON_EXPEDITED = "non_expedited"
    FOLLOWUP = "followup"
    NULLIFICATION = "nullification"


class FollowupType(str, Enum):
    ADDITIONAL_INFO = "additional_info"
    OUTCOME_UPDATE = "outcome_update"
    CORRECTION = "correction"
    FDA_RESPONSE = "fda_response"
    UPGRADE_SERIOUS = "upgrade_serious"
    DOWNGRADE = "downgrade"


class NullificationReason(str, Enum):
    DUPLICATE = "duplicate"
    ERROR = "error"
    NOT_AE = "not_ae"
    WRONG_PRODUCT = "wrong_product"
    CONSENT_WITHDRAWN = "consent_withdrawn"


class MarketType(str, Enum):
    """Pre/post-market classification selecting the routing identifier."""

    POSTMARKET = "Postmarket"
    PREMARKET = "Premarket"


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT, ErrorCategory.SERVER_ERROR)


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AckType(str, Enum):
    """ESG acknowledgment levels; only NACK is negative."""

    ACK1 = "ACK1"
    ACK2 = "ACK2"
    ACK3 = "ACK3"
    NACK = "NACK"

    @property
    def is_positive(self) -> bool:
        return self is not AckType.NACK


class SubmissionStep(str, Enum):
    AUTHENTICATING = "authenticating"
    CREATING_SUBMISSION = "creating_submission"
    UPLOADING_XML = "uploading_xml"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class HistoryEvent(str, Enum):
    """Event types written to the submission history log."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    EXPORTED = "exported"
    SUBMITTED = "submitted"
    SUBMISSION_FAILED = "submission_failed"
    RETRIED = "retried"
    CANCELLED = "cancelled"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    NEEDS_ATTENTION = "needs_attention"
    FOLLOWUP_CREATED = "followup_created"
    NULLIFIED = "nullified"
    BATCH_SUBMITTED = "batch_submitted"
    BATCH_ACKNOWLEDGED = "batch_acknowledged"
