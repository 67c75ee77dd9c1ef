# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Exception hierarchy for the FAERS submission pipeline."""

from typing import Optional

from coreason_faers_submission.domain.enums import ErrorCategory


class FaersSubmissionError(Exception):
    """Base class for all pipeline errors."""


class CaseNotFoundError(FaersSubmissionError):
    """Raised when a case id does not exist in the store."""


class BatchNotFoundError(FaersSubmissionError):
    """Raised when a batch id does not exist in the store."""


class InvalidTransitionError(FaersSubmissionError):
    """Raised when a status transition is not allowed from the current state."""

    def __init__(self, entity: str, current: str, target: str, action: Optional[str] = None) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        self.action = action
        what = f"{action} " if action else ""
        super().__init__(f"Cannot {what}{entity} in status '{current}' (target '{target}')")


class ConcurrentTransitionError(InvalidTransitionError):
    """Raised when a compare-and-set on the status column lost a race."""


class BatchMembershipError(FaersSubmissionError):
    """Raised when a case cannot be added to or removed from a batch."""


class BatchExportError(FaersSubmissionError):
    """Raised when a validated batch could not be rendered or written."""


class VersioningError(FaersSubmissionError):
    """Raised when a follow-up or nullification cannot be created."""


class ConcurrentSubmissionError(FaersSubmissionError):
    """Raised when a case is already being submitted."""


class CodeMappingError(FaersSubmissionError):
    """Raised when a business code has no entry in its lookup table."""

    def __init__(self, table: str, code: object, field: str) -> None:
        self.table = table
        self.code = code
        self.field = field
        super().__init__(f"Unmapped {table} code {code!r} for {field}")


class StorageValueError(FaersSubmissionError):
    """Raised when a typed column value fails validation at the storage boundary."""


class EsgApiError(FaersSubmissionError):
    """Raised by the ESG client; carries the error category used for retry decisions."""

    def __init__(self, message: str, category: ErrorCategory, http_status: Optional[int] = None) -> None:
        self.category = ErrorCategory(category)
        self.http_status = http_status
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category.retryable
