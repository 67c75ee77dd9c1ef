# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Case status transitions, each a compare-and-set plus a history row."""

from types import MappingProxyType
from typing import Any, Final, Optional

from sqlalchemy.orm import Session

from coreason_faers_submission.domain.enums import CaseStatus, HistoryEvent
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.domain.results import ValidationResult
from coreason_faers_submission.domain.submission import Acknowledgment
from coreason_faers_submission.exceptions import ConcurrentTransitionError, InvalidTransitionError
from coreason_faers_submission.storage.repositories import CaseRepository, HistoryRepository
from coreason_faers_submission.utils.clock import utc_now
from coreason_faers_submission.utils.logger import logger
from coreason_faers_submission.validation.engine import ValidationEngine

CASE_TRANSITIONS: Final = MappingProxyType(
    {
        CaseStatus.DRAFT: frozenset({CaseStatus.READY_FOR_EXPORT}),
        CaseStatus.READY_FOR_EXPORT: frozenset({CaseStatus.EXPORTED, CaseStatus.SUBMITTING, CaseStatus.DRAFT}),
        CaseStatus.EXPORTED: frozenset({CaseStatus.SUBMITTING, CaseStatus.DRAFT}),
        CaseStatus.SUBMITTING: frozenset({CaseStatus.SUBMITTED, CaseStatus.SUBMISSION_FAILED}),
        CaseStatus.SUBMITTED: frozenset({CaseStatus.ACKNOWLEDGED, CaseStatus.REJECTED}),
        CaseStatus.SUBMISSION_FAILED: frozenset({CaseStatus.SUBMITTING, CaseStatus.DRAFT}),
        CaseStatus.ACKNOWLEDGED: frozenset(),
        CaseStatus.REJECTED: frozenset(),
    }
)


def allowed_transitions(status: CaseStatus) -> frozenset[CaseStatus]:
    return CASE_TRANSITIONS[CaseStatus(status)]


def can_transition(current: CaseStatus, target: CaseStatus) -> bool:
    return CaseStatus(target) in allowed_transitions(current)


class CaseStateMachine:
    """
    Applies the case transition table.

    Methods take the caller's session; the status UPDATE and its history row are
    committed together when the caller's transaction ends. A lost race on the
    status column raises ``ConcurrentTransitionError`` rather than overwriting.
    """

    def __init__(
        self,
        validator: Optional[ValidationEngine] = None,
        cases: Optional[CaseRepository] = None,
        history: Optional[HistoryRepository] = None,
    ) -> None:
        self.validator = validator or ValidationEngine()
        self.cases = cases or CaseRepository()
        self.history = history or HistoryRepository()

    def transition(
        self,
        session: Session,
        case_id: str,
        target: CaseStatus,
        event: HistoryEvent = HistoryEvent.STATUS_CHANGED,
        action: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
        **fields: Any,
    ) -> Case:
        """
        Move a case to ``target`` if the transition table allows it.

        Args:
            session: Open session; the caller owns the transaction.
            case_id: Case to move.
            target: Desired status.
            event: History event type recorded for the move.
            action: Verb used in the error message.
            details: Extra history details.
            notes: Free-text history notes.
            **fields: Additional case columns written in the same UPDATE.

        Returns:
            The case as persisted after the transition.

        Raises:
            CaseNotFoundError: If the case does not exist.
            InvalidTransitionError: If ``target`` is not reachable from the current status.
            ConcurrentTransitionError: If another writer changed the status first.
        """
        current = self.cases.get(session, case_id).status
        if not can_transition(current, target):
            raise InvalidTransitionError("case", current.value, target.value, action)

        if not self.cases.compare_and_set_status(session, case_id, [current], target, **fields):
            raise ConcurrentTransitionError("case", current.value, target.value, action)

        self.history.append(
            session,
            event,
            case_id=case_id,
            details={"from": current.value, "to": target.value, **(details or {})},
            notes=notes,
        )
        logger.info(f"Case {case_id}: {current.value} -> {target.value}")
        return self.cases.get(session, case_id)

    def mark_ready(self, session: Session, case_id: str) -> ValidationResult:
        """Validate and, only when no blocking error is found, move the case to Ready for Export."""
        case = self.cases.get(session, case_id)
        if not can_transition(case.status, CaseStatus.READY_FOR_EXPORT):
            raise InvalidTransitionError("case", case.status.value, CaseStatus.READY_FOR_EXPORT.value, "mark ready")
        result = self.validator.validate(case)
        if not result.valid:
            logger.warning(f"Case {case_id} failed validation with {len(result.blocking)} error(s); stays Draft")
            return result
        self.transition(
            session,
            case_id,
            CaseStatus.READY_FOR_EXPORT,
            action="mark ready",
            details={"warnings": len(result.warnings)},
        )
        return result

    def mark_exported(self, session: Session, case_id: str, xml_path: str) -> Case:
        return self.transition(
            session,
            case_id,
            CaseStatus.EXPORTED,
            event=HistoryEvent.EXPORTED,
            action="export",
            details={"path": xml_path},
            exported_at=utc_now(),
            exported_xml_path=xml_path,
        )

    def begin_submission(self, session: Session, case_id: str, attempt_count: int) -> Case:
        event = HistoryEvent.STATUS_CHANGED
        if self.cases.get(session, case_id).status is CaseStatus.SUBMISSION_FAILED:
            event = HistoryEvent.RETRIED
        return self.transition(
            session,
            case_id,
            CaseStatus.SUBMITTING,
            event=event,
            action="submit",
            api_attempt_count=attempt_count,
        )

    def mark_submitted(
        self, session: Session, case_id: str, esg_submission_id: str, esg_core_id: Optional[str], attempts: int
    ) -> Case:
        return self.transition(
            session,
            case_id,
            CaseStatus.SUBMITTED,
            event=HistoryEvent.SUBMITTED,
            action="complete submission of",
            details={"esg_submission_id": esg_submission_id, "esg_core_id": esg_core_id, "attempts": attempts},
            esg_submission_id=esg_submission_id,
            esg_core_id=esg_core_id,
            last_submitted_at=utc_now(),
            api_attempt_count=attempts,
            api_last_error=None,
            needs_attention=False,
        )

    def mark_submission_failed(
        self,
        session: Session,
        case_id: str,
        error: str,
        attempts: int,
        category: Optional[str] = None,
        cancelled: bool = False,
    ) -> Case:
        return self.transition(
            session,
            case_id,
            CaseStatus.SUBMISSION_FAILED,
            event=HistoryEvent.CANCELLED if cancelled else HistoryEvent.SUBMISSION_FAILED,
            action="fail submission of",
            details={"error": error, "category": category, "attempts": attempts},
            api_last_error=error,
            api_attempt_count=attempts,
        )

    def mark_acknowledged(self, session: Session, case_id: str, ack: Acknowledgment) -> Case:
        if not ack.is_positive:
            raise ValueError(f"Acknowledgment {ack.acknowledgment_type.value} is not positive")
        return self.transition(
            session,
            case_id,
            CaseStatus.ACKNOWLEDGED,
            event=HistoryEvent.ACKNOWLEDGED,
            action="acknowledge",
            details={"ack_type": ack.acknowledgment_type.value, "fda_core_id": ack.fda_core_id},
            fda_case_number=ack.fda_core_id,
            acknowledgment_date=ack.timestamp or utc_now(),
            needs_attention=False,
        )

    def mark_rejected(self, session: Session, case_id: str, ack: Acknowledgment) -> Case:
        if ack.is_positive:
            raise ValueError(f"Acknowledgment {ack.acknowledgment_type.value} is not a rejection")
        reasons = "; ".join(f"{e.code}: {e.message}" for e in ack.errors) or ack.details or "Rejected"
        return self.transition(
            session,
            case_id,
            CaseStatus.REJECTED,
            event=HistoryEvent.REJECTED,
            action="reject",
            details={"ack_type": ack.acknowledgment_type.value, "errors": [e.model_dump() for e in ack.errors]},
            acknowledgment_date=ack.timestamp or utc_now(),
            api_last_error=reasons,
            needs_attention=False,
        )

    def revert_to_draft(self, session: Session, case_id: str, reason: Optional[str] = None) -> Case:
        return self.transition(session, case_id, CaseStatus.DRAFT, action="revert", notes=reason)
