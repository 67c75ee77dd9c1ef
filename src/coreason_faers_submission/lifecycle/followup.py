# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Follow-up and nullification versions of submitted cases."""

from datetime import date, timedelta
from typing import Any, Final, Optional

from sqlalchemy.orm import Session

from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.domain.enums import (
    CaseStatus,
    FollowupType,
    HistoryEvent,
    NullificationReason,
    ReportClassification,
)
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.domain.submission import (
    CaseVersion,
    FollowupDueDate,
    VersionChain,
    VersionComparison,
    VersionFieldChange,
)
from coreason_faers_submission.exceptions import VersioningError
from coreason_faers_submission.lifecycle.numbering import new_case_id
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import CaseRepository, HistoryRepository
from coreason_faers_submission.utils.clock import utc_now
from coreason_faers_submission.utils.logger import audit_context, logger

# (field, label, section)
COMPARABLE_FIELDS: Final[tuple[tuple[str, str, str], ...]] = (
    ("patient_initials", "Patient Initials", "Patient"),
    ("patient_birthdate", "Patient Birth Date", "Patient"),
    ("patient_age", "Patient Age", "Patient"),
    ("patient_sex", "Patient Sex", "Patient"),
    ("patient_weight", "Patient Weight", "Patient"),
    ("patient_height", "Patient Height", "Patient"),
    ("patient_death", "Death", "Patient"),
    ("death_date", "Death Date", "Patient"),
    ("case_narrative", "Case Narrative", "Narrative"),
    ("reporter_comments", "Reporter Comments", "Narrative"),
    ("sender_comments", "Sender Comments", "Narrative"),
    ("sender_diagnosis", "Sender Diagnosis", "Narrative"),
    ("receipt_date", "Receipt Date", "Report Info"),
    ("receive_date", "Receive Date", "Report Info"),
    ("is_serious", "Serious", "Classification"),
    ("expectedness", "Expectedness", "Classification"),
    ("report_type_classification", "Report Type", "Classification"),
)

VERSIONABLE_STATUSES: Final[frozenset[CaseStatus]] = frozenset({CaseStatus.SUBMITTED, CaseStatus.ACKNOWLEDGED})

SUBMISSION_TRACKING_RESET: Final[dict[str, Any]] = {
    "esg_submission_id": None,
    "esg_core_id": None,
    "last_submitted_at": None,
    "api_attempt_count": 0,
    "api_last_error": None,
    "fda_case_number": None,
    "acknowledgment_date": None,
    "exported_at": None,
    "exported_xml_path": None,
    "needs_attention": False,
}

# E2B A.1.8 "initial or follow-up": 2 marks a follow-up report.
_FOLLOWUP_REPORT = 2


def is_expedited(case: Case) -> bool:
    return case.report_type_classification == ReportClassification.EXPEDITED.value or (
        bool(case.is_serious) and case.expectedness == "unexpected"
    )


class FollowupService:
    """
    Creates new case versions and answers questions about version chains.

    A new version is a full copy of its parent with submission tracking cleared,
    numbered one above the highest version anywhere in the chain.
    """

    def __init__(self, database: Database, cases: Optional[CaseRepository] = None) -> None:
        self.database = database
        self.cases = cases or CaseRepository()
        self.history = HistoryRepository()

    @staticmethod
    def _blocker(case: Case, nullifying: bool) -> Optional[str]:
        if case.is_nullified:
            return "Case has already been nullified"
        if case.status not in VERSIONABLE_STATUSES:
            verb = "nullified" if nullifying else "followed up"
            return f"Only submitted or acknowledged cases can be {verb} (status '{case.status.value}')"
        return None

    def _changed_concurrently(self, session: Session, case_id: str, nullifying: bool) -> str:
        # The row moved between the read and the guarded write.
        session.expire_all()
        return self._blocker(self.cases.get(session, case_id), nullifying) or "Case changed while creating a new version"

    def can_create_followup(self, case_id: str) -> tuple[bool, Optional[str]]:
        with self.database.session() as session:
            reason = self._blocker(self.cases.get(session, case_id), nullifying=False)
        return reason is None, reason

    def can_nullify(self, case_id: str) -> tuple[bool, Optional[str]]:
        with self.database.session() as session:
            reason = self._blocker(self.cases.get(session, case_id), nullifying=True)
        return reason is None, reason

    def _new_version(self, session: Session, parent: Case, new_id: str, **overrides: Any) -> Case:
        version = self.cases.max_chain_version(session, parent.id) + 1
        return self.cases.duplicate(
            session,
            parent.id,
            new_id,
            parent_case_id=parent.id,
            version=version,
            status=CaseStatus.DRAFT,
            workflow_status=CaseStatus.DRAFT.value,
            **SUBMISSION_TRACKING_RESET,
            **overrides,
        )

    def create_followup(
        self,
        case_id: str,
        followup_type: FollowupType,
        info_date: Optional[date] = None,
        new_id: Optional[str] = None,
    ) -> Case:
        """
        Create a follow-up version of ``case_id``.

        Raises:
            CaseNotFoundError: If the parent does not exist.
            VersioningError: If the parent is nullified or not yet submitted.
        """
        followup_type = FollowupType(followup_type)
        with audit_context(case_id=case_id), self.database.session() as session:
            parent = self.cases.get(session, case_id)
            reason = self._blocker(parent, nullifying=False)
            if reason:
                raise VersioningError(reason)
            if not self.cases.update_if_not_nullified(session, case_id, VERSIONABLE_STATUSES):
                raise VersioningError(self._changed_concurrently(session, case_id, nullifying=False))
            followup = self._new_version(
                session,
                parent,
                new_id or new_case_id(),
                followup_type=followup_type.value,
                followup_info_date=info_date or utc_now().date(),
                report_type_classification=ReportClassification.FOLLOWUP.value,
                initial_or_followup=_FOLLOWUP_REPORT,
            )
            self.history.append(
                session,
                HistoryEvent.FOLLOWUP_CREATED,
                case_id=followup.id,
                details={"parent_case_id": parent.id, "version": followup.version, "followup_type": followup_type.value},
            )
        logger.info(f"Created follow-up {followup.id} (v{followup.version}) of case {case_id}")
        return followup

    def create_nullification(
        self,
        case_id: str,
        reason: NullificationReason,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        new_id: Optional[str] = None,
    ) -> Case:
        """
        Create a nullification version of ``case_id`` and mark the original nullified.

        Raises:
            CaseNotFoundError: If the original does not exist.
            VersioningError: If the original is already nullified or not yet submitted.
        """
        reason = NullificationReason(reason)
        with audit_context(case_id=case_id), self.database.session() as session:
            original = self.cases.get(session, case_id)
            blocker = self._blocker(original, nullifying=True)
            if blocker:
                raise VersioningError(blocker)
            if not self.cases.update_if_not_nullified(
                session,
                case_id,
                VERSIONABLE_STATUSES,
                is_nullified=True,
                nullification_reason_code=reason.value,
                nullification_reference=reference,
            ):
                raise VersioningError(self._changed_concurrently(session, case_id, nullifying=True))
            nullification = self._new_version(
                session,
                original,
                new_id or new_case_id(),
                report_type_classification=ReportClassification.NULLIFICATION.value,
                is_nullified=True,
                nullification_reason_code=reason.value,
                nullification_reference=reference,
            )
            self.history.append(
                session,
                HistoryEvent.NULLIFIED,
                case_id=nullification.id,
                details={"original_case_id": case_id, "reason": reason.value, "reference": reference},
                notes=notes,
            )
        logger.info(f"Created nullification {nullification.id} of case {case_id} ({reason.value})")
        return nullification

    def version_chain(self, case_id: str) -> VersionChain:
        with self.database.session() as session:
            rows = self.cases.chain_rows(session, case_id)
            root = self.cases.root_id(session, case_id)
            versions = [CaseVersion.model_validate(row) for row in rows]
        return VersionChain(
            original_case_id=root,
            versions=versions,
            is_nullified=any(v.is_nullified for v in versions),
        )

    def compare_versions(self, from_case_id: str, to_case_id: str) -> VersionComparison:
        with self.database.session() as session:
            old = self.cases.get(session, from_case_id)
            new = self.cases.get(session, to_case_id)
        changes = [
            VersionFieldChange(
                field=field,
                label=label,
                section=section,
                old_value=getattr(old, field),
                new_value=getattr(new, field),
            )
            for field, label, section in COMPARABLE_FIELDS
            if getattr(old, field) != getattr(new, field)
        ]
        return VersionComparison(
            from_case_id=from_case_id,
            to_case_id=to_case_id,
            from_version=old.version,
            to_version=new.version,
            changes=changes,
        )

    def followup_due_date(self, case_id: str, today: Optional[date] = None) -> Optional[FollowupDueDate]:
        """
        Regulatory due date for a follow-up, counted from its information date.

        Expedited reports are due in 15 days, all others in 30. Cases without a
        follow-up information date have no due date.
        """
        with self.database.session() as session:
            case = self.cases.get(session, case_id)
        if case.followup_info_date is None:
            return None
        today = today or utc_now().date()
        expedited = is_expedited(case)
        days = FaersConfig.FOLLOWUP_DUE_DAYS_EXPEDITED if expedited else FaersConfig.FOLLOWUP_DUE_DAYS_STANDARD
        due = case.followup_info_date + timedelta(days=days)
        remaining = (due - today).days
        return FollowupDueDate(
            case_id=case.id,
            followup_type=case.followup_type,
            is_expedited=expedited,
            due_date=due,
            days_remaining=remaining,
            is_overdue=remaining < 0,
        )
