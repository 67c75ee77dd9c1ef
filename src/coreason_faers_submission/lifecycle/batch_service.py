# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Batch lifecycle: membership, validation, export, submission and acknowledgment."""

from collections.abc import Iterable
from typing import Final, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from coreason_faers_submission.codec.generator import IcsrXmlGenerator
from coreason_faers_submission.domain.enums import (
    BatchAckType,
    BatchCaseStatus,
    BatchStatus,
    BatchType,
    HistoryEvent,
    ReportClassification,
)
from coreason_faers_submission.domain.results import GenerationOptions
from coreason_faers_submission.domain.submission import (
    BatchCaseEligibility,
    BatchCaseValidationResult,
    BatchExportResult,
    BatchValidationResult,
    SubmissionBatch,
)
from coreason_faers_submission.exceptions import (
    BatchExportError,
    BatchMembershipError,
    ConcurrentTransitionError,
    InvalidTransitionError,
)
from coreason_faers_submission.export import ExportStore
from coreason_faers_submission.lifecycle.numbering import next_batch_number
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import BatchRepository, CaseRepository, HistoryRepository
from coreason_faers_submission.storage.schema import CaseRow
from coreason_faers_submission.utils.clock import utc_now
from coreason_faers_submission.utils.logger import audit_context, logger
from coreason_faers_submission.validation.engine import ValidationEngine

WORKFLOW_APPROVED: Final[str] = "Approved"
WORKFLOW_PENDING_PSR: Final[str] = "Pending PSR"
WORKFLOW_SUBMITTED: Final[str] = "Submitted"

BATCH_TRANSITIONS: Final[dict[BatchStatus, frozenset[BatchStatus]]] = {
    BatchStatus.CREATED: frozenset({BatchStatus.VALIDATING}),
    BatchStatus.VALIDATING: frozenset({BatchStatus.VALIDATED, BatchStatus.VALIDATION_FAILED}),
    BatchStatus.VALIDATED: frozenset({BatchStatus.VALIDATING, BatchStatus.EXPORTING}),
    BatchStatus.VALIDATION_FAILED: frozenset({BatchStatus.VALIDATING}),
    BatchStatus.EXPORTING: frozenset({BatchStatus.EXPORTED, BatchStatus.VALIDATION_FAILED}),
    BatchStatus.EXPORTED: frozenset({BatchStatus.SUBMITTED, BatchStatus.FAILED}),
    BatchStatus.SUBMITTED: frozenset({BatchStatus.ACKNOWLEDGED, BatchStatus.REJECTED}),
    BatchStatus.ACKNOWLEDGED: frozenset(),
    BatchStatus.REJECTED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}


def export_filename(batch_number: str) -> str:
    timestamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S")
    return f"BATCH-{batch_number}-{timestamp}.xml"


class BatchService:
    """
    Owns batch state. Each public operation runs in its own short transaction.

    The XML generator and the export store are injected so that neither the
    codec nor the filesystem is reached through module state.
    """

    def __init__(
        self,
        database: Database,
        generator: IcsrXmlGenerator,
        export_store: ExportStore,
        validator: Optional[ValidationEngine] = None,
    ) -> None:
        self.database = database
        self.generator = generator
        self.export_store = export_store
        self.validator = validator or ValidationEngine()
        self.batches = BatchRepository()
        self.cases = CaseRepository()
        self.history = HistoryRepository()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        session: Session,
        batch_id: int,
        sources: Iterable[BatchStatus],
        target: BatchStatus,
        action: str,
        **fields,
    ) -> None:
        """Guarded compare-and-set; the current status must be one of ``sources``."""
        sources = frozenset(sources)
        current = self.batches.get(session, batch_id).status
        if current not in sources or target not in BATCH_TRANSITIONS[current]:
            raise InvalidTransitionError("batch", current.value, target.value, action)
        if not self.batches.compare_and_set_status(session, batch_id, [current], target, **fields):
            raise ConcurrentTransitionError("batch", current.value, target.value, action)
        logger.info(f"Batch {batch_id}: {current.value} -> {target.value}")

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _check_member(self, session: Session, case_id: str) -> None:
        if not self.cases.exists(session, case_id):
            raise BatchMembershipError(f"Case not found: {case_id}")
        active = self.batches.active_batch_for_case(session, case_id)
        if active is not None:
            raise BatchMembershipError(f"Case {case_id} is already in active batch {active.batch_number}")

    def create_batch(
        self, batch_type: BatchType, case_ids: list[str], notes: Optional[str] = None
    ) -> SubmissionBatch:
        """
        Create a batch holding ``case_ids``.

        Raises:
            BatchMembershipError: If the list is empty, has duplicates, names a missing
                case, or names a case already held by an active batch.
        """
        batch_type = BatchType(batch_type)
        if not case_ids:
            raise BatchMembershipError("At least one case is required to create a batch")
        if len(set(case_ids)) != len(case_ids):
            raise BatchMembershipError("Duplicate case ids in batch")

        with self.database.session() as session:
            for case_id in case_ids:
                self._check_member(session, case_id)
            batch_number = next_batch_number(session, batch_type)
            batch = self.batches.create(session, batch_number, batch_type.value, case_ids, notes)
            self.history.append(
                session,
                HistoryEvent.CREATED,
                batch_id=batch.id,
                details={"batch_number": batch_number, "batch_type": batch_type.value, "case_count": len(case_ids)},
            )
        logger.info(f"Created batch {batch.batch_number} with {len(case_ids)} case(s)")
        return batch

    def get_batch(self, batch_id: int) -> SubmissionBatch:
        with self.database.session() as session:
            return self.batches.get(session, batch_id)

    def list_batches(
        self, status: Optional[BatchStatus] = None, batch_type: Optional[BatchType] = None
    ) -> list[SubmissionBatch]:
        with self.database.session() as session:
            return self.batches.list_all(session, status=status, batch_type=batch_type)

    def add_case(self, batch_id: int, case_id: str) -> SubmissionBatch:
        with self.database.session() as session:
            batch = self.batches.get(session, batch_id)
            if batch.status is not BatchStatus.CREATED:
                raise InvalidTransitionError("batch", batch.status.value, batch.status.value, "add a case to")
            self._check_member(session, case_id)
            self.batches.add_case(session, batch_id, case_id)
            return self.batches.get(session, batch_id)

    def remove_case(self, batch_id: int, case_id: str) -> SubmissionBatch:
        with self.database.session() as session:
            batch = self.batches.get(session, batch_id)
            if batch.status is not BatchStatus.CREATED:
                raise InvalidTransitionError("batch", batch.status.value, batch.status.value, "remove a case from")
            if not self.batches.remove_case(session, batch_id, case_id):
                raise BatchMembershipError(f"Case {case_id} is not in batch {batch.batch_number}")
            return self.batches.get(session, batch_id)

    def delete_batch(self, batch_id: int) -> None:
        """Delete a batch that is still ``created``. Member cases are left untouched."""
        with self.database.session() as session:
            batch = self.batches.get(session, batch_id)
            if batch.status is not BatchStatus.CREATED:
                raise InvalidTransitionError("batch", batch.status.value, "deleted", "delete")
            self.batches.delete(session, batch_id)
        logger.info(f"Deleted batch {batch.batch_number}")

    # ------------------------------------------------------------------
    # Validation and export
    # ------------------------------------------------------------------

    def validate_batch(self, batch_id: int) -> BatchValidationResult:
        """
        Run the validation engine over every member and persist the per-case outcome.

        The batch ends ``validated`` only when no member is invalid.
        """
        with self.database.session() as session:
            self._transition(
                session,
                batch_id,
                {BatchStatus.CREATED, BatchStatus.VALIDATED, BatchStatus.VALIDATION_FAILED},
                BatchStatus.VALIDATING,
                "validate",
            )

        with audit_context(batch_id=batch_id):
            try:
                with self.database.session() as session:
                    results = []
                    for case_id in self.batches.case_ids(session, batch_id):
                        case = self.cases.get(session, case_id)
                        outcome = self.validator.validate(case)
                        errors = [f"{e.field}: {e.message}" for e in outcome.blocking]
                        warnings = [f"{w.field}: {w.message}" for w in outcome.warnings]
                        status = BatchCaseStatus.VALID if outcome.valid else BatchCaseStatus.INVALID
                        self.batches.update_case_validation(session, batch_id, case_id, status, errors)
                        results.append(
                            BatchCaseValidationResult(
                                case_id=case_id,
                                safety_report_id=case.safety_report_id,
                                is_valid=outcome.valid,
                                errors=errors,
                                warnings=warnings,
                            )
                        )
                    self.batches.recount(session, batch_id)
                    invalid = sum(1 for r in results if not r.is_valid)
                    target = BatchStatus.VALIDATED if invalid == 0 else BatchStatus.VALIDATION_FAILED
                    self._transition(session, batch_id, {BatchStatus.VALIDATING}, target, "validate")
            except Exception as e:
                logger.error(f"Validation of batch {batch_id} aborted: {e}")
                with self.database.session() as session:
                    self.batches.compare_and_set_status(
                        session,
                        batch_id,
                        [BatchStatus.VALIDATING],
                        BatchStatus.VALIDATION_FAILED,
                        last_error=str(e),
                    )
                raise

        result = BatchValidationResult(
            batch_id=batch_id,
            total_cases=len(results),
            valid_cases=len(results) - invalid,
            invalid_cases=invalid,
            case_results=results,
            is_valid=invalid == 0,
        )
        logger.info(
            f"Validated batch {batch_id}: {result.valid_cases} valid, {result.invalid_cases} invalid"
        )
        return result

    def export_batch(self, batch_id: int, options: Optional[GenerationOptions] = None) -> BatchExportResult:
        """
        Render the valid members into one batch document and hand it to the export store.

        Any failure returns the batch to ``validation_failed`` before the error propagates.

        Raises:
            InvalidTransitionError: If the batch is not ``validated``.
            BatchExportError: If no document could be produced or written.
        """
        with self.database.session() as session:
            self._transition(session, batch_id, {BatchStatus.VALIDATED}, BatchStatus.EXPORTING, "export")

        with audit_context(batch_id=batch_id):
            try:
                with self.database.session() as session:
                    batch = self.batches.get(session, batch_id)
                    valid_ids = [
                        member.case_id
                        for member in batch.cases
                        if member.validation_status is BatchCaseStatus.VALID
                    ]
                    if not valid_ids:
                        raise BatchExportError("No valid cases to export")
                    cases = [self.cases.get(session, case_id) for case_id in valid_ids]

                generated = self.generator.generate_batch(cases, options, batch_number=batch.batch_number)
                if not generated.success or generated.xml is None:
                    raise BatchExportError("; ".join(generated.errors) or "Batch XML generation failed")

                filename = export_filename(batch.batch_number)
                try:
                    location = self.export_store.write(filename, generated.xml)
                except (OSError, ValueError) as e:
                    raise BatchExportError(f"Could not write {filename}: {e}") from e

                with self.database.session() as session:
                    self._transition(
                        session,
                        batch_id,
                        {BatchStatus.EXPORTING},
                        BatchStatus.EXPORTED,
                        "export",
                        xml_filename=filename,
                        xml_file_path=location,
                        last_error=None,
                    )
                    self.history.append(
                        session,
                        HistoryEvent.EXPORTED,
                        batch_id=batch_id,
                        details={
                            "filename": filename,
                            "case_count": len(generated.included_case_ids),
                            "excluded": generated.case_errors,
                        },
                    )
            except Exception as e:
                logger.error(f"Export of batch {batch_id} failed: {e}")
                with self.database.session() as session:
                    self.batches.compare_and_set_status(
                        session,
                        batch_id,
                        [BatchStatus.EXPORTING],
                        BatchStatus.VALIDATION_FAILED,
                        last_error=str(e),
                    )
                raise

        xml_size = len(generated.xml.encode("utf-8"))
        logger.info(f"Exported batch {batch.batch_number} to {location} ({xml_size} bytes)")
        return BatchExportResult(
            filename=filename,
            file_path=location,
            case_count=len(generated.included_case_ids),
            xml_size=xml_size,
        )

    # ------------------------------------------------------------------
    # Submission and acknowledgment
    # ------------------------------------------------------------------

    def record_submission(
        self,
        batch_id: int,
        esg_core_id: Optional[str],
        esg_submission_id: Optional[str] = None,
        submission_mode: str = "manual",
        notes: Optional[str] = None,
    ) -> SubmissionBatch:
        """Record that an exported batch went out. Requires ``exported``."""
        fields = {
            "esg_core_id": esg_core_id,
            "esg_submission_id": esg_submission_id,
            "submission_mode": submission_mode,
            "submitted_at": utc_now(),
        }
        if notes:
            fields["notes"] = notes
        with self.database.session() as session:
            self._transition(
                session, batch_id, {BatchStatus.EXPORTED}, BatchStatus.SUBMITTED, "record submission for", **fields
            )
            self.history.append(
                session,
                HistoryEvent.BATCH_SUBMITTED,
                batch_id=batch_id,
                details={"esg_core_id": esg_core_id, "esg_submission_id": esg_submission_id, "mode": submission_mode},
            )
            return self.batches.get(session, batch_id)

    def record_acknowledgment(
        self,
        batch_id: int,
        ack_type: BatchAckType,
        ack_details: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SubmissionBatch:
        """
        Record the acknowledgment of a submitted batch.

        A rejected acknowledgment ends the batch ``rejected``; accepted and partial end it
        ``acknowledged``. On acceptance every member case's workflow status becomes
        ``Submitted``.
        """
        ack_type = BatchAckType(ack_type)
        target = BatchStatus.REJECTED if ack_type is BatchAckType.REJECTED else BatchStatus.ACKNOWLEDGED
        with self.database.session() as session:
            batch = self.batches.get(session, batch_id)
            fields = {"ack_type": ack_type.value, "ack_details": ack_details, "acknowledged_at": utc_now()}
            if notes:
                fields["notes"] = f"{batch.notes}\n{notes}" if batch.notes else notes
            self._transition(
                session, batch_id, {BatchStatus.SUBMITTED}, target, "record acknowledgment for", **fields
            )
            if ack_type is BatchAckType.ACCEPTED:
                for case_id in self.batches.case_ids(session, batch_id):
                    self.cases.update_fields(session, case_id, workflow_status=WORKFLOW_SUBMITTED)
            self.history.append(
                session,
                HistoryEvent.BATCH_ACKNOWLEDGED,
                batch_id=batch_id,
                details={"ack_type": ack_type.value, "ack_details": ack_details},
            )
            return self.batches.get(session, batch_id)

    def mark_failed(self, batch_id: int, error: str) -> SubmissionBatch:
        """An exported batch whose API submission failed for good."""
        with self.database.session() as session:
            self._transition(
                session, batch_id, {BatchStatus.EXPORTED}, BatchStatus.FAILED, "fail", last_error=error
            )
            self.history.append(session, HistoryEvent.SUBMISSION_FAILED, batch_id=batch_id, details={"error": error})
            return self.batches.get(session, batch_id)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def eligible_cases(self, batch_type: BatchType) -> list[BatchCaseEligibility]:
        """Cases whose workflow and classification fit ``batch_type``, flagged when already batched."""
        batch_type = BatchType(batch_type)
        stmt = select(CaseRow).order_by(CaseRow.created_at, CaseRow.id)
        if batch_type is BatchType.EXPEDITED:
            stmt = stmt.where(
                CaseRow.workflow_status == WORKFLOW_APPROVED,
                CaseRow.report_type_classification == ReportClassification.EXPEDITED.value,
            )
        elif batch_type is BatchType.NON_EXPEDITED:
            stmt = stmt.where(
                CaseRow.workflow_status.in_([WORKFLOW_APPROVED, WORKFLOW_PENDING_PSR]),
                CaseRow.report_type_classification == ReportClassification.NON_EXPEDITED.value,
            )
        elif batch_type is BatchType.FOLLOWUP:
            stmt = stmt.where(CaseRow.workflow_status == WORKFLOW_APPROVED, CaseRow.followup_type.is_not(None))
        else:
            stmt = stmt.where(CaseRow.workflow_status.in_([WORKFLOW_APPROVED, WORKFLOW_PENDING_PSR]))

        eligible = []
        with self.database.session() as session:
            for row in session.scalars(stmt):
                active = self.batches.active_batch_for_case(session, row.id)
                eligible.append(
                    BatchCaseEligibility(
                        case_id=row.id,
                        safety_report_id=row.safety_report_id,
                        report_type_classification=row.report_type_classification,
                        workflow_status=row.workflow_status,
                        is_eligible=active is None,
                        eligibility_reason="Already in a batch" if active is not None else None,
                        existing_batch_id=active.id if active is not None else None,
                    )
                )
        return eligible
