# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""
Submission orchestrator.

Runs the four-step ESG protocol for a case or an exported batch with bounded,
backed-off retries. Database sessions are opened only to record attempts and
commit transitions; none is held while a network call is in flight.
"""

import random
import threading
import time
from collections.abc import Callable
from typing import Any, Optional

from coreason_faers_submission.codec.generator import IcsrXmlGenerator
from coreason_faers_submission.domain.enums import AttemptStatus, BatchStatus, CaseStatus, ErrorCategory, SubmissionStep
from coreason_faers_submission.domain.results import GenerationOptions
from coreason_faers_submission.domain.submission import SubmissionProgress, SubmissionResult
from coreason_faers_submission.esg.client import EsgApiClient
from coreason_faers_submission.esg.retry import compute_retry_delay
from coreason_faers_submission.exceptions import (
    ConcurrentSubmissionError,
    EsgApiError,
    InvalidTransitionError,
)
from coreason_faers_submission.export import ExportStore
from coreason_faers_submission.lifecycle.batch_service import BatchService
from coreason_faers_submission.lifecycle.case_state import CaseStateMachine, can_transition
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import AttemptRepository, BatchRepository
from coreason_faers_submission.utils.logger import audit_context, logger

ProgressCallback = Callable[[SubmissionProgress], None]

_PROTOCOL_STEPS = (
    SubmissionStep.AUTHENTICATING,
    SubmissionStep.CREATING_SUBMISSION,
    SubmissionStep.UPLOADING_XML,
    SubmissionStep.FINALIZING,
)


class SubmissionCancelled(Exception):
    """Internal signal raised at a step boundary once cancellation was requested."""


class SubmissionService:
    """
    Submits cases and batches through an ``EsgApiClient``.

    A case (or batch) can be in flight at most once per service instance; a
    second request while the first runs raises ``ConcurrentSubmissionError``.
    The status compare-and-set guards the same invariant across processes.
    """

    def __init__(
        self,
        database: Database,
        client: EsgApiClient,
        generator: IcsrXmlGenerator,
        state: Optional[CaseStateMachine] = None,
        batch_service: Optional[BatchService] = None,
        export_store: Optional[ExportStore] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.database = database
        self.client = client
        self.generator = generator
        self.state = state or CaseStateMachine()
        self.batch_service = batch_service
        self.export_store = export_store or (batch_service.export_store if batch_service else None)
        self.max_attempts = max_attempts or client.settings.max_attempts
        self.sleep = sleep
        self.rng = rng
        self.attempts = AttemptRepository()
        self.batches = BatchRepository()
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()

    # ------------------------------------------------------------------
    # In-flight bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _case_key(case_id: str) -> str:
        return f"case:{case_id}"

    @staticmethod
    def _batch_key(batch_id: int) -> str:
        return f"batch:{batch_id}"

    def _claim(self, key: str) -> None:
        with self._lock:
            if key in self._active:
                raise ConcurrentSubmissionError(f"Submission already in progress for {key}")
            self._active.add(key)
            self._cancel_requested.discard(key)

    def _release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)
            self._cancel_requested.discard(key)

    def _check_cancelled(self, key: str) -> None:
        with self._lock:
            if key in self._cancel_requested:
                raise SubmissionCancelled(key)

    def is_submitting(self, case_id: str) -> bool:
        with self._lock:
            return self._case_key(case_id) in self._active

    def cancel(self, case_id: str) -> bool:
        """Ask an in-flight case submission to stop at the next step boundary."""
        return self._request_cancel(self._case_key(case_id))

    def cancel_batch(self, batch_id: int) -> bool:
        return self._request_cancel(self._batch_key(batch_id))

    def _request_cancel(self, key: str) -> bool:
        with self._lock:
            if key not in self._active:
                return False
            self._cancel_requested.add(key)
        logger.info(f"Cancellation requested for {key}")
        return True

    # ------------------------------------------------------------------
    # Case submission
    # ------------------------------------------------------------------

    def submit_case(
        self,
        case_id: str,
        progress: Optional[ProgressCallback] = None,
        options: Optional[GenerationOptions] = None,
    ) -> SubmissionResult:
        """
        Generate and submit one case.

        Returns:
            The terminal outcome. Protocol failures are returned, not raised.

        Raises:
            ConcurrentSubmissionError: If the case is already being submitted.
            InvalidTransitionError: If the case status does not allow submission.
        """
        key = self._case_key(case_id)
        self._claim(key)
        try:
            with audit_context(case_id=case_id):
                return self._submit_case(case_id, key, progress, options)
        finally:
            self._release(key)

    def retry_failed(
        self,
        case_id: str,
        progress: Optional[ProgressCallback] = None,
        options: Optional[GenerationOptions] = None,
    ) -> SubmissionResult:
        """Resubmit a case that ended in ``Submission Failed``."""
        with self.database.session() as session:
            status = self.state.cases.get(session, case_id).status
        if status is not CaseStatus.SUBMISSION_FAILED:
            raise InvalidTransitionError("case", status.value, CaseStatus.SUBMITTING.value, "retry")
        return self.submit_case(case_id, progress, options)

    def _submit_case(
        self,
        case_id: str,
        key: str,
        progress: Optional[ProgressCallback],
        options: Optional[GenerationOptions],
    ) -> SubmissionResult:
        with self.database.session() as session:
            case = self.state.cases.get(session, case_id)
        if not can_transition(case.status, CaseStatus.SUBMITTING):
            raise InvalidTransitionError("case", case.status.value, CaseStatus.SUBMITTING.value, "submit")

        options = options or GenerationOptions(sender_identifier=self.client.settings.sender_id)
        generated = self.generator.generate_for_case(case, options)
        if not generated.success or generated.xml is None:
            error = "; ".join(generated.errors) or "XML generation failed"
            logger.warning(f"Case {case_id} not submitted: {error}")
            return SubmissionResult(
                case_id=case_id, success=False, error=error, error_category=ErrorCategory.VALIDATION
            )

        with self.database.session() as session:
            prior = self.attempts.next_attempt_number(session, case_id=case_id) - 1
            self.state.begin_submission(session, case_id, attempt_count=prior)

        try:
            outcome = self._run_attempts(key, generated.xml, {"case_id": case_id}, progress)
        except Exception as e:
            self._abandon_case(case_id, e)
            raise

        with self.database.session() as session:
            attempts = self.attempts.next_attempt_number(session, case_id=case_id) - 1
            if outcome.success:
                self.state.mark_submitted(
                    session, case_id, outcome.esg_submission_id, outcome.esg_core_id, attempts=attempts
                )
            else:
                self.state.mark_submission_failed(
                    session,
                    case_id,
                    outcome.error or "Submission failed",
                    attempts=attempts,
                    category=outcome.error_category.value if outcome.error_category else None,
                    cancelled=outcome.cancelled,
                )
        return outcome

    def _abandon_case(self, case_id: str, error: Exception) -> None:
        """Move a case out of ``Submitting`` after the attempt loop itself blew up."""
        message = f"Submission interrupted: {type(error).__name__}: {error}"
        logger.error(f"Case {case_id}: {message}")
        try:
            with self.database.session() as session:
                self.attempts.fail_in_progress(session, message, case_id=case_id)
            with self.database.session() as session:
                self.state.mark_submission_failed(
                    session,
                    case_id,
                    message,
                    attempts=self.attempts.next_attempt_number(session, case_id=case_id) - 1,
                    category=ErrorCategory.UNKNOWN.value,
                )
        except Exception:
            # The caller re-raises the original error.
            logger.exception(f"Could not record the interrupted submission of case {case_id}")

    # ------------------------------------------------------------------
    # Batch submission
    # ------------------------------------------------------------------

    def submit_batch(self, batch_id: int, progress: Optional[ProgressCallback] = None) -> SubmissionResult:
        """
        Submit an exported batch document.

        On success the batch is recorded ``submitted``; when every attempt fails it
        moves to ``failed``.
        """
        if self.batch_service is None or self.export_store is None:
            raise RuntimeError("Batch submission requires a BatchService with an export store")
        key = self._batch_key(batch_id)
        self._claim(key)
        try:
            with audit_context(batch_id=batch_id):
                with self.database.session() as session:
                    batch = self.batches.get(session, batch_id)
                if batch.status is not BatchStatus.EXPORTED or not batch.xml_file_path:
                    raise InvalidTransitionError("batch", batch.status.value, BatchStatus.SUBMITTED.value, "submit")
                xml = self.export_store.read(batch.xml_file_path)

                try:
                    outcome = self._run_attempts(key, xml, {"batch_id": batch_id}, progress)
                except Exception as e:
                    # The batch stays exported and can be submitted again.
                    logger.error(f"Batch {batch_id}: submission interrupted: {type(e).__name__}: {e}")
                    with self.database.session() as session:
                        self.attempts.fail_in_progress(
                            session, f"Submission interrupted: {type(e).__name__}: {e}", batch_id=batch_id
                        )
                    raise
                if outcome.success:
                    self.batch_service.record_submission(
                        batch_id,
                        esg_core_id=outcome.esg_core_id,
                        esg_submission_id=outcome.esg_submission_id,
                        submission_mode="api",
                    )
                else:
                    self.batch_service.mark_failed(batch_id, outcome.error or "Submission failed")
                return outcome
        finally:
            self._release(key)

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _run_attempts(
        self,
        key: str,
        xml: str,
        owner: dict[str, Any],
        progress: Optional[ProgressCallback],
    ) -> SubmissionResult:
        last_error = EsgApiError("No submission attempt was made", ErrorCategory.UNKNOWN)
        for retry_index in range(self.max_attempts):
            with self.database.session() as session:
                attempt = self.attempts.start(session, self.client.environment, **owner)
            started = time.monotonic()
            state: dict[str, Optional[str]] = {"submission_id": None, "core_id": None}

            try:
                self._run_protocol(key, xml, owner, attempt.attempt_number, started, state, progress)
            except SubmissionCancelled:
                self._finish(attempt.id, AttemptStatus.CANCELLED, state, error="Cancelled by user")
                self._emit(progress, owner, attempt.attempt_number, SubmissionStep.CANCELLED, 0, started, state)
                logger.info(f"Submission of {key} cancelled during attempt {attempt.attempt_number}")
                return SubmissionResult(
                    **owner,
                    success=False,
                    cancelled=True,
                    attempts=retry_index + 1,
                    esg_submission_id=state["submission_id"],
                    error="Cancelled by user",
                )
            except EsgApiError as e:
                last_error = e
            except Exception as e:
                logger.exception(f"Unexpected error submitting {key}")
                last_error = EsgApiError(f"Unexpected error: {e}", ErrorCategory.UNKNOWN)
            else:
                self._finish(attempt.id, AttemptStatus.SUCCESS, state)
                self._emit(progress, owner, attempt.attempt_number, SubmissionStep.COMPLETE, 4, started, state)
                logger.info(f"Submitted {key} as {state['core_id']} on attempt {attempt.attempt_number}")
                return SubmissionResult(
                    **owner,
                    success=True,
                    attempts=retry_index + 1,
                    esg_submission_id=state["submission_id"],
                    esg_core_id=state["core_id"],
                )

            self._finish(
                attempt.id,
                AttemptStatus.FAILED,
                state,
                error=str(last_error),
                category=last_error.category,
                http_status=last_error.http_status,
            )
            self._emit(
                progress,
                owner,
                attempt.attempt_number,
                SubmissionStep.FAILED,
                0,
                started,
                state,
                error=last_error,
            )
            final = not last_error.retryable or retry_index + 1 >= self.max_attempts
            logger.warning(
                f"Attempt {attempt.attempt_number} for {key} failed ({last_error.category.value}): {last_error}"
                + ("" if final else "; retrying")
            )
            if final:
                break
            self.sleep(compute_retry_delay(retry_index, rng=self.rng))
            try:
                self._check_cancelled(key)
            except SubmissionCancelled:
                # The retry that would have run is recorded as cancelled before it started.
                with self.database.session() as session:
                    attempt = self.attempts.start(session, self.client.environment, **owner)
                started = time.monotonic()
                state = {"submission_id": None, "core_id": None}
                self._finish(attempt.id, AttemptStatus.CANCELLED, state, error="Cancelled by user")
                self._emit(progress, owner, attempt.attempt_number, SubmissionStep.CANCELLED, 0, started, state)
                logger.info(f"Submission of {key} cancelled before attempt {attempt.attempt_number}")
                return SubmissionResult(
                    **owner,
                    success=False,
                    cancelled=True,
                    attempts=retry_index + 2,
                    error="Cancelled by user",
                )

        return SubmissionResult(
            **owner,
            success=False,
            attempts=retry_index + 1,
            error=str(last_error),
            error_category=last_error.category,
        )

    def _run_protocol(
        self,
        key: str,
        xml: str,
        owner: dict[str, Any],
        attempt_number: int,
        started: float,
        state: dict[str, Optional[str]],
        progress: Optional[ProgressCallback],
    ) -> None:
        """Run the four steps, reporting after each and honouring cancellation between them."""
        for completed, step in enumerate(_PROTOCOL_STEPS, start=1):
            self._check_cancelled(key)
            if step is SubmissionStep.AUTHENTICATING:
                self.client.authenticate()
            elif step is SubmissionStep.CREATING_SUBMISSION:
                state["submission_id"] = self.client.create_submission().submission_id
            elif step is SubmissionStep.UPLOADING_XML:
                self.client.upload_content(state["submission_id"], xml)
            else:
                state["core_id"] = self.client.finalize_submission(state["submission_id"]).esg_core_id
            self._emit(progress, owner, attempt_number, step, completed, started, state)

    def _finish(
        self,
        attempt_id: int,
        status: AttemptStatus,
        state: dict[str, Optional[str]],
        error: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        http_status: Optional[int] = None,
    ) -> None:
        with self.database.session() as session:
            self.attempts.complete(
                session,
                attempt_id,
                status,
                esg_submission_id=state["submission_id"],
                esg_core_id=state["core_id"],
                error=error,
                error_category=category,
                http_status_code=http_status,
            )

    @staticmethod
    def _emit(
        progress: Optional[ProgressCallback],
        owner: dict[str, Any],
        attempt_number: int,
        step: SubmissionStep,
        completed: int,
        started: float,
        state: dict[str, Optional[str]],
        error: Optional[EsgApiError] = None,
    ) -> None:
        if progress is None:
            return
        snapshot = SubmissionProgress(
            **owner,
            attempt_number=attempt_number,
            current_step=step,
            steps_completed=completed,
            elapsed_seconds=time.monotonic() - started,
            esg_submission_id=state["submission_id"],
            error=str(error) if error else None,
            error_category=error.category if error else None,
        )
        try:
            progress(snapshot)
        except Exception as e:
            logger.warning(f"Progress callback raised {type(e).__name__}: {e}")
