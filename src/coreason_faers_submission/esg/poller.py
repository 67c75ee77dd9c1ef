# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Background acknowledgment poller for submitted cases and batches."""

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.domain.enums import BatchAckType, BatchStatus, CaseStatus, HistoryEvent
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.domain.submission import Acknowledgment, PollingStatus, SubmissionBatch
from coreason_faers_submission.esg.client import EsgApiClient
from coreason_faers_submission.lifecycle.batch_service import BatchService
from coreason_faers_submission.lifecycle.case_state import CaseStateMachine
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import AttemptRepository, BatchRepository, HistoryRepository
from coreason_faers_submission.utils.clock import ensure_utc, utc_now
from coreason_faers_submission.utils.logger import audit_context, logger


class AcknowledgmentCheck(BaseModel):
    """Result of a manual acknowledgment check for one case."""

    model_config = ConfigDict(frozen=True)

    case_id: str
    has_acknowledgment: bool
    acknowledgment: Optional[Acknowledgment] = None
    error: Optional[str] = None


class AcknowledgmentPoller:
    """
    Polls the ESG for acknowledgments on a fixed interval.

    One loop thread runs ``poll_once`` and then waits for the interval, so two
    polls never overlap. Within a poll, the remote lookups fan out over a thread
    pool; the resulting transitions are applied one at a time.
    """

    def __init__(
        self,
        database: Database,
        client: EsgApiClient,
        state: Optional[CaseStateMachine] = None,
        batch_service: Optional[BatchService] = None,
        interval: Optional[float] = None,
        timeout_hours: Optional[float] = None,
        max_workers: int = FaersConfig.POLLING_MAX_WORKERS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.client = client
        self.state = state or CaseStateMachine()
        self.batch_service = batch_service
        self.interval = interval or client.settings.polling_interval
        self.timeout = timedelta(hours=timeout_hours or client.settings.polling_timeout_hours)
        self.max_workers = max_workers
        self.clock = clock
        self.attempts = AttemptRepository()
        self.batches = BatchRepository()
        self.history = HistoryRepository()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_status = PollingStatus(is_running=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the loop thread.

        Returns False if a loop is already running, including one that was asked
        to stop but is still finishing its current poll.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                if self._stop_event.is_set():
                    logger.warning("Acknowledgment poller is still stopping; not starting a second loop")
                return False
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(target=self._run, args=(stop_event,), name="esg-ack-poller", daemon=True)
            self._thread.start()
        logger.info(f"Acknowledgment polling started (interval {self.interval:.0f}s)")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop the loop thread, waiting for an in-flight poll. Returns False if it was not running."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
        thread.join(timeout)
        with self._lock:
            if thread.is_alive():
                logger.warning("Acknowledgment poller did not stop within the timeout")
                return True
            if self._thread is thread:
                self._thread = None
        logger.info("Acknowledgment polling stopped")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until ``stop`` is called or ``timeout`` elapses; True if stopped."""
        return self._stop_event.wait(timeout)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Acknowledgment poll cycle failed")
            stop_event.wait(self.interval)

    def status(self) -> PollingStatus:
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            return self._last_status.model_copy(update={"is_running": running})

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> PollingStatus:
        """
        Query every submitted case and batch once.

        Failures for one target are logged and collected in ``errors``; they never
        stop the others.
        """
        now = self.clock()
        with self.database.session() as session:
            cases = [c for c in self.state.cases.list_by_status(session, CaseStatus.SUBMITTED) if c.esg_submission_id]
            batches = [
                b
                for b in self.batches.list_all(session, status=BatchStatus.SUBMITTED)
                if b.esg_submission_id and self.batch_service is not None
            ]

        errors: list[str] = []
        overdue = 0
        for case in cases:
            if self._is_overdue(case, now):
                overdue += 1
                if not case.needs_attention:
                    try:
                        self._flag_needs_attention(case)
                    except Exception as e:
                        logger.error(f"Could not flag case {case.id}: {e}")
                        errors.append(f"Case {case.id}: {e}")

        targets: list[Union[Case, SubmissionBatch]] = [*cases, *batches]
        lookups: dict[int, Union[Optional[Acknowledgment], Exception]] = {}
        if targets:
            logger.info(f"Checking acknowledgments for {len(cases)} case(s) and {len(batches)} batch(es)")
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="esg-ack") as pool:
                futures = {
                    index: pool.submit(self.client.get_acknowledgment, target.esg_submission_id)
                    for index, target in enumerate(targets)
                }
                for index, future in futures.items():
                    try:
                        lookups[index] = future.result()
                    except Exception as e:
                        lookups[index] = e

        acknowledged = rejected = 0
        for index, target in enumerate(targets):
            label = f"Case {target.id}" if isinstance(target, Case) else f"Batch {target.batch_number}"
            outcome = lookups.get(index)
            if isinstance(outcome, Exception):
                logger.error(f"{label}: acknowledgment lookup failed: {outcome}")
                errors.append(f"{label}: {outcome}")
                continue
            if outcome is None:
                continue
            try:
                if isinstance(target, Case):
                    self._apply_case_ack(target.id, target.esg_submission_id, outcome)
                else:
                    self._apply_batch_ack(target, outcome)
            except Exception as e:
                logger.error(f"{label}: could not apply {outcome.acknowledgment_type.value}: {e}")
                errors.append(f"{label}: {e}")
                continue
            if outcome.is_positive:
                acknowledged += 1
            else:
                rejected += 1

        result = PollingStatus(
            is_running=self.is_running,
            last_poll_at=now,
            cases_checked=len(cases),
            acknowledged=acknowledged,
            rejected=rejected,
            needs_attention=overdue,
            errors=errors,
        )
        with self._lock:
            self._last_status = result
        return result

    def check_case(self, case_id: str) -> AcknowledgmentCheck:
        """Manually check one case now, applying the acknowledgment if there is one."""
        with self.database.session() as session:
            case = self.state.cases.find(session, case_id)
        if case is None or not case.esg_submission_id:
            return AcknowledgmentCheck(
                case_id=case_id, has_acknowledgment=False, error="No API submission found for this case"
            )
        try:
            ack = self.client.get_acknowledgment(case.esg_submission_id)
            if ack is not None and case.status is CaseStatus.SUBMITTED:
                self._apply_case_ack(case_id, case.esg_submission_id, ack)
        except Exception as e:
            logger.error(f"Manual acknowledgment check for case {case_id} failed: {e}")
            return AcknowledgmentCheck(case_id=case_id, has_acknowledgment=False, error=str(e))
        return AcknowledgmentCheck(case_id=case_id, has_acknowledgment=ack is not None, acknowledgment=ack)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_overdue(self, case: Case, now: datetime) -> bool:
        submitted_at = ensure_utc(case.last_submitted_at)
        return submitted_at is not None and ensure_utc(now) - submitted_at > self.timeout

    def _flag_needs_attention(self, case: Case) -> None:
        with audit_context(case_id=case.id), self.database.session() as session:
            self.state.cases.update_fields(session, case.id, needs_attention=True)
            self.history.append(
                session,
                HistoryEvent.NEEDS_ATTENTION,
                case_id=case.id,
                details={"reason": "Polling timeout exceeded", "timeout_hours": self.timeout.total_seconds() / 3600},
                notes="No acknowledgment received within the polling timeout",
            )
        logger.warning(f"Case {case.id}: no acknowledgment within {self.timeout}; flagged for attention")

    def _apply_case_ack(self, case_id: str, submission_id: str, ack: Acknowledgment) -> None:
        with audit_context(case_id=case_id), self.database.session() as session:
            self.attempts.record_ack(session, submission_id, ack)
            if ack.is_positive:
                self.state.mark_acknowledged(session, case_id, ack)
            else:
                self.state.mark_rejected(session, case_id, ack)
        logger.info(f"Case {case_id}: {ack.acknowledgment_type.value} received")

    def _apply_batch_ack(self, batch: SubmissionBatch, ack: Acknowledgment) -> None:
        with self.database.session() as session:
            self.attempts.record_ack(session, batch.esg_submission_id, ack)
        details = ack.details or "; ".join(f"{e.code}: {e.message}" for e in ack.errors) or None
        self.batch_service.record_acknowledgment(
            batch.id,
            BatchAckType.ACCEPTED if ack.is_positive else BatchAckType.REJECTED,
            ack_details=details,
        )
        logger.info(f"Batch {batch.batch_number}: {ack.acknowledgment_type.value} received")
