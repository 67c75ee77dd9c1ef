# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Tests for the batch lifecycle service."""

import re
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from coreason_faers_submission.codec.generator import IcsrXmlGenerator
from coreason_faers_submission.codec.reader import read_icsr
from coreason_faers_submission.domain.enums import (
    BatchAckType,
    BatchCaseStatus,
    BatchStatus,
    BatchType,
    HistoryEvent,
)
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.exceptions import (
    BatchExportError,
    BatchMembershipError,
    BatchNotFoundError,
    InvalidTransitionError,
)
from coreason_faers_submission.lifecycle.batch_service import BatchService, export_filename
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import CaseRepository, HistoryRepository


TIMESTAMPED = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.xml"

class MemoryExportStore:
    """Export store keeping documents in a dict."""

    def __init__(self) -> None:
        self.files: dict[str, str] = {}

    def write(self, filename: str, content: str) -> str:
        self.files[filename] = content
        return f"memory://{filename}"

    def read(self, location: str) -> str:
        return self.files[location.removeprefix("memory://")]


@pytest.fixture(name="export_store")
def export_store() -> MemoryExportStore:
    """Fixture for the in-memory export store."""
    return MemoryExportStore()


@pytest.fixture(name="service")
def service(database: Database, export_store: MemoryExportStore) -> BatchService:
    """Fixture for the batch service."""
    return BatchService(database, IcsrXmlGenerator(default_sender_id="ACME-ESG"), export_store)


@pytest.fixture(name="three_cases")
def three_cases(store_case: Callable[..., Case]) -> list[str]:
    """Two valid cases and one without reactions."""
    store_case("CASE-1")
    store_case("CASE-2")
    store_case("CASE-3", reactions=[])
    return ["CASE-1", "CASE-2", "CASE-3"]


def _exported_batch(service: BatchService, store_case: Callable[..., Case]) -> int:
    store_case("CASE-1")
    store_case("CASE-2")
    batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1", "CASE-2"])
    service.validate_batch(batch.id)
    service.export_batch(batch.id)
    return batch.id


class TestBatchMembership:
    """Creation and membership rules."""

    def test_create_batch(self, service: BatchService, database: Database, three_cases: list[str]) -> None:
        """A new batch gets a dated number, its members and a history row."""
        batch = service.create_batch(BatchType.EXPEDITED, three_cases, notes="January expedited")
        assert re.fullmatch(r"BATCH-\d{8}-EXP-001", batch.batch_number)
        assert batch.status is BatchStatus.CREATED
        assert batch.case_count == 3
        assert [m.case_id for m in batch.cases] == three_cases
        assert all(m.validation_status is BatchCaseStatus.PENDING for m in batch.cases)
        with database.session() as session:
            (entry,) = HistoryRepository().list_for_batch(session, batch.id)
        assert entry.event_type == HistoryEvent.CREATED.value

    @pytest.mark.parametrize(
        "case_ids, message",
        [
            ([], "At least one case is required"),
            (["CASE-1", "CASE-1"], "Duplicate case ids"),
            (["CASE-1", "CASE-404"], "Case not found: CASE-404"),
        ],
    )
    def test_create_batch_rejects_bad_membership(
        self, service: BatchService, three_cases: list[str], case_ids: list[str], message: str
    ) -> None:
        """Empty, duplicated or unknown member lists are refused."""
        with pytest.raises(BatchMembershipError, match=message):
            service.create_batch(BatchType.EXPEDITED, case_ids)
        assert service.list_batches() == []

    def test_case_in_one_active_batch_only(self, service: BatchService, three_cases: list[str]) -> None:
        """A case already held by an active batch cannot join another."""
        first = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        with pytest.raises(BatchMembershipError, match=f"already in active batch {first.batch_number}"):
            service.create_batch(BatchType.NON_EXPEDITED, ["CASE-2", "CASE-1"])

    def test_add_and_remove_case(self, service: BatchService, three_cases: list[str]) -> None:
        """Members can change while the batch is created."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        batch = service.add_case(batch.id, "CASE-2")
        assert batch.case_count == 2
        batch = service.remove_case(batch.id, "CASE-1")
        assert [m.case_id for m in batch.cases] == ["CASE-2"]
        assert batch.case_count == 1
        with pytest.raises(BatchMembershipError, match="not in batch"):
            service.remove_case(batch.id, "CASE-3")

    def test_membership_frozen_after_validation(self, service: BatchService, three_cases: list[str]) -> None:
        """Once validation has run the member list is fixed."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        service.validate_batch(batch.id)
        with pytest.raises(InvalidTransitionError):
            service.add_case(batch.id, "CASE-2")
        with pytest.raises(InvalidTransitionError):
            service.remove_case(batch.id, "CASE-1")

    def test_delete_batch(self, service: BatchService, database: Database, three_cases: list[str]) -> None:
        """A created batch can be deleted; its cases are kept and become free."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        service.delete_batch(batch.id)
        with pytest.raises(BatchNotFoundError):
            service.get_batch(batch.id)
        with database.session() as session:
            assert CaseRepository().exists(session, "CASE-1")
        assert service.create_batch(BatchType.EXPEDITED, ["CASE-1"]).case_count == 1

    def test_delete_requires_created(self, service: BatchService, three_cases: list[str]) -> None:
        """Batches past creation are kept for audit."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        service.validate_batch(batch.id)
        with pytest.raises(InvalidTransitionError, match="delete"):
            service.delete_batch(batch.id)


class TestBatchValidation:
    """Per-member validation."""

    def test_one_invalid_member_fails_the_batch(self, service: BatchService, three_cases: list[str]) -> None:
        """Counts add up and the batch ends validation_failed."""
        batch = service.create_batch(BatchType.EXPEDITED, three_cases)
        result = service.validate_batch(batch.id)

        assert (result.total_cases, result.valid_cases, result.invalid_cases) == (3, 2, 1)
        assert result.is_valid is False
        invalid = [r for r in result.case_results if not r.is_valid]
        assert [r.case_id for r in invalid] == ["CASE-3"]
        assert invalid[0].errors == ["reactions: At least one reaction is required (B.2)"]

        stored = service.get_batch(batch.id)
        assert stored.status is BatchStatus.VALIDATION_FAILED
        assert (stored.valid_case_count, stored.invalid_case_count) == (2, 1)
        statuses = {m.case_id: m.validation_status for m in stored.cases}
        assert statuses == {
            "CASE-1": BatchCaseStatus.VALID,
            "CASE-2": BatchCaseStatus.VALID,
            "CASE-3": BatchCaseStatus.INVALID,
        }

    def test_revalidation_is_allowed(self, service: BatchService, three_cases: list[str]) -> None:
        """Validated and failed batches may be validated again."""
        passed = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        failed = service.create_batch(BatchType.EXPEDITED, ["CASE-3"])
        for _ in range(2):
            assert service.validate_batch(passed.id).is_valid is True
            assert service.validate_batch(failed.id).is_valid is False
        assert service.get_batch(passed.id).status is BatchStatus.VALIDATED
        assert service.get_batch(failed.id).status is BatchStatus.VALIDATION_FAILED

    def test_validation_aborts_cleanly(self, service: BatchService, three_cases: list[str]) -> None:
        """An unexpected error leaves the batch validation_failed with the error recorded."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        service.validator = MagicMock()
        service.validator.validate.side_effect = RuntimeError("rule engine down")
        with pytest.raises(RuntimeError):
            service.validate_batch(batch.id)
        stored = service.get_batch(batch.id)
        assert stored.status is BatchStatus.VALIDATION_FAILED
        assert stored.last_error == "rule engine down"


class TestBatchExport:
    """Rendering and writing the batch document."""

    def test_export_writes_valid_members(
        self, service: BatchService, export_store: MemoryExportStore, store_case: Callable[..., Case]
    ) -> None:
        """The document holds every valid case and the batch records where it went."""
        batch_id = _exported_batch(service, store_case)
        batch = service.get_batch(batch_id)

        assert batch.status is BatchStatus.EXPORTED
        assert batch.xml_file_path == f"memory://{batch.xml_filename}"
        assert batch.xml_filename.startswith(f"BATCH-{batch.batch_number}-")
        assert re.fullmatch(TIMESTAMPED, batch.xml_filename.removeprefix(f"BATCH-{batch.batch_number}-"))
        document = read_icsr(export_store.files[batch.xml_filename])
        assert document["message_id"].startswith(f"MSG-{batch.batch_number}-")
        assert document["sender"] == "ACME-ESG"
        assert len(document["reports"]) == 2

    def test_export_requires_validated(self, service: BatchService, three_cases: list[str]) -> None:
        """Created and failed batches cannot be exported."""
        created = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        with pytest.raises(InvalidTransitionError, match="export"):
            service.export_batch(created.id)
        failed = service.create_batch(BatchType.EXPEDITED, ["CASE-3"])
        service.validate_batch(failed.id)
        with pytest.raises(InvalidTransitionError):
            service.export_batch(failed.id)

    @pytest.mark.parametrize(
        "error",
        [OSError("disk full"), ValueError("Export filename must not contain a path: disk full")],
        ids=["io-error", "rejected-filename"],
    )
    def test_write_failure_reverts_batch(
        self, database: Database, three_cases: list[str], error: Exception
    ) -> None:
        """A store error surfaces as BatchExportError and the batch returns to validation_failed."""
        store = MagicMock()
        store.write.side_effect = error
        service = BatchService(database, IcsrXmlGenerator(), store)
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        service.validate_batch(batch.id)

        with pytest.raises(BatchExportError, match="disk full"):
            service.export_batch(batch.id)
        stored = service.get_batch(batch.id)
        assert stored.status is BatchStatus.VALIDATION_FAILED
        assert "disk full" in stored.last_error
        assert stored.xml_file_path is None

    def test_export_filename(self) -> None:
        """Filenames embed the batch number and a timestamp."""
        filename = export_filename("BATCH-20250115-EXP-001")
        assert filename.startswith("BATCH-BATCH-20250115-EXP-001-")
        assert re.fullmatch(TIMESTAMPED, filename.removeprefix("BATCH-BATCH-20250115-EXP-001-"))


class TestBatchSubmissionAndAcknowledgment:
    """Manual submission recording and acknowledgment."""

    def test_acknowledgment_on_created_batch_fails_without_change(
        self, service: BatchService, database: Database, three_cases: list[str]
    ) -> None:
        """Recording an acknowledgment out of order is a hard error and mutates nothing."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        with pytest.raises(InvalidTransitionError, match="record acknowledgment"):
            service.record_acknowledgment(batch.id, BatchAckType.ACCEPTED, notes="should not stick")
        stored = service.get_batch(batch.id)
        assert stored.status is BatchStatus.CREATED
        assert stored.ack_type is None
        assert stored.notes is None
        with database.session() as session:
            assert CaseRepository().get(session, "CASE-1").workflow_status is None
            assert len(HistoryRepository().list_for_batch(session, batch.id)) == 1

    def test_submission_requires_exported(self, service: BatchService, three_cases: list[str]) -> None:
        """Submission can only be recorded for an exported batch."""
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-1"])
        with pytest.raises(InvalidTransitionError):
            service.record_submission(batch.id, esg_core_id="CORE-1")

    def test_accepted_acknowledgment(
        self, service: BatchService, database: Database, store_case: Callable[..., Case]
    ) -> None:
        """Acceptance ends the batch acknowledged and marks member workflows submitted."""
        batch_id = _exported_batch(service, store_case)
        submitted = service.record_submission(batch_id, esg_core_id="CORE-1", notes="sent via WebTrader")
        assert submitted.status is BatchStatus.SUBMITTED
        assert submitted.submission_mode == "manual"
        assert submitted.submitted_at is not None

        done = service.record_acknowledgment(batch_id, BatchAckType.ACCEPTED, ack_details="ACK3", notes="all good")
        assert done.status is BatchStatus.ACKNOWLEDGED
        assert done.ack_type is BatchAckType.ACCEPTED
        assert done.notes == "sent via WebTrader\nall good"
        with database.session() as session:
            cases = CaseRepository()
            assert {cases.get(session, c).workflow_status for c in ("CASE-1", "CASE-2")} == {"Submitted"}
        # Acknowledged batches release their members.
        assert service.create_batch(BatchType.FOLLOWUP, ["CASE-1"]).case_count == 1

    @pytest.mark.parametrize(
        "ack_type, expected",
        [(BatchAckType.REJECTED, BatchStatus.REJECTED), (BatchAckType.PARTIAL, BatchStatus.ACKNOWLEDGED)],
    )
    def test_other_acknowledgments(
        self,
        service: BatchService,
        database: Database,
        store_case: Callable[..., Case],
        ack_type: BatchAckType,
        expected: BatchStatus,
    ) -> None:
        """Rejection ends rejected, partial ends acknowledged; neither touches case workflow."""
        batch_id = _exported_batch(service, store_case)
        service.record_submission(batch_id, esg_core_id="CORE-1")
        assert service.record_acknowledgment(batch_id, ack_type).status is expected
        with database.session() as session:
            assert CaseRepository().get(session, "CASE-1").workflow_status is None

    def test_mark_failed(self, service: BatchService, store_case: Callable[..., Case]) -> None:
        """An exported batch whose upload failed ends failed."""
        batch_id = _exported_batch(service, store_case)
        failed = service.mark_failed(batch_id, "Request timed out")
        assert failed.status is BatchStatus.FAILED
        assert failed.last_error == "Request timed out"
        with pytest.raises(InvalidTransitionError):
            service.record_submission(batch_id, esg_core_id="CORE-1")

    def test_list_batches_filters(self, service: BatchService, store_case: Callable[..., Case]) -> None:
        """Batches can be filtered by status and type."""
        batch_id = _exported_batch(service, store_case)
        store_case("CASE-5")
        other = service.create_batch(BatchType.PSR, ["CASE-5"])
        assert [b.id for b in service.list_batches(status=BatchStatus.EXPORTED)] == [batch_id]
        assert [b.id for b in service.list_batches(batch_type=BatchType.PSR)] == [other.id]
        assert len(service.list_batches()) == 2


class TestEligibility:
    """Which cases a batch type may take."""

    def test_expedited_eligibility(self, service: BatchService, store_case: Callable[..., Case]) -> None:
        """Approved expedited cases are offered; ones already batched are flagged."""
        store_case("CASE-1", workflow_status="Approved", report_type_classification="expedited")
        store_case("CASE-2", workflow_status="Approved", report_type_classification="expedited")
        store_case("CASE-3", workflow_status="Approved", report_type_classification="non_expedited")
        store_case("CASE-4", workflow_status="Draft", report_type_classification="expedited")
        batch = service.create_batch(BatchType.EXPEDITED, ["CASE-2"])

        eligible = {e.case_id: e for e in service.eligible_cases(BatchType.EXPEDITED)}
        assert set(eligible) == {"CASE-1", "CASE-2"}
        assert eligible["CASE-1"].is_eligible is True
        assert eligible["CASE-2"].is_eligible is False
        assert eligible["CASE-2"].existing_batch_id == batch.id
        assert eligible["CASE-2"].eligibility_reason == "Already in a batch"

    def test_non_expedited_and_followup(self, service: BatchService, store_case: Callable[..., Case]) -> None:
        """Non-expedited accepts pending-PSR cases; follow-up needs a follow-up type."""
        store_case("CASE-1", workflow_status="Pending PSR", report_type_classification="non_expedited")
        store_case("CASE-2", workflow_status="Approved", followup_type="additional_info")
        assert [e.case_id for e in service.eligible_cases(BatchType.NON_EXPEDITED)] == ["CASE-1"]
        assert [e.case_id for e in service.eligible_cases(BatchType.FOLLOWUP)] == ["CASE-2"]
        assert {e.case_id for e in service.eligible_cases(BatchType.PSR)} == {"CASE-1", "CASE-2"}
