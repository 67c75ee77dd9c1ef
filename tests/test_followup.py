# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Tests for follow-up and nullification versioning."""

from collections.abc import Callable
from datetime import date

import pytest

from coreason_faers_submission.domain.enums import (
    CaseStatus,
    FollowupType,
    HistoryEvent,
    NullificationReason,
    ReportClassification,
)
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.exceptions import CaseNotFoundError, VersioningError
from coreason_faers_submission.lifecycle.followup import FollowupService
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import CaseRepository, HistoryRepository


@pytest.fixture(name="service")
def service(database: Database) -> FollowupService:
    """Fixture for the follow-up service."""
    return FollowupService(database)


@pytest.fixture(name="submitted")
def submitted(store_case: Callable[..., Case]) -> Case:
    """A submitted case carrying submission tracking fields."""
    return store_case(
        "CASE-1",
        status=CaseStatus.SUBMITTED,
        esg_submission_id="ESG-1",
        esg_core_id="CORE-1",
        api_attempt_count=2,
        needs_attention=True,
    )


class TestFollowup:
    """Follow-up creation."""

    def test_followup_copies_case_and_clears_tracking(
        self, service: FollowupService, database: Database, submitted: Case
    ) -> None:
        """The new version is a draft copy with submission tracking reset."""
        followup = service.create_followup(
            "CASE-1", FollowupType.ADDITIONAL_INFO, info_date=date(2025, 2, 1), new_id="CASE-1-F1"
        )
        assert followup.id == "CASE-1-F1"
        assert followup.version == 2
        assert followup.parent_case_id == "CASE-1"
        assert followup.status is CaseStatus.DRAFT
        assert followup.followup_type == "additional_info"
        assert followup.followup_info_date == date(2025, 2, 1)
        assert followup.report_type_classification == ReportClassification.FOLLOWUP.value
        assert followup.initial_or_followup == 2
        assert followup.esg_submission_id is None
        assert followup.esg_core_id is None
        assert followup.api_attempt_count == 0
        assert followup.needs_attention is False
        assert followup.case_narrative == submitted.case_narrative
        assert [r.reaction_term for r in followup.reactions] == ["Rash"]
        assert [d.product_name for d in followup.drugs] == ["Examplamab"]

        with database.session() as session:
            original = CaseRepository().get(session, "CASE-1")
            (entry,) = HistoryRepository().list_for_case(session, "CASE-1-F1")
        assert original.esg_submission_id == "ESG-1"
        assert entry.event_type == HistoryEvent.FOLLOWUP_CREATED.value
        assert entry.details["parent_case_id"] == "CASE-1"

    def test_branching_versions_use_chain_maximum(
        self, service: FollowupService, store_case: Callable[..., Case], submitted: Case, database: Database
    ) -> None:
        """Two follow-ups of the same parent never share a version number."""
        service.create_followup("CASE-1", FollowupType.CORRECTION, new_id="CASE-1-F1")
        second = service.create_followup("CASE-1", FollowupType.OUTCOME_UPDATE, new_id="CASE-1-F2")
        assert second.version == 3

        with database.session() as session:
            CaseRepository().update_fields(session, "CASE-1-F2", status=CaseStatus.SUBMITTED.value)
        third = service.create_followup("CASE-1-F2", FollowupType.FDA_RESPONSE, new_id="CASE-1-F3")
        assert third.version == 4
        assert third.parent_case_id == "CASE-1-F2"

    @pytest.mark.parametrize("status", [CaseStatus.DRAFT, CaseStatus.EXPORTED, CaseStatus.REJECTED])
    def test_followup_requires_submission(
        self, service: FollowupService, store_case: Callable[..., Case], status: CaseStatus
    ) -> None:
        """Cases that never reached FDA cannot be followed up."""
        store_case("CASE-1", status=status)
        allowed, reason = service.can_create_followup("CASE-1")
        assert allowed is False
        assert reason.startswith("Only submitted or acknowledged cases can be followed up")
        with pytest.raises(VersioningError, match="Only submitted or acknowledged"):
            service.create_followup("CASE-1", FollowupType.CORRECTION)

    def test_acknowledged_case_can_be_followed_up(
        self, service: FollowupService, store_case: Callable[..., Case]
    ) -> None:
        """Acknowledged is as good as submitted."""
        store_case("CASE-1", status=CaseStatus.ACKNOWLEDGED)
        assert service.can_create_followup("CASE-1") == (True, None)

    def test_missing_case(self, service: FollowupService) -> None:
        """Unknown parents raise CaseNotFoundError."""
        with pytest.raises(CaseNotFoundError):
            service.create_followup("CASE-404", FollowupType.CORRECTION)


class TestNullification:
    """Nullification creation."""

    def test_nullification_marks_original(
        self, service: FollowupService, database: Database, submitted: Case
    ) -> None:
        """The nullification version and the original both carry the reason."""
        nullification = service.create_nullification(
            "CASE-1", NullificationReason.DUPLICATE, reference="US-ACME-OTHER", notes="duplicate of 77", new_id="N-1"
        )
        assert nullification.is_nullified is True
        assert nullification.version == 2
        assert nullification.nullification_reason_code == "duplicate"
        assert nullification.report_type_classification == ReportClassification.NULLIFICATION.value

        with database.session() as session:
            original = CaseRepository().get(session, "CASE-1")
            (entry,) = HistoryRepository().list_for_case(session, "N-1")
        assert original.is_nullified is True
        assert original.nullification_reference == "US-ACME-OTHER"
        assert entry.event_type == HistoryEvent.NULLIFIED.value
        assert entry.notes == "duplicate of 77"

    def test_second_nullification_rejected(self, service: FollowupService, submitted: Case) -> None:
        """A case is nullified at most once, and follow-ups stop too."""
        service.create_nullification("CASE-1", NullificationReason.ERROR, new_id="N-1")
        assert service.can_nullify("CASE-1") == (False, "Case has already been nullified")
        with pytest.raises(VersioningError, match="Case has already been nullified"):
            service.create_nullification("CASE-1", NullificationReason.ERROR)
        with pytest.raises(VersioningError, match="Case has already been nullified"):
            service.create_followup("CASE-1", FollowupType.CORRECTION)

    def test_nullify_draft_rejected(self, service: FollowupService, store_case: Callable[..., Case]) -> None:
        """Drafts cannot be nullified."""
        store_case("CASE-1")
        with pytest.raises(VersioningError, match="can be nullified"):
            service.create_nullification("CASE-1", NullificationReason.NOT_AE)

    @pytest.fixture(name="stale_read")
    def stale_read(
        self, service: FollowupService, submitted: Case, monkeypatch: pytest.MonkeyPatch
    ) -> Callable[[], None]:
        """Make the next parent read return the case as it was before any nullification."""

        def _stale() -> None:
            real_get = service.cases.get
            pending = [submitted]

            def read(session, case_id):
                return pending.pop() if pending else real_get(session, case_id)

            monkeypatch.setattr(service.cases, "get", read)

        return _stale

    def test_concurrent_nullification_loses(
        self, service: FollowupService, database: Database, stale_read: Callable[[], None]
    ) -> None:
        """A second nullification that read the case before the first committed is refused."""
        service.create_nullification("CASE-1", NullificationReason.ERROR, new_id="N-1")
        stale_read()

        with pytest.raises(VersioningError, match="Case has already been nullified"):
            service.create_nullification("CASE-1", NullificationReason.DUPLICATE, new_id="N-2")

        chain = service.version_chain("CASE-1")
        assert [v.id for v in chain.versions if v.parent_case_id == "CASE-1"] == ["N-1"]
        with database.session() as session:
            assert CaseRepository().find(session, "N-2") is None
            assert CaseRepository().get(session, "CASE-1").nullification_reason_code == "error"

    def test_followup_racing_a_nullification_is_refused(
        self, service: FollowupService, database: Database, stale_read: Callable[[], None]
    ) -> None:
        """A follow-up whose parent was nullified after it was read is not created."""
        service.create_nullification("CASE-1", NullificationReason.ERROR, new_id="N-1")
        stale_read()

        with pytest.raises(VersioningError, match="Case has already been nullified"):
            service.create_followup("CASE-1", FollowupType.CORRECTION, new_id="F-1")

        with database.session() as session:
            assert CaseRepository().find(session, "F-1") is None


class TestVersionQueries:
    """Chains, comparisons and due dates."""

    def test_version_chain(self, service: FollowupService, submitted: Case) -> None:
        """The chain lists every version from the root, ordered by version."""
        service.create_followup("CASE-1", FollowupType.CORRECTION, new_id="CASE-1-F1")
        service.create_nullification("CASE-1", NullificationReason.ERROR, new_id="N-1")

        chain = service.version_chain("CASE-1-F1")
        assert chain.original_case_id == "CASE-1"
        assert [(v.id, v.version) for v in chain.versions] == [("CASE-1", 1), ("CASE-1-F1", 2), ("N-1", 3)]
        assert chain.total_versions == 3
        assert chain.is_nullified is True

    def test_compare_versions(self, service: FollowupService, database: Database, submitted: Case) -> None:
        """Only changed comparable fields are reported."""
        service.create_followup("CASE-1", FollowupType.CORRECTION, new_id="CASE-1-F1")
        with database.session() as session:
            CaseRepository().update_fields(session, "CASE-1-F1", patient_weight=72.0, patient_initials="JX")

        comparison = service.compare_versions("CASE-1", "CASE-1-F1")
        assert (comparison.from_version, comparison.to_version) == (1, 2)
        changed = {c.field: (c.old_value, c.new_value) for c in comparison.changes}
        assert changed["patient_weight"] == (70.5, 72.0)
        assert changed["patient_initials"] == ("JD", "JX")
        assert changed["report_type_classification"] == (None, "followup")
        assert "case_narrative" not in changed

    @pytest.mark.parametrize(
        "overrides, days, expedited",
        [
            ({"is_serious": True, "expectedness": "unexpected"}, 15, True),
            ({"is_serious": True, "expectedness": "expected"}, 30, False),
            ({}, 30, False),
        ],
    )
    def test_followup_due_date(
        self,
        service: FollowupService,
        store_case: Callable[..., Case],
        overrides: dict,
        days: int,
        expedited: bool,
    ) -> None:
        """Serious unexpected follow-ups are due in 15 days, others in 30."""
        store_case("CASE-1", status=CaseStatus.SUBMITTED, **overrides)
        service.create_followup("CASE-1", FollowupType.OUTCOME_UPDATE, info_date=date(2025, 3, 1), new_id="F-1")

        due = service.followup_due_date("F-1", today=date(2025, 3, 11))
        assert due.is_expedited is expedited
        assert (due.due_date - date(2025, 3, 1)).days == days
        assert due.days_remaining == days - 10
        assert due.is_overdue is False
        assert due.followup_type == "outcome_update"

    def test_overdue_and_missing_info_date(self, service: FollowupService, store_case: Callable[..., Case]) -> None:
        """Past due dates are overdue; no information date means no due date."""
        store_case("CASE-1", status=CaseStatus.SUBMITTED)
        service.create_followup("CASE-1", FollowupType.CORRECTION, info_date=date(2025, 1, 1), new_id="F-1")
        due = service.followup_due_date("F-1", today=date(2025, 3, 1))
        assert due.is_overdue is True
        assert due.days_remaining < 0
        assert service.followup_due_date("CASE-1") is None
