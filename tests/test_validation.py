# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Tests for the case validation engine."""

from collections.abc import Callable
from datetime import date

import pytest

from coreason_faers_submission.domain.enums import Severity
from coreason_faers_submission.domain.models import Case, Drug, Reaction, Reporter
from coreason_faers_submission.validation.engine import ValidationEngine, is_valid_email


@pytest.fixture(name="engine")
def engine() -> ValidationEngine:
    """Fixture for the validation engine."""
    return ValidationEngine()


def _messages(result_errors: list, severity: Severity) -> list[str]:
    return [e.message for e in result_errors if e.severity is severity]


class TestValidationEngine:
    """Rule groups and severity handling."""

    def test_complete_case_is_valid_without_findings(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """A fully populated case produces no issues at all."""
        result = engine.validate(case_factory())
        assert result.valid is True
        assert result.errors == []

    def test_missing_reactions_is_blocking(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """A case without reactions fails with a reaction error."""
        result = engine.validate(case_factory(reactions=[]))
        assert result.valid is False
        assert "At least one reaction is required (B.2)" in _messages(result.errors, Severity.ERROR)

    def test_all_problems_reported_at_once(self, engine: ValidationEngine) -> None:
        """The engine does not stop at the first failing group."""
        result = engine.validate(Case(id="EMPTY"))
        blocking = {e.field for e in result.blocking}
        assert {
            "report_type",
            "initial_or_followup",
            "receipt_date",
            "receive_date",
            "sender_type",
            "sender_organization",
            "sender_given_name",
            "sender_family_name",
            "patient_sex",
            "patient_age",
            "reactions",
            "drugs",
            "case_narrative",
        } <= blocking
        assert "At least one reporter is recommended (A.2)" in _messages(result.errors, Severity.WARNING)

    def test_validation_is_idempotent(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Running twice over the same input yields the same result."""
        case = case_factory(reactions=[], patient_weight=900.0)
        assert engine.validate(case) == engine.validate(case)

    def test_warnings_do_not_block(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Out-of-range measurements and a short narrative are advisory only."""
        case = case_factory(patient_weight=650.0, patient_height=320.0, case_narrative="Rash after dose.")
        result = engine.validate(case)
        assert result.valid is True
        assert {w.field for w in result.warnings} == {"patient_weight", "patient_height", "case_narrative"}

    def test_receive_date_before_receipt_date(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """The most recent information date cannot precede the initial receipt."""
        case = case_factory(receipt_date=date(2025, 2, 1), receive_date=date(2025, 1, 1))
        result = engine.validate(case)
        assert result.valid is False
        assert "Most Recent Information Date must be on or after Initial Receipt Date" in _messages(
            result.errors, Severity.ERROR
        )

    def test_birthdate_or_age_group_satisfies_age_requirement(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Age may be given as birth date or age group instead of a numeric age."""
        by_birthdate = case_factory(patient_age=None, patient_birthdate=date(1980, 3, 1))
        by_group = case_factory(patient_age=None, patient_age_group=5)
        assert engine.validate(by_birthdate).valid is True
        assert engine.validate(by_group).valid is True

    def test_nullification_type_requires_reason(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """A nullification type without a reason is an error."""
        result = engine.validate(case_factory(nullification_type=1))
        assert [e.field for e in result.blocking] == ["nullification_reason"]


class TestReactionAndDrugRules:
    """B.2 and B.4 rules."""

    def test_reaction_needs_seriousness(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """A reaction without any seriousness criterion is blocking."""
        case = case_factory(reactions=[Reaction(reaction_term="Headache")])
        result = engine.validate(case)
        assert "Reaction 1: At least one seriousness criterion is required (B.2.i.7)" in _messages(
            result.errors, Severity.ERROR
        )

    def test_reaction_dates_out_of_order(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """End date before start date is an error on the right index."""
        reactions = [
            Reaction(reaction_term="Rash", serious_other=True),
            Reaction(
                reaction_term="Fever",
                serious_other=True,
                start_date=date(2025, 1, 5),
                end_date=date(2025, 1, 1),
            ),
        ]
        result = engine.validate(case_factory(reactions=reactions))
        assert [e.field for e in result.blocking] == ["reactions[1].end_date"]

    def test_death_consistency_warnings(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """A fatal reaction without patient death, and a non-fatal outcome, are flagged."""
        reactions = [Reaction(reaction_term="Cardiac arrest", serious_death=True, outcome=1)]
        result = engine.validate(case_factory(reactions=reactions))
        assert result.valid is True
        assert {w.field for w in result.warnings} == {"reactions[0].outcome", "patient_death"}

    def test_patient_death_without_date_or_fatal_reaction(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Patient death asks for a death date and a fatal reaction."""
        result = engine.validate(case_factory(patient_death=True))
        assert {w.field for w in result.warnings} == {"death_date", "reactions"}

    def test_suspect_drug_required(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Only concomitant drugs is not enough."""
        case = case_factory(drugs=[Drug(characterization=2, product_name="Ibuprofen")])
        result = engine.validate(case)
        assert any(e.field == "drugs" for e in result.blocking)

    def test_unknown_characterization_and_missing_name(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Each drug is checked individually."""
        drugs = [
            Drug(characterization=1, product_name="Examplamab", indication="Psoriasis"),
            Drug(characterization=7, product_name=""),
        ]
        result = engine.validate(case_factory(drugs=drugs))
        assert {e.field for e in result.blocking} == {"drugs[1].characterization", "drugs[1].product_name"}

    def test_suspect_without_indication_is_info(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Missing indication on a suspect drug is informational."""
        result = engine.validate(case_factory(drugs=[Drug(characterization=1, product_name="Examplamab")]))
        assert result.valid is True
        assert [i.field for i in result.infos] == ["drugs[0].indication"]


class TestReporterAndNarrativeRules:
    """A.2, A.3 and B.5 rules."""

    def test_primary_reporter_needs_qualification(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Qualification is mandatory for the primary source."""
        case = case_factory(reporters=[Reporter(is_primary=True, given_name="Ann")])
        assert [e.field for e in engine.validate(case).blocking] == ["reporters[0].qualification"]

    def test_invalid_emails_are_warnings(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Malformed addresses are reported but do not block."""
        case = case_factory(
            sender_email="not-an-address",
            reporters=[Reporter(is_primary=True, qualification=1, email="ann at clinic")],
        )
        result = engine.validate(case)
        assert result.valid is True
        assert {w.field for w in result.warnings} == {"sender_email", "reporters[0].email"}

    def test_no_primary_reporter_is_warning(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Reporters without a primary designation get a warning."""
        case = case_factory(reporters=[Reporter(qualification=3)])
        assert [w.message for w in engine.validate(case).warnings] == ["A primary reporter should be designated"]

    def test_blank_narrative_is_blocking(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Whitespace does not count as a narrative."""
        result = engine.validate(case_factory(case_narrative="   "))
        assert "Case Narrative is required (B.5.1)" in _messages(result.errors, Severity.ERROR)

    def test_overlong_narrative_is_blocking(self, engine: ValidationEngine, case_factory: Callable[..., Case]) -> None:
        """Narratives over the maximum length are rejected."""
        result = engine.validate(case_factory(case_narrative="x" * 20001))
        assert [e.field for e in result.blocking] == ["case_narrative"]

    def test_followup_without_worldwide_id_is_info(
        self, engine: ValidationEngine, case_factory: Callable[..., Case]
    ) -> None:
        """Follow-ups should reference the original case."""
        result = engine.validate(case_factory(initial_or_followup=2))
        assert result.valid is True
        assert [i.field for i in result.infos] == ["worldwide_case_id"]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("safety@acme.example", True),
        ("a.b+c@sub.domain.org", True),
        ("no-at-sign", False),
        ("two@@example.com", False),
        ("spaces in@example.com", False),
        ("missing@tld", False),
    ],
)
def test_is_valid_email(value: str, expected: bool) -> None:
    """Email format check used by reporter and sender rules."""
    assert is_valid_email(value) is expected
