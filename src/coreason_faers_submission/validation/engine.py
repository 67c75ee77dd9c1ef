# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""E2B(R3) business-rule validation for a case aggregate."""

import re
from collections.abc import Callable
from typing import Final

from coreason_faers_submission.domain.enums import Severity
from coreason_faers_submission.domain.models import Case, Drug, Reaction, Reporter
from coreason_faers_submission.domain.results import ValidationIssue, ValidationResult
from coreason_faers_submission.utils.logger import logger

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RuleGroup = Callable[[Case], list[ValidationIssue]]


def _error(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, severity=Severity.ERROR)


def _warning(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, severity=Severity.WARNING)


def _info(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, severity=Severity.INFO)


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(value))


class ValidationEngine:
    """
    Runs every rule group over a case and concatenates the findings.

    The engine never short-circuits: callers see every problem at once. It holds no
    state between calls, so one instance may be shared across threads.
    """

    MIN_NARRATIVE_LENGTH: Final[int] = 50
    MAX_NARRATIVE_LENGTH: Final[int] = 20000
    MAX_WEIGHT_KG: Final[float] = 500
    MAX_HEIGHT_CM: Final[float] = 300
    MAX_AGE_BY_UNIT: Final[dict[str, float]] = {"Year": 150, "Month": 1800, "Week": 7800, "Day": 55000}
    FATAL_OUTCOME: Final[int] = 5
    SUSPECT: Final[int] = 1
    CHARACTERIZATIONS: Final[frozenset[int]] = frozenset({1, 2, 3})

    def __init__(self) -> None:
        self.rule_groups: list[RuleGroup] = [
            self.validate_report_information,
            self.validate_reporters,
            self.validate_sender,
            self.validate_patient,
            self.validate_reactions,
            self.validate_drugs,
            self.validate_narrative,
            self.validate_cross_field,
        ]

    def validate(self, case: Case) -> ValidationResult:
        """
        Validate a case against the E2B(R3) submission rules.

        Args:
            case: The case aggregate, including reporters, reactions and drugs.

        Returns:
            A ``ValidationResult``; ``valid`` is False if any issue has severity ``error``.
        """
        issues: list[ValidationIssue] = []
        for rule_group in self.rule_groups:
            issues.extend(rule_group(case))

        valid = not any(issue.severity is Severity.ERROR for issue in issues)
        logger.debug(f"Validated case {case.id}: valid={valid}, issues={len(issues)}")
        return ValidationResult(valid=valid, errors=issues)

    def validate_report_information(self, case: Case) -> list[ValidationIssue]:
        """Report metadata (A.1)."""
        issues = []
        if not case.report_type:
            issues.append(_error("report_type", "Report Type is required (A.1.2)"))
        if not case.initial_or_followup:
            issues.append(
                _error("initial_or_followup", "Report Classification (Initial/Follow-up) is required (A.1.4)")
            )
        if not case.receipt_date:
            issues.append(_error("receipt_date", "Initial Receipt Date is required (A.1.5.1)"))
        if not case.receive_date:
            issues.append(_error("receive_date", "Most Recent Information Date is required (A.1.5.2)"))
        if case.receipt_date and case.receive_date and case.receive_date < case.receipt_date:
            issues.append(
                _error("receive_date", "Most Recent Information Date must be on or after Initial Receipt Date")
            )
        if case.nullification_type and not case.nullification_reason:
            issues.append(
                _error(
                    "nullification_reason",
                    "Nullification/Amendment reason is required when type is specified (A.1.10.2)",
                )
            )
        return issues

    def validate_reporters(self, case: Case) -> list[ValidationIssue]:
        """Primary source (A.2)."""
        reporters: list[Reporter] = case.reporters
        if not reporters:
            return [_warning("reporters", "At least one reporter is recommended (A.2)")]

        issues = []
        if not any(r.is_primary for r in reporters):
            issues.append(_warning("reporters", "A primary reporter should be designated"))

        for index, reporter in enumerate(reporters):
            if reporter.is_primary and not reporter.qualification:
                issues.append(
                    _error(
                        f"reporters[{index}].qualification",
                        "Reporter Qualification is required for primary reporter (A.2.1.4)",
                    )
                )
            if reporter.email and not is_valid_email(reporter.email):
                issues.append(_warning(f"reporters[{index}].email", "Invalid email format for reporter"))
        return issues

    def validate_sender(self, case: Case) -> list[ValidationIssue]:
        """Sender (A.3)."""
        issues = []
        if not case.sender_type:
            issues.append(_error("sender_type", "Sender Type is required (A.3.1.1)"))
        if not case.sender_organization:
            issues.append(_error("sender_organization", "Sender Organization is required (A.3.1.2)"))
        if not case.sender_given_name:
            issues.append(_error("sender_given_name", "Sender Given Name is required (A.3.1.4)"))
        if not case.sender_family_name:
            issues.append(_error("sender_family_name", "Sender Family Name is required (A.3.1.5)"))
        if case.sender_email and not is_valid_email(case.sender_email):
            issues.append(_warning("sender_email", "Invalid email format for sender"))
        return issues

    def validate_patient(self, case: Case) -> list[ValidationIssue]:
        """Patient characteristics (B.1)."""
        issues = []
        if case.patient_sex is None:
            issues.append(_error("patient_sex", "Patient Sex is required (B.1.5)"))

        has_age = case.patient_age is not None
        if not has_age and not case.patient_birthdate and case.patient_age_group is None:
            issues.append(
                _error("patient_age", "Either Patient Birth Date, Age, or Age Group is required (B.1.2)")
            )

        if case.patient_weight is not None and not 0 <= case.patient_weight <= self.MAX_WEIGHT_KG:
            issues.append(_warning("patient_weight", "Patient weight seems outside normal range (0-500 kg)"))
        if case.patient_height is not None and not 0 <= case.patient_height <= self.MAX_HEIGHT_CM:
            issues.append(_warning("patient_height", "Patient height seems outside normal range (0-300 cm)"))

        if case.patient_age is not None:
            max_age = self.MAX_AGE_BY_UNIT.get(case.patient_age_unit or "Year", self.MAX_AGE_BY_UNIT["Year"])
            if not 0 <= case.patient_age <= max_age:
                issues.append(_warning("patient_age", "Patient age seems outside normal range"))
        return issues

    def validate_reactions(self, case: Case) -> list[ValidationIssue]:
        """Reactions / events (B.2)."""
        reactions: list[Reaction] = case.reactions
        if not reactions:
            return [_error("reactions", "At least one reaction is required (B.2)")]

        issues = []
        for index, reaction in enumerate(reactions):
            label = f"Reaction {index + 1}"
            if not reaction.reaction_term:
                issues.append(
                    _error(f"reactions[{index}].reaction_term", f"{label}: Reaction Term is required (B.2.i.1)")
                )
            if not reaction.is_serious:
                issues.append(
                    _error(
                        f"reactions[{index}].seriousness",
                        f"{label}: At least one seriousness criterion is required (B.2.i.7)",
                    )
                )
            if reaction.start_date and reaction.end_date and reaction.end_date < reaction.start_date:
                issues.append(
                    _error(f"reactions[{index}].end_date", f"{label}: End Date must be on or after Start Date")
                )
            if reaction.serious_death and reaction.outcome != self.FATAL_OUTCOME:
                issues.append(
                    _warning(
                        f"reactions[{index}].outcome",
                        f'{label}: Outcome should be "Fatal" when "Results in Death" is checked',
                    )
                )
        return issues

    def validate_drugs(self, case: Case) -> list[ValidationIssue]:
        """Drug information (B.4)."""
        drugs: list[Drug] = case.drugs
        if not drugs:
            return [_error("drugs", "At least one drug is required (B.4)")]

        issues = []
        if not any(d.characterization == self.SUSPECT for d in drugs):
            issues.append(
                _error("drugs", "At least one Suspect drug is required (characterization = Suspect)")
            )

        for index, drug in enumerate(drugs):
            label = f"Drug {index + 1}"
            if drug.characterization not in self.CHARACTERIZATIONS:
                issues.append(
                    _error(
                        f"drugs[{index}].characterization",
                        f"{label}: Drug Characterization is required (B.4.k.1)",
                    )
                )
            if not drug.product_name:
                issues.append(
                    _error(f"drugs[{index}].product_name", f"{label}: Product Name is required (B.4.k.2.1)")
                )
            if drug.start_date and drug.end_date and drug.end_date < drug.start_date:
                issues.append(
                    _error(f"drugs[{index}].end_date", f"{label}: End Date must be on or after Start Date")
                )
            if drug.characterization == self.SUSPECT and not drug.indication:
                issues.append(
                    _info(f"drugs[{index}].indication", f"{label}: Indication is recommended for suspect drugs")
                )
        return issues

    def validate_narrative(self, case: Case) -> list[ValidationIssue]:
        """Case narrative (B.5)."""
        narrative = case.case_narrative or ""
        if not narrative.strip():
            return [_error("case_narrative", "Case Narrative is required (B.5.1)")]

        issues = []
        if len(narrative.strip()) < self.MIN_NARRATIVE_LENGTH:
            issues.append(
                _warning(
                    "case_narrative",
                    "Case Narrative should be more descriptive (minimum 50 characters recommended)",
                )
            )
        if len(narrative) > self.MAX_NARRATIVE_LENGTH:
            issues.append(_error("case_narrative", "Case Narrative exceeds maximum length (20,000 characters)"))
        return issues

    def validate_cross_field(self, case: Case) -> list[ValidationIssue]:
        """Consistency rules spanning several sections."""
        issues = []
        has_death_reaction = any(r.serious_death for r in case.reactions)

        if case.patient_death:
            if not case.death_date:
                issues.append(
                    _warning(
                        "death_date", "Death Date should be provided when patient death is indicated (B.1.9.1)"
                    )
                )
            if not has_death_reaction:
                issues.append(
                    _warning(
                        "reactions",
                        'At least one reaction should have "Results in Death" seriousness '
                        "when patient death is indicated",
                    )
                )

        if has_death_reaction and not case.patient_death:
            issues.append(
                _warning("patient_death", 'Patient Death should be indicated when a reaction "Results in Death"')
            )

        if case.initial_or_followup == 2 and not case.worldwide_case_id:
            issues.append(_info("worldwide_case_id", "Follow-up reports should reference the original case ID"))
        return issues
