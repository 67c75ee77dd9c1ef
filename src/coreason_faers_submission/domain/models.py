# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Pydantic models for the case aggregate (E2B(R3) sections A.1 to B.5)."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from coreason_faers_submission.domain.enums import CaseStatus

_MODEL_CONFIG = ConfigDict(frozen=True, from_attributes=True)


class Reporter(BaseModel):
    """Primary source of the report (A.2)."""

    model_config = _MODEL_CONFIG

    id: Optional[int] = None
    is_primary: bool = False
    title: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    qualification: Optional[int] = Field(default=None, description="A.2.1.4: 1 physician .. 5 consumer")
    organization: Optional[str] = None
    department: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    sort_order: int = 0


class Reaction(BaseModel):
    """Reaction / event (B.2)."""

    model_config = _MODEL_CONFIG

    id: Optional[int] = None
    reaction_term: str = ""
    meddra_code: Optional[str] = None
    meddra_version: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    serious_death: bool = False
    serious_life_threat: bool = False
    serious_hospitalization: bool = False
    serious_disability: bool = False
    serious_congenital: bool = False
    serious_other: bool = False
    outcome: Optional[int] = Field(default=None, description="B.2.i.8: 0 unknown .. 5 fatal")
    sort_order: int = 0

    @property
    def is_serious(self) -> bool:
        return any(
            (
                self.serious_death,
                self.serious_life_threat,
                self.serious_hospitalization,
                self.serious_disability,
                self.serious_congenital,
                self.serious_other,
            )
        )


class Substance(BaseModel):
    """Active substance of a drug (B.4.k.3)."""

    model_config = _MODEL_CONFIG

    id: Optional[int] = None
    substance_name: Optional[str] = None
    substance_code: Optional[str] = None
    strength: Optional[float] = None
    strength_unit: Optional[str] = None
    sort_order: int = 0


class Dosage(BaseModel):
    """Dosage regimen of a drug (B.4.k.4)."""

    model_config = _MODEL_CONFIG

    id: Optional[int] = None
    dose: Optional[float] = None
    dose_unit: Optional[str] = None
    num_units: Optional[float] = None
    interval_unit: Optional[str] = None
    dosage_text: Optional[str] = None
    pharma_form: Optional[str] = None
    route: Optional[str] = None
    sort_order: int = 0


class Drug(BaseModel):
    """Drug information (B.4)."""

    model_config = _MODEL_CONFIG

    id: Optional[int] = None
    characterization: int = Field(description="B.4.k.1: 1 suspect, 2 concomitant, 3 interacting")
    product_name: str = ""
    mpid: Optional[str] = None
    indication: Optional[str] = None
    indication_code: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    action_taken: Optional[int] = Field(default=None, description="B.4.k.12: 1 withdrawn .. 6 not applicable")
    dechallenge: Optional[int] = None
    rechallenge: Optional[int] = None
    additional_info: Optional[str] = None
    sort_order: int = 0
    substances: list[Substance] = Field(default_factory=list)
    dosages: list[Dosage] = Field(default_factory=list)


class Case(BaseModel):
    """
    The unit of submission: one version of an individual case safety report.

    Child records are ordered by ``sort_order``; the codec renders them in list order.
    """

    model_config = _MODEL_CONFIG

    id: str
    status: CaseStatus = CaseStatus.DRAFT
    workflow_status: Optional[str] = None
    version: int = 1
    parent_case_id: Optional[str] = None
    followup_type: Optional[str] = None
    followup_info_date: Optional[date] = None
    report_type_classification: Optional[str] = None
    is_nullified: bool = False
    nullification_reason_code: Optional[str] = None
    nullification_reference: Optional[str] = None

    # Report (A.1)
    safety_report_id: Optional[str] = None
    report_type: Optional[int] = None
    initial_or_followup: Optional[int] = None
    receipt_date: Optional[date] = None
    receive_date: Optional[date] = None
    worldwide_case_id: Optional[str] = None
    nullification_type: Optional[int] = None
    nullification_reason: Optional[str] = None
    is_serious: Optional[bool] = None
    expectedness: Optional[str] = None

    # Sender (A.3)
    sender_type: Optional[int] = None
    sender_organization: Optional[str] = None
    sender_department: Optional[str] = None
    sender_given_name: Optional[str] = None
    sender_family_name: Optional[str] = None
    sender_address: Optional[str] = None
    sender_city: Optional[str] = None
    sender_state: Optional[str] = None
    sender_postcode: Optional[str] = None
    sender_country: Optional[str] = None
    sender_phone: Optional[str] = None
    sender_email: Optional[str] = None

    # Patient (B.1)
    patient_initials: Optional[str] = None
    patient_birthdate: Optional[date] = None
    patient_age: Optional[float] = None
    patient_age_unit: Optional[str] = None
    patient_age_group: Optional[int] = None
    patient_weight: Optional[float] = None
    patient_height: Optional[float] = None
    patient_sex: Optional[int] = None
    patient_death: bool = False
    death_date: Optional[date] = None

    # Narrative (B.5)
    case_narrative: Optional[str] = None
    reporter_comments: Optional[str] = None
    sender_comments: Optional[str] = None
    sender_diagnosis: Optional[str] = None

    # Submission tracking
    esg_submission_id: Optional[str] = None
    esg_core_id: Optional[str] = None
    last_submitted_at: Optional[datetime] = None
    api_attempt_count: int = 0
    api_last_error: Optional[str] = None
    fda_case_number: Optional[str] = None
    acknowledgment_date: Optional[datetime] = None
    exported_at: Optional[datetime] = None
    exported_xml_path: Optional[str] = None
    needs_attention: bool = False

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    reporters: list[Reporter] = Field(default_factory=list)
    reactions: list[Reaction] = Field(default_factory=list)
    drugs: list[Drug] = Field(default_factory=list)

    @property
    def report_identifier(self) -> str:
        return self.safety_report_id or self.id
