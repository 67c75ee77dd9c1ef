# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""SQLAlchemy ORM tables for cases, batches and submission records."""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from coreason_faers_submission.domain.enums import BatchCaseStatus, CaseStatus
from coreason_faers_submission.domain.submission import AckError
from coreason_faers_submission.storage.types import PydanticJson
from coreason_faers_submission.utils.clock import utc_now


class Base(DeclarativeBase):
    """Base class for all ORM tables."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        date: Date(),
        float: Float(),
    }


class CaseRow(Base):
    __tablename__ = "cases"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default=CaseStatus.DRAFT.value, index=True)
    workflow_status: Mapped[Optional[str]] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, default=1)
    parent_case_id: Mapped[Optional[str]] = mapped_column(ForeignKey("cases.id"), index=True)
    followup_type: Mapped[Optional[str]] = mapped_column(String(32))
    followup_info_date: Mapped[Optional[date]]
    report_type_classification: Mapped[Optional[str]] = mapped_column(String(32))
    is_nullified: Mapped[bool] = mapped_column(Boolean, default=False)
    nullification_reason_code: Mapped[Optional[str]] = mapped_column(String(32))
    nullification_reference: Mapped[Optional[str]] = mapped_column(String(255))

    # Report (A.1)
    safety_report_id: Mapped[Optional[str]] = mapped_column(String(100))
    report_type: Mapped[Optional[int]]
    initial_or_followup: Mapped[Optional[int]]
    receipt_date: Mapped[Optional[date]]
    receive_date: Mapped[Optional[date]]
    worldwide_case_id: Mapped[Optional[str]] = mapped_column(String(100))
    nullification_type: Mapped[Optional[int]]
    nullification_reason: Mapped[Optional[str]] = mapped_column(Text)
    is_serious: Mapped[Optional[bool]]
    expectedness: Mapped[Optional[str]] = mapped_column(String(32))

    # Sender (A.3)
    sender_type: Mapped[Optional[int]]
    sender_organization: Mapped[Optional[str]] = mapped_column(String(255))
    sender_department: Mapped[Optional[str]] = mapped_column(String(255))
    sender_given_name: Mapped[Optional[str]] = mapped_column(String(100))
    sender_family_name: Mapped[Optional[str]] = mapped_column(String(100))
    sender_address: Mapped[Optional[str]] = mapped_column(String(255))
    sender_city: Mapped[Optional[str]] = mapped_column(String(100))
    sender_state: Mapped[Optional[str]] = mapped_column(String(100))
    sender_postcode: Mapped[Optional[str]] = mapped_column(String(20))
    sender_country: Mapped[Optional[str]] = mapped_column(String(2))
    sender_phone: Mapped[Optional[str]] = mapped_column(String(50))
    sender_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Patient (B.1)
    patient_initials: Mapped[Optional[str]] = mapped_column(String(20))
    patient_birthdate: Mapped[Optional[date]]
    patient_age: Mapped[Optional[float]]
    patient_age_unit: Mapped[Optional[str]] = mapped_column(String(10))
    patient_age_group: Mapped[Optional[int]]
    patient_weight: Mapped[Optional[float]]
    patient_height: Mapped[Optional[float]]
    patient_sex: Mapped[Optional[int]]
    patient_death: Mapped[bool] = mapped_column(Boolean, default=False)
    death_date: Mapped[Optional[date]]

    # Narrative (B.5)
    case_narrative: Mapped[Optional[str]] = mapped_column(Text)
    reporter_comments: Mapped[Optional[str]] = mapped_column(Text)
    sender_comments: Mapped[Optional[str]] = mapped_column(Text)
    sender_diagnosis: Mapped[Optional[str]] = mapped_column(Text)

    # Submission tracking
    esg_submission_id: Mapped[Optional[str]] = mapped_column(String(100))
    esg_core_id: Mapped[Optional[str]] = mapped_column(String(100))
    last_submitted_at: Mapped[Optional[datetime]]
    api_attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    api_last_error: Mapped[Optional[str]] = mapped_column(Text)
    fda_case_number: Mapped[Optional[str]] = mapped_column(String(100))
    acknowledgment_date: Mapped[Optional[datetime]]
    exported_at: Mapped[Optional[datetime]]
    exported_xml_path: Mapped[Optional[str]] = mapped_column(String(500))
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    reporters: Mapped[list["ReporterRow"]] = relationship(
        back_populates="case", cascade="all, delete-orphan", order_by="ReporterRow.sort_order"
    )
    reactions: Mapped[list["ReactionRow"]] = relationship(
        back_populates="case", cascade="all, delete-orphan", order_by="ReactionRow.sort_order"
    )
    drugs: Mapped[list["DrugRow"]] = relationship(
        back_populates="case", cascade="all, delete-orphan", order_by="DrugRow.sort_order"
    )


class ReporterRow(Base):
    __tablename__ = "case_reporters"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), index=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    title: Mapped[Optional[str]] = mapped_column(String(50))
    given_name: Mapped[Optional[str]] = mapped_column(String(100))
    family_name: Mapped[Optional[str]] = mapped_column(String(100))
    qualification: Mapped[Optional[int]]
    organization: Mapped[Optional[str]] = mapped_column(String(255))
    department: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    postcode: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(2))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    case: Mapped[CaseRow] = relationship(back_populates="reporters")


class ReactionRow(Base):
    __tablename__ = "case_reactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), index=True)
    reaction_term: Mapped[str] = mapped_column(String(255), default="")
    meddra_code: Mapped[Optional[str]] = mapped_column(String(20))
    meddra_version: Mapped[Optional[str]] = mapped_column(String(10))
    start_date: Mapped[Optional[date]]
    end_date: Mapped[Optional[date]]
    serious_death: Mapped[bool] = mapped_column(Boolean, default=False)
    serious_life_threat: Mapped[bool] = mapped_column(Boolean, default=False)
    serious_hospitalization: Mapped[bool] = mapped_column(Boolean, default=False)
    serious_disability: Mapped[bool] = mapped_column(Boolean, default=False)
    serious_congenital: Mapped[bool] = mapped_column(Boolean, default=False)
    serious_other: Mapped[bool] = mapped_column(Boolean, default=False)
    outcome: Mapped[Optional[int]]
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    case: Mapped[CaseRow] = relationship(back_populates="reactions")


class DrugRow(Base):
    __tablename__ = "case_drugs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), index=True)
    characterization: Mapped[int]
    product_name: Mapped[str] = mapped_column(String(255), default="")
    mpid: Mapped[Optional[str]] = mapped_column(String(100))
    indication: Mapped[Optional[str]] = mapped_column(String(255))
    indication_code: Mapped[Optional[str]] = mapped_column(String(20))
    start_date: Mapped[Optional[date]]
    end_date: Mapped[Optional[date]]
    action_taken: Mapped[Optional[int]]
    dechallenge: Mapped[Optional[int]]
    rechallenge: Mapped[Optional[int]]
    additional_info: Mapped[Optional[str]] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    case: Mapped[CaseRow] = relationship(back_populates="drugs")
    substances: Mapped[list["SubstanceRow"]] = relationship(
        back_populates="drug", cascade="all, delete-orphan", order_by="SubstanceRow.sort_order"
    )
    dosages: Mapped[list["DosageRow"]] = relationship(
        back_populates="drug", cascade="all, delete-orphan", order_by="DosageRow.sort_order"
    )


class SubstanceRow(Base):
    __tablename__ = "drug_substances"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    drug_id: Mapped[int] = mapped_column(ForeignKey("case_drugs.id", ondelete="CASCADE"), index=True)
    substance_name: Mapped[Optional[str]] = mapped_column(String(255))
    substance_code: Mapped[Optional[str]] = mapped_column(String(100))
    strength: Mapped[Optional[float]]
    strength_unit: Mapped[Optional[str]] = mapped_column(String(50))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    drug: Mapped[DrugRow] = relationship(back_populates="substances")


class DosageRow(Base):
    __tablename__ = "drug_dosages"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    drug_id: Mapped[int] = mapped_column(ForeignKey("case_drugs.id", ondelete="CASCADE"), index=True)
    dose: Mapped[Optional[float]]
    dose_unit: Mapped[Optional[str]] = mapped_column(String(50))
    num_units: Mapped[Optional[float]]
    interval_unit: Mapped[Optional[str]] = mapped_column(String(50))
    dosage_text: Mapped[Optional[str]] = mapped_column(Text)
    pharma_form: Mapped[Optional[str]] = mapped_column(String(100))
    route: Mapped[Optional[str]] = mapped_column(String(50))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    drug: Mapped[DrugRow] = relationship(back_populates="dosages")


class SubmissionBatchRow(Base):
    __tablename__ = "submission_batches"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_number: Mapped[str] = mapped_column(String(50), unique=True)
    batch_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(32), index=True)
    case_count: Mapped[int] = mapped_column(Integer, default=0)
    valid_case_count: Mapped[int] = mapped_column(Integer, default=0)
    invalid_case_count: Mapped[int] = mapped_column(Integer, default=0)
    submission_mode: Mapped[Optional[str]] = mapped_column(String(20))
    xml_filename: Mapped[Optional[str]] = mapped_column(String(255))
    xml_file_path: Mapped[Optional[str]] = mapped_column(String(500))
    esg_submission_id: Mapped[Optional[str]] = mapped_column(String(100))
    esg_core_id: Mapped[Optional[str]] = mapped_column(String(100))
    submitted_at: Mapped[Optional[datetime]]
    acknowledged_at: Mapped[Optional[datetime]]
    ack_type: Mapped[Optional[str]] = mapped_column(String(20))
    ack_details: Mapped[Optional[str]] = mapped_column(Text)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    cases: Mapped[list["BatchCaseRow"]] = relationship(
        back_populates="batch", cascade="all, delete-orphan", order_by="BatchCaseRow.id"
    )


class BatchCaseRow(Base):
    __tablename__ = "batch_cases"
    __table_args__ = (UniqueConstraint("batch_id", "case_id", name="uq_batch_case"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("submission_batches.id", ondelete="CASCADE"), index=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id"), index=True)
    validation_status: Mapped[str] = mapped_column(String(20), default=BatchCaseStatus.PENDING.value)
    validation_errors: Mapped[list[str]] = mapped_column(PydanticJson(list[str]), default=list)
    added_at: Mapped[datetime] = mapped_column(default=utc_now)

    batch: Mapped[SubmissionBatchRow] = relationship(back_populates="cases")


class BatchSequenceRow(Base):
    """Date-scoped counter behind human-readable batch numbers."""

    __tablename__ = "batch_sequences"

    date_key: Mapped[str] = mapped_column(String(8), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)


class ApiSubmissionAttemptRow(Base):
    """Append-only record of one protocol run; only the terminal and ack fields are ever updated."""

    __tablename__ = "api_submission_attempts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    case_id: Mapped[Optional[str]] = mapped_column(ForeignKey("cases.id"), index=True)
    batch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("submission_batches.id"), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    environment: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20))
    esg_submission_id: Mapped[Optional[str]] = mapped_column(String(100))
    esg_core_id: Mapped[Optional[str]] = mapped_column(String(100))
    error: Mapped[Optional[str]] = mapped_column(Text)
    error_category: Mapped[Optional[str]] = mapped_column(String(20))
    http_status_code: Mapped[Optional[int]]
    started_at: Mapped[datetime] = mapped_column(default=utc_now)
    completed_at: Mapped[Optional[datetime]]
    ack_type: Mapped[Optional[str]] = mapped_column(String(10))
    ack_timestamp: Mapped[Optional[datetime]]
    ack_fda_core_id: Mapped[Optional[str]] = mapped_column(String(100))
    ack_errors: Mapped[Optional[list[AckError]]] = mapped_column(PydanticJson(list[AckError]))


class SubmissionHistoryRow(Base):
    __tablename__ = "submission_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    case_id: Mapped[Optional[str]] = mapped_column(ForeignKey("cases.id"), index=True)
    batch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("submission_batches.id", ondelete="SET NULL"), index=True
    )
    event_type: Mapped[str] = mapped_column(String(50))
    details: Mapped[dict[str, Any]] = mapped_column(PydanticJson(dict[str, Any]), default=dict)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)
