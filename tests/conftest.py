# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Shared fixtures: a throwaway SQLite store and a factory for complete, valid cases."""

import os
from collections.abc import Callable, Iterator
from datetime import date
from pathlib import Path
from typing import Any

import pytest

from coreason_faers_submission.config import EsgSettings
from coreason_faers_submission.domain.enums import CaseStatus
from coreason_faers_submission.domain.models import Case, Dosage, Drug, Reaction, Reporter
from coreason_faers_submission.storage.database import Database
from coreason_faers_submission.storage.repositories import CaseRepository

VALID_NARRATIVE = (
    "Patient developed a severe generalised rash three days after starting the suspect drug "
    "and was admitted to hospital for observation."
)


def build_case(case_id: str = "CASE-20250110-0001", **overrides: Any) -> Case:
    """A case that passes every blocking validation rule and generates cleanly."""
    data: dict[str, Any] = {
        "id": case_id,
        "safety_report_id": f"US-ACME-{case_id}",
        "report_type": 1,
        "initial_or_followup": 1,
        "receipt_date": date(2025, 1, 10),
        "receive_date": date(2025, 1, 12),
        "sender_type": 1,
        "sender_organization": "Acme Pharma",
        "sender_given_name": "Jane",
        "sender_family_name": "Doe",
        "sender_email": "safety@acme.example",
        "patient_initials": "JD",
        "patient_sex": 2,
        "patient_age": 45.0,
        "patient_age_unit": "Year",
        "patient_weight": 70.5,
        "case_narrative": VALID_NARRATIVE,
        "reporters": [
            Reporter(
                is_primary=True,
                qualification=1,
                given_name="Ann",
                family_name="Smith",
                email="ann@clinic.example",
            )
        ],
        "reactions": [
            Reaction(
                reaction_term="Rash",
                meddra_code="10037844",
                meddra_version="27.0",
                start_date=date(2025, 1, 5),
                serious_hospitalization=True,
                outcome=1,
            )
        ],
        "drugs": [
            Drug(
                characterization=1,
                product_name="Examplamab",
                indication="Psoriasis",
                dosages=[Dosage(dose=50.0, dose_unit="mg", route="Oral")],
            )
        ],
    }
    data.update(overrides)
    return Case(**data)


@pytest.fixture(autouse=True)
def isolated_esg_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep FAERS_ESG_* variables from the calling shell out of the settings under test."""
    for name in list(os.environ):
        if name.upper().startswith("FAERS_ESG_"):
            monkeypatch.delenv(name)


@pytest.fixture(name="case_factory")
def case_factory() -> Callable[..., Case]:
    """Factory for valid cases; keyword arguments override individual fields."""
    return build_case


@pytest.fixture(name="database")
def database(tmp_path: Path) -> Iterator[Database]:
    """A file-backed SQLite store with the schema created."""
    db = Database(f"sqlite:///{tmp_path / 'faers.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture(name="store_case")
def store_case(database: Database) -> Callable[..., Case]:
    """Persist a valid case, optionally forcing it into a given status."""

    def _store(case_id: str = "CASE-20250110-0001", status: CaseStatus = CaseStatus.DRAFT, **overrides: Any) -> Case:
        repo = CaseRepository()
        with database.session() as session:
            repo.add(session, build_case(case_id, **overrides))
            if status is not CaseStatus.DRAFT:
                repo.update_fields(session, case_id, status=status.value)
            return repo.get(session, case_id)

    return _store


@pytest.fixture(name="settings")
def settings() -> EsgSettings:
    """Configured test-environment settings with a fixed API root."""
    return EsgSettings(
        environment="test",
        client_id="client-123",
        client_secret="secret-456",
        sender_id="ACME-ESG",
        base_url="https://esg.example/v1",
        token_url="https://esg.example/oauth2/token",
    )
