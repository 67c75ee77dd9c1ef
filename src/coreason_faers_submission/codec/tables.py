# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Static lookup tables mapping business codes to E2B(R3) wire codes."""

from collections.abc import Hashable, Mapping
from typing import Final, Generic, Optional, TypeVar

from coreason_faers_submission.domain.models import Reaction
from coreason_faers_submission.exceptions import CodeMappingError

K = TypeVar("K", bound=Hashable)


class CodeTable(Generic[K]):
    """
    A closed mapping from business code to wire code.

    Lookups of unknown codes raise ``CodeMappingError`` unless the table declares an
    explicit ``fallback``.
    """

    def __init__(self, name: str, mapping: Mapping[K, str], fallback: Optional[str] = None) -> None:
        self.name = name
        self.mapping = dict(mapping)
        self.fallback = fallback
        self._reverse = {wire: code for code, wire in self.mapping.items()}

    def lookup(self, code: K, field: str) -> str:
        try:
            return self.mapping[code]
        except KeyError:
            if self.fallback is not None:
                return self.fallback
            raise CodeMappingError(self.name, code, field) from None

    def reverse(self, wire_code: str) -> Optional[K]:
        return self._reverse.get(wire_code)

    def __contains__(self, code: object) -> bool:
        return code in self.mapping


def _identity(name: str, codes: range) -> CodeTable[int]:
    return CodeTable(name, {code: str(code) for code in codes})


ROUTE_OF_ADMINISTRATION: Final[CodeTable[str]] = CodeTable(
    "route of administration",
    {
        "Oral": "C38288",
        "Intravenous": "C38276",
        "Intramuscular": "C38273",
        "Subcutaneous": "C38299",
        "Topical": "C38304",
        "Inhalation": "C38216",
        "Transdermal": "C38305",
        "Rectal": "C38295",
        "Other": "C38290",
    },
    fallback="C38290",
)

AGE_UNIT: Final[CodeTable[str]] = CodeTable(
    "age unit",
    {"Year": "a", "Month": "mo", "Week": "wk", "Day": "d", "Hour": "h"},
)
DEFAULT_AGE_UNIT: Final[str] = "Year"

PATIENT_SEX: Final[CodeTable[int]] = CodeTable("patient sex", {0: "UN", 1: "M", 2: "F"})

DRUG_CHARACTERIZATION: Final[CodeTable[int]] = CodeTable(
    "drug characterization",
    {1: "suspect", 2: "concomitant", 3: "interacting"},
)

REPORT_TYPE: Final[CodeTable[int]] = _identity("report type", range(1, 5))
REPORTER_QUALIFICATION: Final[CodeTable[int]] = _identity("reporter qualification", range(1, 6))
SENDER_TYPE: Final[CodeTable[int]] = _identity("sender type", range(1, 7))
REACTION_OUTCOME: Final[CodeTable[int]] = _identity("reaction outcome", range(0, 6))
ACTION_TAKEN: Final[CodeTable[int]] = _identity("action taken", range(1, 7))
CHALLENGE_RESULT: Final[CodeTable[int]] = _identity("challenge result", range(1, 5))

# Closed seriousness vocabulary in its fixed enumeration order.
SERIOUSNESS_CRITERIA: Final[tuple[tuple[str, str], ...]] = (
    ("serious_death", "death"),
    ("serious_life_threat", "lifeThreatening"),
    ("serious_hospitalization", "hospitalization"),
    ("serious_disability", "disability"),
    ("serious_congenital", "congenitalAnomaly"),
    ("serious_other", "otherMedicallyImportant"),
)


def seriousness_codes(reaction: Reaction) -> list[str]:
    """Collapse the six seriousness booleans into the ordered code set."""
    return [code for attribute, code in SERIOUSNESS_CRITERIA if getattr(reaction, attribute)]


def seriousness_flags(codes: list[str]) -> dict[str, bool]:
    """Expand a seriousness code set back into the six booleans."""
    present = set(codes)
    return {attribute: code in present for attribute, code in SERIOUSNESS_CRITERIA}
