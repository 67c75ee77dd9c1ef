# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Tests for the XML element tree, value formatting and code tables."""

import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone
from itertools import permutations

import pytest

from coreason_faers_submission.codec import tables
from coreason_faers_submission.codec.tree import Element, escape_xml, format_date, format_number, format_timestamp
from coreason_faers_submission.domain.models import Reaction
from coreason_faers_submission.exceptions import CodeMappingError

SPECIAL = "Dose <5mg> & \"daily\" isn't enough"


class TestFormatting:
    """Scalar formatting helpers."""

    def test_escape_all_special_characters(self) -> None:
        """All five special characters are replaced, ampersand first."""
        assert escape_xml(SPECIAL) == "Dose &lt;5mg&gt; &amp; &quot;daily&quot; isn&apos;t enough"

    def test_escape_leaves_plain_text(self) -> None:
        """Text without special characters is unchanged."""
        assert escape_xml("Plain narrative 123") == "Plain narrative 123"

    def test_format_date(self) -> None:
        """Dates and datetimes render as YYYYMMDD."""
        assert format_date(date(2025, 1, 5)) == "20250105"
        assert format_date(datetime(2025, 1, 5, 23, 59)) == "20250105"

    def test_format_timestamp_converts_to_utc(self) -> None:
        """Aware timestamps are converted to UTC; naive ones are taken as UTC."""
        eastern = timezone(timedelta(hours=-5))
        assert format_timestamp(datetime(2025, 1, 5, 20, 30, 15, tzinfo=eastern)) == "20250106013015"
        assert format_timestamp(datetime(2025, 1, 5, 20, 30, 15)) == "20250105203015"

    @pytest.mark.parametrize("value, expected", [(70.0, "70"), (70.5, "70.5"), (3, "3"), (0.25, "0.25")])
    def test_format_number(self, value: float, expected: str) -> None:
        """Whole floats lose the trailing .0."""
        assert format_number(value) == expected


class TestElement:
    """Serialization of the element tree."""

    def test_none_attributes_are_dropped(self) -> None:
        """An attribute given as None does not appear."""
        element = Element("code", {"code": "C1", "codeSystem": None})
        assert element.render(declaration=False) == '<code code="C1"/>\n'

    def test_add_text_skips_empty_values(self) -> None:
        """Empty text produces no child."""
        name = Element("name")
        assert name.add_text("given", None) is None
        assert name.add_text("family", "") is None
        assert name.children == []
        assert name.render(declaration=False) == "<name/>\n"

    def test_text_and_attributes_escaped_exactly_once(self) -> None:
        """Values are stored raw and the parsed document gives them back unchanged."""
        root = Element("root", {"note": SPECIAL})
        root.add("value", text=SPECIAL)
        xml = root.render()
        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>\n')
        assert "&amp;amp;" not in xml
        parsed = ET.fromstring(xml.encode("utf-8"))
        assert parsed.get("note") == SPECIAL
        assert parsed.find("value").text == SPECIAL

    def test_children_keep_insertion_order(self) -> None:
        """Element order follows the order of construction."""
        root = Element("root")
        for tag in ("c", "a", "b"):
            root.add(tag)
        assert [child.tag for child in ET.fromstring(root.render().encode("utf-8"))] == ["c", "a", "b"]

    def test_numeric_attributes_are_formatted(self) -> None:
        """Numbers go through the same formatting as quantities."""
        element = Element("center", {"value": 50.0, "unit": "mg"})
        assert element.render(declaration=False) == '<center value="50" unit="mg"/>\n'

    def test_render_is_deterministic(self) -> None:
        """Two identical trees render to the same text."""

        def build() -> Element:
            root = Element("root", {"b": "2", "a": "1"})
            root.add("child", text="x").add("grandchild")
            return root

        assert build().render() == build().render()


class TestCodeTables:
    """Static business-to-wire code tables."""

    def test_route_lookup_and_fallback(self) -> None:
        """Unknown routes use the explicit Other bucket."""
        assert tables.ROUTE_OF_ADMINISTRATION.lookup("Oral", "route") == "C38288"
        assert tables.ROUTE_OF_ADMINISTRATION.lookup("Intrathecal", "route") == "C38290"

    def test_unmapped_code_without_fallback_raises(self) -> None:
        """Tables without a fallback refuse unknown codes."""
        with pytest.raises(CodeMappingError, match="Unmapped patient sex code 9 for patient_sex") as excinfo:
            tables.PATIENT_SEX.lookup(9, "patient_sex")
        assert excinfo.value.table == "patient sex"
        assert excinfo.value.code == 9

    def test_reverse_lookup(self) -> None:
        """Wire codes map back to business codes."""
        assert tables.AGE_UNIT.reverse("a") == "Year"
        assert tables.DRUG_CHARACTERIZATION.reverse("concomitant") == 2
        assert tables.PATIENT_SEX.reverse("XX") is None
        assert 2 in tables.PATIENT_SEX

    def test_identity_tables_cover_their_range(self) -> None:
        """Numeric E2B codes render as their own digits."""
        assert tables.REACTION_OUTCOME.lookup(0, "outcome") == "0"
        assert tables.REACTION_OUTCOME.lookup(5, "outcome") == "5"
        with pytest.raises(CodeMappingError):
            tables.REACTION_OUTCOME.lookup(6, "outcome")

    def test_seriousness_codes_fixed_order(self) -> None:
        """Codes follow the enumeration order regardless of which flags are set."""
        reaction = Reaction(
            reaction_term="x", serious_other=True, serious_death=True, serious_hospitalization=True
        )
        assert tables.seriousness_codes(reaction) == ["death", "hospitalization", "otherMedicallyImportant"]
        assert tables.seriousness_codes(Reaction(reaction_term="x")) == []

    def test_seriousness_flags_ignore_code_order(self) -> None:
        """Any permutation of a code set expands to the same booleans."""
        codes = ["disability", "lifeThreatening", "congenitalAnomaly"]
        expanded = {tuple(sorted(tables.seriousness_flags(list(p)).items())) for p in permutations(codes)}
        assert len(expanded) == 1
        flags = tables.seriousness_flags(codes)
        assert flags == {
            "serious_death": False,
            "serious_life_threat": True,
            "serious_hospitalization": False,
            "serious_disability": True,
            "serious_congenital": True,
            "serious_other": False,
        }
        assert tables.seriousness_codes(Reaction(reaction_term="x", **flags)) == [
            "lifeThreatening",
            "disability",
            "congenitalAnomaly",
        ]
