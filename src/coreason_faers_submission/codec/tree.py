# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Minimal ordered element tree with a deterministic serializer."""

from datetime import date, datetime, timezone
from typing import Optional, Union

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
INDENT = "  "

AttributeValue = Union[str, int, float, None]

# Order matters: '&' must be replaced first so entity ampersands are not re-escaped.
_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&apos;"),
)


def escape_xml(value: str) -> str:
    """Escape the five XML special characters. The serializer is the only caller."""
    for raw, entity in _ESCAPES:
        value = value.replace(raw, entity)
    return value


def format_date(value: date) -> str:
    """Render a date in the compact E2B form ``YYYYMMDD``."""
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%Y%m%d")


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as ``YYYYMMDDHHMMSS`` in UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y%m%d%H%M%S")


def format_number(value: Union[int, float]) -> str:
    """Render a quantity without a trailing ``.0`` for whole numbers."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _stringify(value: AttributeValue) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_number(value)
    return str(value)


class Element:
    """
    An XML element whose attributes and children keep insertion order.

    Text and attribute values are stored raw and escaped once, by ``render``.
    Attributes given as ``None`` are dropped so absent fields never produce empty markup.
    """

    __slots__ = ("tag", "attributes", "text", "children")

    def __init__(
        self,
        tag: str,
        attributes: Optional[dict[str, AttributeValue]] = None,
        text: Optional[str] = None,
    ) -> None:
        self.tag = tag
        self.attributes: dict[str, str] = {
            name: _stringify(value) for name, value in (attributes or {}).items() if value is not None
        }
        self.text = text
        self.children: list["Element"] = []

    def append(self, child: Optional["Element"]) -> Optional["Element"]:
        if child is not None:
            self.children.append(child)
        return child

    def add(
        self,
        tag: str,
        attributes: Optional[dict[str, AttributeValue]] = None,
        text: Optional[str] = None,
    ) -> "Element":
        """Create a child element, append it and return it."""
        child = Element(tag, attributes, text)
        self.children.append(child)
        return child

    def add_text(self, tag: str, text: Optional[str]) -> Optional["Element"]:
        """Append a text-only child, or nothing when ``text`` is empty."""
        if not text:
            return None
        return self.add(tag, text=text)

    def _open_tag(self) -> str:
        attrs = "".join(f' {name}="{escape_xml(value)}"' for name, value in self.attributes.items())
        return f"<{self.tag}{attrs}"

    def _render_into(self, lines: list[str], depth: int) -> None:
        pad = INDENT * depth
        opening = self._open_tag()
        if not self.children:
            if self.text is None:
                lines.append(f"{pad}{opening}/>")
            else:
                lines.append(f"{pad}{opening}>{escape_xml(self.text)}</{self.tag}>")
            return

        lines.append(f"{pad}{opening}>")
        for child in self.children:
            child._render_into(lines, depth + 1)
        lines.append(f"{pad}</{self.tag}>")

    def render(self, declaration: bool = True) -> str:
        """Serialize the tree; identical trees always produce identical text."""
        lines = [XML_DECLARATION] if declaration else []
        self._render_into(lines, 0)
        return "\n".join(lines) + "\n"
