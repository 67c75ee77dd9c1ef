# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Identifiers: date-scoped batch numbers (``BATCH-YYYYMMDD-TYP-NNN``) and case ids."""

import re
import uuid
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from coreason_faers_submission.domain.enums import BatchType
from coreason_faers_submission.storage.schema import BatchSequenceRow
from coreason_faers_submission.utils.clock import utc_now

BATCH_NUMBER_PATTERN = re.compile(r"^BATCH-(\d{8})-([A-Z]{3})-(\d{3,})$")


def format_batch_number(day: date, batch_type: BatchType, sequence: int) -> str:
    return f"BATCH-{day.strftime('%Y%m%d')}-{batch_type.number_prefix}-{sequence:03d}"


def parse_batch_number(batch_number: str) -> tuple[str, str, int]:
    """
    Split a batch number into its date key, type prefix and sequence.

    Raises:
        ValueError: If the number is not in the expected format.
    """
    match = BATCH_NUMBER_PATTERN.match(batch_number)
    if match is None:
        raise ValueError(f"Malformed batch number: {batch_number}")
    return match.group(1), match.group(2), int(match.group(3))


def next_batch_number(session: Session, batch_type: BatchType, day: Optional[date] = None) -> str:
    """
    Reserve the next sequence value for ``day`` and format it.

    The counter is shared by all batch types and starts again at 1 on a new date.
    The row is locked for the rest of the caller's transaction where the backend
    supports ``SELECT ... FOR UPDATE``.
    """
    day = day or utc_now().date()
    key = day.strftime("%Y%m%d")
    row = session.get(BatchSequenceRow, key, with_for_update=True)
    if row is None:
        row = BatchSequenceRow(date_key=key, last_value=0)
        session.add(row)
    row.last_value += 1
    session.flush()
    return format_batch_number(day, batch_type, row.last_value)


def new_case_id(day: Optional[date] = None) -> str:
    """A fresh case identifier, ``CASE-YYYYMMDD-XXXXXXXX``."""
    day = day or utc_now().date()
    return f"CASE-{day.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"
