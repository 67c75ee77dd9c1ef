# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Centralized logging configuration using loguru."""

import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from loguru import logger

# Ensure logs directory exists
LOG_DIR = Path(os.getenv("FAERS_LOG_DIR", "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "app.log"

_EMAIL_PATTERN = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")

# Remove default handler
logger.remove()

# Sink 1: Stderr (Console)
logger.add(
    sys.stderr,
    level=os.getenv("LOG_LEVEL", "INFO"),
    format=(
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    ),
)

# Sink 2: File (JSON); bound audit fields (case_id, batch_id, ...) land in record.extra
logger.add(
    LOG_FILE,
    rotation="500 MB",
    retention="10 days",
    serialize=True,
    enqueue=True,
    level="DEBUG",
)


def mask_pii(value: Optional[Any]) -> str:
    """
    Mask personally identifiable text before it reaches a log line.

    E-mail addresses keep their first character and domain; any other value keeps
    only its first character.

    Args:
        value: The value to mask. ``None`` and empty strings become ``"<none>"``.

    Returns:
        The masked representation.
    """
    if value is None:
        return "<none>"
    text = str(value)
    if not text:
        return "<none>"
    if "@" in text:
        return _EMAIL_PATTERN.sub(r"\1***@\2", text)
    return text[0] + "*" * (len(text) - 1)


@contextmanager
def audit_context(**fields: Any) -> Iterator[None]:
    """Bind audit fields (e.g. ``case_id``, ``batch_id``) to every log record in the block."""
    with logger.contextualize(**fields):
        yield


# Export the configured logger
__all__ = ["audit_context", "logger", "mask_pii"]
