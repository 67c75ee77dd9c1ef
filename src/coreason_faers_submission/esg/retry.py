# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Error classification and exponential backoff for retryable ESG errors."""

import random
from typing import Optional

from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.domain.enums import ErrorCategory


def backoff_delay(
    attempt: int,
    base: float = FaersConfig.RETRY_BASE_DELAY_SECONDS,
    cap: float = FaersConfig.RETRY_MAX_DELAY_SECONDS,
) -> float:
    """Deterministic part of the delay: ``min(cap, base * 2**attempt)``."""
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    return min(cap, base * (2**attempt))


def compute_retry_delay(
    attempt: int,
    base: float = FaersConfig.RETRY_BASE_DELAY_SECONDS,
    cap: float = FaersConfig.RETRY_MAX_DELAY_SECONDS,
    jitter: float = FaersConfig.RETRY_MAX_JITTER_SECONDS,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Seconds to wait before retry number ``attempt`` (0-based).

    Args:
        attempt: Zero-based retry index.
        base: Delay for the first retry.
        cap: Upper bound of the exponential part.
        jitter: Maximum random seconds added on top.
        rng: Random source; pass a seeded ``random.Random`` for reproducible delays.

    Returns:
        ``min(cap, base * 2**attempt) + uniform(0, jitter)``.
    """
    rng = rng or random
    return backoff_delay(attempt, base, cap) + rng.uniform(0, jitter)


def classify_http_status(status: int) -> ErrorCategory:
    """Map an HTTP status code onto the error taxonomy."""
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (400, 422):
        return ErrorCategory.VALIDATION
    if status >= 500:
        return ErrorCategory.SERVER_ERROR
    return ErrorCategory.UNKNOWN
