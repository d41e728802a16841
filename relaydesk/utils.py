"""
Utility functions for the relay desk service.
"""

import logging
import math
import re
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

# Clock values above this are epoch milliseconds rather than seconds
_MILLISECOND_THRESHOLD = 10 ** 12


def to_unix_timestamp(value: datetime, default_timezone: str = "UTC") -> int:
    """
    Normalize a scheduled time to epoch seconds.

    Args:
        value: Scheduled time; naive values are read in default_timezone
        default_timezone: IANA zone name for naive datetimes

    Returns:
        Whole epoch seconds (fractions are floored)
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(default_timezone))
    return math.floor(value.timestamp())


def normalize_epoch(value) -> Optional[int]:
    """Coerce a clock reading to epoch seconds, accepting millisecond values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable epoch value: {value!r}")
        return None
    if number > _MILLISECOND_THRESHOLD:
        number = number / 1000
    return int(number)


def new_request_id(prefix: str) -> str:
    """Short correlation id for one outbound call, e.g. 'send_3f9a1c2e'."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


@lru_cache(maxsize=8)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def matches_order_error(text: Optional[str], pattern: str) -> bool:
    """
    Check relay error text against the ordering-error signature.

    Args:
        text: Error text returned by the relay (may be None)
        pattern: Regular expression describing the signature

    Returns:
        True if the text reports a timestamp ordering rejection
    """
    if not text:
        return False
    return _compile(pattern).search(text) is not None
