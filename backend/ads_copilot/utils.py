"""
Shared utility functions.
"""

import logging
import math
import uuid as uuid_mod
from datetime import datetime, timezone
from typing import Any, Optional
from fastapi import HTTPException

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def safe_div(numerator: float, denominator: float) -> float:
    """Ratio with a zero guard. Never NaN, never raises."""
    if not denominator:
        return 0.0
    value = numerator / denominator
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def to_number(value: Any, default: float = 0.0) -> float:
    """Coerce API values (the REST API sends int64 as strings) to float."""
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(number) else number


def micros_to_units(value: Any) -> float:
    """Google Ads money fields are in micros (1/1,000,000 of the currency unit)."""
    return to_number(value) / MICROS_PER_UNIT


def pick(row: dict, *keys: str, default: Any = None) -> Any:
    """First present key from a row, so camelCase REST and snake_case payloads both work."""
    if not isinstance(row, dict):
        return default
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return default
