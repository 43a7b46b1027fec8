"""Clock and timezone helpers for familycal."""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo

logger = logging.getLogger(__name__)

# Household timezone when nothing is configured
DEFAULT_TIMEZONE = "UTC"


def now_utc() -> datetime.datetime:
    """Return current UTC time with tzinfo.

    Can be overridden for testing via the FAMILYCAL_TEST_TIME environment
    variable (ISO 8601, e.g. "2025-10-27T08:20:00-07:00"). Naive values are
    taken to be UTC.
    """
    test_time = os.environ.get("FAMILYCAL_TEST_TIME")
    if test_time:
        try:
            from dateutil import parser as date_parser

            dt = date_parser.isoparse(test_time)
            if dt.tzinfo is not None:
                return dt.astimezone(datetime.timezone.utc)
            return dt.replace(tzinfo=datetime.timezone.utc)
        except Exception as e:
            logger.warning("Failed to parse FAMILYCAL_TEST_TIME=%r: %s", test_time, e)

    return datetime.datetime.now(datetime.timezone.utc)


def get_default_timezone(fallback: str = DEFAULT_TIMEZONE) -> str:
    """Get the household timezone from the environment, validated.

    Checks FAMILYCAL_DEFAULT_TIMEZONE and falls back to ``fallback`` when it
    is unset or not a known IANA zone.
    """
    timezone = os.environ.get("FAMILYCAL_DEFAULT_TIMEZONE", "").strip() or fallback
    return validate_timezone(timezone, fallback)


def validate_timezone(timezone: str, fallback: str = DEFAULT_TIMEZONE) -> str:
    """Return ``timezone`` if zoneinfo knows it, else ``fallback``."""
    try:
        zoneinfo.ZoneInfo(timezone)
        return timezone
    except Exception:
        logger.warning("Invalid timezone %r, falling back to %r", timezone, fallback)
        return fallback
