from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any, Callable

import pytest
from pydantic import SecretStr

from familycal.calendar.models import FeedSettings
from familycal.calendar.rrule_expander import RecurrenceExpander, compute_window
from familycal.domain.members import MemberDirectory

# Frozen "now" shared by expansion and refresh tests; window is
# 2025-05-15T00:00Z .. 2026-06-15T00:00Z
FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)

TEST_SECRET = "s3cret-proxy-key"
TEST_FEED_URL = "https://proxy.familycal.test/ical"


def build_calendar(*events: str) -> str:
    """Wrap VEVENT blocks in a minimal VCALENDAR document."""
    body = "\n".join(block.strip() for block in events)
    return (
        "BEGIN:VCALENDAR\n"
        "VERSION:2.0\n"
        "PRODID:-//familycal test//EN\n"
        "CALSCALE:GREGORIAN\n"
        f"{body}\n"
        "END:VCALENDAR\n"
    )


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear FAMILYCAL_* variables so the host environment never leaks into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("FAMILYCAL_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def window(fixed_now: datetime) -> tuple[datetime, datetime]:
    """Display window around FIXED_NOW in UTC."""
    return compute_window(fixed_now, "UTC")


@pytest.fixture
def expander() -> RecurrenceExpander:
    return RecurrenceExpander(default_timezone="UTC")


@pytest.fixture
def ics_builder() -> Callable[..., str]:
    return build_calendar


@pytest.fixture
def feed_settings() -> FeedSettings:
    """Feed settings with fast retries for tests."""
    return FeedSettings(
        url=TEST_FEED_URL,
        shared_secret=SecretStr(TEST_SECRET),
        request_timeout=5,
        max_retries=2,
        retry_backoff_factor=1.5,
    )


@pytest.fixture
def member_directory() -> MemberDirectory:
    """Household with overlapping names to exercise longest-prefix matching."""
    return MemberDirectory.from_config(
        [
            {"name": "Mom", "color": "#e11d48", "initials": "M"},
            {"name": "Dad", "color": "#2563eb", "initials": "D"},
            {"name": "Anna", "color": "#f59e0b"},
            {"name": "Anna Lee", "color": "#16a34a", "initials": "AL"},
        ]
    )


# ==================== ICS Test Data Fixtures ====================


@pytest.fixture
def sample_ics_simple() -> str:
    """One timed event inside the window, organized by Dad."""
    return build_calendar(
        """
BEGIN:VEVENT
UID:dentist-001@familycal.test
DTSTART:20250620T150000Z
DTEND:20250620T160000Z
SUMMARY:Dentist appointment
DESCRIPTION:Bring insurance card
ORGANIZER;CN=Dad:mailto:dad@example.com
END:VEVENT
"""
    )


@pytest.fixture
def sample_ics_recurring() -> str:
    """Daily piano practice, five instances starting 2025-06-16 17:00 UTC."""
    return build_calendar(
        """
BEGIN:VEVENT
UID:piano-002@familycal.test
DTSTART:20250616T170000Z
DTEND:20250616T173000Z
SUMMARY:Anna: piano practice
RRULE:FREQ=DAILY;COUNT=5
END:VEVENT
"""
    )


@pytest.fixture
def sample_ics_exdate() -> str:
    """Weekly swim lesson on Mondays, second instance excluded."""
    return build_calendar(
        """
BEGIN:VEVENT
UID:swim-003@familycal.test
DTSTART:20250616T140000Z
DTEND:20250616T150000Z
SUMMARY:Swim lesson
RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=4
EXDATE:20250623T140000Z
END:VEVENT
"""
    )


@pytest.fixture
def sample_ics_overrides() -> str:
    """Weekly series with one moved instance and one cancelled instance."""
    return build_calendar(
        """
BEGIN:VEVENT
UID:soccer-004@familycal.test
DTSTART:20250617T230000Z
DTEND:20250618T000000Z
SUMMARY:Soccer practice
RRULE:FREQ=WEEKLY;COUNT=4
END:VEVENT
""",
        """
BEGIN:VEVENT
UID:soccer-004@familycal.test
RECURRENCE-ID:20250624T230000Z
DTSTART:20250625T220000Z
DTEND:20250625T230000Z
SUMMARY:Soccer practice (moved)
ORGANIZER;CN=Mom:mailto:mom@example.com
END:VEVENT
""",
        """
BEGIN:VEVENT
UID:soccer-004@familycal.test
RECURRENCE-ID:20250701T230000Z
DTSTART:20250701T230000Z
DTEND:20250702T000000Z
SUMMARY:Soccer practice
STATUS:CANCELLED
END:VEVENT
""",
    )
