"""Unit tests for familycal.calendar.rrule_expander."""

from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

import pytest

from familycal.calendar.exceptions import FeedParseError
from familycal.calendar.rrule_expander import (
    MAX_ITERATIONS_PER_SERIES,
    RecurrenceExpander,
    compute_window,
    resolve_timezone,
)

pytestmark = pytest.mark.unit

Window = tuple[datetime, datetime]


class TestComputeWindow:
    """Tests for the display window calculation."""

    def test_compute_window_when_utc_then_midnight_month_back_to_year_ahead(self) -> None:
        start, end = compute_window(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc), "UTC")

        assert start == datetime(2025, 5, 15, tzinfo=timezone.utc)
        assert end == datetime(2026, 6, 15, tzinfo=timezone.utc)

    def test_compute_window_when_household_zone_then_local_midnight(self) -> None:
        """03:00 UTC on the 1st is still the previous evening in New York."""
        start, end = compute_window(
            datetime(2025, 7, 1, 3, 0, tzinfo=timezone.utc), "America/New_York"
        )

        tz = ZoneInfo("America/New_York")
        assert start == datetime(2025, 5, 30, tzinfo=tz)
        assert end == datetime(2026, 6, 30, tzinfo=tz)

    def test_compute_window_when_month_end_then_clamped(self) -> None:
        start, _ = compute_window(datetime(2025, 3, 31, 9, 0, tzinfo=timezone.utc), "UTC")

        assert start == datetime(2025, 2, 28, tzinfo=timezone.utc)

    def test_resolve_timezone_when_unknown_then_utc(self) -> None:
        assert resolve_timezone("Not/AZone") is timezone.utc


class TestParseFailures:
    """Whole-feed parse failures raise and produce no partial results."""

    def test_expand_when_empty_feed_then_parse_error(self, expander: RecurrenceExpander, window: Window) -> None:
        with pytest.raises(FeedParseError):
            expander.expand("", *window)

    def test_expand_when_garbage_then_parse_error(self, expander: RecurrenceExpander, window: Window) -> None:
        with pytest.raises(FeedParseError):
            expander.expand("this is not a calendar", *window)

    def test_expand_when_not_vcalendar_then_parse_error(
        self, expander: RecurrenceExpander, window: Window
    ) -> None:
        text = "BEGIN:VEVENT\nUID:x\nDTSTART:20250620T150000Z\nSUMMARY:Loose\nEND:VEVENT\n"

        with pytest.raises(FeedParseError):
            expander.expand(text, *window)


class TestSingleEvents:
    """Tests for non-recurring components."""

    def test_expand_when_single_event_then_one_occurrence(
        self, expander: RecurrenceExpander, window: Window, sample_ics_simple: str
    ) -> None:
        occurrences = expander.expand(sample_ics_simple, *window)

        assert len(occurrences) == 1
        occurrence = occurrences[0]
        assert occurrence.id == "dentist-001@familycal.test"
        assert occurrence.title == "Dentist appointment"
        assert occurrence.start == datetime(2025, 6, 20, 15, 0, tzinfo=timezone.utc)
        assert occurrence.end == datetime(2025, 6, 20, 16, 0, tzinfo=timezone.utc)
        assert occurrence.all_day is False
        assert occurrence.description == "Bring insurance card"
        assert occurrence.source is not None

    def test_expand_when_single_event_outside_window_then_still_emitted(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:old-001
DTSTART:20200101T100000Z
SUMMARY:Long ago
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert [o.id for o in occurrences] == ["old-001"]

    def test_expand_when_no_uid_then_id_from_title_and_start(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
DTSTART:20250620T150000Z
SUMMARY:Bake sale
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert occurrences[0].id == "Bake sale-2025-06-20T15:00:00+00:00"

    def test_expand_when_no_dtstart_then_not_emitted(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:floating-idea
SUMMARY:Someday
END:VEVENT
"""
        )

        assert expander.expand(text, *window) == []

    def test_expand_when_duration_then_end_from_duration(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:haircut
DTSTART:20250620T150000Z
DURATION:PT45M
SUMMARY:Haircut
END:VEVENT
"""
        )

        occurrence = expander.expand(text, *window)[0]

        assert occurrence.end == occurrence.start + timedelta(minutes=45)

    def test_expand_when_timed_without_end_then_end_absent(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:reminder
DTSTART:20250620T150000Z
SUMMARY:Call grandma
END:VEVENT
"""
        )

        assert expander.expand(text, *window)[0].end is None

    def test_expand_when_all_day_then_midnight_in_default_zone(self, window: Window, ics_builder: Callable[..., str]) -> None:
        expander = RecurrenceExpander(default_timezone="Europe/Berlin")
        text = ics_builder(
            """
BEGIN:VEVENT
UID:birthday
DTSTART;VALUE=DATE:20250704
SUMMARY:Grandpa's birthday
END:VEVENT
"""
        )

        occurrence = expander.expand(text, *window)[0]

        tz = ZoneInfo("Europe/Berlin")
        assert occurrence.all_day is True
        assert occurrence.start == datetime(2025, 7, 4, tzinfo=tz)
        assert occurrence.end == datetime(2025, 7, 5, tzinfo=tz)

    def test_expand_when_duplicate_uids_then_second_skipped_with_warning(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        event = """
BEGIN:VEVENT
UID:dup-1
DTSTART:20250620T150000Z
SUMMARY:{title}
END:VEVENT
"""
        text = ics_builder(event.format(title="First"), event.format(title="Second"))
        warnings: list[str] = []

        occurrences = expander.expand(text, *window, warnings)

        assert [o.title for o in occurrences] == ["First"]
        assert any("dup-1" in w for w in warnings)


class TestRecurringSeries:
    """Tests for RRULE/RDATE/EXDATE expansion."""

    def test_expand_when_daily_count_then_all_instances_in_order(
        self, expander: RecurrenceExpander, window: Window, sample_ics_recurring: str
    ) -> None:
        occurrences = expander.expand(sample_ics_recurring, *window)

        assert len(occurrences) == 5
        starts = [o.start for o in occurrences]
        assert starts == sorted(starts)
        assert len({o.id for o in occurrences}) == 5
        assert starts[0] == datetime(2025, 6, 16, 17, 0, tzinfo=timezone.utc)
        assert all(o.end - o.start == timedelta(minutes=30) for o in occurrences)
        assert occurrences[0].id == "piano-002@familycal.test-2025-06-16T17:00:00+00:00"

    def test_expand_when_exdate_then_instance_removed(
        self, expander: RecurrenceExpander, window: Window, sample_ics_exdate: str
    ) -> None:
        occurrences = expander.expand(sample_ics_exdate, *window)

        assert [o.start.date() for o in occurrences] == [
            date(2025, 6, 16),
            date(2025, 6, 30),
            date(2025, 7, 7),
        ]

    def test_expand_when_rdate_then_extra_instance_added(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:tutor
DTSTART:20250616T160000Z
DTEND:20250616T170000Z
SUMMARY:Tutor
RRULE:FREQ=WEEKLY;COUNT=2
RDATE:20250619T160000Z
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert [o.start.day for o in occurrences] == [16, 19, 23]

    def test_expand_when_overrides_then_moved_and_cancelled_instances_applied(
        self, expander: RecurrenceExpander, window: Window, sample_ics_overrides: str
    ) -> None:
        occurrences = expander.expand(sample_ics_overrides, *window)

        assert len(occurrences) == 3
        moved = occurrences[1]
        assert moved.id == "soccer-004@familycal.test-2025-06-24T23:00:00+00:00"
        assert moved.title == "Soccer practice (moved)"
        assert moved.start == datetime(2025, 6, 25, 22, 0, tzinfo=timezone.utc)
        assert moved.end == datetime(2025, 6, 25, 23, 0, tzinfo=timezone.utc)
        # The override component is the source, so its ORGANIZER is used
        assert moved.source.get("ORGANIZER") is not None
        assert all(o.start.date() != date(2025, 7, 1) for o in occurrences)

    def test_expand_when_override_moves_instance_earlier_then_series_stays_ordered(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:tutor-010
DTSTART:20250601T100000Z
DTEND:20250601T110000Z
SUMMARY:Math tutor
RRULE:FREQ=DAILY;COUNT=3
END:VEVENT
""",
            """
BEGIN:VEVENT
UID:tutor-010
RECURRENCE-ID:20250603T100000Z
DTSTART:20250531T080000Z
DTEND:20250531T090000Z
SUMMARY:Math tutor (early)
END:VEVENT
""",
        )

        occurrences = expander.expand(text, *window)

        assert [o.start for o in occurrences] == [
            datetime(2025, 5, 31, 8, 0, tzinfo=timezone.utc),
            datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc),
            datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc),
        ]
        assert occurrences[0].id == "tutor-010-2025-06-03T10:00:00+00:00"

    def test_expand_when_override_without_master_then_standalone(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:orphan-series
RECURRENCE-ID:20250624T230000Z
DTSTART:20250625T220000Z
SUMMARY:Rescheduled recital
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert len(occurrences) == 1
        assert occurrences[0].id == "orphan-series-2025-06-24T23:00:00+00:00"
        assert occurrences[0].title == "Rescheduled recital"

    def test_expand_when_all_day_weekly_then_date_ids(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:library
DTSTART;VALUE=DATE:20250618
SUMMARY:Library books due
RRULE:FREQ=WEEKLY;COUNT=3
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert [o.id for o in occurrences] == [
            "library-2025-06-18",
            "library-2025-06-25",
            "library-2025-07-02",
        ]
        assert all(o.all_day for o in occurrences)
        assert all(o.end - o.start == timedelta(days=1) for o in occurrences)

    def test_expand_when_tzid_then_wall_clock_kept_across_dst(
        self, expander: RecurrenceExpander, ics_builder: Callable[..., str]
    ) -> None:
        """Weekly 09:00 New York stays 09:00 local on both sides of the November change."""
        text = ics_builder(
            """
BEGIN:VEVENT
UID:choir
DTSTART;TZID=America/New_York:20251027T090000
DTEND;TZID=America/New_York:20251027T100000
SUMMARY:Choir
RRULE:FREQ=WEEKLY;COUNT=3
END:VEVENT
"""
        )
        window = compute_window(datetime(2025, 10, 20, tzinfo=timezone.utc), "America/New_York")

        occurrences = expander.expand(text, *window)

        assert [o.start.hour for o in occurrences] == [9, 9, 9]
        utc_hours = [o.start.astimezone(timezone.utc).hour for o in occurrences]
        assert utc_hours == [13, 14, 14]

    def test_expand_when_until_then_last_instance_inclusive(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:camp
DTSTART:20250616T080000Z
SUMMARY:Day camp
RRULE:FREQ=DAILY;UNTIL=20250618T080000Z
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert [o.start.day for o in occurrences] == [16, 17, 18]


class TestWindowAndCap:
    """Tests for window bounds and the per-series iteration cap."""

    def test_expand_when_trash_day_weekly_then_each_week_inside_window(
        self, expander: RecurrenceExpander, fixed_now: datetime, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        """Open-ended weekly series that started four weeks ago."""
        series_start = (fixed_now - timedelta(weeks=4)).replace(hour=19, minute=0)
        text = ics_builder(
            f"""
BEGIN:VEVENT
UID:trash-day
DTSTART:{series_start.strftime("%Y%m%dT%H%M%SZ")}
DTEND:{(series_start + timedelta(minutes=15)).strftime("%Y%m%dT%H%M%SZ")}
SUMMARY:Trash day
RRULE:FREQ=WEEKLY
END:VEVENT
"""
        )
        window_start, window_end = window

        occurrences = expander.expand(text, window_start, window_end)

        starts = [o.start for o in occurrences]
        assert starts[0] == series_start
        assert all(window_start <= s <= window_end for s in starts)
        assert all(b - a == timedelta(weeks=1) for a, b in zip(starts, starts[1:]))
        assert starts[-1] + timedelta(weeks=1) > window_end
        assert len(starts) == 57
        assert len(starts) <= MAX_ITERATIONS_PER_SERIES

    def test_expand_when_series_started_before_window_then_early_instances_skipped(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:weekly-old
DTSTART:20250101T100000Z
SUMMARY:Allowance
RRULE:FREQ=WEEKLY
END:VEVENT
"""
        )
        window_start, window_end = window

        occurrences = expander.expand(text, window_start, window_end)

        assert occurrences
        assert min(o.start for o in occurrences) >= window_start
        assert max(o.start for o in occurrences) <= window_end

    def test_expand_when_infinite_hourly_then_capped_at_limit(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:hourly
DTSTART:20250515T000000Z
SUMMARY:Water plants
RRULE:FREQ=HOURLY
END:VEVENT
"""
        )

        occurrences = expander.expand(text, *window)

        assert len(occurrences) == MAX_ITERATIONS_PER_SERIES == 1000
        assert len({o.id for o in occurrences}) == 1000

    def test_expand_when_cap_consumed_before_window_then_nothing_emitted(
        self, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        """Instants before the window still count against the cap."""
        expander = RecurrenceExpander(default_timezone="UTC", max_iterations=10)
        text = ics_builder(
            """
BEGIN:VEVENT
UID:daily-old
DTSTART:20250101T070000Z
SUMMARY:Vitamins
RRULE:FREQ=DAILY
END:VEVENT
"""
        )

        assert expander.expand(text, *window) == []

    def test_expand_when_series_begins_after_window_then_nothing(
        self, expander: RecurrenceExpander, window: Window, ics_builder: Callable[..., str]
    ) -> None:
        text = ics_builder(
            """
BEGIN:VEVENT
UID:future
DTSTART:20270101T100000Z
SUMMARY:Future plans
RRULE:FREQ=DAILY
END:VEVENT
"""
        )

        assert expander.expand(text, *window) == []


class TestMalformedComponents:
    """Malformed components are skipped with a warning; the rest still expand."""

    def test_expand_when_recurring_without_dtstart_then_skipped_with_warning(
        self,
        expander: RecurrenceExpander,
        window: Window,
        ics_builder: Callable[..., str],
        sample_ics_simple: str,
    ) -> None:
        broken = """
BEGIN:VEVENT
UID:broken-series
SUMMARY:No start
RRULE:FREQ=DAILY
END:VEVENT
"""
        good = """
BEGIN:VEVENT
UID:good-one
DTSTART:20250620T150000Z
SUMMARY:Still fine
END:VEVENT
"""
        warnings: list[str] = []

        occurrences = expander.expand(ics_builder(broken, good), *window, warnings)

        assert [o.id for o in occurrences] == ["good-one"]
        assert len(warnings) == 1
        assert "broken-series" in warnings[0]
