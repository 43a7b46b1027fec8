"""Recurrence expansion for familycal.

Turns raw feed text into a flat list of Occurrence records bounded by a time
window. Recurring series are evaluated from their own DTSTART (never from the
window start) so BYDAY/BYSETPOS rules keep their meaning, and every series is
capped at a fixed number of generated instants because RRULEs without
COUNT/UNTIL are infinite.
"""

# ruff: noqa: I001
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar
from icalendar.prop import vRecur

from .exceptions import FeedParseError
from .models import Occurrence

logger = logging.getLogger(__name__)

# Hard cap on instants generated per series (open-ended RRULEs never terminate)
MAX_ITERATIONS_PER_SERIES = 1000


def resolve_timezone(value: Union[str, tzinfo, None]) -> tzinfo:
    """Return a tzinfo for a zone name, falling back to UTC on bad input."""
    if value is None:
        return timezone.utc
    if isinstance(value, tzinfo):
        return value
    try:
        return ZoneInfo(str(value))
    except Exception:
        logger.warning("Unknown timezone %r, using UTC", value)
        return timezone.utc


def compute_window(now: datetime, tz: Union[str, tzinfo, None] = None) -> tuple[datetime, datetime]:
    """Return the display window: local midnight one month back to one year ahead.

    Args:
        now: Current time (naive values are taken to be in ``tz``)
        tz: Household timezone used for the midnight boundaries

    Returns:
        (window_start, window_end) as timezone-aware datetimes
    """
    zone = resolve_timezone(tz)
    local_now = now.astimezone(zone) if now.tzinfo else now.replace(tzinfo=zone)
    midnight = datetime.combine(local_now.date(), time(), tzinfo=zone)
    return midnight - relativedelta(months=1), midnight + relativedelta(years=1)


def _utc_key(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


class RecurrenceExpander:
    """Expand a feed into concrete occurrences within a window.

    The expander has no clock of its own: callers pass the window bounds, which
    keeps expansion deterministic under test.
    """

    def __init__(
        self,
        default_timezone: Union[str, tzinfo, None] = "UTC",
        max_iterations: int = MAX_ITERATIONS_PER_SERIES,
    ) -> None:
        """Initialize expander.

        Args:
            default_timezone: Zone for all-day and floating (TZID-less local) times
            max_iterations: Cap on generated instants per recurring series
        """
        self.default_timezone = resolve_timezone(default_timezone)
        self.max_iterations = max_iterations

    # ------------------------------------------------------------------ parsing

    def parse_feed(self, raw_text: str) -> Calendar:
        """Parse feed text into a calendar component tree.

        Raises:
            FeedParseError: If the text is not an iCalendar document
        """
        if not raw_text or not raw_text.strip():
            raise FeedParseError("Feed is empty")
        try:
            calendar = Calendar.from_ical(raw_text)
        except Exception as e:
            raise FeedParseError(f"Unable to parse feed: {e}") from e
        if getattr(calendar, "name", None) != "VCALENDAR":
            raise FeedParseError(
                f"Expected a VCALENDAR document, got {getattr(calendar, 'name', None)!r}"
            )
        return calendar

    # ------------------------------------------------------------- expansion

    def expand(
        self,
        raw_text: str,
        window_start: datetime,
        window_end: datetime,
        warnings: Optional[list[str]] = None,
    ) -> list[Occurrence]:
        """Expand feed text into occurrences.

        Args:
            raw_text: Raw ICS text
            window_start: Inclusive lower bound for recurring instances
            window_end: Inclusive upper bound for recurring instances
            warnings: Optional list that collects one message per skipped component

        Returns:
            Occurrences in feed order; each series in chronological order

        Raises:
            FeedParseError: If the feed as a whole cannot be parsed
        """
        calendar = self.parse_feed(raw_text)
        window_start = self._to_aware(window_start)
        window_end = self._to_aware(window_end)

        components = list(calendar.walk("VEVENT"))
        masters, overrides = self._split_overrides(components)
        recurring_uids = {
            str(c.get("UID")) for c in masters if c.get("UID") is not None and self._is_recurring(c)
        }

        occurrences: list[Occurrence] = []
        seen_ids: set[str] = set()

        def _warn(message: str) -> None:
            logger.warning(message)
            if warnings is not None:
                warnings.append(message)

        for component in masters:
            uid = component.get("UID")
            try:
                if self._is_recurring(component):
                    series_overrides = overrides.get(str(uid), {}) if uid is not None else {}
                    produced = self._expand_series(
                        component, series_overrides, window_start, window_end
                    )
                else:
                    single = self._single_occurrence(component)
                    produced = [single] if single is not None else []
            except Exception as e:
                _warn(f"Skipping malformed event {uid or component.get('SUMMARY')!r}: {e}")
                continue

            for occurrence in produced:
                if occurrence.id in seen_ids:
                    _warn(f"Skipping duplicate occurrence id {occurrence.id!r}")
                    continue
                seen_ids.add(occurrence.id)
                occurrences.append(occurrence)

        # Overrides whose master is not in the feed are shown as standalone events
        for uid, by_instant in overrides.items():
            if uid in recurring_uids:
                continue
            for component in by_instant.values():
                try:
                    orphan = self._orphan_occurrence(component)
                except Exception as e:
                    _warn(f"Skipping malformed override of {uid!r}: {e}")
                    continue
                if orphan is None or orphan.id in seen_ids:
                    continue
                seen_ids.add(orphan.id)
                occurrences.append(orphan)

        logger.debug(
            "Expanded %d components into %d occurrences (window %s .. %s)",
            len(components),
            len(occurrences),
            window_start.isoformat(),
            window_end.isoformat(),
        )
        return occurrences

    def _split_overrides(
        self, components: list[Any]
    ) -> tuple[list[Any], dict[str, dict[datetime, Any]]]:
        """Separate series masters/single events from RECURRENCE-ID overrides."""
        masters: list[Any] = []
        overrides: dict[str, dict[datetime, Any]] = {}
        for component in components:
            recurrence_id = component.get("RECURRENCE-ID")
            if recurrence_id is None:
                masters.append(component)
                continue
            try:
                key = _utc_key(self._to_aware(recurrence_id.dt))
            except Exception as e:
                logger.warning("Ignoring override with unreadable RECURRENCE-ID: %s", e)
                continue
            overrides.setdefault(str(component.get("UID")), {})[key] = component
        return masters, overrides

    def _is_recurring(self, component: Any) -> bool:
        return component.get("RRULE") is not None or component.get("RDATE") is not None

    def _expand_series(
        self,
        component: Any,
        series_overrides: dict[datetime, Any],
        window_start: datetime,
        window_end: datetime,
    ) -> list[Occurrence]:
        """Walk a recurring series from its first instance, keeping in-window ones."""
        dtstart_prop = component.get("DTSTART")
        if dtstart_prop is None:
            raise ValueError("recurring event missing DTSTART")

        raw_start = dtstart_prop.dt
        all_day = not isinstance(raw_start, datetime)
        series_tz = (
            raw_start.tzinfo
            if isinstance(raw_start, datetime) and raw_start.tzinfo is not None
            else self.default_timezone
        )
        wall_start = self._to_wall_clock(raw_start, series_tz)

        master_start, master_end, _ = self._component_times(component)
        duration = master_end - master_start if master_end is not None else None

        rule_set = self._build_rule_set(component, wall_start, series_tz, all_day)

        uid = component.get("UID")
        title = str(component.get("SUMMARY") or "")
        description = self._description(component)
        base_id = str(uid) if uid is not None else title

        occurrences: list[Occurrence] = []
        iterations = 0
        for value in rule_set:
            if iterations >= self.max_iterations:
                logger.warning(
                    "Series %r hit the %d-instance expansion cap", base_id, self.max_iterations
                )
                break
            instant = self._attach_timezone(value, series_tz)
            if instant > window_end:
                break
            iterations += 1
            if instant < window_start:
                continue

            raw_instant = value.date().isoformat() if all_day else instant.isoformat()
            occurrence_id = f"{base_id}-{raw_instant}"

            override = series_overrides.get(_utc_key(instant))
            if override is not None:
                materialized = self._override_occurrence(
                    override, occurrence_id, title, description
                )
                if materialized is not None:
                    occurrences.append(materialized)
                continue

            occurrences.append(
                Occurrence(
                    id=occurrence_id,
                    start=instant,
                    end=instant + duration if duration is not None else None,
                    all_day=all_day,
                    title=title,
                    description=description,
                    source=component,
                )
            )

        logger.debug(
            "Series %r: %d instants walked, %d in window", base_id, iterations, len(occurrences)
        )
        # A moved override can land before instances generated ahead of it
        occurrences.sort(key=lambda o: o.start)
        return occurrences

    def _build_rule_set(
        self, component: Any, wall_start: datetime, series_tz: tzinfo, all_day: bool
    ) -> rruleset:
        """Build a dateutil rule set evaluated in the series' wall-clock time.

        DTSTART is always the first instance (RFC 5545), so it is added as an
        RDATE; rruleset drops the duplicate when the RRULE also yields it.
        """
        rule_set = rruleset()

        rrule_props = component.get("RRULE")
        if rrule_props is not None:
            if not isinstance(rrule_props, list):
                rrule_props = [rrule_props]
            for prop in rrule_props:
                rule_text = self._wall_clock_rule(prop, series_tz)
                rule_set.rrule(rrulestr(rule_text, dtstart=wall_start))

        rule_set.rdate(wall_start)

        for value in self._date_list_values(component, "RDATE"):
            rule_set.rdate(self._to_wall_clock(value, series_tz, wall_start, all_day))

        for value in self._date_list_values(component, "EXDATE"):
            rule_set.exdate(self._to_wall_clock(value, series_tz, wall_start, all_day))

        return rule_set

    def _wall_clock_rule(self, prop: Any, series_tz: tzinfo) -> str:
        """Serialize an RRULE with UNTIL expressed in the series' local wall time."""
        recur = vRecur(prop)
        until = recur.get("UNTIL")
        if until:
            value = until[0] if isinstance(until, list) else until
            if isinstance(value, datetime):
                if value.tzinfo is not None:
                    value = value.astimezone(series_tz).replace(tzinfo=None)
            elif isinstance(value, date):
                # Date-only UNTIL includes the whole final day
                value = datetime.combine(value, time(23, 59, 59))
            recur["UNTIL"] = [value]
        return recur.to_ical().decode("utf-8")

    def _date_list_values(self, component: Any, name: str) -> list[Any]:
        """Flatten RDATE/EXDATE properties (single or repeated) into plain values."""
        props = component.get(name)
        if props is None:
            return []
        if not isinstance(props, list):
            props = [props]
        values: list[Any] = []
        for prop in props:
            for item in getattr(prop, "dts", []):
                value = item.dt
                if isinstance(value, tuple):
                    # PERIOD values: (start, end-or-duration)
                    value = value[0]
                values.append(value)
        return values

    def _override_occurrence(
        self,
        override: Any,
        occurrence_id: str,
        master_title: str,
        master_description: Optional[str],
    ) -> Optional[Occurrence]:
        """Materialize a RECURRENCE-ID override in place of the generated instance."""
        if str(override.get("STATUS", "")).upper() == "CANCELLED":
            logger.debug("Occurrence %s cancelled by override", occurrence_id)
            return None
        start, end, all_day = self._component_times(override)
        title = override.get("SUMMARY")
        return Occurrence(
            id=occurrence_id,
            start=start,
            end=end,
            all_day=all_day,
            title=str(title) if title is not None else master_title,
            description=self._description(override) or master_description,
            source=override,
        )

    def _orphan_occurrence(self, component: Any) -> Optional[Occurrence]:
        if str(component.get("STATUS", "")).upper() == "CANCELLED":
            return None
        if component.get("DTSTART") is None:
            return None
        start, end, all_day = self._component_times(component)
        recurrence_value = component.get("RECURRENCE-ID").dt
        raw_instant = (
            recurrence_value.isoformat()
            if not isinstance(recurrence_value, datetime)
            else self._to_aware(recurrence_value).isoformat()
        )
        uid = component.get("UID")
        title = str(component.get("SUMMARY") or "")
        return Occurrence(
            id=f"{uid if uid is not None else title}-{raw_instant}",
            start=start,
            end=end,
            all_day=all_day,
            title=title,
            description=self._description(component),
            source=component,
        )

    def _single_occurrence(self, component: Any) -> Optional[Occurrence]:
        """Emit the one occurrence of a non-recurring event, if it has a start."""
        if component.get("DTSTART") is None:
            logger.debug("Event %r has no DTSTART, not emitted", component.get("UID"))
            return None
        start, end, all_day = self._component_times(component)
        uid = component.get("UID")
        title = str(component.get("SUMMARY") or "")
        occurrence_id = str(uid) if uid is not None else f"{title}-{start.isoformat()}"
        return Occurrence(
            id=occurrence_id,
            start=start,
            end=end,
            all_day=all_day,
            title=title,
            description=self._description(component),
            source=component,
        )

    # ----------------------------------------------------------------- times

    def _component_times(self, component: Any) -> tuple[datetime, Optional[datetime], bool]:
        """Return (start, end, all_day) for a VEVENT as aware datetimes.

        End falls back to DTSTART + DURATION, then to one day for all-day
        events; timed events without either have no end.
        """
        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise ValueError("event missing DTSTART")
        raw_start = dtstart.dt
        all_day = not isinstance(raw_start, datetime)
        start = self._to_aware(raw_start)

        end: Optional[datetime] = None
        dtend = component.get("DTEND")
        duration = component.get("DURATION")
        if dtend is not None:
            end = self._to_aware(dtend.dt)
        elif duration is not None and isinstance(getattr(duration, "dt", None), timedelta):
            end = start + duration.dt
        elif all_day:
            end = start + timedelta(days=1)

        return start, end, all_day

    def _description(self, component: Any) -> Optional[str]:
        description = component.get("DESCRIPTION")
        return str(description) if description else None

    def _to_aware(self, value: Union[date, datetime]) -> datetime:
        """Convert a date/datetime to an aware datetime.

        Dates become local midnight and floating times are read in the
        default timezone.
        """
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=self.default_timezone)
            return value
        return datetime.combine(value, time(), tzinfo=self.default_timezone)

    def _to_wall_clock(
        self,
        value: Union[date, datetime],
        series_tz: tzinfo,
        wall_start: Optional[datetime] = None,
        all_day: bool = False,
    ) -> datetime:
        """Express a date/datetime as a naive wall-clock time in the series zone."""
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(series_tz)
            return value.replace(tzinfo=None)
        if wall_start is not None and not all_day:
            # Date-only EXDATE/RDATE on a timed series: same time of day as DTSTART
            return datetime.combine(value, wall_start.time())
        return datetime.combine(value, time())

    def _attach_timezone(self, value: datetime, series_tz: tzinfo) -> datetime:
        return value.replace(tzinfo=series_tz) if value.tzinfo is None else value
