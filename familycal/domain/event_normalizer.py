"""Assemble display-ready EventInstance records from occurrences."""

from __future__ import annotations

from familycal.calendar.models import (
    DEFAULT_TEXT_COLOR,
    UNTITLED_EVENT_TITLE,
    EventInstance,
    Occurrence,
    OrganizerAttribution,
    ResolutionSource,
)


def display_title(title: str, attribution: OrganizerAttribution) -> str:
    """Strip the member prefix consumed by title-prefix attribution.

    Other resolution sources leave the title untouched. Empty results fall
    back to a placeholder so every published event has a label.
    """
    if (
        attribution.source == ResolutionSource.TITLE_PREFIX
        and attribution.matched_prefix
        and title.startswith(attribution.matched_prefix)
    ):
        title = title[len(attribution.matched_prefix) :]
    return title if title.strip() else UNTITLED_EVENT_TITLE


def normalize_event(occurrence: Occurrence, attribution: OrganizerAttribution) -> EventInstance:
    """Combine an occurrence with its organizer attribution.

    Timing fields are copied unchanged, so resolution can never move an event.
    """
    return EventInstance(
        id=occurrence.id,
        title=display_title(occurrence.title or "", attribution),
        start=occurrence.start,
        end=occurrence.end,
        all_day=occurrence.all_day,
        background_color=attribution.color,
        border_color=attribution.color,
        text_color=DEFAULT_TEXT_COLOR,
        organizer=attribution,
        description=occurrence.description,
    )
