"""Concrete pipeline stages for one refresh run.

Fetch -> Expansion -> Attribution -> PublishableFilter. Stages let feed and
parse errors propagate; EventProcessingPipeline records them on the result.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from pydantic import SecretStr

from familycal.calendar.feed_fetcher import FeedFetcher
from familycal.calendar.models import EventInstance
from familycal.calendar.rrule_expander import RecurrenceExpander, compute_window
from familycal.core.timezone_utils import now_utc
from familycal.domain.event_normalizer import normalize_event
from familycal.domain.members import MemberDirectory
from familycal.domain.organizer_resolver import resolve_organizer
from familycal.domain.pipeline import EventProcessingPipeline, ProcessingContext, ProcessingResult

logger = logging.getLogger(__name__)


class FetchStage:
    """Download raw feed text unless the context already carries cached text."""

    def __init__(
        self, fetcher: FeedFetcher, url: Optional[str], shared_secret: Union[str, SecretStr, None]
    ) -> None:
        self._name = "Fetch"
        self.fetcher = fetcher
        self.url = url
        self.shared_secret = shared_secret

    @property
    def name(self) -> str:
        """Stage name for logging."""
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        """Populate context.raw_content from the feed proxy."""
        result = ProcessingResult(stage_name=self.name)

        if context.raw_content is not None:
            logger.debug("Using cached feed content (%d chars)", len(context.raw_content))
            result.metadata["feed_source"] = "cache"
            return result

        context.raw_content = await self.fetcher.fetch_feed(self.url, self.shared_secret)
        context.from_cache = False
        result.metadata["feed_source"] = "network"
        result.metadata["feed_bytes"] = len(context.raw_content)
        return result


class ExpansionStage:
    """Expand the feed into occurrences inside the display window."""

    def __init__(self, expander: RecurrenceExpander) -> None:
        self._name = "Expansion"
        self.expander = expander

    @property
    def name(self) -> str:
        """Stage name for logging."""
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        """Fill context.occurrences; parse failures propagate."""
        result = ProcessingResult(stage_name=self.name)

        if context.window_start is None or context.window_end is None:
            now = context.now or now_utc()
            context.window_start, context.window_end = compute_window(
                now, self.expander.default_timezone
            )

        warnings: list[str] = []
        context.occurrences = self.expander.expand(
            context.raw_content or "", context.window_start, context.window_end, warnings
        )
        # Already logged by the expander
        result.warnings.extend(warnings)
        context.warnings.extend(warnings)

        result.events_out = len(context.occurrences)
        result.metadata["occurrence_count"] = len(context.occurrences)
        return result


class AttributionStage:
    """Resolve an organizer for each occurrence and build EventInstance records."""

    def __init__(self, directory: MemberDirectory) -> None:
        self._name = "Attribution"
        self.directory = directory

    @property
    def name(self) -> str:
        """Stage name for logging."""
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.occurrences))

        events: list[EventInstance] = []
        for occurrence in context.occurrences:
            raw_event: Any = occurrence.source if occurrence.source is not None else {}
            attribution = resolve_organizer(raw_event, self.directory, title=occurrence.title)
            events.append(normalize_event(occurrence, attribution))

        context.events = events
        result.events_out = len(events)
        return result


class PublishableFilterStage:
    """Drop unpublishable events and order the rest by start.

    Sorting is stable, so events sharing a start keep feed order.
    """

    def __init__(self) -> None:
        self._name = "PublishableFilter"

    @property
    def name(self) -> str:
        """Stage name for logging."""
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.events))

        seen: set[str] = set()
        kept: list[EventInstance] = []
        for event in context.events:
            if event.start is None or not event.title.strip():
                continue
            if event.id in seen:
                continue
            seen.add(event.id)
            kept.append(event)

        context.events = sorted(kept, key=lambda e: e.start)
        result.events_out = len(context.events)
        result.events_filtered = result.events_in - result.events_out
        if result.events_filtered:
            logger.debug("Dropped %d unpublishable events", result.events_filtered)
        return result


def build_refresh_pipeline(
    fetcher: FeedFetcher,
    expander: RecurrenceExpander,
    directory: MemberDirectory,
    url: Optional[str],
    shared_secret: Union[str, SecretStr, None],
) -> EventProcessingPipeline:
    """Assemble the standard fetch -> expand -> attribute -> filter pipeline."""
    return (
        EventProcessingPipeline()
        .add_stage(FetchStage(fetcher, url, shared_secret))
        .add_stage(ExpansionStage(expander))
        .add_stage(AttributionStage(directory))
        .add_stage(PublishableFilterStage())
    )
