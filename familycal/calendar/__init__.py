"""Feed ingestion: fetching the ICS feed and expanding it into occurrences."""

from .exceptions import (
    FamilyCalError,
    FeedConfigurationError,
    FeedFetchError,
    FeedParseError,
    FeedTransportError,
    FeedUnauthorizedError,
    FeedUpstreamError,
)
from .feed_fetcher import FeedFetcher, normalize_feed_url
from .models import EventInstance, FeedSettings, Occurrence, OrganizerAttribution, ResolutionSource
from .rrule_expander import RecurrenceExpander, compute_window

__all__ = [
    "EventInstance",
    "FamilyCalError",
    "FeedConfigurationError",
    "FeedFetchError",
    "FeedFetcher",
    "FeedParseError",
    "FeedSettings",
    "FeedTransportError",
    "FeedUnauthorizedError",
    "FeedUpstreamError",
    "Occurrence",
    "OrganizerAttribution",
    "RecurrenceExpander",
    "ResolutionSource",
    "compute_window",
    "normalize_feed_url",
]
