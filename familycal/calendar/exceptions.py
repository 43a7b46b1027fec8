"""Exception hierarchy for feed fetching and parsing.

Every failure that aborts a refresh run derives from FeedFetchError or
FeedParseError, so the refresh controller can record it and fall back to the
last published events. Component-level problems never raise; they are logged
and collected as warnings by the expander.
"""

from typing import Optional


class FamilyCalError(Exception):
    """Base exception for all familycal errors."""


class FeedFetchError(FamilyCalError):
    """Base exception for feed fetch failures."""


class FeedConfigurationError(FeedFetchError):
    """Feed URL or shared secret is missing.

    Raised before any network I/O is attempted. Not retried: the operator has
    to fix the configuration.
    """


class FeedTransportError(FeedFetchError):
    """Network, DNS, TLS or timeout failure while talking to the feed proxy."""


class FeedUnauthorizedError(FeedFetchError):
    """The proxy rejected the shared secret (HTTP 401)."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class FeedUpstreamError(FeedFetchError):
    """The proxy answered with a non-success status.

    Carries the status code and whatever body the proxy returned, which usually
    names the upstream failure (e.g. ``Upstream fetch failed: 404``).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class FeedParseError(FamilyCalError):
    """The feed text could not be parsed as an iCalendar document."""
