"""Data models for feed processing - familycal."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer

from .exceptions import FeedConfigurationError

# Fixed foreground color used on top of every member color
DEFAULT_TEXT_COLOR = "#ffffff"
UNTITLED_EVENT_TITLE = "Untitled Event"


class FeedSettings(BaseModel):
    """Connection settings for the authenticated feed proxy."""

    url: str = Field(..., description="Feed URL (webcal:// or https://)")
    shared_secret: SecretStr = Field(..., description="Value sent in the x-ical-key header")

    request_timeout: int = Field(default=30, description="HTTP read timeout in seconds")
    max_retries: int = Field(default=2, description="Retries for transport failures")
    retry_backoff_factor: float = Field(default=1.5, description="Exponential backoff base")

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "FeedSettings":
        """Build feed settings from the application config dict.

        Raises:
            FeedConfigurationError: If the feed URL or shared secret is missing
        """
        url = str(config.get("ics_url") or "").strip()
        secret = str(config.get("shared_secret") or "").strip()
        missing = [
            name
            for name, value in (("FAMILYCAL_ICS_URL", url), ("FAMILYCAL_SHARED_SECRET", secret))
            if not value
        ]
        if missing:
            raise FeedConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

        return cls(
            url=url,
            shared_secret=SecretStr(secret),
            request_timeout=int(config.get("request_timeout", 30)),
            max_retries=int(config.get("max_retries", 2)),
            retry_backoff_factor=float(config.get("retry_backoff_factor", 1.5)),
        )


@dataclass(frozen=True)
class Occurrence:
    """One concrete instance in time of a VEVENT.

    ``source`` is the component the occurrence was materialized from: the
    series master, or the RECURRENCE-ID override for a modified instance.
    """

    id: str
    start: datetime
    end: Optional[datetime]
    all_day: bool
    title: str
    description: Optional[str] = None
    source: Any = field(default=None, compare=False, repr=False)


class ResolutionSource(str, Enum):
    """How an occurrence's organizer was determined."""

    EXPLICIT_PROPERTY = "explicit-property"
    TITLE_PREFIX = "title-prefix"
    DEFAULT = "default"


class OrganizerAttribution(BaseModel):
    """Household member an occurrence is attributed to."""

    model_config = ConfigDict(frozen=True)

    name: str
    email: Optional[str] = None
    source: ResolutionSource
    color: str
    initials: str
    # Exact title text consumed by the title-prefix rule (e.g. "mom: ")
    matched_prefix: Optional[str] = None


class EventInstance(BaseModel):
    """Display-ready event record published to the display layer."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    start: datetime
    end: Optional[datetime] = None
    all_day: bool = False
    background_color: str
    border_color: str
    text_color: str = DEFAULT_TEXT_COLOR
    organizer: OrganizerAttribution
    description: Optional[str] = None

    @field_serializer("start", "end", when_used="unless-none")
    def serialize_datetime(self, dt: datetime) -> str:
        """Serialize datetime fields to ISO format."""
        return dt.isoformat()

    def _format_instant(self, dt: Optional[datetime]) -> Optional[str]:
        if dt is None:
            return None
        if self.all_day:
            return dt.date().isoformat()
        return dt.isoformat()

    def to_display_dict(self) -> dict[str, Any]:
        """Render the instance in the shape calendar grid widgets consume."""
        return {
            "id": self.id,
            "title": self.title,
            "start": self._format_instant(self.start),
            "end": self._format_instant(self.end),
            "allDay": self.all_day,
            "backgroundColor": self.background_color,
            "borderColor": self.border_color,
            "textColor": self.text_color,
            "extendedProps": {
                "organizer": {
                    "name": self.organizer.name,
                    "email": self.organizer.email,
                    "source": self.organizer.source.value,
                    "initials": self.organizer.initials,
                    "color": self.organizer.color,
                },
                "description": self.description,
            },
        }
