"""Organizer attribution for calendar occurrences.

Resolution is a priority chain, first match wins:

1. An explicit ORGANIZER property on the VEVENT.
2. A ``<member>:`` prefix on the title, for members in the directory.
3. The directory's default ``Family`` entry.

Resolution never raises: unreadable organizer data simply falls through to
the default.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from familycal.calendar.models import OrganizerAttribution, ResolutionSource
from familycal.domain.members import MemberDirectory

logger = logging.getLogger(__name__)

# "mailto:", "MAILTO:", "sip:" ...
_SCHEME_PREFIX_RE = re.compile(r"^[a-z][a-z0-9+.\-]*:", re.IGNORECASE)


def _strip_scheme(address: str) -> str:
    return _SCHEME_PREFIX_RE.sub("", address.strip(), count=1).strip()


def _explicit_organizer(raw_event: Any) -> Optional[tuple[str, Optional[str]]]:
    """Read (name, email) from an ORGANIZER property, if it carries anything usable."""
    organizer = raw_event.get("ORGANIZER")
    if organizer is None:
        return None
    if isinstance(organizer, list):
        organizer = organizer[0] if organizer else None
        if organizer is None:
            return None

    email = _strip_scheme(str(organizer)) or None
    params = getattr(organizer, "params", {}) or {}
    common_name = str(params.get("CN", "")).strip().strip('"') or None

    name = common_name or email
    if not name:
        return None
    return name, email


def _capitalize_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def _attribution(
    directory: MemberDirectory,
    name: str,
    source: ResolutionSource,
    email: Optional[str] = None,
    matched_prefix: Optional[str] = None,
) -> OrganizerAttribution:
    return OrganizerAttribution(
        name=name,
        email=email,
        source=source,
        color=directory.color_for(name),
        initials=directory.initials_for(name),
        matched_prefix=matched_prefix,
    )


def default_attribution(directory: MemberDirectory) -> OrganizerAttribution:
    """Attribution used when nothing identifies a member."""
    return _attribution(directory, directory.default.name, ResolutionSource.DEFAULT)


def resolve_organizer(
    raw_event: Any, directory: MemberDirectory, title: Optional[str] = None
) -> OrganizerAttribution:
    """Attribute a raw VEVENT to a household member.

    Args:
        raw_event: VEVENT component (anything with a dict-like ``get``)
        directory: Household member directory
        title: Occurrence title to inspect for a member prefix; defaults to
            the component's SUMMARY

    Returns:
        OrganizerAttribution tagged with the rule that produced it
    """
    try:
        explicit = _explicit_organizer(raw_event)
        if explicit is not None:
            name, email = explicit
            return _attribution(directory, name, ResolutionSource.EXPLICIT_PROPERTY, email=email)

        if title is None:
            summary = raw_event.get("SUMMARY")
            title = str(summary) if summary is not None else None
        match = directory.match_title_prefix(title)
        if match is not None:
            matched_name, prefix = match
            return _attribution(
                directory,
                _capitalize_first(matched_name),
                ResolutionSource.TITLE_PREFIX,
                matched_prefix=prefix,
            )
    except Exception as e:
        logger.debug("Organizer data unreadable, using default attribution: %s", e)

    return default_attribution(directory)
