"""Household member directory: names, colors and initials.

Built once at startup from configuration and read-only afterwards, so it can
be shared by every refresh run without locking.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_MEMBER_NAME = "Family"
DEFAULT_MEMBER_COLOR = "#6b7280"


class Member(BaseModel):
    """One household member as configured."""

    name: str = Field(..., description="Display name, also used as a title prefix")
    color: str = Field(default=DEFAULT_MEMBER_COLOR, description="CSS color for the member's events")
    initials: Optional[str] = Field(default=None, description="Badge initials")

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("member name must not be empty")
        return value


class MemberDirectory:
    """Ordered, case-insensitive lookup of household members.

    The reserved ``Family`` entry is the default attribution for events that
    cannot be tied to anyone; it is added when the configuration omits it and
    is never matched as a title prefix.
    """

    def __init__(self, members: Iterable[Member]) -> None:
        ordered: dict[str, Member] = {}
        for member in members:
            key = member.name.casefold()
            if key in ordered:
                logger.warning("Duplicate member %r in configuration, keeping first", member.name)
                continue
            ordered[key] = member

        default_key = DEFAULT_MEMBER_NAME.casefold()
        if default_key not in ordered:
            ordered[default_key] = Member(name=DEFAULT_MEMBER_NAME, initials="F")

        self._members = ordered
        self.default = ordered[default_key]
        self._prefix_pattern = self._compile_prefix_pattern()

        logger.debug(
            "Member directory loaded: %s", ", ".join(m.name for m in self._members.values())
        )

    @classmethod
    def from_config(cls, entries: Optional[Iterable[Mapping[str, Any] | Member]]) -> MemberDirectory:
        """Build a directory from config entries ({name, color, initials} mappings)."""
        members: list[Member] = []
        for entry in entries or []:
            if isinstance(entry, Member):
                members.append(entry)
                continue
            try:
                members.append(Member.model_validate(dict(entry)))
            except Exception as e:
                logger.warning("Ignoring invalid member entry %r: %s", entry, e)
        return cls(members)

    def _compile_prefix_pattern(self) -> Optional[re.Pattern[str]]:
        names = [m.name for m in self._members.values() if m is not self.default]
        if not names:
            return None
        # Longest first so "Anna Lee" wins over "Anna"
        alternatives = "|".join(re.escape(n) for n in sorted(names, key=len, reverse=True))
        return re.compile(rf"^({alternatives}):\s*", re.IGNORECASE)

    @property
    def members(self) -> list[Member]:
        return list(self._members.values())

    def get(self, name: Optional[str]) -> Optional[Member]:
        if not name:
            return None
        return self._members.get(name.strip().casefold())

    def match_title_prefix(self, title: Optional[str]) -> Optional[tuple[str, str]]:
        """Match a leading ``<member>:`` in a title.

        Returns:
            (matched name as written in the title, full matched prefix) or None
        """
        if not title or self._prefix_pattern is None:
            return None
        match = self._prefix_pattern.match(title)
        if match is None:
            return None
        return match.group(1), match.group(0)

    def color_for(self, name: Optional[str]) -> str:
        member = self.get(name)
        return member.color if member is not None else self.default.color

    def initials_for(self, name: Optional[str]) -> str:
        member = self.get(name)
        if member is not None and member.initials:
            return member.initials
        if name and name.strip():
            return name.strip()[0].upper()
        return (self.default.initials or self.default.name[0]).upper()

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return f"MemberDirectory(members={[m.name for m in self._members.values()]})"
