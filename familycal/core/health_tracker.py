"""Health tracking and monitoring for the familycal server."""

from __future__ import annotations

import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

# No successful refresh for this long counts as degraded
STALE_SUCCESS_SECONDS = 900
# Consecutive failures before the server reports critical
CRITICAL_FAILURE_COUNT = 3


@dataclass
class HealthStatus:
    """Health status information for the server."""

    status: str  # "ok", "degraded", or "critical"
    server_time_iso: str
    uptime_seconds: int
    pid: int
    event_count: int
    last_refresh_attempt_age_seconds: Optional[int]
    last_refresh_success_age_seconds: Optional[int]
    consecutive_failures: int
    last_error: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthTracker:
    """Tracks refresh outcomes for the health endpoint.

    All updates happen on the event loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        """Initialize health tracker with default values."""
        self._start_time: float = time.time()
        self._last_refresh_attempt: Optional[float] = None
        self._last_refresh_success: Optional[float] = None
        self._current_event_count: int = 0
        self._consecutive_failures: int = 0
        self._last_error: Optional[str] = None

    def record_refresh_attempt(self) -> None:
        """Record that a refresh attempt was made."""
        self._last_refresh_attempt = time.time()

    def record_refresh_success(self, event_count: int) -> None:
        """Record a successful refresh with event count.

        Args:
            event_count: Number of events published by the refresh
        """
        self._last_refresh_success = time.time()
        self._current_event_count = event_count
        self._consecutive_failures = 0
        self._last_error = None

    def record_refresh_failure(self, message: str) -> None:
        """Record a failed refresh; the published event count is unchanged."""
        self._consecutive_failures += 1
        self._last_error = message

    def get_uptime_seconds(self) -> int:
        return int(time.time() - self._start_time)

    def _age(self, timestamp: Optional[float]) -> Optional[int]:
        if timestamp is None:
            return None
        return int(time.time() - timestamp)

    def get_last_refresh_age_seconds(self) -> Optional[int]:
        """Seconds since last successful refresh, or None if never refreshed."""
        return self._age(self._last_refresh_success)

    def determine_overall_status(self) -> str:
        """Determine overall health status.

        Returns:
            "ok", "degraded", or "critical"
        """
        if self._consecutive_failures >= CRITICAL_FAILURE_COUNT:
            return "critical"

        if self._last_refresh_success is None:
            return "degraded"

        last_success_age = self.get_last_refresh_age_seconds()
        if last_success_age is not None and last_success_age > STALE_SUCCESS_SECONDS:
            return "degraded"

        if self._consecutive_failures:
            return "degraded"

        return "ok"

    def get_health_status(self, current_time_iso: str) -> HealthStatus:
        """Get comprehensive health status.

        Args:
            current_time_iso: Current time in ISO format
        """
        return HealthStatus(
            status=self.determine_overall_status(),
            server_time_iso=current_time_iso,
            uptime_seconds=self.get_uptime_seconds(),
            pid=os.getpid(),
            event_count=self._current_event_count,
            last_refresh_attempt_age_seconds=self._age(self._last_refresh_attempt),
            last_refresh_success_age_seconds=self.get_last_refresh_age_seconds(),
            consecutive_failures=self._consecutive_failures,
            last_error=self._last_error,
        )

    def get_event_count(self) -> int:
        return self._current_event_count

    def get_consecutive_failures(self) -> int:
        return self._consecutive_failures
