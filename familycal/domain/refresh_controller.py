"""Refresh lifecycle for the published event set.

The controller owns the last-published events and is the only place they
change. Runs are requested on a queue by a timer-driven scheduler (and by
manual retries) and executed one at a time by a single executor task:

    IDLE -> LOADING -> READY    run succeeded, new set published
                    -> STALE    run failed, previous non-empty set kept
                    -> ERROR    run failed, nothing to show

Entering LOADING never clears the published set, so the display keeps showing
the previous events while a refresh is in flight or after it fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import SecretStr

from familycal.calendar.feed_fetcher import FeedFetcher
from familycal.calendar.models import EventInstance
from familycal.calendar.rrule_expander import RecurrenceExpander
from familycal.core.health_tracker import HealthTracker
from familycal.core.timezone_utils import now_utc
from familycal.domain.members import MemberDirectory
from familycal.domain.pipeline import ProcessingContext, ProcessingResult
from familycal.domain.pipeline_stages import build_refresh_pipeline

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 300
DEFAULT_FEED_CACHE_SECONDS = 300


class RefreshState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    STALE = "stale"
    ERROR = "error"


class RefreshTrigger(str, Enum):
    """Why a run was requested. Manual runs bypass the feed cache."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass(frozen=True)
class DisplayStatus:
    """What the display layer needs to render one frame."""

    status: str  # "loading", "ready" or "error"
    message: Optional[str]
    events: tuple[EventInstance, ...]
    is_refreshing: bool
    is_stale: bool
    last_success_at: Optional[datetime]
    can_retry: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "is_refreshing": self.is_refreshing,
            "is_stale": self.is_stale,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "can_retry": self.can_retry,
            "events": [event.to_display_dict() for event in self.events],
        }


class RefreshController:
    """Schedules refresh runs and publishes their results atomically."""

    def __init__(
        self,
        fetcher: FeedFetcher,
        expander: RecurrenceExpander,
        directory: MemberDirectory,
        url: Optional[str],
        shared_secret: Union[str, SecretStr, None],
        *,
        refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        feed_cache_seconds: float = DEFAULT_FEED_CACHE_SECONDS,
        health_tracker: Optional[HealthTracker] = None,
        now_provider: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize controller.

        Args:
            fetcher: Feed client used by the fetch stage
            expander: Recurrence expander (carries the household timezone)
            directory: Member directory for organizer attribution
            url: Feed URL; a missing value fails every run with a configuration error
            shared_secret: Proxy secret sent with every fetch
            refresh_interval_seconds: Delay between scheduled runs
            feed_cache_seconds: How long raw feed text from a successful run is reused
            health_tracker: Optional tracker notified of every run outcome
            now_provider: Clock used to compute each run's window
        """
        self.refresh_interval_seconds = refresh_interval_seconds
        self.feed_cache_seconds = feed_cache_seconds
        self.health_tracker = health_tracker
        self._now = now_provider or now_utc
        self._pipeline = build_refresh_pipeline(fetcher, expander, directory, url, shared_secret)

        self._state = RefreshState.IDLE
        self._events: tuple[EventInstance, ...] = ()
        self._error: Optional[str] = None
        self._last_success_at: Optional[datetime] = None

        self._cached_feed: Optional[str] = None
        self._cached_at: Optional[float] = None

        self._queue: asyncio.Queue[RefreshTrigger] = asyncio.Queue()
        # Pending trigger -> monotonic time it was requested
        self._pending: dict[RefreshTrigger, float] = {}
        self._scheduler_task: Optional[asyncio.Task[None]] = None
        self._executor_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def events(self) -> tuple[EventInstance, ...]:
        """The currently published set."""
        return self._events

    @property
    def running(self) -> bool:
        return self._executor_task is not None and not self._executor_task.done()

    # -- scheduling -------------------------------------------------------

    async def start(self) -> None:
        """Start the executor and the timer; the first run is requested immediately."""
        if self.running:
            logger.debug("Refresh controller already running")
            return

        self._executor_task = asyncio.create_task(self._executor(), name="familycal-refresh-executor")
        self._scheduler_task = asyncio.create_task(self._scheduler(), name="familycal-refresh-scheduler")
        logger.info(
            "Refresh controller started (interval=%ss, feed cache=%ss)",
            self.refresh_interval_seconds,
            self.feed_cache_seconds,
        )

    async def stop(self) -> None:
        """Cancel the timer and the executor, waiting for both to finish."""
        tasks = [t for t in (self._scheduler_task, self._executor_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._scheduler_task = None
        self._executor_task = None
        logger.debug("Refresh controller stopped")

    def request_refresh(self, trigger: RefreshTrigger = RefreshTrigger.SCHEDULED) -> bool:
        """Queue a run. A request already waiting with the same trigger absorbs this one.

        Returns:
            True if a new request was queued
        """
        if trigger in self._pending:
            logger.debug("Refresh request (%s) already pending", trigger.value)
            return False
        self._pending[trigger] = time.monotonic()
        self._queue.put_nowait(trigger)
        return True

    def retry(self) -> bool:
        """Queue a manual run; the timer is left untouched."""
        logger.info("Manual refresh requested")
        return self.request_refresh(RefreshTrigger.MANUAL)

    async def wait_until_idle(self) -> None:
        """Wait until every queued request has been executed."""
        await self._queue.join()

    async def _scheduler(self) -> None:
        while True:
            self.request_refresh(RefreshTrigger.SCHEDULED)
            await asyncio.sleep(self.refresh_interval_seconds)

    async def _executor(self) -> None:
        while True:
            trigger = await self._queue.get()
            requested_at = self._pending.pop(trigger, None)
            try:
                await self.run_once(trigger, requested_at=requested_at)
            except Exception:
                logger.exception("Unexpected error in refresh run")
            finally:
                self._queue.task_done()

    # -- one run ----------------------------------------------------------

    async def run_once(
        self,
        trigger: RefreshTrigger = RefreshTrigger.SCHEDULED,
        requested_at: Optional[float] = None,
    ) -> RefreshState:
        """Execute one refresh run and apply its single completion transition.

        Args:
            trigger: Why the run was requested; manual runs skip the feed cache
            requested_at: Monotonic time the run was requested (defaults to now);
                cache age is measured at this instant and fresh text is stamped with it

        Returns:
            The state the run finished in
        """
        previous_state = self._state
        self._state = RefreshState.LOADING
        if self.health_tracker is not None:
            self.health_tracker.record_refresh_attempt()

        started_at = requested_at if requested_at is not None else time.monotonic()
        context = ProcessingContext(now=self._now())
        if trigger is not RefreshTrigger.MANUAL:
            cached = self._fresh_cached_feed(started_at)
            if cached is not None:
                context.raw_content = cached
                context.from_cache = True

        logger.debug("Refresh run started (trigger=%s, cached=%s)", trigger.value, context.from_cache)

        try:
            result = await self._pipeline.process(context)
        except asyncio.CancelledError:
            self._state = previous_state
            raise
        except Exception as e:
            logger.exception("Refresh pipeline raised unexpectedly")
            result = ProcessingResult(success=False, exception=e, errors=[str(e)])

        if result.success:
            self._complete_success(result.events, context, started_at)
        else:
            self._complete_failure(result.error_message or "Refresh failed")
        return self._state

    def _fresh_cached_feed(self, at: float) -> Optional[str]:
        if self._cached_feed is None or self._cached_at is None:
            return None
        if at - self._cached_at >= self.feed_cache_seconds:
            return None
        return self._cached_feed

    def _complete_success(
        self, events: list[EventInstance], context: ProcessingContext, fetched_at: float
    ) -> None:
        self._events = tuple(events)
        self._error = None
        self._last_success_at = self._now()
        self._state = RefreshState.READY

        if not context.from_cache and context.raw_content is not None:
            self._cached_feed = context.raw_content
            self._cached_at = fetched_at

        if self.health_tracker is not None:
            self.health_tracker.record_refresh_success(len(self._events))
        logger.info(
            "Refresh complete: %d events published%s",
            len(self._events),
            " (from cached feed)" if context.from_cache else "",
        )

    def _complete_failure(self, message: str) -> None:
        self._error = message
        if self._events:
            self._state = RefreshState.STALE
            logger.warning(
                "Refresh failed, keeping %d previously published events: %s",
                len(self._events),
                message,
            )
        else:
            self._state = RefreshState.ERROR
            logger.error("Refresh failed with no events to show: %s", message)

        if self.health_tracker is not None:
            self.health_tracker.record_refresh_failure(message)

    # -- display ----------------------------------------------------------

    def snapshot(self) -> DisplayStatus:
        """Current display status; never blocks."""
        state = self._state
        if state is RefreshState.ERROR:
            status = "error"
        elif self._events or self._last_success_at is not None:
            status = "ready"
        else:
            status = "loading"

        is_refreshing = state is RefreshState.LOADING
        is_stale = state is RefreshState.STALE or (
            is_refreshing and self._error is not None and bool(self._events)
        )
        return DisplayStatus(
            status=status,
            message=self._error if (status == "error" or is_stale) else None,
            events=self._events,
            is_refreshing=is_refreshing,
            is_stale=is_stale,
            last_success_at=self._last_success_at,
            can_retry=not is_refreshing and state in (RefreshState.ERROR, RefreshState.STALE),
        )

    def __repr__(self) -> str:
        return f"RefreshController(state={self._state.value}, events={len(self._events)})"
