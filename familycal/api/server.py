"""aiohttp server wiring for familycal.

Builds the feed client, expander, member directory and refresh controller
from configuration, serves the display API and runs the controller until a
shutdown signal arrives.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from aiohttp import web

from familycal.app_logging import configure_logging, get_logging_status
from familycal.calendar.exceptions import FeedConfigurationError
from familycal.calendar.feed_fetcher import FeedFetcher
from familycal.calendar.models import FeedSettings
from familycal.calendar.rrule_expander import RecurrenceExpander
from familycal.core.config_manager import get_config_value
from familycal.core.health_tracker import HealthTracker
from familycal.core.timezone_utils import now_utc
from familycal.domain.members import MemberDirectory
from familycal.domain.refresh_controller import (
    DEFAULT_FEED_CACHE_SECONDS,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    RefreshController,
)

from .routes import register_api_routes

logger = logging.getLogger(__name__)


def _load_feed_settings(config: Any) -> Optional[FeedSettings]:
    """Validate the feed section; a missing URL or secret is reported, not fatal.

    Without settings every run fails with the configuration error, which the
    display shows as its error page.
    """
    try:
        return FeedSettings.from_config(config)
    except FeedConfigurationError as e:
        logger.error("%s - refreshes will fail until it is configured", e)
        return None


def build_controller(
    config: Any,
    fetcher: FeedFetcher,
    health_tracker: Optional[HealthTracker] = None,
    settings: Optional[FeedSettings] = None,
) -> RefreshController:
    """Create the refresh controller described by ``config``."""
    directory = MemberDirectory.from_config(get_config_value(config, "members", []))
    expander = RecurrenceExpander(default_timezone=get_config_value(config, "default_timezone", "UTC"))

    return RefreshController(
        fetcher,
        expander,
        directory,
        settings.url if settings else get_config_value(config, "ics_url"),
        settings.shared_secret if settings else get_config_value(config, "shared_secret"),
        refresh_interval_seconds=int(
            get_config_value(config, "refresh_interval_seconds", DEFAULT_REFRESH_INTERVAL_SECONDS)
        ),
        feed_cache_seconds=int(
            get_config_value(config, "feed_cache_seconds", DEFAULT_FEED_CACHE_SECONDS)
        ),
        health_tracker=health_tracker,
    )


def create_app(
    controller: RefreshController,
    health_tracker: HealthTracker,
    time_provider: Callable[[], datetime] = now_utc,
) -> web.Application:
    """Create the aiohttp application with the display API registered."""
    app = web.Application()
    register_api_routes(app, controller, health_tracker, time_provider)

    async def _shutdown(_app: web.Application) -> None:
        logger.info("Application shutdown requested")

    app.on_shutdown.append(_shutdown)
    return app


async def _serve(config: Any, external_stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the HTTP server and refresh controller until signalled to stop.

    Args:
        config: Configuration dict from ConfigManager
        external_stop_event: Optional event to signal shutdown. If provided,
            signal handlers are not registered (caller owns signal handling).
    """
    stop_event = external_stop_event or asyncio.Event()
    health_tracker = HealthTracker()

    settings = _load_feed_settings(config)
    fetcher = FeedFetcher(settings)
    controller = build_controller(config, fetcher, health_tracker, settings)
    app = create_app(controller, health_tracker)

    runner = web.AppRunner(app)
    await runner.setup()

    host = get_config_value(config, "server_bind", "0.0.0.0")  # nosec: B104
    port = int(get_config_value(config, "server_port", 8080))
    site = web.TCPSite(runner, host=host, port=port)
    try:
        await site.start()
    except OSError:
        logger.exception("Failed to start server on %s:%d", host, port)
        await runner.cleanup()
        await fetcher.close()
        raise

    logger.info("Server started on %s:%d (pid %d)", host, port, os.getpid())

    await controller.start()

    if external_stop_event is None:
        loop = asyncio.get_running_loop()

        def _on_signal() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_signal)
    else:
        logger.debug("Using external stop event - skipping signal handler registration")

    await stop_event.wait()
    logger.info("Stop event received, shutting down")

    await controller.stop()
    await runner.cleanup()
    await fetcher.close()

    logger.info("Server shutdown complete (uptime %ds)", health_tracker.get_uptime_seconds())


def start_server(config: Any) -> None:
    """Start the asyncio event loop and HTTP server.

    Args:
        config: dict or dataclass-like object with keys:
            - ics_url / shared_secret: feed proxy location and secret
            - members: list of {name, color, initials} mappings
            - server_bind / server_port: listen address
            - refresh_interval_seconds: seconds between scheduled refreshes
            - feed_cache_seconds: reuse window for raw feed text
            - default_timezone: household timezone for all-day and floating times
            - request_timeout / max_retries: feed client tuning
            - debug_logging: enable debug logging (bool)

    Blocks until a SIGINT/SIGTERM is received.
    """
    configure_logging(
        debug_mode=bool(get_config_value(config, "debug_logging", False)),
        secrets=[get_config_value(config, "shared_secret")],
    )
    logger.debug("Logger levels: %s", get_logging_status())

    try:
        logger.debug("Running asyncio event loop for server")
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Server terminated unexpectedly")
