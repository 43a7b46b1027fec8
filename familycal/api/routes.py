"""HTTP routes for the family calendar display."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from aiohttp import web

from familycal.core.health_tracker import HealthTracker
from familycal.domain.refresh_controller import RefreshController

logger = logging.getLogger(__name__)


def register_api_routes(
    app: web.Application,
    controller: RefreshController,
    health_tracker: HealthTracker,
    time_provider: Callable[[], datetime],
) -> None:
    """Register the display API.

    Args:
        app: aiohttp web application
        controller: Refresh controller owning the published event set
        health_tracker: Health tracking instance
        time_provider: Time provider callable
    """

    async def get_events(_request: web.Request) -> web.Response:
        """Published events plus the status the display should render."""
        snapshot = controller.snapshot()
        logger.debug(
            "/api/events: status=%s events=%d refreshing=%s",
            snapshot.status,
            len(snapshot.events),
            snapshot.is_refreshing,
        )
        return web.json_response(snapshot.to_dict())

    async def post_refresh(_request: web.Request) -> web.Response:
        """Queue a manual refresh; the result shows up in /api/events."""
        queued = controller.retry()
        return web.json_response({"queued": queued}, status=202)

    async def health_check(_request: web.Request) -> web.Response:
        health_status = health_tracker.get_health_status(time_provider().isoformat())
        payload: dict[str, Any] = health_status.to_dict()
        payload["refresh_state"] = controller.state.value

        # Stale data is still served, so only critical is a failing health check
        http_status = 503 if health_status.status == "critical" else 200
        return web.json_response(payload, status=http_status)

    app.router.add_get("/api/events", get_events)
    app.router.add_post("/api/refresh", post_refresh)
    app.router.add_get("/api/health", health_check)
