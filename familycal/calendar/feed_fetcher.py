"""HTTP client for downloading the household ICS feed through the authenticating proxy."""

import asyncio
import logging
import random
import re
from typing import Any, NoReturn, Optional, Union
from urllib.parse import urlparse

import httpx
from pydantic import SecretStr

from .exceptions import (
    FeedConfigurationError,
    FeedFetchError,
    FeedTransportError,
    FeedUnauthorizedError,
    FeedUpstreamError,
)

logger = logging.getLogger(__name__)

# Header the proxy checks against its SHARED_SECRET
AUTH_HEADER_NAME = "x-ical-key"

# Backoff calculation constants
MAX_BACKOFF_SECONDS = 30.0
JITTER_MIN_FACTOR = 0.1
JITTER_MAX_FACTOR = 0.3

DEFAULT_FEED_HEADERS: dict[str, str] = {
    "User-Agent": "familycal/0.1 (+household calendar display)",
    "Accept": "text/calendar, text/plain, */*",
}

_WEBCAL_RE = re.compile(r"^webcal://", re.IGNORECASE)


def normalize_feed_url(url: str) -> str:
    """Rewrite a webcal:// URL to https://.

    webcal is only a convention for "subscribe in a calendar app"; the payload
    served over https is identical.
    """
    return _WEBCAL_RE.sub("https://", url.strip())


def _raise_client_not_initialized() -> NoReturn:
    """Raise FeedFetchError for uninitialized HTTP client."""
    raise FeedFetchError("HTTP client not initialized")


class FeedFetcher:
    """Async HTTP client for the authenticated feed proxy."""

    def __init__(self, settings: Any = None, client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize feed fetcher.

        Args:
            settings: Object exposing request_timeout, max_retries and
                retry_backoff_factor (FeedSettings or any lookalike)
            client: Optional externally owned HTTP client; it is never closed here
        """
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None

        logger.debug("Feed fetcher initialized (external_client: %s)", not self._owns_client)

    async def __aenter__(self) -> "FeedFetcher":
        """Async context manager entry."""
        self._ensure_client()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self.client is not None and self._owns_client:
            if not self.client.is_closed:
                await self.client.aclose()
                logger.debug("Closed feed HTTP client")
            self.client = None

    def _ensure_client(self) -> None:
        """Ensure HTTP client exists."""
        if self.client is None or (self._owns_client and self.client.is_closed):
            request_timeout = getattr(self.settings, "request_timeout", 30)
            timeout = httpx.Timeout(connect=10.0, read=request_timeout, write=10.0, pool=30.0)
            limits = httpx.Limits(max_connections=4, max_keepalive_connections=2)

            self.client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                follow_redirects=True,
                verify=True,
                headers=DEFAULT_FEED_HEADERS,
            )
            self._owns_client = True

    def _validate_url(self, url: str) -> None:
        """Reject URLs that are not absolute http(s) URLs.

        Raises:
            FeedConfigurationError: If the scheme or hostname is unusable
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise FeedConfigurationError(f"Unsupported feed URL scheme: {parsed.scheme!r}")
        if not parsed.hostname:
            raise FeedConfigurationError("Feed URL is missing a hostname")

    async def fetch_feed(
        self, url: Optional[str], shared_secret: Union[str, SecretStr, None]
    ) -> str:
        """Download raw feed text from the proxy.

        Args:
            url: Feed URL; webcal:// is rewritten to https://
            shared_secret: Value for the x-ical-key header

        Returns:
            Raw ICS text

        Raises:
            FeedConfigurationError: URL or secret missing (no network I/O attempted)
            FeedUnauthorizedError: Proxy answered 401
            FeedUpstreamError: Proxy answered any other non-2xx status, or an empty body
            FeedTransportError: Network/DNS/TLS/timeout failure after retries
        """
        secret = (
            shared_secret.get_secret_value()
            if isinstance(shared_secret, SecretStr)
            else (shared_secret or "")
        )
        if not url or not url.strip():
            raise FeedConfigurationError("Feed URL is not configured (FAMILYCAL_ICS_URL)")
        if not secret.strip():
            raise FeedConfigurationError("Shared secret is not configured (FAMILYCAL_SHARED_SECRET)")

        target = normalize_feed_url(url)
        self._validate_url(target)
        self._ensure_client()

        headers = {AUTH_HEADER_NAME: secret}

        try:
            logger.debug("Fetching feed from %s", target)
            response = await self._make_request_with_retry(target, headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise FeedTransportError(f"Network error fetching feed: {e}") from e

        return self._read_response(response)

    def _calculate_backoff(
        self,
        attempt: int,
        corruption_detected: bool,
        backoff_factor: float,
    ) -> float:
        """Calculate exponential backoff time with jitter.

        Args:
            attempt: Current retry attempt number (0-indexed)
            corruption_detected: Whether a broken/reset connection was seen
            backoff_factor: Base factor for exponential backoff calculation

        Returns:
            Backoff time in seconds including jitter
        """
        base_backoff = backoff_factor**attempt

        if corruption_detected:
            base_backoff = min(base_backoff * 2, MAX_BACKOFF_SECONDS)

        jitter = random.uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR) * base_backoff  # nosec B311 - jitter not cryptographic
        return base_backoff + jitter

    async def _make_request_with_retry(self, url: str, headers: dict[str, str]) -> httpx.Response:
        """GET the feed, retrying transport failures with jittered backoff.

        HTTP status errors are returned to the caller untouched; only
        connection-level failures are retried.
        """
        max_retries = int(getattr(self.settings, "max_retries", 2))
        backoff_factor = float(getattr(self.settings, "retry_backoff_factor", 1.5))
        corruption_detected = False
        attempt = 0

        while True:
            if self.client is None:
                _raise_client_not_initialized()

            try:
                response = await self.client.get(url, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if any(marker in str(e) for marker in ("Connection broken", "Broken pipe", "Connection reset")):
                    corruption_detected = True
                    logger.warning("Connection corruption detected in attempt %d: %s", attempt + 1, e)

                if attempt >= max_retries:
                    logger.error("All %d feed fetch attempts failed for %s", attempt + 1, url)
                    raise

                backoff_time = self._calculate_backoff(attempt, corruption_detected, backoff_factor)
                logger.warning(
                    "Feed request failed (attempt %s/%s), retrying in %.1fs: %s",
                    attempt + 1,
                    max_retries + 1,
                    backoff_time,
                    e,
                )
                await asyncio.sleep(backoff_time)
                attempt += 1
                continue

            logger.debug(
                "Feed request to %s completed (attempt %d) - HTTP %d",
                url,
                attempt + 1,
                response.status_code,
            )
            return response

    def _read_response(self, response: httpx.Response) -> str:
        """Turn an HTTP response into feed text or a typed failure."""
        status = response.status_code

        if status == 401:
            logger.error("Feed proxy rejected the shared secret (HTTP 401)")
            raise FeedUnauthorizedError("Unauthorized: feed proxy rejected the shared secret")

        if not response.is_success:
            body = response.text
            logger.error("Feed proxy returned HTTP %d", status)
            message = f"Feed proxy returned {status}"
            if body.strip():
                message = f"{message}: {body.strip()}"
            raise FeedUpstreamError(message, status_code=status, body=body)

        content = response.text
        content_type = response.headers.get("content-type", "").lower()

        if content_type and not any(ct in content_type for ct in ("text/calendar", "text/plain")):
            logger.warning("Unexpected content type: %s", content_type)

        if not content.strip():
            logger.error("Empty feed content received")
            raise FeedUpstreamError("Empty content received", status_code=status, body=content)

        if "BEGIN:VCALENDAR" not in content:
            logger.warning("Content does not appear to be valid ICS format")

        logger.debug("Successfully fetched feed content (%d bytes)", len(content))
        return content
