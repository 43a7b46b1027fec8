"""
Central logging configuration for familycal.

Quiets verbose third-party loggers, applies FAMILYCAL_DEBUG / FAMILYCAL_LOG_LEVEL
overrides and makes sure the feed secret never reaches a log handler.
"""

import logging
import os
from collections.abc import Iterable
from typing import Optional

REDACTED = "***"

# Third-party loggers that are too chatty at DEBUG/INFO
NOISY_LOGGERS: dict[str, int] = {
    "aiohttp.access": logging.WARNING,
    "aiohttp.server": logging.WARNING,
    "aiohttp.web": logging.INFO,
    "aiohttp.web_log": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
    "icalendar": logging.INFO,
}


class SecretRedactionFilter(logging.Filter):
    """Replace known secret values in log records with ``***``.

    Installed on handlers rather than loggers, so records propagated from any
    module pass through it.
    """

    def __init__(self, secrets: Iterable[Optional[str]] = ()) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for secret in secrets:
            self.add_secret(secret)

    def add_secret(self, secret: Optional[str]) -> None:
        if secret and secret not in self._secrets:
            self._secrets.append(secret)
            # Longest first so a secret containing another is fully masked
            self._secrets.sort(key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True

        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        if record.exc_info and not record.exc_text:
            formatter = logging.Formatter()
            record.exc_text = formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)

        return True


def _env_debug() -> bool:
    return os.getenv("FAMILYCAL_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")


def configure_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    secrets: Iterable[Optional[str]] = (),
) -> SecretRedactionFilter:
    """
    Configure log levels and secret redaction for familycal.

    Args:
        debug_mode: Whether to enable debug logging for familycal modules
        force_debug: Override debug mode setting (None to use env var detection)
        secrets: Values to mask in every log record (the feed shared secret)

    Environment Variables:
        FAMILYCAL_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        FAMILYCAL_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        The redaction filter installed on the root handlers
    """
    if force_debug is not None:
        final_debug = force_debug
    elif _env_debug():
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    env_log_level = os.getenv("FAMILYCAL_LOG_LEVEL", "").upper()
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    redaction_filter = SecretRedactionFilter(secrets)

    # Keep the colorized handler from familycal._init_logging when present
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s")
        )
        root_logger.addHandler(handler)

    for existing_handler in root_logger.handlers:
        for old in [f for f in existing_handler.filters if isinstance(f, SecretRedactionFilter)]:
            existing_handler.removeFilter(old)
        existing_handler.addFilter(redaction_filter)

    for logger_name, level in NOISY_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for familycal modules")
    else:
        root_logger.debug("Production logging configuration applied")

    return redaction_filter


def get_logging_status() -> dict[str, str]:
    """Map key logger names to their current level names."""
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ("familycal", "aiohttp.access", "httpx", "asyncio"):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
