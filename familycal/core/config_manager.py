"""Configuration management for the familycal server."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from familycal.core.timezone_utils import get_default_timezone

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 300
DEFAULT_FEED_CACHE_SECONDS = 300
DEFAULT_SERVER_BIND = "0.0.0.0"  # nosec: B104 - container default, override via env
DEFAULT_SERVER_PORT = 8080

# (env var, config key) pairs parsed as integers
_INT_SETTINGS = (
    ("FAMILYCAL_REFRESH_INTERVAL", "refresh_interval_seconds"),
    ("FAMILYCAL_FEED_CACHE_SECONDS", "feed_cache_seconds"),
    ("FAMILYCAL_REQUEST_TIMEOUT", "request_timeout"),
    ("FAMILYCAL_MAX_RETRIES", "max_retries"),
    ("FAMILYCAL_WEB_PORT", "server_port"),
)

_TRUTHY = ("1", "true", "yes", "on")


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Skips blank lines and ``#`` comments and strips surrounding quotes from
    values. Returns an empty dict if the file is missing or unreadable.
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}

    try:
        content = path.read_text(encoding="utf-8")

        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, val = line.split("=", 1)
            key = key.strip()
            if key:
                result[key] = val.strip().strip('"').strip("'")

    except Exception:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)

    return result


def parse_members(raw: str, origin: str) -> list[dict[str, Any]]:
    """Decode a JSON member list; invalid input yields an empty list.

    Args:
        raw: JSON text, a list of ``{"name", "color", "initials"}`` objects
        origin: Where the text came from, for log messages
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning("Invalid member JSON in %s: %s", origin, e)
        return []

    if not isinstance(data, list):
        logger.warning("Member configuration in %s must be a JSON list; ignoring", origin)
        return []

    members = [entry for entry in data if isinstance(entry, dict)]
    if len(members) != len(data):
        logger.warning("Ignoring %d non-object member entries in %s", len(data) - len(members), origin)
    return members


class ConfigManager:
    """Manages application configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load the .env file into os.environ without overriding existing variables.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        set_keys = []
        for key, val in parse_env_file(self.env_file_path).items():
            if key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            # Keys only; values may hold the shared secret
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))

        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build the configuration dictionary from FAMILYCAL_* variables.

        Feed URL and secret are copied as-is; their absence is reported later
        by FeedSettings.from_config so the server can surface it as an error.
        """
        cfg: dict[str, Any] = {
            "refresh_interval_seconds": DEFAULT_REFRESH_INTERVAL_SECONDS,
            "feed_cache_seconds": DEFAULT_FEED_CACHE_SECONDS,
            "server_bind": DEFAULT_SERVER_BIND,
            "server_port": DEFAULT_SERVER_PORT,
            "members": [],
        }

        ics_url = os.environ.get("FAMILYCAL_ICS_URL")
        if ics_url:
            cfg["ics_url"] = ics_url.strip()

        secret = os.environ.get("FAMILYCAL_SHARED_SECRET")
        if secret:
            cfg["shared_secret"] = secret.strip()

        for env_name, key in _INT_SETTINGS:
            value = os.environ.get(env_name)
            if not value:
                continue
            try:
                cfg[key] = int(value)
            except ValueError:
                logger.warning("Invalid %s=%r; ignoring", env_name, value)

        host = os.environ.get("FAMILYCAL_WEB_HOST")
        if host:
            cfg["server_bind"] = host

        cfg["default_timezone"] = get_default_timezone()

        cfg["members"] = self._load_members()

        log_level = os.environ.get("FAMILYCAL_LOG_LEVEL")
        if log_level:
            cfg["log_level"] = log_level.strip().upper()
        cfg["debug_logging"] = os.environ.get("FAMILYCAL_DEBUG", "").strip().lower() in _TRUTHY

        return cfg

    def _load_members(self) -> list[dict[str, Any]]:
        """Inline FAMILYCAL_MEMBERS wins over FAMILYCAL_MEMBERS_FILE."""
        inline = os.environ.get("FAMILYCAL_MEMBERS")
        if inline:
            return parse_members(inline, "FAMILYCAL_MEMBERS")

        members_file = os.environ.get("FAMILYCAL_MEMBERS_FILE")
        if members_file:
            path = Path(members_file).expanduser()
            try:
                return parse_members(path.read_text(encoding="utf-8"), str(path))
            except OSError as e:
                logger.warning("Cannot read members file %s: %s", path, e)

        return []

    def load_full_config(self) -> dict[str, Any]:
        """Load .env file and build configuration from environment.

        This is the main entry point for loading configuration.
        """
        self.load_env_file()
        return self.build_config_from_env()


def get_config_value(config: Any, key: str, default: Any = None) -> Any:
    """Get configuration value supporting both dict and dataclass-like objects."""
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)
