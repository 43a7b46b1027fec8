"""familycal - household calendar display backend.

Fetches one ICS feed through an authenticated proxy, expands it into a
bounded, member-attributed event set and serves it to a wall display.
Imports are kept light so the package can be inspected without starting
the server stack.
"""

__version__ = "0.1.0"

from typing import Optional


def _init_logging(level_name: Optional[str]) -> None:
    """Initialize root logging to stream to console.

    Honors FAMILYCAL_DEBUG (truthy values: "1", "true", "yes", "on"), which
    forces DEBUG verbosity regardless of the requested level.
    """
    import logging
    import os
    import sys

    from colorlog import ColoredFormatter

    debug_env = os.environ.get("FAMILYCAL_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    root = logging.getLogger()
    # Only configure a handler if none is present to avoid duplicate output.
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        # HH:MM:SS  LEVEL   logger.name: message  (only the level is colorized)
        fmt = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
        log_colors = {
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        }
        handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S", log_colors=log_colors))
        root.addHandler(handler)

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)
    root.setLevel(level)
    logging.getLogger(__name__).debug(
        "Logging initialized at level %s", logging.getLevelName(level)
    )


def run_server(args: Optional[object] = None) -> None:
    """Load configuration, apply command line overrides and run the server.

    Args:
        args: Optional argparse namespace; ``port`` overrides the configured port

    Blocks until SIGINT/SIGTERM.
    """
    import logging
    import os

    _init_logging(os.environ.get("FAMILYCAL_LOG_LEVEL"))
    logger = logging.getLogger(__name__)

    from familycal.api.server import start_server
    from familycal.core.config_manager import ConfigManager

    cfg = ConfigManager().load_full_config()

    if args is not None:
        port = getattr(args, "port", None)
        if port is not None:
            try:
                cfg["server_port"] = int(port)
                logger.debug("Applied command line port override: %d", cfg["server_port"])
            except (ValueError, TypeError) as e:
                logger.warning("Invalid port value from command line '%s': %s", port, e)

    cfg_level = cfg.get("log_level")
    if isinstance(cfg_level, str):
        logging.getLogger().setLevel(getattr(logging, cfg_level, logging.INFO))

    # Never log the secret itself, even before the redaction filter is installed
    diagnostic_cfg = {
        k: cfg.get(k)
        for k in ("ics_url", "server_bind", "server_port", "refresh_interval_seconds", "default_timezone")
    }
    diagnostic_cfg["members"] = [m.get("name") for m in cfg.get("members", [])]
    logger.debug("Resolved configuration (diagnostic): %s", diagnostic_cfg)

    start_server(cfg)
