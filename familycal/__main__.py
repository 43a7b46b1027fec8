"""Command-line entry for familycal."""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from . import run_server


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the familycal CLI."""
    parser = argparse.ArgumentParser(
        prog="familycal",
        description="familycal - household calendar display backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m familycal                    # Start server on default port (8080)
  python -m familycal --port 3000        # Start server on port 3000

Required environment:
  FAMILYCAL_ICS_URL, FAMILYCAL_SHARED_SECRET
        """,
    )

    parser.add_argument(
        "--port",
        type=int,
        metavar="PORT",
        help="Port number for the web server (default: 8080, or from FAMILYCAL_WEB_PORT env var)",
    )

    return parser


def main() -> NoReturn:
    """Run the familycal CLI."""
    parser = _create_parser()
    args = parser.parse_args()

    run_server(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
