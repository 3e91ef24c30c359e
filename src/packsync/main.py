#!/usr/bin/env python3
"""packsync application entry point.

This module provides a unified entry point for all interfaces:
- CLI: Edit packing lists offline and synchronize them
- Web: The authoritative HTTP server

Usage:
    packsync cli show <list-id>           # Show a list
    packsync cli add-item <list-id> Socks # Queue an edit
    packsync cli sync                     # Submit queued edits now
    packsync web [--port 8765]            # Start the server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="packsync",
        description="packsync - Offline-tolerant shared packing lists",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  packsync cli create-list "Iceland trip" --item Boots --item Parka
  packsync cli add-item <list-id> Socks --qty 4 --category clothes
  packsync cli pending                 Show edits not yet synced
  packsync cli sync                    Submit queued edits now
  packsync cli resolve <list-id> remote
  packsync web --port 8765             Start the authoritative server
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/packsync/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    # Add CLI subparser (imports cli module)
    from packsync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    # Add Web subparser (imports web module)
    from packsync.web import add_web_subparser
    add_web_subparser(subparsers)

    return parser


def dispatch(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run the chosen interface.

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.interface == "cli":
        from packsync.cli import run as run_cli
        return run_cli(args.config_dir, args)
    elif args.interface == "web":
        from packsync.web import run as run_web
        return run_web(args.config_dir, args)

    parser.print_help()
    return 1


def main() -> NoReturn:
    """Main entry point for packsync."""
    sys.exit(dispatch())


if __name__ == "__main__":
    main()
