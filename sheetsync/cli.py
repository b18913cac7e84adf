"""Command-line interface for sheetsync."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import SheetSyncApp, fetch_once
from .config import ConfigurationError, SyncConfig, load_config
from .logging import configure_logging
from .priority import sort_by_priority
from .scheduler import NoDataAvailableError

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sheetsync", description="Quota-aware sync engine for sheet-backed dashboards"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Keep every configured source in sync")

    fetch_parser = subparsers.add_parser(
        "fetch", help="Refresh sources once and print their records as JSON"
    )
    fetch_parser.add_argument("--source", help="Only refresh this source")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _run_fetch(config: SyncConfig, source_name: Optional[str]) -> int:
    configure_logging(config.logging.level, log_path=None)
    try:
        results = asyncio.run(fetch_once(config, source_name=source_name))
    except (ConfigurationError, NoDataAvailableError) as exc:
        LOGGER.error("Fetch failed: %s", exc)
        return 1

    output = {}
    for source in config.enabled_sources:
        result = results.get(source.name)
        if result is None:
            continue
        profile = source.resolve_profile()
        output[source.name] = {
            "stale": result.is_stale,
            "origin": result.origin.value,
            "lastSync": result.last_sync.isoformat() if result.last_sync else None,
            "records": sort_by_priority(result.dataset.records, profile),
        }
    json.dump(output, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "start":
        try:
            SheetSyncApp.start(config)
        except ConfigurationError as exc:
            LOGGER.error("Cannot start: %s", exc)
            return 1
        return 0

    if args.command == "fetch":
        return _run_fetch(config, args.source)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "api_key" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
