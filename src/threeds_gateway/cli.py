#!/usr/bin/env python3
"""Command-line interface for gateway maintenance.

Usage:
    threeds-gateway purge-callbacks
    threeds-gateway providers
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from .callbacks import CallbackStateStore
from .config import GatewaySettings
from .database import Database
from .providers.registry import build_registry
from .transport import ProviderHTTPClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


async def purge_callbacks_async(settings: GatewaySettings) -> int:
    """Delete expired callback states.

    Returns:
        Number of rows removed.
    """
    database = Database(settings.database_url)
    try:
        await database.create_tables()
        async with database.session() as session:
            store = CallbackStateStore(session, ttl_minutes=settings.callback_state_ttl_minutes)
            return await store.purge_expired()
    finally:
        await database.dispose()


async def list_providers_async(settings: GatewaySettings) -> list:
    async with ProviderHTTPClient(timeout=settings.http_timeout_seconds) as http:
        registry = build_registry(settings, http)
        return [
            (name, registry.get(name).config.environment)
            for name in registry.names()
        ]


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="threeds-gateway",
        description="Maintenance tools for the 3-D Secure payment gateway.",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser(
        "purge-callbacks",
        help="Delete expired callback states",
    )
    subparsers.add_parser(
        "providers",
        help="List the providers that are configured",
    )
    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)
    settings = GatewaySettings.from_env()

    logging.basicConfig(
        level=(parsed_args.log_level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "purge-callbacks":
        purged = asyncio.run(purge_callbacks_async(settings))
        print(f"Purged {purged} expired callback states")
        return 0

    if parsed_args.command == "providers":
        for name, environment in asyncio.run(list_providers_async(settings)):
            print(f"{name}\t{environment}")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
