"""Command line entry point.

Usage:
    deposit-sweeper run [--chain solana] [--chain base]
    deposit-sweeper init-db
    echo "$PRIVATE_KEY" | deposit-sweeper encrypt-key
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from pydantic import ValidationError

from deposit_sweeper.config import Settings, get_settings
from deposit_sweeper.service import SweeperService
from deposit_sweeper.storage.database import DatabaseManager
from deposit_sweeper.vault.keys import KeyVault

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deposit-sweeper",
        description="Watch deposit addresses and sweep confirmed deposits to treasury",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the chain watchers and sweep engine")
    run.add_argument(
        "--chain",
        action="append",
        dest="chains",
        metavar="NAME",
        help="Only watch this chain (repeatable); defaults to every enabled chain",
    )

    subparsers.add_parser("init-db", help="Create database tables (use alembic for migrations)")
    subparsers.add_parser("encrypt-key", help="Encrypt a private key read from stdin into a vault blob")
    return parser


async def _run(settings: Settings, chains: list[str] | None) -> None:
    service = SweeperService(settings, chains=chains)
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, lambda: main_task.cancel() if main_task else None)
    await service.run()


async def _init_db(settings: Settings) -> None:
    manager = DatabaseManager(settings.database.url)
    try:
        await manager.init_schema_async()
    finally:
        await manager.dispose_async()


def _encrypt_key(settings: Settings) -> str:
    secret = sys.stdin.read().strip()
    if not secret:
        raise ValueError("No key material on stdin")
    if settings.vault.encryption_key is None:
        raise ValueError("WALLET_ENCRYPTION_KEY is required")
    return KeyVault(settings.vault.encryption_key.get_secret_value()).encrypt(secret)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "encrypt-key":
        try:
            print(_encrypt_key(settings))
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        logger.info("Database schema created")
        return 0

    logger.info("Configuration: %s", json.dumps(settings.redacted_summary()))
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(settings, args.chains))
    return 0


if __name__ == "__main__":
    sys.exit(main())
