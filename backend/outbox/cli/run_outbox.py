#!/usr/bin/env python3
"""Run one outbox drain from the command line.

Usage:
    python -m outbox.cli.run_outbox [--max-duration SECONDS]

Prints the drain summary as JSON. Exits with status 1 if the job store is
unavailable.
"""
import argparse
import asyncio
import json
import sys

from sqlalchemy.exc import SQLAlchemyError

from outbox.database import get_engine, init_db
from outbox.errors import OutboxStoreError
from outbox.logging_config import configure_logging
from outbox.services.outbox_worker import run_outbox_once


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drain the outbox once.")
    parser.add_argument(
        "--max-duration",
        type=float,
        default=None,
        help="Time budget in seconds (default: OUTBOX_MAX_DURATION_SECONDS)",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before draining (development only)",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging()
    try:
        if args.init_db:
            await init_db()
        summary = await run_outbox_once(max_duration=args.max_duration)
    except (OutboxStoreError, SQLAlchemyError, OSError) as e:
        print(json.dumps({"success": False, "error": str(e)}))
        return 1
    finally:
        await get_engine().dispose()

    print(json.dumps({"success": True, **summary.as_dict()}))
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
