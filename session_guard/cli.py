"""CLI tool for admin operations.

Usage:
    python -m session_guard.cli init-db
    python -m session_guard.cli sweep
    python -m session_guard.cli drain
"""

import asyncio
import json
import sys
from dataclasses import asdict

from session_guard.config import settings
from session_guard.database import create_db_and_tables, engine
from session_guard.engine.runtime import Runtime
from session_guard.utils.logging import setup_logging


def init_db():
    """Create tables and apply schema fixes."""
    create_db_and_tables()
    print(f"Database ready at {settings.database_url}")


async def _sweep():
    runtime = Runtime(engine, settings)
    try:
        result = await runtime.sweeper.sweep()
    finally:
        await runtime.order_client.close()
    print(json.dumps(asdict(result), indent=2, default=str))


async def _drain():
    runtime = Runtime(engine, settings)
    try:
        results = await runtime.scheduler.drain_due()
    finally:
        await runtime.order_client.close()
    if not results:
        print("No due jobs.")
    for job_id, outcome in results.items():
        print(f"{job_id}: {outcome}")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m session_guard.cli <command>")
        print("Commands: init-db, sweep, drain")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "init-db":
        init_db()
    elif command == "sweep":
        create_db_and_tables()
        asyncio.run(_sweep())
    elif command == "drain":
        create_db_and_tables()
        asyncio.run(_drain())
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
