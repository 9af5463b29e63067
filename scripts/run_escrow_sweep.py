#!/usr/bin/env python3
"""Run the escrow sweeps once across every active tenant.

Usage:
    python scripts/run_escrow_sweep.py                 # every sweep
    python scripts/run_escrow_sweep.py --task expire_overdue

For deployments that drive sweeps from cron instead of the in-process
scheduler (ESCROW_SCHEDULER_ENABLED=false). Exit code 1 if a task name
is unknown.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(task_names: list[str]) -> int:
    from fastapi import FastAPI

    from src.app.api.middleware.logging import configure_structlog
    from src.app.core.database import close_db, list_active_tenants
    from src.app.core.redis import close_redis
    from src.app.escrow.scheduler import setup_escrow_scheduler
    from src.app.main import build_services

    configure_structlog()
    holder = FastAPI()
    build_services(holder)
    tasks = await setup_escrow_scheduler(holder.state.escrow_service, list_active_tenants)

    unknown = [name for name in task_names if name not in tasks]
    if unknown:
        print(f"Unknown task(s): {', '.join(unknown)}. Available: {', '.join(tasks)}")
        return 1

    try:
        for name in task_names or list(tasks):
            count = await tasks[name]()
            print(f"{name}: {count} investment(s) processed")
    finally:
        await close_db()
        await close_redis()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run escrow sweeps once")
    parser.add_argument(
        "--task",
        action="append",
        default=[],
        help="Sweep to run (expire_overdue, retry_pending_transactions, unwind_cancelled_deals); repeatable",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.task)))


if __name__ == "__main__":
    main()
