#!/usr/bin/env python3
"""Seed or roll over leave balances for a year.

Usage:
    python -m scripts.initialize_leave_balances                  # current year
    python -m scripts.initialize_leave_balances --year 2027
    python -m scripts.initialize_leave_balances --rollover 2026  # 2026 → 2027

Both operations are idempotent: existing ledger rows are never duplicated
and carryover is applied at most once per row.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

from dotenv import load_dotenv

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

logger = logging.getLogger("initialize_leave_balances")


async def run(year: int, rollover_from: int | None) -> None:
    from leaveflow.database import engine, session_scope
    from leaveflow.leave.accrual import AccrualEngine

    try:
        async with session_scope() as session:
            if rollover_from is not None:
                created, updated = await AccrualEngine.rollover(session, rollover_from)
                logger.info(
                    "Rollover %d → %d: %d created, %d updated",
                    rollover_from, rollover_from + 1, created, updated,
                )
            else:
                created = await AccrualEngine.initialize_year(session, year)
                logger.info("Initialized %d balance(s) for %d", created, year)
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Initialize or roll over leave balances")
    parser.add_argument("--year", type=int, default=date.today().year,
                        help="Year to initialize (default: current year)")
    parser.add_argument("--rollover", dest="rollover_from", type=int, default=None,
                        help="Roll balances over from this year into the next")
    args = parser.parse_args()

    from leaveflow.database import import_models
    from leaveflow.logging_config import configure_logging

    import_models()

    configure_logging()
    asyncio.run(run(args.year, args.rollover_from))


if __name__ == "__main__":
    main()
