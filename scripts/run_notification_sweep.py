#!/usr/bin/env python3
"""Notification sweep runner — document-expiry and balance-low reminders.

Runs one sweep and exits, or keeps sweeping on an interval. Overlapping
runs (another host, a manual API trigger) are skipped through the sweep
lease, so it is safe to schedule this from cron on several machines.

Usage:
    python -m scripts.run_notification_sweep                 # one sweep
    python -m scripts.run_notification_sweep --interval 300  # every 5 minutes
    python -m scripts.run_notification_sweep --dispatcher webhook

Requires in .env (project root):
    DATABASE_URL, JWT_SECRET

Optionally:
    NOTIFICATION_DISPATCHER, NOTIFICATION_WEBHOOK_URL, LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

logger = logging.getLogger("notification_sweep")


async def sweep_once() -> None:
    from leaveflow.database import session_scope
    from leaveflow.notifications.dispatch import get_dispatcher
    from leaveflow.notifications.scheduler import NotificationScheduler

    async with session_scope() as session:
        report = await NotificationScheduler.run_sweep(session, get_dispatcher(session))
    if report.skipped:
        logger.info("Another sweep holds the lease; nothing done")
    else:
        logger.info(
            "Sweep complete: %d processed, %d sent, %d retrying, %d failed, "
            "%d balance reminder(s)",
            report.processed, report.sent, report.retried, report.failed,
            report.balance_reminders,
        )


async def run(interval: int | None) -> None:
    from leaveflow.database import engine

    try:
        while True:
            await sweep_once()
            if not interval:
                break
            await asyncio.sleep(interval)
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Send due document-expiry and balance-low reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--interval", type=int, default=None,
                        help="Seconds between sweeps; omit to sweep once")
    parser.add_argument("--dispatcher", choices=["in_app", "webhook"],
                        help="Override NOTIFICATION_DISPATCHER")
    parser.add_argument("--log-level", type=str, default=None,
                        help="Override LOG_LEVEL (debug, info, warning)")
    args = parser.parse_args()

    if args.dispatcher:
        os.environ["NOTIFICATION_DISPATCHER"] = args.dispatcher

    # Imported after the environment is final: settings load on import
    from leaveflow.database import import_models
    from leaveflow.logging_config import configure_logging

    import_models()

    configure_logging(args.log_level)

    try:
        asyncio.run(run(args.interval))
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting")


if __name__ == "__main__":
    main()
