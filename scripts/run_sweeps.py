#!/usr/bin/env python3
"""Leaveflow sweeps — cron wrapper for the periodic leave jobs.

Jobs:
  - accrual   credit the monthly EL accrual (default: current month)
  - grant     open a year with its CASUAL / MEDICAL entitlement (default: this year)
  - rollover  grant next year, lapse CASUAL and carry EARNED (default: last year)
  - overstay  flag approved leaves that ended without a confirmed return

Every job is idempotent per period, so a re-run after a crash is safe.

Usage:
    python scripts/run_sweeps.py accrual                   # this month
    python scripts/run_sweeps.py accrual --month 2026-03
    python scripts/run_sweeps.py grant --year 2026         # first year on the system
    python scripts/run_sweeps.py rollover --year 2025
    python scripts/run_sweeps.py overstay --date 2026-10-19

Requires .env at project root with DATABASE_URL and JWT_SECRET.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv(PROJECT_ROOT / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("run_sweeps")

from leaveflow.database import async_session_factory, engine  # noqa: E402
from leaveflow.leave.sweeps import (  # noqa: E402
    SweepReport,
    run_el_accrual,
    run_entitlement_grant,
    run_overstay_check,
    run_year_end_rollover,
)
from leaveflow.leave.working_days import local_today  # noqa: E402

# Every model must be registered before the first flush
import leaveflow.auth.models  # noqa: E402,F401
import leaveflow.common.audit  # noqa: E402,F401
import leaveflow.leave.models  # noqa: E402,F401
import leaveflow.notifications.models  # noqa: E402,F401


def _parse_month(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}")


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


async def _run(args: argparse.Namespace) -> SweepReport:
    today = local_today()
    async with async_session_factory() as session:
        try:
            if args.job == "accrual":
                report = await run_el_accrual(session, args.month or today.replace(day=1))
            elif args.job == "grant":
                report = await run_entitlement_grant(session, args.year or today.year)
            elif args.job == "rollover":
                report = await run_year_end_rollover(session, args.year or today.year - 1)
            else:
                report = await run_overstay_check(session, args.date or today)
            if args.dry_run:
                await session.rollback()
                logger.info("Dry run: changes rolled back")
            else:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
    await engine.dispose()
    return report


def main():
    parser = argparse.ArgumentParser(
        description="Leaveflow sweeps — accrual, entitlement grant, year-end rollover, overstay check",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Cron schedule (recommended, Asia/Dhaka):
    5 0 1 * *     run_sweeps.py accrual     (1st of every month)
    30 0 1 1 *    run_sweeps.py rollover    (1 January)
    15 1 * * *    run_sweeps.py overstay    (daily)
""",
    )
    parser.add_argument("job", choices=["accrual", "grant", "rollover", "overstay"])
    parser.add_argument("--month", type=_parse_month, help="Accrual month (YYYY-MM)")
    parser.add_argument("--year", type=int, help="Year being closed by the rollover, or opened by the grant")
    parser.add_argument("--date", type=_parse_date, help="Reference date for the overstay check")
    parser.add_argument("--dry-run", action="store_true", help="Run the sweep, then roll back")
    args = parser.parse_args()

    try:
        report = asyncio.run(_run(args))
    except Exception:
        logger.exception("Sweep %s failed", args.job)
        sys.exit(1)

    logger.info(
        "Sweep %s done: processed=%s skipped=%s", args.job, report.processed, report.skipped,
    )
    print(json.dumps(report.model_dump(), indent=2, default=str))


if __name__ == "__main__":
    main()
