"""
Periodic settlement run.

Settles every account with outstanding postings for the last closed period
(or the one given on the command line). Meant to be run from cron:

    python -m ledger_backend.run_settlements
    python -m ledger_backend.run_settlements --start 2026-10-05 --end 2026-10-12
"""

import argparse
import asyncio
import logging
from datetime import datetime

from ledger_backend.app.db.session import AsyncSessionLocal, engine
from ledger_backend.app.core.observability import configure_logging
from ledger_backend.app.domain.ledger.settlement_engine import SettlementBatchEngine, SettlementPeriod
from ledger_backend.app.services.payout_rail import get_payout_rail

logger = logging.getLogger("ledger.cron")


def parse_period(args: argparse.Namespace) -> SettlementPeriod:
    if args.start is None and args.end is None:
        return SettlementPeriod.last_closed()
    if args.start is None or args.end is None:
        raise SystemExit("--start and --end must be given together")
    return SettlementPeriod(
        start=datetime.fromisoformat(args.start),
        end=datetime.fromisoformat(args.end),
    )


async def run_settlements(period: SettlementPeriod) -> int:
    """
    Run one settlement period.

    Returns the number of accounts that failed, so cron sees a non-zero exit.
    """
    async with AsyncSessionLocal() as db:
        logger.info(
            "Starting settlement run",
            extra={"period_start": period.start.isoformat(), "period_end": period.end.isoformat()}
        )
        outcome = await SettlementBatchEngine(db, get_payout_rail()).run_period(period)

    for result in outcome.settled:
        settlement = result.settlement
        print(
            f"settlement {settlement.id}: account {settlement.account_id} "
            f"total {settlement.total_amount} {settlement.status.value} / {settlement.payout_status.value}"
        )
    for failure in outcome.failures:
        print(f"FAILED account {failure['account_id']}: {failure['error_code']} {failure['message']}")

    print(
        f"\nPeriod {period.start.date()} - {period.end.date()}: "
        f"{len(outcome.settled)} settled, {len(outcome.skipped_account_ids)} skipped, "
        f"{len(outcome.failures)} failed"
    )
    await engine.dispose()
    return len(outcome.failures)


def main():
    parser = argparse.ArgumentParser(description="Run ledger settlements for one period")
    parser.add_argument("--start", help="Period start (ISO date or datetime, UTC)")
    parser.add_argument("--end", help="Period end, exclusive (ISO date or datetime, UTC)")
    args = parser.parse_args()

    configure_logging()
    failures = asyncio.run(run_settlements(parse_period(args)))
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
