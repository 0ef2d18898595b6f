"""Daily close: recompute every commodity ledger for one shift date.

    python -m shiftledger.jobs [--date YYYY-MM-DD]
"""

from __future__ import annotations

import argparse
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from shiftledger.config import Settings, settings as default_settings
from shiftledger.db import SessionLocal
from shiftledger.ledger_service import LedgerService
from shiftledger.shift_window import business_date_for, parse_shift_date

logger = logging.getLogger(__name__)


def latest_completed_shift(now: Optional[datetime] = None, config: Settings | None = None) -> date:
    config = config or default_settings
    now = now or datetime.now(timezone.utc)
    current = business_date_for(now, config)
    return current - timedelta(days=1)


def run_daily_close(
    shift_date: Optional[date] = None,
    session_factory=SessionLocal,
    config: Settings | None = None,
) -> dict[str, str]:
    config = config or default_settings
    shift_date = shift_date or latest_completed_shift(config=config)
    db = session_factory()
    try:
        rows = LedgerService(db, config).recompute_all(shift_date)
        statuses = {commodity: row.status for commodity, row in rows.items()}
    finally:
        db.close()
    logger.info("daily close for %s: %s", shift_date, statuses)
    return statuses


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Recompute stock ledgers for a shift date.")
    parser.add_argument("--date", type=parse_shift_date, default=None, help="shift date, YYYY-MM-DD")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=default_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    statuses = run_daily_close(args.date)
    for commodity, status in statuses.items():
        print(f"{commodity}: {status}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
