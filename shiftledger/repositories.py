from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shiftledger.models import StockLedger

logger = logging.getLogger(__name__)

# Fixed pool; unrelated rows may share a stripe.
LOCK_STRIPES = 64
_row_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def _row_lock(commodity: str, shift_date: date) -> threading.Lock:
    return _row_locks[hash((commodity, shift_date)) % LOCK_STRIPES]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerNotFound(LookupError):
    pass


# Closing stock of a ledger row, most authoritative first.
END_QTY_PRECEDENCE = (
    ("actual_end_qty_manual", "manual"),
    ("actual_end_qty", "actual"),
    ("estimated_end_qty", "estimated"),
)


def resolved_end(row: StockLedger) -> tuple[int, str]:
    for field, source in END_QTY_PRECEDENCE:
        value = getattr(row, field)
        if value is not None:
            return value, source
    return 0, "none"


class LedgerRepository:
    """Data access for ``stock_ledger``. Writes go through :meth:`locked`."""

    def __init__(self, db: Session):
        self.db = db

    def _query(self, commodity: str, shift_date: date):
        return self.db.query(StockLedger).filter(
            StockLedger.commodity == commodity,
            StockLedger.shift_date == shift_date,
        )

    def get_ledger(self, commodity: str, shift_date: date) -> Optional[StockLedger]:
        return self._query(commodity, shift_date).first()

    def get_prior_day(self, commodity: str, shift_date: date) -> Optional[StockLedger]:
        return self.get_ledger(commodity, shift_date - timedelta(days=1))

    def get_prior_day_end(self, commodity: str, shift_date: date) -> tuple[int, str]:
        prior = self.get_prior_day(commodity, shift_date)
        if prior is None:
            return 0, "none"
        return resolved_end(prior)

    def get_ledger_range(self, commodity: str, start: date, end: date) -> list[StockLedger]:
        return (
            self.db.query(StockLedger)
            .filter(
                StockLedger.commodity == commodity,
                StockLedger.shift_date >= start,
                StockLedger.shift_date <= end,
            )
            .order_by(StockLedger.shift_date.desc())
            .all()
        )

    def _select_for_update(self, commodity: str, shift_date: date) -> Optional[StockLedger]:
        return self._query(commodity, shift_date).with_for_update().populate_existing().first()

    def _get_or_create(self, commodity: str, shift_date: date, waste_allowance: int) -> StockLedger:
        row = self._select_for_update(commodity, shift_date)
        if row is not None:
            return row
        now = _now()
        row = StockLedger(
            commodity=commodity,
            shift_date=shift_date,
            waste_allowance=waste_allowance,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError:
            # another writer inserted the row first; nothing else is pending yet
            self.db.rollback()
            logger.info("ledger row %s/%s created concurrently, re-reading", commodity, shift_date)
            row = self._select_for_update(commodity, shift_date)
            if row is None:
                raise
        return row

    @contextmanager
    def locked(
        self,
        commodity: str,
        shift_date: date,
        create_with_allowance: Optional[int] = None,
    ) -> Iterator[StockLedger]:
        with _row_lock(commodity, shift_date):
            try:
                if create_with_allowance is not None:
                    row = self._get_or_create(commodity, shift_date, create_with_allowance)
                else:
                    row = self._select_for_update(commodity, shift_date)
                    if row is None:
                        raise LedgerNotFound(f"{commodity} ledger for {shift_date} not found")
                yield row
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        self.db.refresh(row)

    @staticmethod
    def assign(row: StockLedger, values: dict) -> bool:
        changed = False
        for field, value in values.items():
            if getattr(row, field) != value:
                setattr(row, field, value)
                changed = True
        if changed:
            row.updated_at = _now()
        return changed

    def upsert_ledger(
        self,
        commodity: str,
        shift_date: date,
        waste_allowance: int,
        compute: Callable[[StockLedger], dict],
    ) -> tuple[StockLedger, bool]:
        """Returns the refreshed row and whether ``compute`` changed it."""
        with self.locked(commodity, shift_date, create_with_allowance=waste_allowance) as row:
            changed = self.assign(row, compute(row))
        return row, changed

    def update_manual(
        self,
        commodity: str,
        shift_date: date,
        changes: dict,
        compute: Callable[[StockLedger, dict], dict],
    ) -> StockLedger:
        with self.locked(commodity, shift_date) as row:
            self.assign(row, {**changes, **compute(row, changes)})
        return row

    def set_approved(self, commodity: str, shift_date: date, approved: bool) -> StockLedger:
        with self.locked(commodity, shift_date) as row:
            self.assign(row, {"approved": approved})
        return row
