from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shiftledger.commodities import MEAT, CommodityRule
from shiftledger.models import StockReceivedLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseTotal:
    computed: int
    manual: Optional[int] = None

    @property
    def effective(self) -> int:
        return self.manual if self.manual is not None else self.computed


class PurchaseAggregator:
    """Sums ``stock_received_log`` only; meat in grams, rolls and drinks in units."""

    def __init__(self, db: Session):
        self.db = db

    def computed(self, rule: CommodityRule, shift_date: date) -> int:
        column = StockReceivedLog.weight_g if rule.name == MEAT else StockReceivedLog.qty
        total = (
            self.db.query(func.coalesce(func.sum(column), 0))
            .filter(
                StockReceivedLog.item_type == rule.name,
                StockReceivedLog.shift_date == shift_date,
            )
            .scalar()
        )
        return int(total or 0)

    def record(
        self,
        commodity: str,
        shift_date: date,
        item_name: str,
        qty: int,
        weight_g: Optional[int] = None,
        staff_name: Optional[str] = None,
        source: str = "LODGEMENT",
    ) -> StockReceivedLog:
        row = StockReceivedLog(
            shift_date=shift_date,
            item_type=commodity,
            item_name=item_name,
            qty=qty,
            weight_g=weight_g,
            source=source,
            staff_name=staff_name,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        self.db.flush()
        logger.info(
            "stock received: %s %s qty=%s weight_g=%s for %s by %s",
            commodity,
            item_name,
            qty,
            weight_g,
            shift_date,
            staff_name,
        )
        return row
