from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from shiftledger.analytics_cache import SalesAnalyticsBuilder
from shiftledger.commodities import CommodityRule
from shiftledger.models import AnalyticsShiftItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    units_sold: int
    used_qty: int
    source: str


class UsageAggregator:
    """Raw-material usage per shift. Reading may build the analytics cache."""

    def __init__(self, db: Session, builder: Optional[SalesAnalyticsBuilder] = None):
        self.db = db
        self.builder = builder or SalesAnalyticsBuilder(db)

    def ensure_cache(self, shift_date: date) -> bool:
        cached = (
            self.db.query(func.count(AnalyticsShiftItem.id))
            .filter(AnalyticsShiftItem.shift_date == shift_date)
            .scalar()
        )
        if cached:
            return False
        logger.info("no sales analytics for %s, building", shift_date)
        self.builder.build(shift_date)
        return True

    def _sum(self, column, shift_date: date, *criteria) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(column), 0))
            .filter(AnalyticsShiftItem.shift_date == shift_date, *criteria)
            .scalar()
        )
        return int(total or 0)

    def units_sold(self, rule: CommodityRule, shift_date: date) -> tuple[int, str]:
        self.ensure_cache(shift_date)
        primary = self._sum(getattr(AnalyticsShiftItem, rule.usage_column), shift_date)
        if primary:
            return primary, rule.usage_column
        category_match = or_(
            *[AnalyticsShiftItem.category.ilike(f"%{keyword}%") for keyword in rule.category_keywords]
        )
        fallback = self._sum(AnalyticsShiftItem.qty, shift_date, category_match)
        if fallback:
            logger.warning(
                "%s usage for %s taken from category match (%d units)", rule.name, shift_date, fallback
            )
        return fallback, "category"

    def usage(self, rule: CommodityRule, shift_date: date) -> Usage:
        units, source = self.units_sold(rule, shift_date)
        return Usage(units_sold=units, used_qty=units * rule.units_per_sale, source=source)
