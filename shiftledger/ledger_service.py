from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from shiftledger.analytics_cache import SalesAnalyticsBuilder
from shiftledger.carryover import Carryover, CarryoverResolver
from shiftledger.commodities import COMMODITY_ORDER, CommodityRule, commodity_rules
from shiftledger.config import Settings, settings as default_settings
from shiftledger.counts import ActualCountResolver, DeclaredCount
from shiftledger.models import StockLedger
from shiftledger.purchases import PurchaseAggregator, PurchaseTotal
from shiftledger.repositories import LedgerRepository
from shiftledger.shift_window import ShiftWindow, shift_window
from shiftledger.usage import Usage, UsageAggregator
from shiftledger.variance import SEVERITY_BY_STATUS, compute_variance

logger = logging.getLogger(__name__)

MANUAL_FIELDS = ("purchased_qty_manual", "actual_end_qty_manual", "notes")


@dataclass(frozen=True)
class LedgerInputs:
    commodity: str
    window: ShiftWindow
    start: Carryover
    purchased: int
    usage: Usage
    declared: DeclaredCount


def computed_values(
    rule: CommodityRule,
    start_qty: int,
    purchased_qty: int,
    purchased_qty_manual: Optional[int],
    units_sold: int,
    used_qty: int,
    actual_end_qty: Optional[int],
    actual_end_qty_manual: Optional[int],
) -> dict:
    purchased = PurchaseTotal(computed=purchased_qty, manual=purchased_qty_manual)
    actual = actual_end_qty_manual if actual_end_qty_manual is not None else actual_end_qty
    result = compute_variance(
        start_qty, purchased.effective, used_qty, actual, rule.waste_allowance, rule.banded
    )
    return {
        "start_qty": start_qty,
        "purchased_qty": purchased_qty,
        "units_sold": units_sold,
        "used_qty": used_qty,
        "actual_end_qty": actual_end_qty,
        "waste_allowance": rule.waste_allowance,
        "estimated_end_qty": result.estimated_end,
        "variance": result.variance,
        "status": result.status,
    }


def serialize_ledger(row: StockLedger, rule: CommodityRule, config: Settings | None = None) -> dict:
    window = shift_window(row.shift_date, config)
    purchased = PurchaseTotal(computed=row.purchased_qty, manual=row.purchased_qty_manual)
    actual = row.actual_end_qty_manual if row.actual_end_qty_manual is not None else row.actual_end_qty
    return {
        "commodity": row.commodity,
        "unit": rule.unit,
        "shiftDate": row.shift_date.isoformat(),
        "shiftWindow": {"from": window.starts_at.isoformat(), "to": window.ends_at.isoformat()},
        "startQty": row.start_qty,
        "purchasedQty": purchased.effective,
        "unitsSold": row.units_sold,
        "usedQty": row.used_qty,
        "estimatedEndQty": row.estimated_end_qty,
        "actualEndQty": actual,
        "wasteAllowance": row.waste_allowance,
        "variance": row.variance,
        "status": row.status,
        "approved": bool(row.approved),
        "purchasedQtyManual": row.purchased_qty_manual,
        "actualEndQtyManual": row.actual_end_qty_manual,
        "notes": row.notes,
    }


class LedgerService:
    """Recomputes and persists the rolls, meat and drinks ledgers."""

    def __init__(
        self,
        db: Session,
        config: Settings | None = None,
        usage: Optional[UsageAggregator] = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.rules = commodity_rules(self.config)
        self.ledgers = LedgerRepository(db)
        self.carryover = CarryoverResolver(self.ledgers)
        self.purchases = PurchaseAggregator(db)
        self.counts = ActualCountResolver(db)
        self.usage = usage or UsageAggregator(db, SalesAnalyticsBuilder(db, self.config))

    def rule(self, commodity: str) -> CommodityRule:
        return self.rules[commodity]

    def gather(self, commodity: str, shift_date: date) -> LedgerInputs:
        rule = self.rule(commodity)
        return LedgerInputs(
            commodity=commodity,
            window=shift_window(shift_date, self.config),
            start=self.carryover.resolve(commodity, shift_date),
            purchased=self.purchases.computed(rule, shift_date),
            usage=self.usage.usage(rule, shift_date),
            declared=self.counts.resolve(commodity, shift_date),
        )

    def _values_for(self, rule: CommodityRule, inputs: LedgerInputs, existing: Optional[StockLedger]) -> dict:
        return computed_values(
            rule,
            start_qty=inputs.start.qty,
            purchased_qty=inputs.purchased,
            purchased_qty_manual=existing.purchased_qty_manual if existing else None,
            units_sold=inputs.usage.units_sold,
            used_qty=inputs.usage.used_qty,
            actual_end_qty=inputs.declared.value,
            actual_end_qty_manual=existing.actual_end_qty_manual if existing else None,
        )

    def recompute(self, commodity: str, shift_date: date) -> StockLedger:
        rule = self.rule(commodity)
        inputs = self.gather(commodity, shift_date)
        row, changed = self.ledgers.upsert_ledger(
            commodity,
            shift_date,
            rule.waste_allowance,
            lambda locked_row: self._values_for(rule, inputs, locked_row),
        )
        logger.info(
            "%s ledger %s: start=%s (%s) purchased=%s sold=%s used=%s actual=%s (%s) status=%s changed=%s",
            commodity,
            shift_date,
            inputs.start.qty,
            inputs.start.source,
            inputs.purchased,
            inputs.usage.units_sold,
            inputs.usage.used_qty,
            inputs.declared.value,
            inputs.declared.source,
            row.status,
            changed,
        )
        return row

    def recompute_all(self, shift_date: date) -> dict[str, StockLedger]:
        return {commodity: self.recompute(commodity, shift_date) for commodity in COMMODITY_ORDER}

    def preview(self, commodity: str, shift_date: date) -> dict:
        rule = self.rule(commodity)
        inputs = self.gather(commodity, shift_date)
        existing = self.ledgers.get_ledger(commodity, shift_date)
        return self._values_for(rule, inputs, existing)

    def variance_for_shift(self, shift_date: date) -> list[dict]:
        items = []
        for commodity in COMMODITY_ORDER:
            values = self.preview(commodity, shift_date)
            items.append(
                {
                    "name": self.rule(commodity).label,
                    "expected": values["estimated_end_qty"],
                    "used": values["used_qty"],
                    "variance": values["variance"],
                    "severity": SEVERITY_BY_STATUS[values["status"]],
                }
            )
        return items

    def update_manual(self, commodity: str, shift_date: date, changes: dict) -> StockLedger:
        # only keys present in changes are written; None clears an override
        rule = self.rule(commodity)
        unknown = set(changes) - set(MANUAL_FIELDS)
        if unknown:
            raise ValueError(f"unsupported manual fields: {sorted(unknown)}")

        def regrade(row: StockLedger, overrides: dict) -> dict:
            merged = {
                "purchased_qty_manual": row.purchased_qty_manual,
                "actual_end_qty_manual": row.actual_end_qty_manual,
                **overrides,
            }
            return computed_values(
                rule,
                start_qty=row.start_qty,
                purchased_qty=row.purchased_qty,
                purchased_qty_manual=merged["purchased_qty_manual"],
                units_sold=row.units_sold,
                used_qty=row.used_qty,
                actual_end_qty=row.actual_end_qty,
                actual_end_qty_manual=merged["actual_end_qty_manual"],
            )

        row = self.ledgers.update_manual(commodity, shift_date, changes, regrade)
        logger.info("%s ledger %s manual update %s -> %s", commodity, shift_date, changes, row.status)
        return row

    def set_approved(self, commodity: str, shift_date: date, approved: bool) -> StockLedger:
        return self.ledgers.set_approved(commodity, shift_date, approved)

    def get_range(self, commodity: str, start: date, end: date) -> list[dict]:
        rule = self.rule(commodity)
        return [
            serialize_ledger(row, rule, self.config)
            for row in self.ledgers.get_ledger_range(commodity, start, end)
        ]

    def serialize(self, row: StockLedger) -> dict:
        return serialize_ledger(row, self.rule(row.commodity), self.config)
