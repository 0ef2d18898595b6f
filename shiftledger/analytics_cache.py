from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from shiftledger.config import Settings, settings as default_settings
from shiftledger.models import AnalyticsShiftItem, ItemCatalog, PosReceipt, PosReceiptItem
from shiftledger.shift_window import ShiftWindow, shift_window

logger = logging.getLogger(__name__)


class SalesAnalyticsBuilder:
    """Rebuilds ``analytics_shift_item`` for one shift date in a single transaction."""

    def __init__(self, db: Session, config: Settings | None = None):
        self.db = db
        self.config = config or default_settings

    def _sold_lines(self, window: ShiftWindow):
        return (
            self.db.query(
                PosReceiptItem.sku,
                PosReceiptItem.name,
                func.coalesce(func.sum(PosReceiptItem.quantity), 0),
            )
            .join(PosReceipt, PosReceipt.id == PosReceiptItem.receipt_id)
            .filter(
                PosReceipt.created_at >= window.starts_at,
                PosReceipt.created_at < window.ends_at,
                PosReceipt.is_refund.is_(False),
            )
            .group_by(PosReceiptItem.sku, PosReceiptItem.name)
            .all()
        )

    def build(self, shift_date: date) -> list[AnalyticsShiftItem]:
        window = shift_window(shift_date, self.config)
        catalog = {
            entry.sku: entry
            for entry in self.db.query(ItemCatalog).filter(ItemCatalog.active.is_(True)).all()
        }
        per_key: dict[str, dict] = {}
        for raw_sku, raw_name, qty in self._sold_lines(window):
            sku = (raw_sku or "").strip() or None
            rule = catalog.get(sku) if sku else None
            category = rule.category if rule else "other"
            name = (rule.name if rule else None) or raw_name or sku or "UNKNOWN"
            key = sku or name
            item = per_key.setdefault(
                key,
                {
                    "sku": sku,
                    "name": name,
                    "category": category,
                    "qty": 0,
                    "patties": 0,
                    "rolls": 0,
                    "drinks": 0,
                },
            )
            qty = int(qty or 0)
            item["qty"] += qty
            if rule is None:
                continue
            lowered = category.lower()
            if "burger" in lowered:
                if (rule.kind or "beef") == "beef":
                    item["patties"] += (rule.patties_per or 1) * qty
                item["rolls"] += (rule.rolls_per or 1) * qty
            elif "drink" in lowered or "beverage" in lowered:
                item["drinks"] += (rule.drinks_per or 1) * qty

        now = datetime.now(timezone.utc)
        try:
            self.db.query(AnalyticsShiftItem).filter(
                AnalyticsShiftItem.shift_date == window.shift_date
            ).delete(synchronize_session=False)
            rows = [
                AnalyticsShiftItem(
                    shift_date=window.shift_date,
                    item_key=key,
                    from_ts=window.starts_at,
                    to_ts=window.ends_at,
                    updated_at=now,
                    **values,
                )
                for key, values in sorted(per_key.items())
            ]
            self.db.add_all(rows)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "sales analytics built for %s: %d items, %d units",
            window.shift_date,
            len(rows),
            sum(row.qty for row in rows),
        )
        return rows
