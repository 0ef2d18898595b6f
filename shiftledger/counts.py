from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from shiftledger.commodities import DRINKS, MEAT, ROLLS
from shiftledger.models import LegacyStockSheet, ShiftClosingForm

logger = logging.getLogger(__name__)

# Resolution order for a declared closing count: the canonical shift closing
# form first, then the legacy stock sheet for the same shift date.
COUNT_FIELDS = {
    ROLLS: ("rolls_end", "burger_buns_stock"),
    MEAT: ("meat_end_g", "meat_weight_g"),
    DRINKS: ("drinks_end", "drinks_count"),
}


@dataclass(frozen=True)
class DeclaredCount:
    value: Optional[int]
    source: Optional[str] = None


def latest_closing_form(db: Session, shift_date: date) -> Optional[ShiftClosingForm]:
    return (
        db.query(ShiftClosingForm)
        .filter(
            ShiftClosingForm.shift_date == shift_date,
            ShiftClosingForm.deleted_at.is_(None),
        )
        .order_by(ShiftClosingForm.created_at.desc(), ShiftClosingForm.id.desc())
        .first()
    )


def latest_legacy_sheet(db: Session, shift_date: date) -> Optional[LegacyStockSheet]:
    return (
        db.query(LegacyStockSheet)
        .filter(LegacyStockSheet.shift_date == shift_date)
        .order_by(LegacyStockSheet.updated_at.desc(), LegacyStockSheet.id.desc())
        .first()
    )


class ActualCountResolver:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, commodity: str, shift_date: date) -> DeclaredCount:
        form_field, legacy_field = COUNT_FIELDS[commodity]
        form = latest_closing_form(self.db, shift_date)
        if form is not None and getattr(form, form_field) is not None:
            return DeclaredCount(value=getattr(form, form_field), source=f"shift_closing_form.{form_field}")
        sheet = latest_legacy_sheet(self.db, shift_date)
        if sheet is not None and getattr(sheet, legacy_field) is not None:
            logger.info("%s closing count for %s read from legacy stock sheet", commodity, shift_date)
            return DeclaredCount(value=getattr(sheet, legacy_field), source=f"legacy_stock_sheet.{legacy_field}")
        return DeclaredCount(value=None)
