from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from shiftledger.commodities import DRINKS, MEAT, ROLLS
from shiftledger.comparison import DailyComparisonService
from shiftledger.config import settings
from shiftledger.db import SessionLocal
from shiftledger.ledger_service import LedgerService
from shiftledger.models import ItemCatalog
from shiftledger.pos_client import PosClient
from shiftledger.purchases import PurchaseAggregator
from shiftledger.repositories import LedgerNotFound

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shift Ledger")


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_pos_client() -> PosClient:
    return PosClient.from_settings(settings)


def _ledger_service(db: Session) -> LedgerService:
    return LedgerService(db, settings)


def _check_commodity(service: LedgerService, commodity: str) -> None:
    if commodity not in service.rules:
        raise HTTPException(status_code=404, detail=f"unknown commodity {commodity!r}")


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/stock/variance/shift", tags=["Stock"])
def variance_for_shift(
    shift_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> list[dict]:
    return _ledger_service(db).variance_for_shift(shift_date)


class RollsLodge(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"shiftDate": "2025-01-10", "staffName": "Nok", "rollsPurchased": 100}
        },
    }
    shift_date: date = Field(alias="shiftDate")
    staff_name: str = Field(alias="staffName", min_length=1)
    rolls_purchased: int = Field(alias="rollsPurchased", gt=0)


class MeatLodge(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"shiftDate": "2025-01-10", "staffName": "Nok", "kilosPurchased": 5.5}
        },
    }
    shift_date: date = Field(alias="shiftDate")
    staff_name: str = Field(alias="staffName", min_length=1)
    kilos_purchased: float = Field(alias="kilosPurchased", gt=0)


class DrinkLine(BaseModel):
    sku: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class DrinksLodge(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "shiftDate": "2025-01-10",
                "staffName": "Nok",
                "items": [{"sku": "COKE-330", "quantity": 24}],
            }
        },
    }
    shift_date: date = Field(alias="shiftDate")
    staff_name: str = Field(alias="staffName", min_length=1)
    items: list[DrinkLine] = Field(min_length=1)


def _recompute_after_lodge(db: Session, commodity: str, shift_date: date) -> dict:
    db.commit()
    service = _ledger_service(db)
    return service.serialize(service.recompute(commodity, shift_date))


@app.post("/stock/lodge/rolls", tags=["Stock"])
def lodge_rolls(payload: RollsLodge, db: Session = Depends(get_db)) -> dict:
    PurchaseAggregator(db).record(
        ROLLS,
        payload.shift_date,
        item_name="Burger Rolls",
        qty=payload.rolls_purchased,
        staff_name=payload.staff_name,
    )
    return _recompute_after_lodge(db, ROLLS, payload.shift_date)


@app.post("/stock/lodge/meat", tags=["Stock"])
def lodge_meat(payload: MeatLodge, db: Session = Depends(get_db)) -> dict:
    grams = int(round(payload.kilos_purchased * 1000))
    PurchaseAggregator(db).record(
        MEAT,
        payload.shift_date,
        item_name="Meat",
        qty=1,
        weight_g=grams,
        staff_name=payload.staff_name,
    )
    return _recompute_after_lodge(db, MEAT, payload.shift_date)


@app.post("/stock/lodge/drinks", tags=["Stock"])
def lodge_drinks(payload: DrinksLodge, db: Session = Depends(get_db)) -> dict:
    purchases = PurchaseAggregator(db)
    for line in payload.items:
        catalog = db.get(ItemCatalog, line.sku)
        purchases.record(
            DRINKS,
            payload.shift_date,
            item_name=catalog.name if catalog else line.sku,
            qty=line.quantity,
            staff_name=payload.staff_name,
        )
    return _recompute_after_lodge(db, DRINKS, payload.shift_date)


@app.post("/stock/ledger/{commodity}/recompute", tags=["Stock Ledger"])
def recompute_ledger(
    commodity: str,
    shift_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> dict:
    service = _ledger_service(db)
    _check_commodity(service, commodity)
    return service.serialize(service.recompute(commodity, shift_date))


@app.get("/stock/ledger/{commodity}", tags=["Stock Ledger"])
def list_ledger(
    commodity: str,
    start: date,
    end: date,
    db: Session = Depends(get_db),
) -> list[dict]:
    service = _ledger_service(db)
    _check_commodity(service, commodity)
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return service.get_range(commodity, start, end)


class ManualUpdate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"actualEndQtyManual": 27, "notes": "recounted at close"}
        },
    }
    purchased_qty_manual: Optional[int] = Field(default=None, alias="purchasedQtyManual", ge=0)
    actual_end_qty_manual: Optional[int] = Field(default=None, alias="actualEndQtyManual", ge=0)
    notes: Optional[str] = None


@app.put("/stock/ledger/{commodity}/{shift_date}/manual", tags=["Stock Ledger"])
def update_manual(
    commodity: str,
    shift_date: date,
    payload: ManualUpdate,
    db: Session = Depends(get_db),
) -> dict:
    service = _ledger_service(db)
    _check_commodity(service, commodity)
    changes = {field: getattr(payload, field) for field in payload.model_fields_set}
    try:
        row = service.update_manual(commodity, shift_date, changes)
    except LedgerNotFound:
        raise HTTPException(status_code=404, detail="ledger row not found")
    return service.serialize(row)


class Approve(BaseModel):
    approved: bool = True


@app.post("/stock/ledger/{commodity}/{shift_date}/approve", tags=["Stock Ledger"])
def approve_ledger(
    commodity: str,
    shift_date: date,
    payload: Approve,
    db: Session = Depends(get_db),
) -> dict:
    service = _ledger_service(db)
    _check_commodity(service, commodity)
    try:
        row = service.set_approved(commodity, shift_date, payload.approved)
    except LedgerNotFound:
        raise HTTPException(status_code=404, detail="ledger row not found")
    return service.serialize(row)


@app.get("/api/analysis/daily-comparison", tags=["Analysis"])
def daily_comparison(
    shift_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> dict:
    comparison = DailyComparisonService(db, settings).compare(shift_date)
    return comparison.model_dump(by_alias=True, mode="json")


@app.get("/api/analysis/daily-comparison-range", tags=["Analysis"])
def daily_comparison_range(
    month: str,
    db: Session = Depends(get_db),
) -> list[dict]:
    service = DailyComparisonService(db, settings)
    try:
        comparisons = service.compare_month(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [comparison.model_dump(by_alias=True, mode="json") for comparison in comparisons]


@app.post("/api/analysis/sync-pos-for-date", tags=["Analysis"])
def sync_pos_for_date(
    shift_date: date = Query(alias="date"),
    deadline: Optional[float] = Query(default=None, gt=0),
    db: Session = Depends(get_db),
    client: PosClient = Depends(get_pos_client),
) -> dict:
    result = DailyComparisonService(db, settings).sync_pos_for_date(shift_date, client, deadline)
    if not result.ok:
        logger.warning("POS sync for %s degraded: %s %s", shift_date, result.status.value, result.reason)
    return result.model_dump(by_alias=True, mode="json")
