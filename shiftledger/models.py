from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shiftledger.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

PAYMENT_TYPES = ("cash", "qr", "grab", "other")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockLedger(Base):
    __tablename__ = "stock_ledger"
    __table_args__ = (
        Index("ix_stock_ledger_commodity_shift_date", "commodity", "shift_date", unique=True),
        CheckConstraint("commodity IN ('rolls', 'meat', 'drinks')", name="stock_ledger_commodity"),
        CheckConstraint(
            "status IN ('PENDING', 'OK', 'WARNING', 'ALERT')", name="stock_ledger_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    commodity: Mapped[str] = mapped_column(Text, nullable=False)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    start_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_qty_manual: Mapped[int | None] = mapped_column(Integer)
    units_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_end_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_end_qty: Mapped[int | None] = mapped_column(Integer)
    actual_end_qty_manual: Mapped[int | None] = mapped_column(Integer)
    waste_allowance: Mapped[int] = mapped_column(Integer, nullable=False)
    variance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ItemCatalog(Base):
    __tablename__ = "item_catalog"

    sku: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str | None] = mapped_column(Text)
    patties_per: Mapped[int | None] = mapped_column(Integer)
    rolls_per: Mapped[int | None] = mapped_column(Integer)
    drinks_per: Mapped[int | None] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PosReceipt(Base):
    __tablename__ = "pos_receipt"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_type: Mapped[str] = mapped_column(Text, nullable=False, default="other")
    total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    is_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class PosReceiptItem(Base):
    __tablename__ = "pos_receipt_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    receipt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("pos_receipt.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PosShiftReport(Base):
    __tablename__ = "pos_shift_report"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_date: Mapped[Date] = mapped_column(Date, nullable=False, unique=True)
    cash_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    qr_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    grab_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    other_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    shopping_total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    wage_total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    other_expense_total: Mapped[Numeric] = mapped_column(
        Numeric(12, 2), nullable=False, default=0
    )
    expense_items: Mapped[list | None] = mapped_column(JSON_TYPE)
    starting_cash: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    receipt_count: Mapped[int | None] = mapped_column(Integer)
    synced_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class AnalyticsShiftItem(Base):
    __tablename__ = "analytics_shift_item"
    __table_args__ = (
        Index("ix_analytics_shift_item_shift_date_key", "shift_date", "item_key", unique=True),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    item_key: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rolls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    drinks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    from_ts: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    to_ts: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class StockReceivedLog(Base):
    __tablename__ = "stock_received_log"
    __table_args__ = (
        CheckConstraint("item_type IN ('rolls', 'meat', 'drinks')", name="stock_received_item_type"),
        Index("ix_stock_received_log_shift_date_item_type", "shift_date", "item_type"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight_g: Mapped[int | None] = mapped_column(Integer)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="MANUAL")
    staff_name: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ShiftClosingForm(Base):
    __tablename__ = "shift_closing_form"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    completed_by: Mapped[str | None] = mapped_column(Text)
    rolls_end: Mapped[int | None] = mapped_column(Integer)
    meat_end_g: Mapped[int | None] = mapped_column(Integer)
    drinks_end: Mapped[int | None] = mapped_column(Integer)
    receipt_count: Mapped[int | None] = mapped_column(Integer)
    cash_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    qr_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    grab_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    other_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_sales: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    shopping_total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    wage_total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    other_expense_total: Mapped[Numeric] = mapped_column(
        Numeric(12, 2), nullable=False, default=0
    )
    expense_items: Mapped[list | None] = mapped_column(JSON_TYPE)
    starting_cash: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    created_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    deleted_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class LegacyStockSheet(Base):
    __tablename__ = "legacy_stock_sheet"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_date: Mapped[Date] = mapped_column(Date, nullable=False, index=True)
    burger_buns_stock: Mapped[int | None] = mapped_column(Integer)
    meat_weight_g: Mapped[int | None] = mapped_column(Integer)
    drinks_count: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
