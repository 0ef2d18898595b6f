from __future__ import annotations

import calendar
import logging
import time
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field
from pydantic.alias_generators import to_camel
from sqlalchemy import func
from sqlalchemy.orm import Session

from shiftledger.analytics_cache import SalesAnalyticsBuilder
from shiftledger.config import Settings, settings as default_settings
from shiftledger.counts import latest_closing_form
from shiftledger.models import (
    PAYMENT_TYPES,
    PosReceipt,
    PosReceiptItem,
    PosShiftReport,
    ShiftClosingForm,
)
from shiftledger.pos_client import PosClient, PosClientError, UpstreamReceipt, UpstreamShift
from shiftledger.shift_window import ShiftWindow, shift_window

logger = logging.getLogger(__name__)

Availability = Literal["ok", "missing_pos", "missing_form", "missing_both"]
ReceiptStatus = Literal[
    "EVIDENCE_MATCH",
    "MISSING_RECEIPTS",
    "PHANTOM_RECEIPTS",
    "POS_UNAVAILABLE",
    "FORM_MISSING",
    "NO_EVIDENCE",
]

CENT = Decimal("0.01")


def money(value) -> float:
    return float(Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP))


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SalesBreakdown(CamelModel):
    cash: float = 0.0
    qr: float = 0.0
    grab: float = 0.0
    other: float = 0.0
    total: float = 0.0


class ExpenseItem(CamelModel):
    id: Optional[str] = None
    label: str
    amount: float = 0.0
    category: str = "other"


class ExpenseBreakdown(CamelModel):
    shopping_total: float = 0.0
    wage_total: float = 0.0
    other_total: float = 0.0
    items: list[ExpenseItem] = Field(default_factory=list)

    @computed_field(alias="grandTotal")
    @property
    def grand_total(self) -> float:
        return money(
            Decimal(str(self.shopping_total)) + Decimal(str(self.wage_total)) + Decimal(str(self.other_total))
        )


class BankingFigures(CamelModel):
    starting_cash: float = 0.0
    cash_payments: float = 0.0
    qr_payments: float = 0.0
    expenses_total: float = 0.0
    expected_cash: float = 0.0
    estimated_net_banked: float = 0.0


class DailySource(CamelModel):
    date: str
    source: Literal["pos_summary", "pos_receipts", "form"]
    sales: SalesBreakdown
    expenses: ExpenseBreakdown
    banking: BankingFigures
    receipt_count: Optional[int] = None


class SalesVariance(CamelModel):
    cash: float
    qr: float
    grab: float
    other: float
    total: float


class ExpenseVariance(CamelModel):
    shopping_total: float
    wage_total: float
    other_total: float
    grand_total: float


class BankingVariance(CamelModel):
    expected_cash: float
    estimated_net_banked: float


class DailyVariance(CamelModel):
    sales: SalesVariance
    expenses: ExpenseVariance
    banking: BankingVariance


class ReceiptEvidence(CamelModel):
    pos_receipt_count: Optional[int] = None
    declared_receipt_count: Optional[int] = None
    difference: Optional[int] = None
    receipt_status: ReceiptStatus


class DailyComparison(CamelModel):
    date: str
    availability: Availability
    pos: Optional[DailySource] = None
    form: Optional[DailySource] = None
    variance: Optional[DailyVariance] = None
    receipt_evidence: ReceiptEvidence


class SyncStatus(str, Enum):
    SYNCED = "SYNCED"
    NO_RECEIPTS = "NO_RECEIPTS"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    FAILED = "FAILED"


class SyncResult(CamelModel):
    """Outcome of a POS sync. Faults are values here, never exceptions."""

    ok: bool
    status: SyncStatus
    reason: Optional[str] = None
    message: str
    date: str
    receipts_imported: int = 0
    availability: Optional[Availability] = None
    pos: Optional[DailySource] = None
    receipt_evidence: Optional[ReceiptEvidence] = None


def banking_for(starting_cash, sales: SalesBreakdown, expenses: ExpenseBreakdown) -> BankingFigures:
    start = Decimal(str(starting_cash or 0))
    cash = Decimal(str(sales.cash))
    qr = Decimal(str(sales.qr))
    expenses_total = Decimal(str(expenses.grand_total))
    expected_cash = start + cash - expenses_total
    return BankingFigures(
        starting_cash=money(start),
        cash_payments=money(cash),
        qr_payments=money(qr),
        expenses_total=money(expenses_total),
        expected_cash=money(expected_cash),
        estimated_net_banked=money(expected_cash + qr),
    )


def parse_expense_items(raw_items) -> list[ExpenseItem]:
    items = []
    for raw in raw_items or []:
        try:
            items.append(ExpenseItem.model_validate(raw))
        except ValidationError:
            logger.warning("skipping malformed expense line %r", raw)
    return items


def _source_from_row(
    row: PosShiftReport | ShiftClosingForm, shift_date: date, source: str, receipt_count
) -> DailySource:
    sales = SalesBreakdown(
        cash=money(row.cash_sales),
        qr=money(row.qr_sales),
        grab=money(row.grab_sales),
        other=money(row.other_sales),
        total=money(row.total_sales),
    )
    expenses = ExpenseBreakdown(
        shopping_total=money(row.shopping_total),
        wage_total=money(row.wage_total),
        other_total=money(row.other_expense_total),
        items=parse_expense_items(row.expense_items),
    )
    return DailySource(
        date=shift_date.isoformat(),
        source=source,
        sales=sales,
        expenses=expenses,
        banking=banking_for(row.starting_cash, sales, expenses),
        receipt_count=receipt_count,
    )


def availability_for(pos_present: bool, form_present: bool) -> Availability:
    if pos_present and form_present:
        return "ok"
    if form_present:
        return "missing_pos"
    if pos_present:
        return "missing_form"
    return "missing_both"


def receipt_evidence(
    pos_receipt_count: Optional[int],
    form_present: bool,
    declared_receipt_count: Optional[int],
) -> ReceiptEvidence:
    pos_present = bool(pos_receipt_count)
    pos_count = pos_receipt_count if pos_present else None
    declared = declared_receipt_count if form_present else None
    if not pos_present and not form_present:
        status = "NO_EVIDENCE"
    elif not pos_present:
        status = "POS_UNAVAILABLE"
    elif declared is None:
        status = "FORM_MISSING"
    elif pos_count == declared:
        status = "EVIDENCE_MATCH"
    elif pos_count > declared:
        status = "MISSING_RECEIPTS"
    else:
        status = "PHANTOM_RECEIPTS"
    difference = declared - pos_count if pos_count is not None and declared is not None else None
    return ReceiptEvidence(
        pos_receipt_count=pos_count,
        declared_receipt_count=declared,
        difference=difference,
        receipt_status=status,
    )


def build_variance(pos: DailySource, form: DailySource) -> DailyVariance:
    def diff(pos_value: float, form_value: float) -> float:
        return money(Decimal(str(form_value)) - Decimal(str(pos_value)))

    return DailyVariance(
        sales=SalesVariance(
            cash=diff(pos.sales.cash, form.sales.cash),
            qr=diff(pos.sales.qr, form.sales.qr),
            grab=diff(pos.sales.grab, form.sales.grab),
            other=diff(pos.sales.other, form.sales.other),
            total=diff(pos.sales.total, form.sales.total),
        ),
        expenses=ExpenseVariance(
            shopping_total=diff(pos.expenses.shopping_total, form.expenses.shopping_total),
            wage_total=diff(pos.expenses.wage_total, form.expenses.wage_total),
            other_total=diff(pos.expenses.other_total, form.expenses.other_total),
            grand_total=diff(pos.expenses.grand_total, form.expenses.grand_total),
        ),
        banking=BankingVariance(
            expected_cash=diff(pos.banking.expected_cash, form.banking.expected_cash),
            estimated_net_banked=diff(pos.banking.estimated_net_banked, form.banking.estimated_net_banked),
        ),
    )


def parse_month(month: str) -> tuple[int, int]:
    parts = (month or "").strip().split("-")
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid month {month!r}, expected YYYY-MM")
    year, month_number = int(parts[0]), int(parts[1])
    if not 1 <= month_number <= 12:
        raise ValueError(f"invalid month {month!r}, expected YYYY-MM")
    return year, month_number


class DailyComparisonService:
    def __init__(self, db: Session, config: Settings | None = None):
        self.db = db
        self.config = config or default_settings

    def _receipt_rows(self, window: ShiftWindow):
        return (
            self.db.query(
                PosReceipt.payment_type,
                PosReceipt.is_refund,
                func.count(PosReceipt.id),
                func.coalesce(func.sum(PosReceipt.total), 0),
            )
            .filter(
                PosReceipt.created_at >= window.starts_at,
                PosReceipt.created_at < window.ends_at,
            )
            .group_by(PosReceipt.payment_type, PosReceipt.is_refund)
            .all()
        )

    def receipt_totals(self, window: ShiftWindow) -> tuple[int, SalesBreakdown]:
        count = 0
        by_channel = {channel: Decimal("0") for channel in PAYMENT_TYPES}
        for payment_type, is_refund, receipts, total in self._receipt_rows(window):
            channel = payment_type if payment_type in by_channel else "other"
            amount = Decimal(str(total or 0))
            if is_refund:
                by_channel[channel] -= amount
            else:
                by_channel[channel] += amount
                count += int(receipts)
        sales = SalesBreakdown(
            total=money(sum(by_channel.values())),
            **{channel: money(amount) for channel, amount in by_channel.items()},
        )
        return count, sales

    def fetch_pos(self, shift_date: date) -> tuple[int, Optional[DailySource]]:
        window = shift_window(shift_date, self.config)
        count, sales = self.receipt_totals(window)
        if not count:
            return 0, None
        report = (
            self.db.query(PosShiftReport).filter(PosShiftReport.business_date == shift_date).first()
        )
        if report is not None:
            return count, _source_from_row(report, shift_date, "pos_summary", count)
        logger.info("no POS summary for %s, deriving from %d receipts", shift_date, count)
        expenses = ExpenseBreakdown()
        return count, DailySource(
            date=shift_date.isoformat(),
            source="pos_receipts",
            sales=sales,
            expenses=expenses,
            banking=banking_for(0, sales, expenses),
            receipt_count=count,
        )

    def fetch_form(self, shift_date: date) -> tuple[Optional[ShiftClosingForm], Optional[DailySource]]:
        form = latest_closing_form(self.db, shift_date)
        if form is None:
            return None, None
        return form, _source_from_row(form, shift_date, "form", form.receipt_count)

    def compare(self, shift_date: date) -> DailyComparison:
        pos_count, pos = self.fetch_pos(shift_date)
        form_row, form = self.fetch_form(shift_date)
        evidence = receipt_evidence(
            pos_count,
            form_row is not None,
            form_row.receipt_count if form_row is not None else None,
        )
        return DailyComparison(
            date=shift_date.isoformat(),
            availability=availability_for(pos is not None, form is not None),
            pos=pos,
            form=form,
            variance=build_variance(pos, form) if pos is not None and form is not None else None,
            receipt_evidence=evidence,
        )

    def compare_month(self, month: str) -> list[DailyComparison]:
        year, month_number = parse_month(month)
        days = calendar.monthrange(year, month_number)[1]
        return [self.compare(date(year, month_number, day)) for day in range(1, days + 1)]

    def _store_receipts(self, receipts: list[UpstreamReceipt]) -> int:
        numbers = [receipt.receipt_number for receipt in receipts]
        existing = set()
        if numbers:
            existing = {
                number
                for (number,) in self.db.query(PosReceipt.receipt_number).filter(
                    PosReceipt.receipt_number.in_(numbers)
                )
            }
        imported = 0
        try:
            for receipt in receipts:
                if receipt.receipt_number in existing:
                    continue
                row = PosReceipt(
                    receipt_number=receipt.receipt_number,
                    created_at=receipt.created_at.astimezone(timezone.utc),
                    payment_type=receipt.payment_type,
                    total=receipt.total,
                    is_refund=receipt.is_refund,
                )
                self.db.add(row)
                self.db.flush()
                for line in receipt.line_items:
                    self.db.add(
                        PosReceiptItem(receipt_id=row.id, sku=line.sku, name=line.name, quantity=line.quantity)
                    )
                existing.add(receipt.receipt_number)
                imported += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return imported

    def _store_report(self, shift_date: date, shift: Optional[UpstreamShift]) -> Optional[PosShiftReport]:
        window = shift_window(shift_date, self.config)
        count, sales = self.receipt_totals(window)
        if not count:
            return None
        try:
            report = (
                self.db.query(PosShiftReport)
                .filter(PosShiftReport.business_date == shift_date)
                .with_for_update()
                .first()
            )
            if report is None:
                report = PosShiftReport(business_date=shift_date)
                self.db.add(report)
            report.cash_sales = Decimal(str(sales.cash))
            report.qr_sales = Decimal(str(sales.qr))
            report.grab_sales = Decimal(str(sales.grab))
            report.other_sales = Decimal(str(sales.other))
            report.total_sales = Decimal(str(sales.total))
            report.shopping_total = report.shopping_total or Decimal("0")
            report.wage_total = report.wage_total or Decimal("0")
            report.other_expense_total = shift.paid_out if shift else Decimal("0")
            report.starting_cash = shift.opening_amount if shift else Decimal("0")
            report.receipt_count = count
            report.synced_at = datetime.now(timezone.utc)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return report

    def _cached(self, shift_date: date) -> dict:
        try:
            comparison = self.compare(shift_date)
        except Exception:
            logger.exception("could not load cached comparison for %s", shift_date)
            return {}
        return {
            "availability": comparison.availability,
            "pos": comparison.pos,
            "receipt_evidence": comparison.receipt_evidence,
        }

    def _failed(self, shift_date: date, exc: Exception) -> SyncResult:
        return SyncResult(
            ok=False,
            status=SyncStatus.FAILED,
            reason=exc.__class__.__name__,
            message="Could not sync, showing cached/partial data",
            date=shift_date.isoformat(),
            **self._cached(shift_date),
        )

    def sync_pos_for_date(
        self,
        shift_date: date,
        client: PosClient,
        deadline_seconds: Optional[float] = None,
    ) -> SyncResult:
        """Never raises; every fault comes back as a ``SyncResult``."""
        day = shift_date.isoformat()
        if not client.configured:
            return SyncResult(
                ok=False,
                status=SyncStatus.NOT_CONFIGURED,
                reason="pos_not_configured",
                message="POS sync is not configured, showing cached data",
                date=day,
                **self._cached(shift_date),
            )
        deadline = time.monotonic() + deadline_seconds if deadline_seconds else None
        window = shift_window(shift_date, self.config)
        try:
            receipts = client.fetch_receipts(window, deadline)
            shift = client.fetch_shift(window, deadline)
        except PosClientError as exc:
            logger.warning("POS sync for %s could not reach upstream: %s", day, exc)
            return SyncResult(
                ok=False,
                status=SyncStatus.UPSTREAM_UNAVAILABLE,
                reason=str(exc),
                message="Could not reach POS, showing cached data",
                date=day,
                **self._cached(shift_date),
            )
        except Exception as exc:
            logger.exception("POS sync for %s failed while fetching", day)
            return self._failed(shift_date, exc)
        try:
            imported = self._store_receipts(receipts)
            self._store_report(shift_date, shift)
            SalesAnalyticsBuilder(self.db, self.config).build(shift_date)
            comparison = self.compare(shift_date)
        except Exception as exc:
            logger.exception("POS sync for %s failed while storing", day)
            return self._failed(shift_date, exc)
        if not receipts:
            return SyncResult(
                ok=False,
                status=SyncStatus.NO_RECEIPTS,
                reason="no_receipts",
                message=f"POS returned no receipts for {day}",
                date=day,
                availability=comparison.availability,
                pos=comparison.pos,
                receipt_evidence=comparison.receipt_evidence,
            )
        return SyncResult(
            ok=True,
            status=SyncStatus.SYNCED,
            message=f"Synced {len(receipts)} receipts ({imported} new) for {day}",
            date=day,
            receipts_imported=imported,
            availability=comparison.availability,
            pos=comparison.pos,
            receipt_evidence=comparison.receipt_evidence,
        )
