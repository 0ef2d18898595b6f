from datetime import date, timedelta

import pytest

from factories import add_catalog, add_closing_form, add_ledger, add_receipt, utc
from shiftledger.carryover import CarryoverResolver
from shiftledger.counts import ActualCountResolver
from shiftledger.ledger_service import LedgerService
from shiftledger.models import AnalyticsShiftItem, LegacyStockSheet, StockLedger
from shiftledger.purchases import PurchaseAggregator
from shiftledger.repositories import LedgerNotFound, LedgerRepository

DAY = date(2025, 1, 10)
PREVIOUS = DAY - timedelta(days=1)


def seed_reference_shift(db) -> None:
    add_catalog(db, "B-CLASSIC", "Classic Burger", "Burgers", kind="beef", patties_per=1, rolls_per=1)
    add_receipt(db, "R-1", utc(2025, 1, 10, 12), items=[("B-CLASSIC", "Classic Burger", 120)])
    add_ledger(db, "rolls", PREVIOUS, actual_end_qty=50, estimated_end_qty=52)
    PurchaseAggregator(db).record("rolls", DAY, "Burger Rolls", qty=100, staff_name="Nok")
    db.commit()
    add_closing_form(db, DAY, rolls_end=28, receipt_count=1)


def test_reference_shift_recompute(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)

    row = service.recompute("rolls", DAY)

    assert row.start_qty == 50
    assert row.purchased_qty == 100
    assert row.units_sold == 120
    assert row.used_qty == 120
    assert row.estimated_end_qty == 30
    assert row.actual_end_qty == 28
    assert row.variance == -2
    assert row.status == "OK"
    assert row.waste_allowance == 4


def test_recompute_twice_leaves_row_unchanged(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)

    first = service.serialize(service.recompute("rolls", DAY))
    first_updated = service.ledgers.get_ledger("rolls", DAY).updated_at
    second = service.serialize(service.recompute("rolls", DAY))

    assert first == second
    assert service.ledgers.get_ledger("rolls", DAY).updated_at == first_updated
    assert db.query(StockLedger).filter(StockLedger.shift_date == DAY).count() == 1


def test_missing_count_is_pending(db, config) -> None:
    add_ledger(db, "rolls", PREVIOUS, actual_end_qty=10)
    row = LedgerService(db, config).recompute("rolls", DAY)
    assert row.actual_end_qty is None
    assert row.status == "PENDING"
    assert row.variance == 0
    assert row.estimated_end_qty == 10


def test_meat_usage_counts_beef_patties_in_grams(db, config) -> None:
    add_catalog(db, "B-DOUBLE", "Double Smash", "Burgers", kind="beef", patties_per=2, rolls_per=1)
    add_catalog(db, "B-CHICK", "Chicken Burger", "Burgers", kind="chicken", rolls_per=1)
    add_receipt(
        db,
        "R-1",
        utc(2025, 1, 10, 13),
        items=[("B-DOUBLE", "Double Smash", 3), ("B-CHICK", "Chicken Burger", 2)],
    )
    PurchaseAggregator(db).record("meat", DAY, "Meat", qty=1, weight_g=5000)
    db.commit()
    service = LedgerService(db, config)

    meat = service.recompute("meat", DAY)
    rolls = service.recompute("rolls", DAY)

    assert meat.units_sold == 6
    assert meat.used_qty == 840
    assert meat.purchased_qty == 5000
    assert meat.estimated_end_qty == 4160
    assert rolls.units_sold == 5


def test_cache_is_built_from_receipts_in_window(db, config) -> None:
    add_catalog(db, "D-COKE", "Coke", "Drinks", drinks_per=1)
    add_receipt(db, "R-1", utc(2025, 1, 10, 11), items=[("D-COKE", "Coke", 4)])
    add_receipt(db, "R-2", utc(2025, 1, 10, 21), items=[("D-COKE", "Coke", 9)])
    add_receipt(db, "R-3", utc(2025, 1, 10, 15), items=[("D-COKE", "Coke", 2)], is_refund=True)
    add_receipt(db, "R-4", utc(2025, 1, 10, 16), items=[(None, "Water", 3)])

    row = LedgerService(db, config).recompute("drinks", DAY)

    assert row.units_sold == 4
    cached = {item.item_key: item for item in db.query(AnalyticsShiftItem).filter_by(shift_date=DAY)}
    assert cached["D-COKE"].qty == 4
    assert cached["D-COKE"].drinks == 4
    assert cached["Water"].category == "other"


def test_usage_falls_back_to_category_match(db, config) -> None:
    window_start, window_end = utc(2025, 1, 10, 10), utc(2025, 1, 10, 20)
    db.add(
        AnalyticsShiftItem(
            shift_date=DAY,
            item_key="legacy-burger",
            name="Burger",
            category="Burgers",
            qty=7,
            from_ts=window_start,
            to_ts=window_end,
        )
    )
    db.commit()
    service = LedgerService(db, config)

    rolls = service.recompute("rolls", DAY)
    meat = service.recompute("meat", DAY)

    assert rolls.units_sold == 7
    assert meat.units_sold == 7
    assert meat.used_qty == 980


def test_carryover_prefers_prior_manual_count(db) -> None:
    add_ledger(db, "rolls", PREVIOUS, actual_end_qty=50, actual_end_qty_manual=45, estimated_end_qty=52)
    add_ledger(db, "meat", PREVIOUS, estimated_end_qty=3300, waste_allowance=200)
    resolver = CarryoverResolver(LedgerRepository(db))

    assert resolver.resolve("rolls", DAY).qty == 45
    assert resolver.resolve("rolls", DAY).source == "manual"
    assert resolver.resolve("meat", DAY).qty == 3300
    assert resolver.resolve("drinks", DAY).qty == 0
    assert resolver.resolve("drinks", DAY).source == "none"


def test_actual_count_falls_back_to_legacy_sheet(db) -> None:
    add_closing_form(db, DAY, rolls_end=None, meat_end_g=4100)
    add_closing_form(db, DAY, rolls_end=99, deleted_at=utc(2025, 1, 11, 2), created_at=utc(2025, 1, 10, 21))
    db.add(LegacyStockSheet(shift_date=DAY, burger_buns_stock=31, updated_at=utc(2025, 1, 10, 20)))
    db.commit()
    resolver = ActualCountResolver(db)

    rolls = resolver.resolve("rolls", DAY)
    assert rolls.value == 31
    assert rolls.source == "legacy_stock_sheet.burger_buns_stock"
    assert resolver.resolve("meat", DAY).value == 4100
    assert resolver.resolve("drinks", DAY).value is None


def test_manual_purchase_override_regrades_and_survives_recompute(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)
    service.recompute("rolls", DAY)

    row = service.update_manual("rolls", DAY, {"purchased_qty_manual": 110, "notes": "extra bag"})
    assert row.purchased_qty == 100
    assert row.purchased_qty_manual == 110
    assert row.estimated_end_qty == 40
    assert row.variance == -12
    assert row.status == "ALERT"
    assert service.serialize(row)["purchasedQty"] == 110

    row = service.recompute("rolls", DAY)
    assert row.purchased_qty_manual == 110
    assert row.notes == "extra bag"
    assert row.status == "ALERT"

    row = service.update_manual("rolls", DAY, {"purchased_qty_manual": None})
    assert row.purchased_qty_manual is None
    assert row.notes == "extra bag"
    assert row.status == "OK"


def test_manual_actual_override_feeds_next_day(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)
    service.recompute("rolls", DAY)

    row = service.update_manual("rolls", DAY, {"actual_end_qty_manual": 30})
    assert row.actual_end_qty == 28
    assert row.variance == 0
    assert service.recompute("rolls", DAY + timedelta(days=1)).start_qty == 30


def test_manual_update_requires_existing_row(db, config) -> None:
    service = LedgerService(db, config)
    with pytest.raises(LedgerNotFound):
        service.update_manual("rolls", DAY, {"notes": "late count"})
    with pytest.raises(ValueError):
        service.update_manual("rolls", DAY, {"variance": 3})


def test_approval_is_kept_by_recompute(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)
    service.recompute("rolls", DAY)

    assert service.set_approved("rolls", DAY, True).approved is True
    assert service.recompute("rolls", DAY).approved is True


def test_range_is_newest_first_with_overrides_merged(db, config) -> None:
    seed_reference_shift(db)
    service = LedgerService(db, config)
    service.recompute("rolls", DAY)
    service.update_manual("rolls", DAY, {"actual_end_qty_manual": 27})

    rows = service.get_range("rolls", PREVIOUS, DAY)

    assert [row["shiftDate"] for row in rows] == ["2025-01-10", "2025-01-09"]
    assert rows[0]["actualEndQty"] == 27
    assert rows[0]["actualEndQtyManual"] == 27
    assert rows[0]["unit"] == "units"
    assert rows[0]["shiftWindow"]["from"].startswith("2025-01-10T10:00:00")


def test_variance_for_shift_does_not_persist(db, config) -> None:
    seed_reference_shift(db)
    before = db.query(StockLedger).count()

    items = LedgerService(db, config).variance_for_shift(DAY)

    assert [item["name"] for item in items] == ["Burger Rolls", "Meat", "Drinks"]
    rolls = items[0]
    assert rolls == {"name": "Burger Rolls", "expected": 30, "used": 120, "variance": -2, "severity": "green"}
    assert db.query(StockLedger).count() == before


def test_recompute_uses_configured_shift_window(db, config) -> None:
    seed_reference_shift(db)
    late_start = config.model_copy(update={"shift_start_hour": 22})

    row = LedgerService(db, late_start).recompute("rolls", DAY)

    # 12:00 UTC is 19:00 Bangkok, before a 22:00 start
    assert row.units_sold == 0
    assert row.used_qty == 0
    window = LedgerService(db, late_start).serialize(row)["shiftWindow"]
    assert window["from"] == "2025-01-10T15:00:00+00:00"
