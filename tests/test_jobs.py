from datetime import date

from factories import add_closing_form, add_ledger, utc
from shiftledger.jobs import latest_completed_shift, run_daily_close
from shiftledger.models import StockLedger


def test_latest_completed_shift(config) -> None:
    # noon in Bangkok on the 11th: the shift of the 10th closed at 03:00
    assert latest_completed_shift(utc(2025, 1, 11, 5), config) == date(2025, 1, 10)
    # 01:00 in Bangkok on the 11th: the shift of the 10th is still open
    assert latest_completed_shift(utc(2025, 1, 10, 18), config) == date(2025, 1, 9)


def test_daily_close_recomputes_every_commodity(session_factory, config) -> None:
    db = session_factory()
    add_ledger(db, "drinks", date(2025, 1, 9), actual_end_qty=40, waste_allowance=2)
    add_closing_form(db, date(2025, 1, 10), rolls_end=0, drinks_end=37)
    db.close()

    statuses = run_daily_close(date(2025, 1, 10), session_factory=session_factory, config=config)

    assert statuses == {"rolls": "OK", "meat": "PENDING", "drinks": "WARNING"}
    db = session_factory()
    assert db.query(StockLedger).filter(StockLedger.shift_date == date(2025, 1, 10)).count() == 3
    db.close()
