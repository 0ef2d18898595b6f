from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from shiftledger.repositories import LedgerRepository


@dataclass(frozen=True)
class Carryover:
    qty: int
    source: str


class CarryoverResolver:
    def __init__(self, ledgers: LedgerRepository):
        self.ledgers = ledgers

    def resolve(self, commodity: str, shift_date: date) -> Carryover:
        qty, source = self.ledgers.get_prior_day_end(commodity, shift_date)
        return Carryover(qty=qty, source=source)
