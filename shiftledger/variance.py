from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

STATUS_PENDING = "PENDING"
STATUS_OK = "OK"
STATUS_WARNING = "WARNING"
STATUS_ALERT = "ALERT"

SEVERITY_BY_STATUS = {
    STATUS_PENDING: "green",
    STATUS_OK: "green",
    STATUS_WARNING: "yellow",
    STATUS_ALERT: "red",
}


@dataclass(frozen=True)
class VarianceResult:
    estimated_end: int
    variance: int
    status: str


def classify(variance: int, actual_end: Optional[int], allowance: int, banded: bool = False) -> str:
    if actual_end is None:
        return STATUS_PENDING
    magnitude = abs(variance)
    if magnitude <= allowance:
        return STATUS_OK
    if banded and magnitude <= allowance * 2:
        return STATUS_WARNING
    return STATUS_ALERT


def compute_variance(
    start_qty: int,
    purchased_qty: int,
    used_qty: int,
    actual_end_qty: Optional[int],
    waste_allowance: int,
    banded: bool = False,
) -> VarianceResult:
    # the estimate is not clamped at zero
    estimated_end = start_qty + purchased_qty - used_qty
    observed = actual_end_qty if actual_end_qty is not None else estimated_end
    variance = observed - estimated_end
    status = classify(variance, actual_end_qty, waste_allowance, banded)
    return VarianceResult(estimated_end=estimated_end, variance=variance, status=status)
