from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from shiftledger.config import Settings, settings as default_settings
from shiftledger.shift_window import ShiftWindow

logger = logging.getLogger(__name__)

PAGE_LIMIT = 250
MAX_PAGES = 40
RETRY_STATUSES = (429, 500, 502, 503, 504)


class PosClientError(RuntimeError):
    pass


class PosClientNotConfigured(PosClientError):
    pass


class UpstreamReceiptLine(BaseModel):
    sku: Optional[str] = None
    name: str
    quantity: int = 0


class UpstreamReceipt(BaseModel):
    receipt_number: str
    created_at: datetime
    payment_type: str = "other"
    total: Decimal = Decimal("0")
    is_refund: bool = False
    line_items: list[UpstreamReceiptLine] = Field(default_factory=list)


class UpstreamShift(BaseModel):
    opening_amount: Decimal = Decimal("0")
    paid_out: Decimal = Decimal("0")
    expected_amount: Optional[Decimal] = None


def payment_channel(label: Optional[str]) -> str:
    lowered = (label or "").lower()
    if "cash" in lowered:
        return "cash"
    if "grab" in lowered:
        return "grab"
    if "qr" in lowered or "promptpay" in lowered or "scan" in lowered:
        return "qr"
    return "other"


def http_session(max_retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUSES,
        raise_on_status=False,
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def parse_receipt(raw: dict) -> UpstreamReceipt:
    payments = raw.get("payments") or []
    first_payment = payments[0] if payments else {}
    created_raw = raw.get("receipt_date") or raw.get("created_at")
    created_at = datetime.fromisoformat(str(created_raw).replace("Z", "+00:00"))
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return UpstreamReceipt(
        receipt_number=str(raw["receipt_number"]),
        created_at=created_at.astimezone(timezone.utc),
        payment_type=payment_channel(first_payment.get("name") or first_payment.get("type")),
        total=Decimal(str(raw.get("total_money") or 0)),
        is_refund=str(raw.get("receipt_type") or "SALE").upper() == "REFUND",
        line_items=[
            UpstreamReceiptLine(
                sku=line.get("sku"),
                name=line.get("item_name") or line.get("name") or "UNKNOWN",
                quantity=int(line.get("quantity") or 0),
            )
            for line in raw.get("line_items") or []
        ],
    )


class PosClient:
    """Thin HTTP client for the point-of-sale API.

    Without a deadline, transient failures are retried by the mounted adapter.
    With one, retries happen here so the whole call ends by ``deadline``
    (a ``time.monotonic()`` value).
    """

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str],
        timeout: float = 15.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        deadline_session: Optional[requests.Session] = None,
        backoff_factor: float = 0.5,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.session = session or http_session(max_retries=max_retries, backoff_factor=backoff_factor)
        if deadline_session is None:
            deadline_session = session if session is not None else http_session(max_retries=0)
        self.deadline_session = deadline_session

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "PosClient":
        config = config or default_settings
        return cls(
            base_url=config.pos_api_url,
            token=config.pos_api_token,
            timeout=config.pos_timeout_seconds,
            max_retries=config.pos_max_retries,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token)

    def _timeout(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PosClientError("deadline exceeded before POS request")
        return min(self.timeout, remaining)

    def _backoff(self, attempt: int, deadline: float) -> bool:
        if attempt >= self.max_retries:
            return False
        delay = self.backoff_factor * (2**attempt)
        if time.monotonic() + delay >= deadline:
            return False
        time.sleep(delay)
        return True

    def _send(self, url: str, params: dict, deadline: Optional[float]) -> requests.Response:
        headers = {"Authorization": f"Bearer {self.token}"}
        if deadline is None:
            return self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        attempt = 0
        while True:
            try:
                response = self.deadline_session.get(
                    url, params=params, headers=headers, timeout=self._timeout(deadline)
                )
            except (requests.ConnectionError, requests.Timeout):
                if not self._backoff(attempt, deadline):
                    raise
            else:
                if response.status_code not in RETRY_STATUSES or not self._backoff(attempt, deadline):
                    return response
            attempt += 1
            logger.info("retrying POS request %s (attempt %d)", url, attempt + 1)

    def _get(self, path: str, params: dict, deadline: Optional[float]) -> Any:
        if not self.configured:
            raise PosClientNotConfigured("POS API url or token is not configured")
        try:
            response = self._send(f"{self.base_url}{path}", params, deadline)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise PosClientError(f"POS request {path} failed: {exc}") from exc
        except ValueError as exc:
            raise PosClientError(f"POS response for {path} is not JSON") from exc

    def fetch_receipts(self, window: ShiftWindow, deadline: Optional[float] = None) -> list[UpstreamReceipt]:
        receipts: list[UpstreamReceipt] = []
        cursor: Optional[str] = None
        for _ in range(MAX_PAGES):
            params = {
                "created_at_min": window.starts_at.isoformat(),
                "created_at_max": window.ends_at.isoformat(),
                "limit": PAGE_LIMIT,
            }
            if cursor:
                params["cursor"] = cursor
            payload = self._get("/receipts", params, deadline)
            for raw in payload.get("receipts") or []:
                try:
                    receipt = parse_receipt(raw)
                except (KeyError, TypeError, ValueError) as exc:
                    raise PosClientError(f"malformed receipt in POS response: {exc}") from exc
                if window.contains(receipt.created_at):
                    receipts.append(receipt)
            cursor = payload.get("cursor")
            if not cursor:
                break
        if cursor:
            raise PosClientError(
                f"POS receipts for {window.shift_date} exceed {MAX_PAGES} pages of {PAGE_LIMIT}"
            )
        logger.info("fetched %d POS receipts for %s", len(receipts), window.shift_date)
        return receipts

    def fetch_shift(self, window: ShiftWindow, deadline: Optional[float] = None) -> Optional[UpstreamShift]:
        payload = self._get(
            "/shifts",
            {
                "created_at_min": window.starts_at.isoformat(),
                "created_at_max": window.ends_at.isoformat(),
                "limit": 10,
            },
            deadline,
        )
        shifts = payload.get("shifts") or []
        if not shifts:
            return None
        raw = shifts[0]
        return UpstreamShift(
            opening_amount=Decimal(str(raw.get("opening_amount") or 0)),
            paid_out=Decimal(str(raw.get("paid_out") or 0)),
            expected_amount=(
                Decimal(str(raw["expected_amount"])) if raw.get("expected_amount") is not None else None
            ),
        )
