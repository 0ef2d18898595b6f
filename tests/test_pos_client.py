import threading
import time
from datetime import date
from decimal import Decimal
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from shiftledger.pos_client import (
    PosClient,
    PosClientError,
    PosClientNotConfigured,
    parse_receipt,
    payment_channel,
)
from shiftledger.shift_window import shift_window

WINDOW = shift_window(date(2025, 1, 10))


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def raw_receipt(number, at, total=100, payment="Cash", receipt_type="SALE"):
    return {
        "receipt_number": number,
        "receipt_date": at,
        "receipt_type": receipt_type,
        "total_money": total,
        "payments": [{"name": payment}],
        "line_items": [{"sku": "B-1", "item_name": "Classic Burger", "quantity": 2}],
    }


@pytest.mark.parametrize(
    "label, channel",
    [("Cash", "cash"), ("GRAB Food", "grab"), ("QR Code", "qr"), ("PromptPay", "qr"), ("Card", "other"), (None, "other")],
)
def test_payment_channel(label, channel) -> None:
    assert payment_channel(label) == channel


def test_parse_receipt_normalises_upstream_shape() -> None:
    receipt = parse_receipt(raw_receipt("1-1001", "2025-01-10T12:00:00.000Z", total=245.5, receipt_type="REFUND"))
    assert receipt.receipt_number == "1-1001"
    assert receipt.created_at.isoformat() == "2025-01-10T12:00:00+00:00"
    assert receipt.total == Decimal("245.5")
    assert receipt.is_refund is True
    assert receipt.line_items[0].name == "Classic Burger"


def test_unconfigured_client_refuses_to_call() -> None:
    client = PosClient(base_url=None, token=None, session=FakeSession([]))
    assert client.configured is False
    with pytest.raises(PosClientNotConfigured):
        client.fetch_receipts(WINDOW)


def test_fetch_receipts_follows_cursor_and_keeps_window() -> None:
    session = FakeSession(
        [
            FakeResponse({"receipts": [raw_receipt("A", "2025-01-10T10:00:00Z")], "cursor": "next"}),
            FakeResponse(
                {
                    "receipts": [
                        raw_receipt("B", "2025-01-10T19:59:00Z"),
                        raw_receipt("C", "2025-01-10T20:00:00Z"),
                    ]
                }
            ),
        ]
    )
    client = PosClient("https://pos.example/v1/", "secret", session=session)

    receipts = client.fetch_receipts(WINDOW)

    assert [receipt.receipt_number for receipt in receipts] == ["A", "B"]
    assert session.calls[0]["url"] == "https://pos.example/v1/receipts"
    assert session.calls[0]["headers"] == {"Authorization": "Bearer secret"}
    assert session.calls[1]["params"]["cursor"] == "next"


def test_transport_errors_are_wrapped() -> None:
    client = PosClient("https://pos.example", "secret", session=FakeSession([requests.ConnectionError("refused")]))
    with pytest.raises(PosClientError):
        client.fetch_receipts(WINDOW)


def test_http_errors_are_wrapped() -> None:
    client = PosClient("https://pos.example", "secret", session=FakeSession([FakeResponse({}, status_code=503)]))
    with pytest.raises(PosClientError):
        client.fetch_shift(WINDOW)


def test_deadline_caps_timeout() -> None:
    session = FakeSession([FakeResponse({"shifts": []})])
    client = PosClient("https://pos.example", "secret", timeout=15.0, session=session)
    assert client.fetch_shift(WINDOW, deadline=time.monotonic() + 2) is None
    assert session.calls[0]["timeout"] <= 2

    with pytest.raises(PosClientError):
        client.fetch_shift(WINDOW, deadline=time.monotonic() - 1)


def test_fetch_shift_reads_cash_figures() -> None:
    session = FakeSession([FakeResponse({"shifts": [{"opening_amount": 500, "paid_out": 35.25}]})])
    shift = PosClient("https://pos.example", "secret", session=session).fetch_shift(WINDOW)
    assert shift.opening_amount == Decimal("500")
    assert shift.paid_out == Decimal("35.25")
    assert shift.expected_amount is None


class Slow503Handler(BaseHTTPRequestHandler):
    delay = 0.4

    def do_GET(self):
        time.sleep(self.delay)
        self.send_response(503)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args):
        pass


class QuietServer(ThreadingHTTPServer):
    daemon_threads = True

    def handle_error(self, request, client_address):
        pass


@pytest.fixture
def slow_503_url(monkeypatch):
    for name in ("HTTP_PROXY", "http_proxy", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    server = QuietServer(("127.0.0.1", 0), Slow503Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_retries_against_slow_server_stop_at_deadline(slow_503_url) -> None:
    client = PosClient(slow_503_url, "secret", timeout=15.0, max_retries=3)
    started = time.monotonic()

    with pytest.raises(PosClientError):
        client.fetch_receipts(WINDOW, deadline=started + 1.0)

    assert time.monotonic() - started < 1.5


def test_deadline_retries_transient_status(monkeypatch) -> None:
    sleeps = []
    monkeypatch.setattr("shiftledger.pos_client.time.sleep", sleeps.append)
    session = FakeSession([FakeResponse({}, status_code=503), FakeResponse({"shifts": []})])
    client = PosClient("https://pos.example", "secret", session=session)

    assert client.fetch_shift(WINDOW, deadline=time.monotonic() + 30) is None
    assert len(session.calls) == 2
    assert sleeps == [0.5]


def test_deadline_retry_is_skipped_when_backoff_would_overrun(monkeypatch) -> None:
    sleeps = []
    monkeypatch.setattr("shiftledger.pos_client.time.sleep", sleeps.append)
    session = FakeSession([FakeResponse({}, status_code=503), requests.ConnectionError("refused")])
    client = PosClient("https://pos.example", "secret", session=session)

    with pytest.raises(PosClientError):
        client.fetch_shift(WINDOW, deadline=time.monotonic() + 0.2)
    assert len(session.calls) == 1
    assert sleeps == []


def test_receipt_pagination_past_page_cap_is_an_error(monkeypatch) -> None:
    monkeypatch.setattr("shiftledger.pos_client.MAX_PAGES", 2)
    page = {"receipts": [raw_receipt("A", "2025-01-10T12:00:00Z")], "cursor": "more"}
    session = FakeSession([FakeResponse(page), FakeResponse(page), FakeResponse(page)])
    client = PosClient("https://pos.example", "secret", session=session)

    with pytest.raises(PosClientError, match="exceed 2 pages"):
        client.fetch_receipts(WINDOW)
    assert len(session.calls) == 2
