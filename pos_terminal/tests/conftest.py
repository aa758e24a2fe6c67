import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `pos_terminal/`.
# Tests import `pos_terminal.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from pos_terminal.app.config import Settings  # noqa: E402
from pos_terminal.app.db import LocalStore  # noqa: E402
from pos_terminal.app.errors import LedgerUnavailable  # noqa: E402
from pos_terminal.app.models import AppliedDiscount, CustomerProfile, LedgerReceipt, Product  # noqa: E402
from pos_terminal.app.terminal import Terminal  # noqa: E402


class _FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self.sleeps = []

    def now(self):
        return self.current

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class _RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


class _FakeLedger:
    """In-memory ledger that honours idempotency keys like the real one must."""

    def __init__(self):
        self.online = True
        self.entries = {}
        self.order = []
        self.calls = 0
        self.fail_with = None
        self.lose_response = False
        self.delta = {"products": [], "customers": [], "discounts": [], "next_cursor": None}
        self.delta_since = []

    def post_sale(self, sale):
        self.calls += 1
        if not self.online:
            raise LedgerUnavailable("ledger unreachable: offline")
        if self.fail_with is not None:
            raise self.fail_with
        key = sale.idempotency_key
        if key in self.entries:
            sale_id, number = self.entries[key]
            return LedgerReceipt(sale_id=sale_id, sale_number=number, duplicate=True)
        n = len(self.order) + 1
        self.entries[key] = (f"sale-{n}", f"S{n:05d}")
        self.order.append(key)
        if self.lose_response:
            self.lose_response = False
            raise LedgerUnavailable("timed out reading response")
        return LedgerReceipt(sale_id=f"sale-{n}", sale_number=f"S{n:05d}")

    def health(self, timeout=0.8):
        return {"ok": self.online, "error": None if self.online else "offline", "latency_ms": 1}

    def catalog_delta(self, since):
        self.calls += 1
        self.delta_since.append(since)
        if not self.online:
            raise LedgerUnavailable("ledger unreachable: offline")
        return dict(self.delta)


class _FakeProvider:
    def __init__(self, statuses=None):
        self.statuses = list(statuses or ["pending"])
        self.initiated = []
        self.status_calls = 0
        self.store = None
        self.record_seen_at_initiate = None
        self.fail_initiate = None

    def initiate(self, amount, currency, success_url, cancel_url, reference, customer_phone=None):
        if self.store is not None:
            self.record_seen_at_initiate = self.store.get("pending_payments", reference)
        if self.fail_initiate is not None:
            raise self.fail_initiate
        tx_id = f"tx-{len(self.initiated) + 1}"
        self.initiated.append(
            {"amount": amount, "currency": currency, "reference": reference, "success_url": success_url, "cancel_url": cancel_url}
        )
        return {"transaction_id": tx_id, "payment_url": f"https://pay.example.test/{tx_id}"}

    def get_status(self, transaction_id):
        self.status_calls += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class _FakeNfc:
    def __init__(self, supported=True):
        self.supported = supported

    def is_supported(self):
        return self.supported


@pytest.fixture
def clock():
    return _FakeClock()


@pytest.fixture
def sink():
    return _RecordingSink()


@pytest.fixture
def ledger():
    return _FakeLedger()


@pytest.fixture
def provider():
    return _FakeProvider()


@pytest.fixture
def store(tmp_path):
    return LocalStore(str(tmp_path / "pos.sqlite")).open()


def seed_catalog(store):
    with store.transaction() as tx:
        for p in [
            Product(id="A", name="Item A", unit_price=5000, barcode="111"),
            Product(id="B", name="Item B", unit_price=3000, barcode="222"),
            Product(id="C", name="Item C", unit_price=1005),
        ]:
            tx.upsert("catalog_products", p.id, p.model_dump(mode="json"))
            if p.barcode:
                tx.upsert("catalog_barcodes", p.barcode, {"product_id": p.id})
        for c in [
            CustomerProfile(id="cust-tab", name="Tab Customer", credit_limit=50000, credit_balance=40000),
            CustomerProfile(id="cust-ok", name="Good Standing", credit_limit=50000, credit_balance=0),
        ]:
            tx.upsert("catalog_customers", c.id, c.model_dump(mode="json"))
        for d in [
            AppliedDiscount(code="SAVE10", name="10% off", kind="percent", value=Decimal("10"), min_purchase=10000),
            AppliedDiscount(code="ONCE", kind="fixed", value=Decimal("500"), usage_limit=1),
        ]:
            tx.upsert("catalog_discounts", d.code, d.model_dump(mode="json"))


@pytest.fixture
def settings(tmp_path):
    s = Settings()
    s.env = "test"
    s.db_path = str(tmp_path / "pos.sqlite")
    s.terminal_id = "T1"
    s.merchant_id = "M1"
    s.currency = "XAF"
    s.timezone = "UTC"
    s.tax_enabled = False
    s.tax_rate = Decimal("0")
    s.momo_fee_percent = Decimal("2")
    s.momo_fee_flat = 0
    s.poll_interval = 2.0
    s.poll_max_seconds = 10.0
    s.qr_max_wait_seconds = 15 * 60.0
    s.watch_payments = False
    s.hold_ttl_hours = 24
    s.require_admin_pin = False
    return s


@pytest.fixture
def terminal(settings, store, ledger, provider, clock, sink):
    seed_catalog(store)
    provider.store = store
    return Terminal(settings, store=store, ledger=ledger, provider=provider, nfc_reader=_FakeNfc(), clock=clock, sink=sink)


@pytest.fixture
def scenario_cart(terminal):
    """Cart [A: 2 x 5000, B: 1 x 3000]."""
    terminal.carts.add_item(product_id="A", quantity=2)
    terminal.carts.add_item(barcode="222")
    return terminal.carts.current()

