from decimal import Decimal

import pytest
from pydantic import ValidationError as ModelValidationError

from pos_terminal.app.config import Settings
from pos_terminal.app.errors import ValidationError
from pos_terminal.app.models import AppliedDiscount, CashMovement, HoldMeta, PendingSale, QrVerification
from pos_terminal.app.payments import decode_qr_request, encode_qr_request


def test_codes_and_currencies_are_normalized():
    assert AppliedDiscount(code=" save10 ", kind="PERCENT", value="10").code == "SAVE10"
    assert QrVerification(reference="r", amount=1, currency=" xaf").currency == "XAF"
    with pytest.raises(ModelValidationError):
        QrVerification(reference="r", amount=1, currency="FRANCS")
    with pytest.raises(ModelValidationError):
        AppliedDiscount(code="", kind="percent", value="10")


def test_optional_text_blanks_become_none():
    meta = HoldMeta(customer_name="   ", notes=" call back ")
    assert meta.customer_name is None
    assert meta.notes == "call back"


def test_cash_movement_amount_must_be_positive():
    with pytest.raises(ModelValidationError):
        CashMovement(direction="in", amount=0, reason="x", recorded_at="2026-03-02T09:00:00Z")


def test_payment_details_round_trip_through_the_discriminator():
    sale = PendingSale.model_validate(
        {
            "idempotency_key": "k",
            "terminal_id": "T1",
            "business_date": "2026-03-02",
            "items": [],
            "totals": {"total": 500},
            "currency": "XAF",
            "payment_method": "QR",
            "payment_details": {
                "method": "qr",
                "reference": "QR1",
                "request_payload": "x",
                "expires_at": "2026-03-02T09:15:00Z",
            },
            "created_at": "2026-03-02T09:00:00Z",
        }
    )
    assert sale.payment_method == "qr"
    assert sale.payment_details.reference == "QR1"


def test_qr_payload_rejects_foreign_codes():
    payload = {"p": "POSPAY", "v": 1, "amount": 100}
    assert decode_qr_request(encode_qr_request(payload)) == payload
    with pytest.raises(ValidationError):
        decode_qr_request(encode_qr_request({"p": "OTHER"}))
    with pytest.raises(ValidationError):
        decode_qr_request("%%%not-base64")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("POS_CURRENCY", "ngn")
    monkeypatch.setenv("POS_TAX_ENABLED", "yes")
    monkeypatch.setenv("POS_TAX_RATE", "0.075")
    monkeypatch.setenv("POS_POLL_MAX_SECONDS", "not-a-number")
    monkeypatch.setenv("POS_LEDGER_URL", "https://ledger.test/api/")
    s = Settings()
    assert s.currency == "NGN"
    assert s.tax_enabled is True
    assert s.tax_rate == Decimal("0.075")
    assert s.poll_max_seconds == 300.0
    assert s.ledger_url == "https://ledger.test/api"
