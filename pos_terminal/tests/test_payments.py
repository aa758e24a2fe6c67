import pytest

from pos_terminal.app.errors import (
    CreditLimitExceeded,
    InsufficientPayment,
    InvalidPaymentTransition,
    MethodUnavailable,
    ProviderError,
    ValidationError,
    VerificationRejected,
)
from pos_terminal.app.models import QrVerification
from pos_terminal.app.payments import NfcStrategy, PaymentOrchestrator, decode_qr_request


@pytest.fixture
def discounted_cart(terminal, scenario_cart):
    return terminal.carts.apply_discount("save10")


def test_cash_computes_change(terminal, discounted_cart, sink):
    assert discounted_cart.totals.total == 11700
    pay = terminal.payment()
    attempt = pay.start(11700, "cash", received=12000)
    assert attempt.succeeded
    assert attempt.context.change == 300
    assert pay.state == "succeeded"
    assert "payment_start" in sink.types()


def test_cash_short_is_rejected(terminal, discounted_cart, sink):
    pay = terminal.payment()
    with pytest.raises(InsufficientPayment) as exc:
        pay.start(11700, "cash", received=10000)
    assert exc.value.details["short_by"] == 1700
    assert pay.state == "failed"
    assert pay.attempt.retryable
    assert sink.types()[-1] == "payment_failed"

    # A new attempt on the same sale may follow the failure.
    assert pay.start(11700, "cash", received=11700).context.change == 0


def test_credit_over_limit_keeps_the_cart(terminal):
    terminal.carts.add_item(product_id="A", quantity=3)
    terminal.carts.set_customer("cust-tab")
    pay = terminal.payment()
    # 40000 + 15000 > 50000
    with pytest.raises(CreditLimitExceeded) as exc:
        pay.start(15000, "credit", customer_id="cust-tab")
    assert exc.value.details["available"] == 10000
    assert pay.state == "failed"
    assert terminal.carts.current().totals.total == 15000
    assert terminal.catalog.customer("cust-tab").credit_balance == 40000


def test_credit_within_limit(terminal, scenario_cart):
    pay = terminal.payment()
    with pytest.raises(ValidationError):
        pay.start(13000, "credit")
    attempt = pay.start(13000, "credit", customer_id="cust-ok")
    assert attempt.succeeded
    assert attempt.context.balance_before == 0


def test_mobile_money_persists_before_redirect_and_polls_to_success(terminal, discounted_cart, provider, clock):
    provider.statuses = ["pending", "processing", "completed"]
    pay = terminal.payment()
    attempt = pay.start(11700, "mobile_money", customer_phone="+237600000000")

    assert attempt.in_progress
    assert attempt.context.fee == 234
    assert attempt.context.charged_amount == 11934
    assert provider.initiated[0]["amount"] == 11934
    assert "cid=" in provider.initiated[0]["success_url"]
    seen = provider.record_seen_at_initiate
    assert seen is not None
    assert seen.body["idempotency_key"] == pay.idempotency_key

    resolved = pay.await_resolution()
    assert resolved.succeeded
    assert resolved.context.provider_status == "completed"
    assert clock.sleeps == [2.0, 2.0]
    # Dropped at commit, not on success.
    assert terminal.store.get("pending_payments", attempt.context.correlation_id) is not None


def test_mobile_money_times_out(terminal, discounted_cart, provider, clock, sink):
    pay = terminal.payment()
    attempt = pay.start(11700, "mobile_money")
    resolved = pay.await_resolution()
    assert resolved.status.value == "failed"
    assert resolved.error_code == "timeout"
    assert resolved.retryable
    assert sum(clock.sleeps) == 10.0
    assert terminal.store.get("pending_payments", attempt.context.correlation_id) is None
    assert sink.types().count("payment_failed") == 1


def test_mobile_money_provider_failure_status(terminal, discounted_cart, provider):
    provider.statuses = ["pending", "failed"]
    pay = terminal.payment()
    pay.start(11700, "mobile_money")
    resolved = pay.await_resolution()
    assert resolved.error_code == "provider_failed"


def test_mobile_money_initiate_error_leaves_no_pending_record(terminal, discounted_cart, provider):
    provider.fail_initiate = ProviderError("provider down")
    pay = terminal.payment()
    with pytest.raises(ProviderError):
        pay.start(11700, "mobile_money")
    assert pay.state == "failed"
    assert pay.attempt.retryable
    assert terminal.store.list("pending_payments") == []


def test_mobile_money_resumes_after_restart(terminal, discounted_cart, provider, clock):
    first = terminal.payment()
    attempt = first.start(11700, "mobile_money")
    correlation_id = attempt.context.correlation_id

    # A new process has no in-memory orchestrator, only the pending record.
    fresh = PaymentOrchestrator(terminal.strategies, clock, currency="XAF")
    restored = fresh.resume_redirect(correlation_id)
    assert restored.attempt_id == attempt.attempt_id
    assert restored.amount == 11700
    assert fresh.idempotency_key == first.idempotency_key

    provider.statuses = ["completed"]
    assert fresh.poll().succeeded


def test_mobile_money_unavailable_without_provider(terminal):
    terminal.strategies["mobile_money"].provider = None
    pay = terminal.payment()
    assert "mobile_money" not in pay.available_methods()
    with pytest.raises(MethodUnavailable):
        pay.select("mobile_money")


def test_qr_rejects_mismatch_then_accepts_match_once(terminal, discounted_cart):
    pay = terminal.payment()
    attempt = pay.start(11700, "qr")
    ctx = attempt.context
    payload = decode_qr_request(ctx.request_payload)
    assert payload["amount"] == 11700
    assert payload["merchant"] == "M1"
    assert payload["reference"] == ctx.reference

    with pytest.raises(VerificationRejected) as exc:
        pay.verify_qr(QrVerification(reference=ctx.reference, amount=11000, currency="XAF"))
    assert exc.value.details["mismatched"] == ["amount"]
    assert pay.attempt.in_progress

    pay.verify_qr(QrVerification(reference=ctx.reference, amount=11700, currency="xaf", payer_ref="wallet-9"))
    assert pay.attempt.succeeded
    assert pay.attempt.context.payer_ref == "wallet-9"

    with pytest.raises(VerificationRejected):
        pay.verify_qr(QrVerification(reference=ctx.reference, amount=11700, currency="XAF"))


def test_qr_request_expires(terminal, discounted_cart, clock):
    pay = terminal.payment()
    attempt = pay.start(11700, "qr")
    clock.advance(minutes=16)
    pay.poll()
    assert attempt.error_code == "timeout"
    with pytest.raises(VerificationRejected):
        pay.verify_qr(QrVerification(reference=attempt.context.reference, amount=11700, currency="XAF"))


def test_nfc_requires_a_reader(clock):
    strategy = NfcStrategy(None)
    assert not strategy.available()
    pay = PaymentOrchestrator({"nfc": strategy}, clock, currency="XAF")
    assert pay.available_methods() == []
    with pytest.raises(MethodUnavailable):
        pay.select("nfc")


def test_nfc_tap_completes_the_attempt(terminal, discounted_cart):
    pay = terminal.payment()
    attempt = pay.start(11700, "nfc")
    assert attempt.in_progress
    pay.tap("04A1B2C3")
    assert attempt.succeeded
    assert attempt.context.tag_id == "04A1B2C3"
    with pytest.raises(InvalidPaymentTransition):
        pay.tap("04A1B2C3")


def test_switching_method_cancels_the_in_flight_attempt(terminal, discounted_cart, sink):
    pay = terminal.payment()
    attempt = pay.start(11700, "mobile_money")
    pay.select("cash")
    assert attempt.status.value == "cancelled"
    assert terminal.store.list("pending_payments") == []
    cancelled = [e for e in sink.events if e.type == "payment_failed"]
    assert cancelled[-1].data["cancelled"] is True

    pay.start(11700, received=20000)
    assert pay.attempt.succeeded
    with pytest.raises(InvalidPaymentTransition):
        pay.cancel()
    with pytest.raises(InvalidPaymentTransition):
        pay.select("qr")


def test_unknown_method_and_missing_selection(clock):
    pay = PaymentOrchestrator({}, clock, currency="XAF")
    with pytest.raises(ValidationError):
        pay.select("bitcoin")
    with pytest.raises(ValidationError):
        pay.start(100)
    assert pay.cancel() is None


def test_background_watch_settles_mobile_money(terminal, discounted_cart, provider, clock):
    terminal.settings.watch_payments = True
    provider.statuses = ["pending", "completed"]
    pay = terminal.start_payment(11700, "mobile_money")
    terminal._watcher.join(timeout=5.0)
    assert not terminal._watcher.is_alive()
    assert pay.attempt.succeeded
    assert clock.sleeps == [2.0]
    assert terminal.commit_sale().totals.total == 11700


def test_background_watch_expires_qr(terminal, discounted_cart, clock):
    terminal.settings.watch_payments = True
    pay = terminal.start_payment(11700, "qr")
    terminal._watcher.join(timeout=5.0)
    assert pay.attempt.error_code == "timeout"
    assert sum(clock.sleeps) >= 15 * 60


def test_tap_attempts_are_not_watched(terminal, discounted_cart):
    terminal.settings.watch_payments = True
    terminal.start_payment(11700, "nfc")
    assert terminal._watcher is None
