"""
Payment orchestration.

One `PaymentOrchestrator` per sale in progress drives exactly one strategy at a
time through Selecting -> InProgress -> {Succeeded, Failed, Cancelled}.

Cash and tap resolve without suspending. Redirect-poll (mobile money) and
scan-verify (QR) suspend until a provider poll tick or a verification callback,
bounded by a deadline taken from the injected clock, so tests drive them by
advancing a fake clock instead of sleeping.
"""

import base64
import json
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel

from .broadcaster import DisplaySink, NullSink, display_event
from .catalog import Catalog
from .clock import Clock
from .db import LocalStore
from .errors import (
    CreditLimitExceeded,
    InsufficientPayment,
    InvalidPaymentTransition,
    MethodUnavailable,
    NotFound,
    PaymentError,
    PosError,
    ProviderError,
    ValidationError,
    VerificationRejected,
)
from .logs import json_log
from .models import (
    CashContext,
    CreditContext,
    MobileMoneyContext,
    NfcContext,
    PendingPayment,
    QrContext,
    QrVerification,
)
from .pricing import percent_of

ALL_METHODS = ("cash", "mobile_money", "qr", "nfc", "credit")

TERMINAL_PROVIDER_FAILURES = {"failed", "expired", "cancelled"}
PROVIDER_WAITING = {"pending", "processing"}

QR_PREFIX = "POSPAY"
QR_VERSION = 1


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PaymentAttempt:
    attempt_id: str
    method: str
    amount: int
    started_at: datetime
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    context: Optional[BaseModel] = None
    deadline: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    reported: bool = False

    @property
    def in_progress(self) -> bool:
        return self.status == AttemptStatus.IN_PROGRESS

    @property
    def succeeded(self) -> bool:
        return self.status == AttemptStatus.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "method": self.method,
            "amount": self.amount,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "context": self.context.model_dump(mode="json") if self.context is not None else None,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


@dataclass
class StartParams:
    received: Optional[int] = None
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    tag_id: Optional[str] = None


@dataclass
class SaleRef:
    idempotency_key: str
    currency: str


def _succeed(attempt: PaymentAttempt, context: Optional[BaseModel] = None) -> None:
    if context is not None:
        attempt.context = context
    attempt.status = AttemptStatus.SUCCEEDED
    attempt.error = None


def _fail(attempt: PaymentAttempt, reason: str, retryable: bool = True, code: Optional[str] = None) -> None:
    attempt.status = AttemptStatus.FAILED
    attempt.error = reason
    attempt.error_code = code
    attempt.retryable = retryable


class PaymentStrategy(Protocol):
    method: str

    def available(self) -> bool: ...

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None: ...

    def poll(self, attempt: PaymentAttempt) -> None: ...

    def cancel(self, attempt: PaymentAttempt) -> None: ...


class _BaseStrategy:
    method = ""

    def available(self) -> bool:
        return True

    def poll(self, attempt: PaymentAttempt) -> None:
        return None

    def cancel(self, attempt: PaymentAttempt) -> None:
        return None


# Cash

def cash_change(received: int, total: int) -> int:
    return max(0, received - total)


class CashStrategy(_BaseStrategy):
    method = "cash"

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None:
        if params.received is None:
            raise ValidationError("received amount is required for cash")
        if params.received < attempt.amount:
            raise InsufficientPayment(
                "received amount is less than the total",
                received=params.received,
                total=attempt.amount,
                short_by=attempt.amount - params.received,
            )
        _succeed(attempt, CashContext(received=params.received, change=cash_change(params.received, attempt.amount)))


# Redirect-poll (mobile money)

class PaymentProvider(Protocol):
    def initiate(self, amount: int, currency: str, success_url: str, cancel_url: str, reference: str, customer_phone: Optional[str] = None) -> dict: ...

    def get_status(self, transaction_id: str) -> str: ...


class MobileMoneyStrategy(_BaseStrategy):
    method = "mobile_money"

    def __init__(
        self,
        provider: Optional[PaymentProvider],
        store: LocalStore,
        clock: Clock,
        return_url: str,
        fee_percent: Decimal = Decimal("2"),
        fee_flat: int = 0,
        max_poll_seconds: float = 300.0,
    ):
        self.provider = provider
        self.store = store
        self.clock = clock
        self.return_url = return_url
        self.fee_percent = Decimal(fee_percent)
        self.fee_flat = int(fee_flat)
        self.max_poll = timedelta(seconds=max_poll_seconds)

    def available(self) -> bool:
        return self.provider is not None

    def fee_for(self, amount: int) -> int:
        return percent_of(amount, self.fee_percent) + self.fee_flat

    def _return_urls(self, correlation_id: str):
        sep = "&" if "?" in self.return_url else "?"
        base = f"{self.return_url}{sep}cid={correlation_id}"
        return f"{base}&outcome=success", f"{base}&outcome=cancel"

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None:
        fee = self.fee_for(attempt.amount)
        charged = attempt.amount + fee
        correlation_id = uuid.uuid4().hex
        now = self.clock.now()
        pending = PendingPayment(
            correlation_id=correlation_id,
            attempt_id=attempt.attempt_id,
            idempotency_key=sale.idempotency_key,
            amount=attempt.amount,
            fee=fee,
            charged_amount=charged,
            currency=sale.currency,
            customer_phone=params.customer_phone,
            created_at=now,
            deadline=now + self.max_poll,
        )
        # Durable before the customer is sent to the provider page.
        with self.store.transaction() as tx:
            tx.put("pending_payments", correlation_id, pending.model_dump(mode="json"), None)
        attempt.deadline = pending.deadline
        attempt.context = MobileMoneyContext(
            correlation_id=correlation_id,
            customer_phone=params.customer_phone,
            fee=fee,
            charged_amount=charged,
        )

        success_url, cancel_url = self._return_urls(correlation_id)
        try:
            out = self.provider.initiate(charged, sale.currency, success_url, cancel_url, correlation_id, params.customer_phone)
        except ProviderError:
            self.forget(correlation_id)
            raise
        attempt.context.transaction_id = out["transaction_id"]
        attempt.context.payment_url = out.get("payment_url")
        attempt.context.provider_status = "pending"
        with self.store.transaction() as tx:
            rec = tx.get("pending_payments", correlation_id)
            body = {**rec.body, "transaction_id": out["transaction_id"], "payment_url": out.get("payment_url")}
            tx.put("pending_payments", correlation_id, body, rec.version)
        json_log(
            "info",
            "payment.mobile_money.initiated",
            correlation_id=correlation_id,
            transaction_id=out["transaction_id"],
            amount=attempt.amount,
            fee=fee,
        )

    def poll(self, attempt: PaymentAttempt) -> None:
        if not attempt.in_progress:
            return
        ctx: MobileMoneyContext = attempt.context
        if attempt.deadline is not None and self.clock.now() >= attempt.deadline:
            _fail(attempt, "payment timed out waiting for the provider", retryable=True, code="timeout")
            self.forget(ctx.correlation_id)
            return
        if not ctx.transaction_id:
            return
        try:
            status = self.provider.get_status(ctx.transaction_id)
        except ProviderError as ex:
            if ex.retryable:
                json_log("warning", "payment.mobile_money.poll_error", correlation_id=ctx.correlation_id, error=ex.message)
                return
            _fail(attempt, ex.message, retryable=True, code=ex.code)
            self.forget(ctx.correlation_id)
            return

        if status in PROVIDER_WAITING:
            ctx.provider_status = status
        elif status == "completed":
            ctx.provider_status = status
            # The pending record is dropped by the sale commit, not here.
            _succeed(attempt)
        elif status in TERMINAL_PROVIDER_FAILURES:
            ctx.provider_status = status
            _fail(attempt, f"provider reported {status}", retryable=True, code=f"provider_{status}")
            self.forget(ctx.correlation_id)
        else:
            json_log("warning", "payment.mobile_money.unknown_status", correlation_id=ctx.correlation_id, status=status)

    def cancel(self, attempt: PaymentAttempt) -> None:
        ctx = attempt.context
        if isinstance(ctx, MobileMoneyContext):
            self.forget(ctx.correlation_id)

    def forget(self, correlation_id: str) -> None:
        with self.store.transaction() as tx:
            tx.delete("pending_payments", correlation_id)

    def restore(self, correlation_id: str) -> PaymentAttempt:
        """Rebuild the attempt from its pending record after returning from the provider page."""
        rec = self.store.get("pending_payments", correlation_id)
        if not rec:
            raise NotFound(f"no pending payment for {correlation_id}", correlation_id=correlation_id)
        pending = PendingPayment.model_validate(rec.body)
        return PaymentAttempt(
            attempt_id=pending.attempt_id,
            method=self.method,
            amount=pending.amount,
            started_at=pending.created_at,
            deadline=pending.deadline,
            context=MobileMoneyContext(
                correlation_id=pending.correlation_id,
                transaction_id=pending.transaction_id,
                payment_url=pending.payment_url,
                customer_phone=pending.customer_phone,
                fee=pending.fee,
                charged_amount=pending.charged_amount,
                provider_status="pending",
            ),
        )

    def pending_idempotency_key(self, correlation_id: str) -> Optional[str]:
        rec = self.store.get("pending_payments", correlation_id)
        return rec.body.get("idempotency_key") if rec else None


# Scan-verify (QR)

def encode_qr_request(payload: dict) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_qr_request(data: str) -> dict:
    try:
        payload = json.loads(base64.urlsafe_b64decode(data.encode("ascii")).decode("utf-8"))
    except ValueError as ex:
        raise ValidationError("invalid QR payload") from ex
    if not isinstance(payload, dict) or payload.get("p") != QR_PREFIX:
        raise ValidationError("not a payment request QR code")
    return payload


class QrStrategy(_BaseStrategy):
    method = "qr"

    def __init__(self, clock: Clock, merchant_id: str, max_wait_seconds: float = 15 * 60.0):
        self.clock = clock
        self.merchant_id = merchant_id
        self.max_wait = timedelta(seconds=max_wait_seconds)

    def _reference(self) -> str:
        stamp = int(self.clock.now().timestamp() * 1000)
        return f"QR{stamp}{secrets.token_hex(3).upper()}"

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None:
        expires_at = self.clock.now() + self.max_wait
        reference = self._reference()
        payload = {
            "p": QR_PREFIX,
            "v": QR_VERSION,
            "type": "request",
            "merchant": self.merchant_id,
            "amount": attempt.amount,
            "currency": sale.currency,
            "reference": reference,
            "idempotency_key": sale.idempotency_key,
            "expires_at": expires_at.isoformat(),
        }
        attempt.deadline = expires_at
        attempt.context = QrContext(reference=reference, request_payload=encode_qr_request(payload), expires_at=expires_at)

    def poll(self, attempt: PaymentAttempt) -> None:
        if attempt.in_progress and attempt.deadline is not None and self.clock.now() >= attempt.deadline:
            _fail(attempt, "payment request expired", retryable=True, code="timeout")

    def verify(self, attempt: PaymentAttempt, verification: QrVerification, currency: str) -> None:
        """Strict verification: amount, currency and reference must all match the request."""
        ctx: QrContext = attempt.context
        if not attempt.in_progress:
            raise VerificationRejected("payment request is no longer active", reference=verification.reference)
        self.poll(attempt)
        if not attempt.in_progress:
            raise VerificationRejected("payment request expired", reference=verification.reference)
        mismatches = []
        if verification.reference != ctx.reference:
            mismatches.append("reference")
        if verification.amount != attempt.amount:
            mismatches.append("amount")
        if verification.currency != currency:
            mismatches.append("currency")
        if verification.merchant_id and verification.merchant_id != self.merchant_id:
            mismatches.append("merchant")
        if mismatches:
            json_log("warning", "payment.qr.mismatch", reference=ctx.reference, fields=mismatches)
            raise VerificationRejected("payment confirmation does not match the request", mismatched=mismatches)
        ctx.payer_ref = verification.payer_ref
        _succeed(attempt)


# Tap (NFC)

class NfcReader(Protocol):
    def is_supported(self) -> bool: ...


class NfcStrategy(_BaseStrategy):
    method = "nfc"

    def __init__(self, reader: Optional[NfcReader]):
        self.reader = reader

    def available(self) -> bool:
        return self.reader is not None and bool(self.reader.is_supported())

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None:
        attempt.context = NfcContext()
        if params.tag_id:
            self.on_tag(attempt, params.tag_id)

    def on_tag(self, attempt: PaymentAttempt, tag_id: str) -> None:
        if not tag_id:
            raise ValidationError("tag id is required")
        # Authorization is delegated to the reader; detection is success.
        _succeed(attempt, NfcContext(tag_id=tag_id))


# Ledger credit (tab)

class CreditStrategy(_BaseStrategy):
    method = "credit"

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def start(self, attempt: PaymentAttempt, params: StartParams, sale: SaleRef) -> None:
        if not params.customer_id:
            raise ValidationError("a customer is required for credit sales")
        profile = self.catalog.customer(params.customer_id)
        if profile.credit_balance + attempt.amount > profile.credit_limit:
            raise CreditLimitExceeded(
                "sale would exceed the customer's credit limit",
                customer_id=profile.id,
                balance=profile.credit_balance,
                limit=profile.credit_limit,
                amount=attempt.amount,
                available=max(0, profile.credit_limit - profile.credit_balance),
            )
        _succeed(
            attempt,
            CreditContext(customer_id=profile.id, balance_before=profile.credit_balance, credit_limit=profile.credit_limit),
        )


# Orchestrator

class PaymentOrchestrator:
    def __init__(
        self,
        strategies: Dict[str, PaymentStrategy],
        clock: Clock,
        currency: str,
        sink: Optional[DisplaySink] = None,
        idempotency_key: Optional[str] = None,
        poll_interval: float = 2.0,
    ):
        self.strategies = strategies
        self.clock = clock
        self.currency = currency
        self.sink = sink or NullSink()
        self.idempotency_key = idempotency_key or uuid.uuid4().hex
        self.poll_interval = poll_interval
        self.selected: Optional[str] = None
        self.attempt: Optional[PaymentAttempt] = None
        self.committed = False
        self._lock = threading.RLock()

    @property
    def state(self) -> str:
        if self.attempt is None:
            return "selecting"
        return self.attempt.status.value

    def available_methods(self) -> List[str]:
        return [m for m in ALL_METHODS if m in self.strategies and self.strategies[m].available()]

    def _strategy(self, method: str) -> PaymentStrategy:
        if method not in ALL_METHODS:
            raise ValidationError(f"unknown payment method: {method}", method=method)
        strategy = self.strategies.get(method)
        if strategy is None or not strategy.available():
            raise MethodUnavailable(f"payment method not available on this terminal: {method}", method=method)
        return strategy

    def _ensure_open(self) -> None:
        if self.committed:
            raise InvalidPaymentTransition("sale already committed")
        if self.attempt is not None and self.attempt.succeeded:
            raise InvalidPaymentTransition("payment already succeeded", method=self.attempt.method)

    def select(self, method: str) -> None:
        with self._lock:
            self._ensure_open()
            self._strategy(method)
            if self.attempt is not None and self.attempt.in_progress and self.attempt.method != method:
                self._cancel_current("payment method switched")
            self.selected = method

    def start(self, amount: int, method: Optional[str] = None, **params) -> PaymentAttempt:
        with self._lock:
            if method:
                self.select(method)
            self._ensure_open()
            if not self.selected:
                raise ValidationError("select a payment method first")
            if amount <= 0:
                raise ValidationError("amount must be > 0", amount=amount)
            strategy = self._strategy(self.selected)
            if self.attempt is not None and self.attempt.in_progress:
                self._cancel_current("payment restarted")

            attempt = PaymentAttempt(
                attempt_id=uuid.uuid4().hex,
                method=self.selected,
                amount=amount,
                started_at=self.clock.now(),
            )
            self.attempt = attempt
            self.sink.emit(display_event("payment_start", method=attempt.method, amount=amount))
            json_log("info", "payment.attempt.started", attempt_id=attempt.attempt_id, method=attempt.method, amount=amount)
            try:
                strategy.start(attempt, StartParams(**params), SaleRef(self.idempotency_key, self.currency))
            except PosError as ex:
                retryable = getattr(ex, "retryable", isinstance(ex, PaymentError))
                self._mark_failed(attempt, ex.message, retryable=retryable, code=ex.code)
                raise
            self._after_transition(attempt)
            return attempt

    def poll(self) -> Optional[PaymentAttempt]:
        """One poll tick for suspended methods; enforces the attempt deadline."""
        with self._lock:
            attempt = self.attempt
            if attempt is None or not attempt.in_progress:
                return attempt
            self.strategies[attempt.method].poll(attempt)
            self._after_transition(attempt)
            return attempt

    def await_resolution(self, max_ticks: Optional[int] = None, stop: Optional[threading.Event] = None) -> PaymentAttempt:
        """Poll until the attempt leaves InProgress. Cancellation from another thread ends the wait."""
        ticks = 0
        while True:
            attempt = self.poll()
            if attempt is None:
                raise ValidationError("no payment attempt in progress")
            if not attempt.in_progress or (stop is not None and stop.is_set()):
                return attempt
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                return attempt
            self.clock.sleep(self.poll_interval)

    def verify_qr(self, verification: QrVerification) -> PaymentAttempt:
        with self._lock:
            attempt = self._require_attempt("qr")
            strategy: QrStrategy = self.strategies["qr"]
            try:
                strategy.verify(attempt, verification, self.currency)
            finally:
                self._after_transition(attempt)
            return attempt

    def tap(self, tag_id: str) -> PaymentAttempt:
        with self._lock:
            attempt = self._require_attempt("nfc")
            if not attempt.in_progress:
                raise InvalidPaymentTransition("tap attempt is no longer active")
            strategy: NfcStrategy = self.strategies["nfc"]
            strategy.on_tag(attempt, tag_id)
            self._after_transition(attempt)
            return attempt

    def resume_redirect(self, correlation_id: str) -> PaymentAttempt:
        """Re-attach a mobile money attempt after the app returns from the provider page."""
        with self._lock:
            self._ensure_open()
            strategy: MobileMoneyStrategy = self._strategy("mobile_money")
            key = strategy.pending_idempotency_key(correlation_id)
            attempt = strategy.restore(correlation_id)
            if self.attempt is not None and self.attempt.in_progress and self.attempt.attempt_id != attempt.attempt_id:
                self._cancel_current("payment method switched")
            if key:
                self.idempotency_key = key
            self.selected = "mobile_money"
            self.attempt = attempt
            json_log("info", "payment.mobile_money.resumed", correlation_id=correlation_id, attempt_id=attempt.attempt_id)
            return attempt

    def cancel(self, reason: str = "cancelled by operator") -> Optional[PaymentAttempt]:
        with self._lock:
            if self.attempt is None:
                return None
            if self.attempt.succeeded:
                raise InvalidPaymentTransition("cannot cancel a successful payment", method=self.attempt.method)
            if self.attempt.in_progress:
                self._cancel_current(reason)
            return self.attempt

    def mark_committed(self) -> None:
        with self._lock:
            self.committed = True

    # Internals

    def _require_attempt(self, method: str) -> PaymentAttempt:
        if self.attempt is None or self.attempt.method != method:
            raise InvalidPaymentTransition(f"no {method} payment in progress")
        return self.attempt

    def _cancel_current(self, reason: str) -> None:
        attempt = self.attempt
        self.strategies[attempt.method].cancel(attempt)
        attempt.status = AttemptStatus.CANCELLED
        attempt.error = reason
        json_log("info", "payment.attempt.cancelled", attempt_id=attempt.attempt_id, method=attempt.method, reason=reason)
        self.sink.emit(display_event("payment_failed", method=attempt.method, amount=attempt.amount, reason=reason, cancelled=True))

    def _mark_failed(self, attempt: PaymentAttempt, reason: str, retryable: bool, code: Optional[str]) -> None:
        _fail(attempt, reason, retryable=retryable, code=code)
        self._after_transition(attempt)

    def _after_transition(self, attempt: PaymentAttempt) -> None:
        if attempt.status == AttemptStatus.FAILED and not attempt.reported:
            attempt.reported = True
            json_log(
                "warning",
                "payment.attempt.failed",
                attempt_id=attempt.attempt_id,
                method=attempt.method,
                error=attempt.error,
                retryable=attempt.retryable,
            )
            self.sink.emit(
                display_event(
                    "payment_failed",
                    method=attempt.method,
                    amount=attempt.amount,
                    reason=attempt.error,
                    retryable=attempt.retryable,
                )
            )
        elif attempt.status == AttemptStatus.SUCCEEDED and not attempt.reported:
            attempt.reported = True
            json_log("info", "payment.attempt.succeeded", attempt_id=attempt.attempt_id, method=attempt.method)
