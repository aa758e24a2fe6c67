"""Wires the terminal core together from Settings (or injected collaborators in tests)."""

import threading
from typing import Optional

from .broadcaster import CustomerDisplayBroadcaster, DisplaySink, RecentEventsSink
from .cart import CartService
from .cash_session import CashSessionManager
from .catalog import Catalog
from .clients import PaymentProviderClient, RemoteLedgerClient
from .clock import Clock, SystemClock, zone
from .config import Settings
from .db import LocalStore
from .errors import InvalidPaymentTransition, PosError
from .finalizer import SaleFinalizer
from .held_orders import HeldOrderBook
from .logs import json_log
from .models import PendingSale, TaxConfig
from .payments import (
    CashStrategy,
    CreditStrategy,
    MobileMoneyStrategy,
    NfcReader,
    NfcStrategy,
    PaymentOrchestrator,
    PaymentProvider,
    QrStrategy,
)
from .security import AdminAuth
from .sync import Ledger, SyncEngine


WATCHED_METHODS = {"mobile_money", "qr"}


def _paid_not_committed(payment: Optional[PaymentOrchestrator]) -> bool:
    return payment is not None and not payment.committed and payment.attempt is not None and payment.attempt.succeeded


class StaticNfcReader:
    """Capability flag for terminals whose contactless reader is configured but not probed."""

    def __init__(self, supported: bool):
        self.supported = supported

    def is_supported(self) -> bool:
        return self.supported


class Terminal:
    def __init__(
        self,
        settings: Settings,
        store: Optional[LocalStore] = None,
        ledger: Optional[Ledger] = None,
        provider: Optional[PaymentProvider] = None,
        nfc_reader: Optional[NfcReader] = None,
        clock: Optional[Clock] = None,
        sink: Optional[DisplaySink] = None,
    ):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.tz = zone(settings.timezone)
        self.store = store or LocalStore(settings.db_path).open()
        self.display = RecentEventsSink()
        self.sink = sink if sink is not None else CustomerDisplayBroadcaster([self.display])

        self.catalog = Catalog(self.store)
        self.tax = TaxConfig(enabled=settings.tax_enabled, rate=settings.tax_rate, label=settings.tax_label)
        self.carts = CartService(self.store, self.catalog, self.tax, self.clock, self.sink)
        self.held_orders = HeldOrderBook(self.carts, self.clock, ttl_hours=settings.hold_ttl_hours, tz=self.tz)
        self.cash_sessions = CashSessionManager(self.store, self.clock, tz=self.tz)
        self.sync = SyncEngine(self.store, ledger, self.clock, catalog=self.catalog, synced_history=settings.synced_history)
        self.finalizer = SaleFinalizer(
            self.store,
            self.carts,
            self.cash_sessions,
            self.catalog,
            self.sync,
            self.clock,
            terminal_id=settings.terminal_id,
            currency=settings.currency,
            sink=self.sink,
            tz=self.tz,
        )
        self.auth = AdminAuth(self.store, session_hours=settings.admin_session_hours)

        self.strategies = {
            "cash": CashStrategy(),
            "mobile_money": MobileMoneyStrategy(
                provider,
                self.store,
                self.clock,
                return_url=settings.return_url,
                fee_percent=settings.momo_fee_percent,
                fee_flat=settings.momo_fee_flat,
                max_poll_seconds=settings.poll_max_seconds,
            ),
            "qr": QrStrategy(self.clock, settings.merchant_id, max_wait_seconds=settings.qr_max_wait_seconds),
            "nfc": NfcStrategy(nfc_reader),
            "credit": CreditStrategy(self.catalog),
        }
        self._payment: Optional[PaymentOrchestrator] = None
        self._payment_lock = threading.Lock()
        self._stop = threading.Event()
        self._sync_thread: Optional[threading.Thread] = None
        self._watcher: Optional[threading.Thread] = None
        self._watched: Optional[PaymentOrchestrator] = None
        self.carts.edit_guard = self._assert_cart_editable

    @classmethod
    def from_settings(cls, settings: Settings) -> "Terminal":
        ledger = None
        if settings.ledger_url:
            ledger = RemoteLedgerClient(settings.ledger_url, settings.device_id, settings.device_token, settings.http_timeout)
        provider = None
        if settings.provider_url:
            provider = PaymentProviderClient(settings.provider_url, settings.provider_key, settings.http_timeout)
        reader = StaticNfcReader(True) if settings.nfc_enabled else None
        return cls(settings, ledger=ledger, provider=provider, nfc_reader=reader)

    # Payment for the sale in progress (one at a time)

    def payment(self) -> PaymentOrchestrator:
        with self._payment_lock:
            if self._payment is None or self._payment.committed:
                self._payment = PaymentOrchestrator(
                    self.strategies,
                    self.clock,
                    currency=self.settings.currency,
                    sink=self.sink,
                    poll_interval=self.settings.poll_interval,
                )
            return self._payment

    def start_payment(self, amount: int, method: str, **params) -> PaymentOrchestrator:
        if method == "cash":
            self.cash_sessions.assert_can_take_cash()
        payment = self.payment()
        payment.start(amount, method=method, **params)
        self._watch(payment)
        return payment

    def resume_payment(self, correlation_id: str) -> PaymentOrchestrator:
        payment = self.payment()
        payment.resume_redirect(correlation_id)
        self._watch(payment)
        return payment

    def abandon_payment(self) -> None:
        """Close the payment screen: cancel whatever is in flight and forget the attempt."""
        with self._payment_lock:
            current = self._payment
            if _paid_not_committed(current):
                raise InvalidPaymentTransition(
                    "payment succeeded; commit the sale first",
                    method=current.attempt.method,
                    idempotency_key=current.idempotency_key,
                )
            self._payment = None
        if current is not None and current.attempt is not None and current.attempt.in_progress:
            current.cancel("payment screen closed")

    def commit_sale(self, cashier_id: Optional[str] = None) -> PendingSale:
        sale = self.finalizer.commit(self.payment(), cashier_id=cashier_id)
        with self._payment_lock:
            self._payment = None
        return sale

    def _assert_cart_editable(self) -> None:
        current = self._payment
        if _paid_not_committed(current):
            raise InvalidPaymentTransition("payment succeeded; commit the sale first", method=current.attempt.method)
        if current is not None and current.attempt is not None and current.attempt.in_progress:
            raise InvalidPaymentTransition("cancel the payment in progress first", method=current.attempt.method)

    # Redirect and QR attempts resolve in the background, on the injected clock.

    def _watch(self, payment: PaymentOrchestrator) -> None:
        attempt = payment.attempt
        if not self.settings.watch_payments or attempt is None or not attempt.in_progress:
            return
        if attempt.method not in WATCHED_METHODS:
            return
        with self._payment_lock:
            if self._watched is payment:
                return
            self._watched = payment
            self._watcher = threading.Thread(target=self._run_watch, args=(payment,), name="pos-payment-poll", daemon=True)
            self._watcher.start()

    def _run_watch(self, payment: PaymentOrchestrator) -> None:
        while True:
            try:
                attempt = payment.await_resolution(stop=self._stop)
            except PosError as ex:
                json_log("error", "payment.watch.error", error=ex.message, code=ex.code)
                attempt = None
            with self._payment_lock:
                # A new attempt may have started on the same payment while this one resolved.
                current = payment.attempt
                watched = current is not None and current.in_progress and current.method in WATCHED_METHODS
                if attempt is not None and watched and not self._stop.is_set():
                    continue
                if self._watched is payment:
                    self._watched = None
            if attempt is not None:
                json_log("info", "payment.watch.done", attempt_id=attempt.attempt_id, status=attempt.status.value)
            return

    # Background sync

    def start_background_sync(self) -> None:
        if self.sync.ledger is None or self._sync_thread is not None:
            return
        self._stop.clear()
        self._sync_thread = threading.Thread(
            target=self.sync.run_forever,
            args=(self._stop, self.settings.sync_interval),
            name="pos-sync",
            daemon=True,
        )
        self._sync_thread.start()
        json_log("info", "sync.loop.started", interval=self.settings.sync_interval)

    def shutdown(self) -> None:
        self._stop.set()
        self.sync.request_drain()
        if self._sync_thread is not None:
            self._sync_thread.join(timeout=5.0)
            self._sync_thread = None
        if self._watcher is not None:
            self._watcher.join(timeout=5.0)
        close = getattr(self.sink, "close", None)
        if callable(close):
            close()
