from datetime import tzinfo
from typing import Optional

from .broadcaster import DisplaySink, NullSink, display_event
from .cart import CartService
from .cash_session import CashSessionManager
from .catalog import Catalog
from .clock import Clock, business_date
from .db import LocalStore
from .errors import PaymentNotCompleted, TerminalHalted, ValidationError
from .logs import json_log
from .models import CashContext, CreditContext, MobileMoneyContext, PendingSale
from .payments import PaymentOrchestrator


class SaleFinalizer:
    """
    Commits a paid cart as a PendingSale.

    The local store transaction is the commit point: the queued sale, drawer
    entry, credit balance, discount usage, receipt and cleared cart are written
    together or not at all. Nothing after it can roll the sale back; sync only
    retries.
    """

    def __init__(
        self,
        store: LocalStore,
        carts: CartService,
        cash_sessions: CashSessionManager,
        catalog: Catalog,
        sync,
        clock: Clock,
        terminal_id: str,
        currency: str,
        sink: Optional[DisplaySink] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.store = store
        self.carts = carts
        self.cash_sessions = cash_sessions
        self.catalog = catalog
        self.sync = sync
        self.clock = clock
        self.terminal_id = terminal_id
        self.currency = currency
        self.sink = sink or NullSink()
        self.tz = tz

    def commit(self, payment: PaymentOrchestrator, cashier_id: Optional[str] = None) -> PendingSale:
        if self.store.halted:
            raise TerminalHalted("local store needs operator attention; sales are disabled", reason=self.store.fault)

        cart = self.carts.current()
        if cart.is_empty:
            raise ValidationError("cart is empty")
        if payment.committed:
            raise ValidationError("sale already committed", idempotency_key=payment.idempotency_key)
        attempt = payment.attempt
        if attempt is None or not attempt.succeeded:
            raise PaymentNotCompleted(
                "payment has not succeeded",
                state=payment.state,
                method=attempt.method if attempt else None,
            )
        if attempt.amount != cart.totals.total:
            raise ValidationError(
                "cart changed after payment started",
                paid=attempt.amount,
                total=cart.totals.total,
            )
        if attempt.method == "cash":
            self.cash_sessions.assert_can_take_cash()

        now = self.clock.now()
        sale = PendingSale(
            idempotency_key=payment.idempotency_key,
            terminal_id=self.terminal_id,
            business_date=business_date(self.clock, self.tz),
            items=cart.items,
            discount_code=cart.discount.code if cart.discount else None,
            totals=cart.totals,
            currency=self.currency,
            payment_method=attempt.method,
            payment_details=attempt.context,
            customer_id=self._customer_for(cart.customer_id, attempt.context),
            cashier_id=cashier_id,
            created_at=now,
        )

        with self.store.transaction() as tx:
            seq = self.sync.enqueue(sale, tx=tx)
            ctx = attempt.context
            if isinstance(ctx, CashContext):
                self.cash_sessions.record_cash_sale(tx, sale.idempotency_key, sale.totals.total, recorded_by=cashier_id)
            elif isinstance(ctx, CreditContext):
                self.catalog.add_customer_balance(tx, ctx.customer_id, sale.totals.total)
            elif isinstance(ctx, MobileMoneyContext):
                tx.delete("pending_payments", ctx.correlation_id)
            if sale.discount_code:
                self.catalog.increment_discount_usage(tx, sale.discount_code)
            tx.upsert("receipts", "last", {"seq": seq, "sale": sale.model_dump(mode="json"), "printed_at": None})
            cleared = self.carts.clear_in(tx)

        payment.mark_committed()
        json_log(
            "info",
            "sale.committed",
            seq=seq,
            idempotency_key=sale.idempotency_key,
            method=sale.payment_method,
            total=sale.totals.total,
        )

        change = attempt.context.change if isinstance(attempt.context, CashContext) else None
        self.sink.emit(
            display_event(
                "payment_success",
                method=sale.payment_method,
                total=sale.totals.total,
                change=change,
                idempotency_key=sale.idempotency_key,
            )
        )
        self.carts.announce(cleared)
        self.sync.request_drain()
        return sale

    @staticmethod
    def _customer_for(cart_customer: Optional[str], ctx) -> Optional[str]:
        if isinstance(ctx, CreditContext):
            return ctx.customer_id
        return cart_customer

    def last_receipt(self) -> Optional[dict]:
        rec = self.store.get("receipts", "last")
        return rec.body if rec else None
