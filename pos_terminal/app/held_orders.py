import uuid
from datetime import timedelta, tzinfo
from typing import List, Optional

from .cart import CartService
from .clock import Clock, business_date
from .db import StoreTx
from .errors import AlreadyResumed, CartNotEmpty, HeldOrderExpired, HeldOrderNotFound, ValidationError
from .logs import json_log
from .models import Cart, HeldOrder, HoldMeta


class HeldOrderBook:
    """Parked carts. Holding clears the live cart; resuming restores it exactly once."""

    def __init__(self, carts: CartService, clock: Clock, ttl_hours: int = 24, tz: Optional[tzinfo] = None):
        self.carts = carts
        self.store = carts.store
        self.clock = clock
        self.ttl = timedelta(hours=max(1, int(ttl_hours)))
        self.tz = tz

    def _next_hold_number(self, tx: StoreTx) -> str:
        day = business_date(self.clock, self.tz).strftime("%Y%m%d")
        key = f"hold_seq:{day}"
        rec = tx.get("settings", key)
        seq = int(rec.body.get("value", 0)) + 1 if rec else 1
        tx.upsert("settings", key, {"value": seq})
        return f"H{day}-{seq:03d}"

    def hold(self, meta: Optional[HoldMeta] = None) -> HeldOrder:
        meta = meta or HoldMeta()
        now = self.clock.now()
        with self.store.transaction() as tx:
            cart, _ = self.carts.load(tx)
            if cart.is_empty:
                raise ValidationError("cannot hold an empty cart")
            order = HeldOrder(
                id=uuid.uuid4().hex,
                hold_number=self._next_hold_number(tx),
                cart=cart,
                customer_name=meta.customer_name,
                customer_phone=meta.customer_phone,
                notes=meta.notes,
                held_at=now,
                expires_at=now + self.ttl,
            )
            tx.put("held_orders", order.id, order.model_dump(mode="json"), None)
            cleared = self.carts.clear_in(tx)
        self.carts.announce(cleared)
        json_log("info", "held_order.held", id=order.id, hold_number=order.hold_number, total=cart.totals.total)
        return order

    def list(self, include_inactive: bool = False) -> List[HeldOrder]:
        now = self.clock.now()
        orders = []
        for rec in self.store.list("held_orders"):
            order = HeldOrder.model_validate(rec.body)
            if order.status == "held" and order.expires_at <= now:
                order.status = "expired"
            if include_inactive or order.status == "held":
                orders.append(order)
        orders.sort(key=lambda o: o.held_at, reverse=True)
        return orders

    def get(self, order_id: str) -> HeldOrder:
        rec = self.store.get("held_orders", order_id)
        if not rec:
            raise HeldOrderNotFound(f"held order not found: {order_id}", id=order_id)
        return HeldOrder.model_validate(rec.body)

    def resume(self, order_id: str) -> Cart:
        now = self.clock.now()
        with self.store.transaction() as tx:
            rec = tx.get("held_orders", order_id)
            if not rec:
                raise HeldOrderNotFound(f"held order not found: {order_id}", id=order_id)
            order = HeldOrder.model_validate(rec.body)
            if order.status == "resumed":
                raise AlreadyResumed("held order was already resumed", id=order_id, hold_number=order.hold_number)
            if order.status == "expired" or order.expires_at <= now:
                order.status = "expired"
                tx.put("held_orders", order_id, order.model_dump(mode="json"), rec.version)
                # Persist the expiry, then report it once the transaction has committed.
                expired = order
            else:
                expired = None
                live, _ = self.carts.load(tx)
                if not live.is_empty:
                    raise CartNotEmpty("hold or clear the current cart before resuming another order", id=order_id)
                cart = self.carts.replace_in(tx, order.cart.model_copy(deep=True))
                order.status = "resumed"
                order.resumed_at = now
                tx.put("held_orders", order_id, order.model_dump(mode="json"), rec.version)
        if expired is not None:
            raise HeldOrderExpired("held order has expired", id=order_id, hold_number=expired.hold_number)
        self.carts.announce(cart)
        json_log("info", "held_order.resumed", id=order_id, hold_number=order.hold_number)
        return cart

    def discard(self, order_id: str) -> None:
        with self.store.transaction() as tx:
            if not tx.delete("held_orders", order_id):
                raise HeldOrderNotFound(f"held order not found: {order_id}", id=order_id)
        json_log("info", "held_order.discarded", id=order_id)
