from decimal import Decimal
from typing import Callable, Optional, Tuple

from .broadcaster import DisplaySink, NullSink, display_event
from .catalog import Catalog
from .clock import Clock
from .db import LocalStore, StoreTx
from .errors import DiscountNotApplicable, NotFound, ValidationError
from .logs import json_log
from .models import Cart, CartItem, LineDiscount, TaxConfig
from .pricing import price_cart

CART_KEY = "active"


class CartService:
    """
    The single live cart. Every mutation reprices the cart inside the same store
    transaction that writes it, then mirrors the result to the customer display.
    """

    def __init__(self, store: LocalStore, catalog: Catalog, tax: TaxConfig, clock: Clock, sink: Optional[DisplaySink] = None):
        self.store = store
        self.catalog = catalog
        self.tax = tax
        self.clock = clock
        self.sink = sink or NullSink()
        # Set by the terminal: raises while a payment holds the cart.
        self.edit_guard: Optional[Callable[[], None]] = None

    # Reads

    def load(self, tx: StoreTx) -> Tuple[Cart, Optional[int]]:
        rec = tx.get("cart", CART_KEY)
        if not rec:
            return Cart(), None
        return Cart.model_validate(rec.body), rec.version

    def current(self) -> Cart:
        with self.store.transaction() as tx:
            cart, _ = self.load(tx)
        return cart

    # Mutations

    def add_item(self, product_id: Optional[str] = None, barcode: Optional[str] = None, quantity: int = 1) -> Cart:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", quantity=quantity)
        if product_id:
            product = self.catalog.product(product_id)
        elif barcode:
            product = self.catalog.product_by_barcode(barcode)
        else:
            raise ValidationError("product_id or barcode is required")
        if not product.is_active:
            raise ValidationError(f"product is not available: {product.name}", product_id=product.id)

        def _apply(cart: Cart) -> None:
            for item in cart.items:
                if item.product_id == product.id:
                    item.quantity += quantity
                    return
            cart.items.append(
                CartItem(product_id=product.id, name=product.name, unit_price=product.unit_price, quantity=quantity)
            )

        return self._mutate(_apply)

    def set_quantity(self, product_id: str, quantity: int) -> Cart:
        """Quantity 0 removes the line."""
        if quantity < 0:
            raise ValidationError("quantity cannot be negative", quantity=quantity)
        if quantity == 0:
            return self.remove_item(product_id)

        def _apply(cart: Cart) -> None:
            self._line(cart, product_id).quantity = quantity

        return self._mutate(_apply)

    def remove_item(self, product_id: str) -> Cart:
        def _apply(cart: Cart) -> None:
            line = self._line(cart, product_id)
            cart.items.remove(line)

        return self._mutate(_apply)

    def set_line_discount(self, product_id: str, kind: Optional[str], value: Optional[Decimal] = None) -> Cart:
        if kind is None:
            discount = None
        else:
            discount = LineDiscount(kind=kind, value=Decimal(value if value is not None else 0))

        def _apply(cart: Cart) -> None:
            self._line(cart, product_id).discount = discount

        return self._mutate(_apply)

    def apply_discount(self, code: str) -> Cart:
        try:
            discount = self.catalog.discount(code)
        except NotFound as ex:
            raise DiscountNotApplicable(ex.message, **ex.details) from ex

        def _apply(cart: Cart) -> None:
            if cart.is_empty:
                raise ValidationError("cart is empty")
            cart.discount = discount

        return self._mutate(_apply, strict_discount=True)

    def remove_discount(self) -> Cart:
        def _apply(cart: Cart) -> None:
            cart.discount = None

        return self._mutate(_apply)

    def set_customer(self, customer_id: Optional[str]) -> Cart:
        if customer_id:
            self.catalog.customer(customer_id)

        def _apply(cart: Cart) -> None:
            cart.customer_id = customer_id or None

        return self._mutate(_apply)

    def clear(self) -> Cart:
        return self._mutate(lambda cart: self._reset(cart))

    # Used by held orders and the finalizer inside their own transactions.

    def replace_in(self, tx: StoreTx, cart: Cart) -> Cart:
        _, version = self.load(tx)
        self._reprice(cart, strict=False)
        self._write(tx, cart, version)
        return cart

    def clear_in(self, tx: StoreTx) -> Cart:
        return self.replace_in(tx, Cart())

    def announce(self, cart: Cart, **extra) -> None:
        self.sink.emit(
            display_event(
                "cart_update",
                items=[i.model_dump(mode="json") for i in cart.items],
                totals=cart.totals.model_dump(mode="json"),
                discount_code=cart.discount.code if cart.discount else None,
                tax_label=self.tax.label if self.tax.enabled else None,
                **extra,
            )
        )

    # Internals

    def _mutate(self, fn: Callable[[Cart], None], strict_discount: bool = False) -> Cart:
        if self.edit_guard is not None:
            self.edit_guard()
        with self.store.transaction() as tx:
            cart, version = self.load(tx)
            fn(cart)
            dropped = self._reprice(cart, strict=strict_discount)
            self._write(tx, cart, version)
        if dropped:
            self.announce(cart, discount_removed=dropped)
        else:
            self.announce(cart)
        return cart

    def _reprice(self, cart: Cart, strict: bool) -> Optional[str]:
        """
        Recompute totals. A code discount that no longer qualifies after a mutation
        is removed from the cart (its reason is returned); with `strict` it raises.
        """
        try:
            cart.totals = price_cart(cart.items, cart.discount, self.tax, at=self.clock.now())
            return None
        except DiscountNotApplicable as ex:
            if strict or cart.discount is None:
                raise
            json_log("info", "cart.discount_removed", discount_code=cart.discount.code, reason=ex.message)
            cart.discount = None
            cart.totals = price_cart(cart.items, None, self.tax)
            return ex.message

    def _write(self, tx: StoreTx, cart: Cart, version: Optional[int]) -> None:
        tx.put("cart", CART_KEY, cart.model_dump(mode="json"), version)

    @staticmethod
    def _line(cart: Cart, product_id: str) -> CartItem:
        for item in cart.items:
            if item.product_id == product_id:
                return item
        raise NotFound(f"item not in cart: {product_id}", product_id=product_id)

    @staticmethod
    def _reset(cart: Cart) -> None:
        cart.items = []
        cart.discount = None
        cart.customer_id = None
