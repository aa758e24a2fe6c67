"""Local read-through cache of the remote catalog: products, customers, discount codes."""

from typing import Iterable, List, Optional

from .db import LocalStore, StoreTx
from .errors import NotFound, ValidationError
from .models import AppliedDiscount, CustomerProfile, Product


class Catalog:
    def __init__(self, store: LocalStore):
        self.store = store

    # Reads

    def product(self, product_id: str) -> Product:
        rec = self.store.get("catalog_products", product_id)
        if not rec:
            raise NotFound(f"product not found: {product_id}", product_id=product_id)
        return Product.model_validate(rec.body)

    def product_by_barcode(self, barcode: str) -> Product:
        code = (barcode or "").strip()
        if not code:
            raise ValidationError("barcode is required")
        rec = self.store.get("catalog_barcodes", code)
        if not rec:
            raise NotFound(f"no product for barcode {code}", barcode=code)
        return self.product(rec.body["product_id"])

    def products(self) -> List[Product]:
        return [Product.model_validate(r.body) for r in self.store.list("catalog_products")]

    def customer(self, customer_id: str) -> CustomerProfile:
        rec = self.store.get("catalog_customers", customer_id)
        if not rec:
            raise NotFound(f"customer not found: {customer_id}", customer_id=customer_id)
        return CustomerProfile.model_validate(rec.body)

    def discount(self, code: str) -> AppliedDiscount:
        key = (code or "").strip().upper()
        if not key:
            raise ValidationError("discount code is required")
        rec = self.store.get("catalog_discounts", key)
        if not rec:
            raise NotFound(f"invalid discount code: {key}", discount_code=key)
        return AppliedDiscount.model_validate(rec.body)

    # Writes (sync pulls and post-sale bookkeeping)

    def upsert_products(self, tx: StoreTx, products: Iterable[Product]) -> int:
        n = 0
        for p in products:
            previous = tx.get("catalog_products", p.id)
            if previous and previous.body.get("barcode") and previous.body.get("barcode") != p.barcode:
                tx.delete("catalog_barcodes", previous.body["barcode"])
            tx.upsert("catalog_products", p.id, p.model_dump(mode="json"))
            if p.barcode:
                tx.upsert("catalog_barcodes", p.barcode, {"product_id": p.id})
            n += 1
        return n

    def upsert_customers(self, tx: StoreTx, customers: Iterable[CustomerProfile]) -> int:
        """Remote balances plus this terminal's credit sales still waiting in the queue."""
        unsynced = tx.pending_credit_totals()
        n = 0
        for c in customers:
            body = c.model_dump(mode="json")
            if unsynced.get(c.id):
                body["credit_balance"] = c.credit_balance + unsynced[c.id]
            tx.upsert("catalog_customers", c.id, body)
            n += 1
        return n

    def upsert_discounts(self, tx: StoreTx, discounts: Iterable[AppliedDiscount]) -> int:
        n = 0
        for d in discounts:
            tx.upsert("catalog_discounts", d.code, d.model_dump(mode="json"))
            n += 1
        return n

    def add_customer_balance(self, tx: StoreTx, customer_id: str, amount: int) -> CustomerProfile:
        """Raise the cached credit balance after a tab sale so the next credit check sees it."""
        rec = tx.get("catalog_customers", customer_id)
        if not rec:
            raise NotFound(f"customer not found: {customer_id}", customer_id=customer_id)
        profile = CustomerProfile.model_validate(rec.body)
        profile.credit_balance += amount
        tx.put("catalog_customers", customer_id, profile.model_dump(mode="json"), rec.version)
        return profile

    def increment_discount_usage(self, tx: StoreTx, code: str) -> None:
        rec = tx.get("catalog_discounts", code)
        if not rec:
            return
        d = AppliedDiscount.model_validate(rec.body)
        d.usage_count += 1
        tx.put("catalog_discounts", code, d.model_dump(mode="json"), rec.version)
