from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .validation import (
    CashDirection,
    CurrencyCode,
    DiscountCode,
    DiscountType,
    LineDiscountKind,
    MinorAmount,
    OptionalText,
    PaymentMethod,
    PositiveAmount,
    ProviderStatus,
    Quantity,
)


# Catalog (read-only snapshots pulled from the remote ledger)

class Product(BaseModel):
    id: str
    name: str
    unit_price: MinorAmount
    barcode: Optional[str] = None
    sku: Optional[str] = None
    category_id: Optional[str] = None
    is_active: bool = True


class CustomerProfile(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    credit_limit: MinorAmount = 0
    credit_balance: MinorAmount = 0


class AppliedDiscount(BaseModel):
    code: DiscountCode
    name: Optional[str] = None
    kind: DiscountType
    # Percent points for `percent` (10 == 10%), minor units for `fixed`.
    value: Decimal = Field(ge=0)
    min_purchase: Optional[MinorAmount] = None
    max_discount: Optional[MinorAmount] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)
    usage_count: int = Field(default=0, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_active: bool = True


# Cart

class LineDiscount(BaseModel):
    kind: LineDiscountKind
    value: Decimal = Field(ge=0)


class CartItem(BaseModel):
    product_id: str
    name: str
    unit_price: MinorAmount
    quantity: Quantity
    discount: Optional[LineDiscount] = None


class TaxConfig(BaseModel):
    enabled: bool = False
    rate: Decimal = Decimal("0")
    label: str = "VAT"


class Totals(BaseModel):
    subtotal: int = 0
    item_discount_total: int = 0
    code_discount_total: int = 0
    tax: int = 0
    total: int = 0


class Cart(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    discount: Optional[AppliedDiscount] = None
    customer_id: Optional[str] = None
    totals: Totals = Field(default_factory=Totals)

    @property
    def is_empty(self) -> bool:
        return not self.items


# Payment contexts: one variant per method, discriminated on `method`.

class CashContext(BaseModel):
    method: Literal["cash"] = "cash"
    received: MinorAmount
    change: MinorAmount


class MobileMoneyContext(BaseModel):
    method: Literal["mobile_money"] = "mobile_money"
    correlation_id: str
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    customer_phone: Optional[str] = None
    fee: MinorAmount = 0
    charged_amount: MinorAmount = 0
    provider_status: Optional[ProviderStatus] = None


class QrContext(BaseModel):
    method: Literal["qr"] = "qr"
    reference: str
    request_payload: str
    expires_at: datetime
    payer_ref: Optional[str] = None


class NfcContext(BaseModel):
    method: Literal["nfc"] = "nfc"
    tag_id: Optional[str] = None


class CreditContext(BaseModel):
    method: Literal["credit"] = "credit"
    customer_id: str
    balance_before: MinorAmount
    credit_limit: MinorAmount


PaymentDetails = Annotated[
    Union[CashContext, MobileMoneyContext, QrContext, NfcContext, CreditContext],
    Field(discriminator="method"),
]


class QrVerification(BaseModel):
    """Confirmation delivered by the payment-receiver side after the customer scans."""

    reference: str
    amount: int
    currency: CurrencyCode
    merchant_id: Optional[str] = None
    payer_ref: Optional[str] = None


class PendingPayment(BaseModel):
    """Redirect-poll attempt persisted before the customer leaves for the provider page."""

    correlation_id: str
    attempt_id: str
    idempotency_key: str
    amount: PositiveAmount
    fee: MinorAmount
    charged_amount: PositiveAmount
    currency: CurrencyCode
    customer_phone: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime
    deadline: datetime


# Sales

class PendingSale(BaseModel):
    idempotency_key: str
    terminal_id: str
    business_date: date
    items: List[CartItem]
    discount_code: Optional[str] = None
    totals: Totals
    currency: CurrencyCode
    payment_method: PaymentMethod
    payment_details: PaymentDetails
    customer_id: Optional[str] = None
    cashier_id: Optional[str] = None
    created_at: datetime


class SyncedSale(PendingSale):
    sale_id: str
    sale_number: Optional[str] = None
    synced_at: datetime


class LedgerReceipt(BaseModel):
    sale_id: str
    sale_number: Optional[str] = None
    duplicate: bool = False


class SyncStatus(BaseModel):
    online: bool
    pending_count: int
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


# Held orders

class HoldMeta(BaseModel):
    customer_name: OptionalText = None
    customer_phone: OptionalText = None
    notes: OptionalText = None


class HeldOrder(BaseModel):
    id: str
    hold_number: str
    cart: Cart
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    held_at: datetime
    expires_at: datetime
    status: Literal["held", "resumed", "expired"] = "held"
    resumed_at: Optional[datetime] = None


# Cash drawer

class CashMovement(BaseModel):
    direction: CashDirection
    amount: PositiveAmount
    reason: str
    kind: Literal["manual", "sale"] = "manual"
    reference: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_at: datetime


class CashSession(BaseModel):
    session_date: date
    status: Literal["open", "closed"] = "open"
    opening_balance: MinorAmount
    movements: List[CashMovement] = Field(default_factory=list)
    opened_at: datetime
    opened_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    counted_balance: Optional[int] = None
    expected_balance: Optional[int] = None
    variance: Optional[int] = None
    notes: Optional[str] = None


# Customer display

class DisplayEvent(BaseModel):
    type: Literal["cart_update", "payment_start", "payment_success", "payment_failed"]
    data: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime
