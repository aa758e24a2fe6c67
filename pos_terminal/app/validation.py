from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, Field, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_or_none(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


CurrencyCode = Annotated[str, BeforeValidator(_to_upper_str), StringConstraints(pattern=r"^[A-Z]{3}$")]

# Discount codes are matched case-insensitively; canonical form is upper case.
DiscountCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]

PaymentMethod = Annotated[Literal["cash", "mobile_money", "qr", "nfc", "credit"], BeforeValidator(_to_lower_str)]
DiscountType = Annotated[Literal["percent", "fixed"], BeforeValidator(_to_lower_str)]
LineDiscountKind = Annotated[Literal["amount", "percent"], BeforeValidator(_to_lower_str)]
CashDirection = Annotated[Literal["in", "out"], BeforeValidator(_to_lower_str)]
ProviderStatus = Annotated[
    Literal["pending", "processing", "completed", "failed", "expired", "cancelled"],
    BeforeValidator(_to_lower_str),
]

# Integer minor currency units.
MinorAmount = Annotated[int, Field(ge=0)]
PositiveAmount = Annotated[int, Field(gt=0)]
Quantity = Annotated[int, Field(ge=1)]

OptionalText = Annotated[Optional[str], BeforeValidator(_strip_or_none)]
