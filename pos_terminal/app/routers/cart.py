from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_terminal
from ..models import Cart
from ..terminal import Terminal
from ..validation import LineDiscountKind

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddItemIn(BaseModel):
    product_id: Optional[str] = None
    barcode: Optional[str] = None
    quantity: int = 1


class QuantityIn(BaseModel):
    quantity: int


class LineDiscountIn(BaseModel):
    kind: Optional[LineDiscountKind] = None
    value: Optional[Decimal] = None


class DiscountCodeIn(BaseModel):
    code: str


class CustomerIn(BaseModel):
    customer_id: Optional[str] = None


def _out(cart: Cart) -> dict:
    return {"cart": cart.model_dump(mode="json")}


@router.get("")
def get_cart(terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.current())


@router.post("/items")
def add_item(data: AddItemIn, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.add_item(product_id=data.product_id, barcode=data.barcode, quantity=data.quantity))


@router.patch("/items/{product_id}")
def set_quantity(product_id: str, data: QuantityIn, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.set_quantity(product_id, data.quantity))


@router.delete("/items/{product_id}")
def remove_item(product_id: str, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.remove_item(product_id))


@router.put("/items/{product_id}/discount")
def set_line_discount(product_id: str, data: LineDiscountIn, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.set_line_discount(product_id, data.kind, data.value))


@router.post("/discount")
def apply_discount(data: DiscountCodeIn, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.apply_discount(data.code))


@router.delete("/discount")
def remove_discount(terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.remove_discount())


@router.put("/customer")
def set_customer(data: CustomerIn, terminal: Terminal = Depends(get_terminal)):
    return _out(terminal.carts.set_customer(data.customer_id))


@router.delete("")
def clear_cart(terminal: Terminal = Depends(get_terminal)):
    terminal.abandon_payment()
    return _out(terminal.carts.clear())
