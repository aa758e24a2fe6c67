from fastapi import APIRouter, Depends

from ..deps import get_terminal
from ..models import HoldMeta
from ..terminal import Terminal

router = APIRouter(prefix="/api/held-orders", tags=["held-orders"])


@router.get("")
def list_held_orders(include_inactive: bool = False, terminal: Terminal = Depends(get_terminal)):
    orders = terminal.held_orders.list(include_inactive=include_inactive)
    return {"held_orders": [o.model_dump(mode="json") for o in orders]}


@router.post("")
def hold_cart(data: HoldMeta, terminal: Terminal = Depends(get_terminal)):
    terminal.abandon_payment()
    order = terminal.held_orders.hold(data)
    return {"held_order": order.model_dump(mode="json")}


@router.get("/{order_id}")
def get_held_order(order_id: str, terminal: Terminal = Depends(get_terminal)):
    return {"held_order": terminal.held_orders.get(order_id).model_dump(mode="json")}


@router.post("/{order_id}/resume")
def resume_held_order(order_id: str, terminal: Terminal = Depends(get_terminal)):
    cart = terminal.held_orders.resume(order_id)
    return {"cart": cart.model_dump(mode="json")}


@router.delete("/{order_id}")
def discard_held_order(order_id: str, terminal: Terminal = Depends(get_terminal)):
    terminal.held_orders.discard(order_id)
    return {"ok": True}
