from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_terminal
from ..errors import ValidationError
from ..models import QrVerification
from ..payments import PaymentOrchestrator
from ..terminal import Terminal
from ..validation import PaymentMethod

router = APIRouter(prefix="/api", tags=["payments"])


class StartPaymentIn(BaseModel):
    method: PaymentMethod
    received: Optional[int] = None
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    tag_id: Optional[str] = None


class ResumeIn(BaseModel):
    correlation_id: str


class TapIn(BaseModel):
    tag_id: str


class CommitIn(BaseModel):
    cashier_id: Optional[str] = None


def _payment_out(payment: PaymentOrchestrator) -> dict:
    return {
        "state": payment.state,
        "idempotency_key": payment.idempotency_key,
        "selected": payment.selected,
        "attempt": payment.attempt.to_dict() if payment.attempt else None,
    }


@router.get("/payments/methods")
def list_methods(terminal: Terminal = Depends(get_terminal)):
    return {"methods": terminal.payment().available_methods()}


@router.get("/payments/current")
def current_payment(terminal: Terminal = Depends(get_terminal)):
    return _payment_out(terminal.payment())


@router.post("/payments/start")
def start_payment(data: StartPaymentIn, terminal: Terminal = Depends(get_terminal)):
    cart = terminal.carts.current()
    if cart.is_empty:
        raise ValidationError("cart is empty")
    customer_id = data.customer_id or cart.customer_id
    payment = terminal.start_payment(
        cart.totals.total,
        data.method,
        received=data.received,
        customer_id=customer_id,
        customer_phone=data.customer_phone,
        tag_id=data.tag_id,
    )
    return _payment_out(payment)


@router.post("/payments/poll")
def poll_payment(terminal: Terminal = Depends(get_terminal)):
    payment = terminal.payment()
    payment.poll()
    return _payment_out(payment)


@router.post("/payments/resume")
def resume_payment(data: ResumeIn, terminal: Terminal = Depends(get_terminal)):
    payment = terminal.resume_payment(data.correlation_id)
    payment.poll()
    return _payment_out(payment)


@router.post("/payments/qr/verify")
def verify_qr(data: QrVerification, terminal: Terminal = Depends(get_terminal)):
    payment = terminal.payment()
    payment.verify_qr(data)
    return _payment_out(payment)


@router.post("/payments/nfc/tap")
def nfc_tap(data: TapIn, terminal: Terminal = Depends(get_terminal)):
    payment = terminal.payment()
    payment.tap(data.tag_id)
    return _payment_out(payment)


@router.post("/payments/cancel")
def cancel_payment(terminal: Terminal = Depends(get_terminal)):
    payment = terminal.payment()
    payment.cancel()
    return _payment_out(payment)


@router.post("/sales/commit")
def commit_sale(data: CommitIn, terminal: Terminal = Depends(get_terminal)):
    sale = terminal.commit_sale(cashier_id=data.cashier_id)
    return {"sale": sale.model_dump(mode="json")}


@router.get("/receipts/last")
def last_receipt(terminal: Terminal = Depends(get_terminal)):
    return {"receipt": terminal.finalizer.last_receipt()}
