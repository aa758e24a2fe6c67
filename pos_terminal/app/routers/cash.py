from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..cash_session import expected_balance
from ..deps import get_terminal
from ..models import CashSession
from ..terminal import Terminal
from ..validation import CashDirection

router = APIRouter(prefix="/api/cash-session", tags=["cash"])


class OpenIn(BaseModel):
    opening_balance: int
    opened_by: Optional[str] = None
    notes: Optional[str] = None


class MovementIn(BaseModel):
    direction: CashDirection
    amount: int
    reason: str
    recorded_by: Optional[str] = None


class CloseIn(BaseModel):
    counted_balance: int
    closed_by: Optional[str] = None
    notes: Optional[str] = None


def _session_out(session: Optional[CashSession]) -> dict:
    if session is None:
        return {"state": "no_session", "session": None}
    out = session.model_dump(mode="json")
    if session.status == "open":
        out["expected_balance"] = expected_balance(session)
    return {"state": session.status, "session": out}


@router.get("")
def current_session(terminal: Terminal = Depends(get_terminal)):
    return _session_out(terminal.cash_sessions.current())


@router.post("/open")
def open_session(data: OpenIn, terminal: Terminal = Depends(get_terminal)):
    session = terminal.cash_sessions.open_session(data.opening_balance, opened_by=data.opened_by, notes=data.notes)
    return _session_out(session)


@router.post("/movements")
def record_movement(data: MovementIn, terminal: Terminal = Depends(get_terminal)):
    session = terminal.cash_sessions.record_cash_movement(data.direction, data.amount, data.reason, recorded_by=data.recorded_by)
    return _session_out(session)


@router.post("/close")
def close_session(data: CloseIn, terminal: Terminal = Depends(get_terminal)):
    session = terminal.cash_sessions.close_session(data.counted_balance, closed_by=data.closed_by, notes=data.notes)
    return _session_out(session)


@router.get("/history")
def session_history(limit: int = 30, terminal: Terminal = Depends(get_terminal)):
    return {"sessions": [s.model_dump(mode="json") for s in terminal.cash_sessions.history(limit=limit)]}
