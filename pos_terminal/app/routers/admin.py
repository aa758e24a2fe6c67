from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import client_host, get_terminal, require_terminal_access
from ..logs import json_log
from ..security import is_loopback
from ..terminal import Terminal

router = APIRouter(prefix="/api", tags=["admin"])


class PinIn(BaseModel):
    pin: str


@router.post("/admin/pin/set")
def set_admin_pin(data: PinIn, terminal: Terminal = Depends(get_terminal), client_ip: str = Depends(client_host)):
    if not is_loopback(client_ip):
        raise HTTPException(status_code=403, detail={"error": "forbidden", "hint": "PIN setup is allowed only from localhost."})
    terminal.auth.set_pin(data.pin)
    json_log("info", "admin.pin_set")
    return {"ok": True}


@router.post("/auth/pin")
def unlock(data: PinIn, terminal: Terminal = Depends(get_terminal)):
    if not terminal.auth.pin_configured:
        raise HTTPException(
            status_code=400,
            detail={"error": "admin_pin_not_set", "hint": "Set a PIN via POST /api/admin/pin/set (localhost only)."},
        )
    sess = terminal.auth.unlock(data.pin)
    if sess is None:
        raise HTTPException(status_code=401, detail={"error": "invalid_pin"})
    return {"ok": True, "token": sess["token"], "expires_at": sess["expires_at"]}


@router.get("/admin/store", dependencies=[Depends(require_terminal_access)])
def store_state(terminal: Terminal = Depends(get_terminal)):
    return {"halted": terminal.store.halted, "fault": terminal.store.fault, "path": terminal.store.path}


@router.post("/admin/store/clear-fault", dependencies=[Depends(require_terminal_access)])
def clear_store_fault(terminal: Terminal = Depends(get_terminal)):
    terminal.store.clear_fault()
    return {"ok": True, "halted": terminal.store.halted}
