from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from .security import admin_pin_required
from .terminal import Terminal


def get_terminal(request: Request) -> Terminal:
    return request.app.state.terminal


def client_host(request: Request) -> str:
    return request.client.host if request.client else ""


def require_terminal_access(
    terminal: Terminal = Depends(get_terminal),
    client_ip: str = Depends(client_host),
    x_pos_session: Optional[str] = Header(None, alias="X-POS-Session"),
):
    """Loopback callers pass through; LAN callers need an unlocked admin session."""
    if not admin_pin_required(client_ip, terminal.settings.require_admin_pin):
        return
    if not terminal.auth.pin_configured:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "pos_auth_required",
                "hint": "Set admin PIN (localhost): POST /api/admin/pin/set, then unlock with POST /api/auth/pin.",
            },
        )
    if not terminal.auth.validate(x_pos_session):
        raise HTTPException(status_code=401, detail={"error": "pos_auth_required"})
