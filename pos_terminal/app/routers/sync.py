from fastapi import APIRouter, Depends

from ..deps import get_terminal
from ..terminal import Terminal

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/status")
def sync_status(terminal: Terminal = Depends(get_terminal)):
    return terminal.sync.status().model_dump(mode="json")


@router.post("/drain")
def drain(terminal: Terminal = Depends(get_terminal)):
    res = terminal.sync.drain()
    return {
        "sent": res.sent,
        "remaining": res.remaining,
        "error": res.error,
        "skipped": res.skipped,
        "status": terminal.sync.status().model_dump(mode="json"),
    }


@router.post("/pull")
def pull_catalog(terminal: Terminal = Depends(get_terminal)):
    return {"ok": True, "catalog": terminal.sync.pull_catalog()}


@router.get("/pending")
def pending_sales(limit: int = 100, terminal: Terminal = Depends(get_terminal)):
    with terminal.store.transaction() as tx:
        rows = tx.list_pending(limit=limit)
    return {
        "pending": [
            {
                "seq": r.seq,
                "idempotency_key": r.idempotency_key,
                "created_at": r.created_at,
                "attempt_count": r.attempt_count,
                "last_error": r.last_error,
                "total": (r.body.get("totals") or {}).get("total"),
            }
            for r in rows
        ]
    }
