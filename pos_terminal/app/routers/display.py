from fastapi import APIRouter, Depends, Query

from ..deps import get_terminal
from ..terminal import Terminal

router = APIRouter(prefix="/api/display", tags=["display"])


@router.get("/events")
def display_events(
    after: int = 0,
    wait: float = Query(0, ge=0, le=30),
    terminal: Terminal = Depends(get_terminal),
):
    """Second-screen feed. `wait` long-polls for new events instead of returning immediately."""
    if wait:
        events = terminal.display.wait(after, timeout=wait)
    else:
        events = terminal.display.since(after)
    return {
        "last_seq": events[-1][0] if events else after,
        "events": [{"seq": seq, **ev.model_dump(mode="json")} for seq, ev in events],
    }
