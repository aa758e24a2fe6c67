import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .deps import require_terminal_access
from .errors import PosError
from .logs import json_log
from .routers.admin import router as admin_router
from .routers.cart import router as cart_router
from .routers.cash import router as cash_router
from .routers.display import router as display_router
from .routers.held_orders import router as held_orders_router
from .routers.payments import router as payments_router
from .routers.sync import router as sync_router
from .terminal import Terminal


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def create_app(terminal: Optional[Terminal] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "terminal", None) is None:
            app.state.terminal = Terminal.from_settings(settings)
        app.state.terminal.start_background_sync()
        json_log("info", "startup.ready", env=settings.env, version=settings.api_version, terminal_id=app.state.terminal.settings.terminal_id)
        yield
        app.state.terminal.shutdown()

    app = FastAPI(title="POS Terminal Core", version=settings.api_version, lifespan=lifespan)
    if terminal is not None:
        app.state.terminal = terminal

    @app.exception_handler(PosError)
    def _pos_error(req: Request, exc: PosError):
        if exc.status_code >= 500:
            json_log("error", "http.request.pos_error", request_id=_current_request_id(req), path=req.url.path, error=exc.code, detail=exc.message)
        content = {"detail": exc.message, "error": exc.code}
        if exc.details:
            content["context"] = jsonable_encoder(exc.details)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: RequestValidationError):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev", "test"}:
            content["errors"] = jsonable_encoder(exc.errors())
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else None
        try:
            response = await call_next(request)
        except Exception as exc:
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                client_ip=client_ip,
                duration_ms=int((time.time() - started) * 1000),
                error=str(exc),
            )
            raise
        response.headers["X-Request-Id"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        if path not in {"/health", "/api/display/events"}:
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                client_ip=client_ip,
                duration_ms=int((time.time() - started) * 1000),
            )
        return response

    guarded = [Depends(require_terminal_access)]
    app.include_router(admin_router)
    app.include_router(cart_router, dependencies=guarded)
    app.include_router(held_orders_router, dependencies=guarded)
    app.include_router(payments_router, dependencies=guarded)
    app.include_router(cash_router, dependencies=guarded)
    app.include_router(sync_router, dependencies=guarded)
    app.include_router(display_router, dependencies=guarded)

    @app.get("/health")
    def health(request: Request):
        term: Terminal = request.app.state.terminal
        status = term.sync.status()
        return {
            "ok": not term.store.halted,
            "halted": term.store.halted,
            "online": status.online,
            "pending_count": status.pending_count,
        }

    return app


app = create_app()


def serve():
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Run the POS terminal API")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    serve()
