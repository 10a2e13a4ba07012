from __future__ import annotations

# ── Logging ───────────────────────────────────────────────────────────────────
import logging, logging.config
from .config import settings

logging.config.dictConfig({
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"std": {"format": "%(levelname)s  %(name)s: %(message)s"}},
    "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "std"}},
    "root": {"level": settings.LOG_LEVEL, "handlers": ["console"]},
    "loggers": {
        "engine":     {"level": settings.LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "sessions":   {"level": settings.LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "pipeline":   {"level": settings.LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "controller": {"level": settings.LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "perf":       {"level": "WARNING",          "handlers": ["console"], "propagate": False},
    },
})

# ── Windows event loop policy (keeps asyncio stable with subprocess + sockets)
import sys, asyncio
if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except Exception:
        pass

# ── Stdlib / FastAPI ──────────────────────────────────────────────────────────
import time
from pathlib import Path
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

# ── Project imports ───────────────────────────────────────────────────────────
from . import __version__
from .api import router as sessions_router
from .controller import DeliveryController
from .engine import TorrentEngine
from .errors import RangeNotSatisfiableError, StreamError
from .sessions import SessionRegistry

log = logging.getLogger("controller")


# Lightweight perf log for slow requests (ASGI-safe; long-lived streams are skipped)
class PerfLoggerMiddleware:
    def __init__(self, app):
        self.app = app
        self.log = logging.getLogger("perf")

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http" or "/files/" in scope.get("path", ""):
            return await self.app(scope, receive, send)

        t0 = time.perf_counter()
        status_code = 0

        async def send_wrapper(message):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = message.get("status", status_code)
            return await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            dt = (time.perf_counter() - t0) * 1000
            if dt > 800:
                self.log.warning("%s %s -> %d %0.0fms", scope.get("method", ""), scope.get("path", ""), status_code, dt)


def build_engine() -> TorrentEngine:
    return TorrentEngine(
        settings.DOWNLOAD_DIR,
        metadata_timeout=settings.METADATA_TIMEOUT,
        listen_interfaces=settings.LISTEN_INTERFACES,
        enable_dht=settings.ENABLE_DHT,
        delete_files=settings.DELETE_FILES_ON_REMOVE,
        poll_interval=settings.PIECE_POLL_INTERVAL,
        readahead=settings.READAHEAD_PIECES,
        chunk_size=settings.STREAM_CHUNK,
    )


def create_app(
    engine: Optional[TorrentEngine] = None,
    registry: Optional[SessionRegistry] = None,
    transcode_command: Optional[list[str]] = None,
) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version=__version__)

    app.state.controller = DeliveryController(
        registry or SessionRegistry(),
        engine or build_engine(),
        storage_root=settings.DOWNLOAD_DIR,
        large_file_threshold=settings.LARGE_FILE_THRESHOLD,
        transcode_command=transcode_command,
    )

    # ── Middleware ────────────────────────────────────────────────────────────
    origins = settings.allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
    )
    app.add_middleware(PerfLoggerMiddleware)

    # ── Errors: every body is {"error": message} ─────────────────────────────
    @app.exception_handler(StreamError)
    async def stream_error_handler(request: Request, exc: StreamError):
        headers = None
        if isinstance(exc, RangeNotSatisfiableError):
            headers = {"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"}
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errs = exc.errors()
        msg = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errs)
        return JSONResponse({"error": msg or "Invalid request"}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        msg = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse({"error": msg}, status_code=exc.status_code)

    # ── Routes ────────────────────────────────────────────────────────────────
    app.include_router(sessions_router)

    @app.get("/")
    async def health():
        return {
            "name": settings.APP_NAME,
            "version": __version__,
            "status": "running",
            "activeSessions": len(app.state.controller.registry),
            "endpoints": {
                "add": "POST /sessions",
                "list": "GET /sessions",
                "stream": "GET /sessions/{id}/files/{fileIndex}?transcode=bool",
                "status": "GET /sessions/{id}/status",
                "remove": "DELETE /sessions/{id}",
            },
        }

    # ── Lifecycle ────────────────────────────────────────────────────────────
    @app.on_event("startup")
    async def startup_event():
        Path(settings.DOWNLOAD_DIR).mkdir(parents=True, exist_ok=True)
        log.info("storing downloads under %s", Path(settings.DOWNLOAD_DIR).resolve())

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.controller.close()

    return app


app = create_app()
