import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .device import DeviceContext
from .logs import json_log
from .routers.lan_sync import router as lan_sync_router
from .routers.sync import router as sync_router

app = FastAPI(title="POS Sync Device API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
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
    if path != "/health":
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


# The admin UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(lan_sync_router)
app.include_router(sync_router)


@app.on_event("startup")
async def _startup():
    device = getattr(app.state, "device", None) or DeviceContext.from_settings()
    app.state.device = device
    if not settings.tenant_id:
        json_log("warning", "startup.tenant_missing", env=settings.env, hint="set POS_TENANT_ID")
        return
    try:
        await device.init(settings.tenant_id)
        json_log("info", "startup.device_ready", env=settings.env, version=settings.api_version, db_path=device.db.path)
    except Exception as exc:
        json_log("warning", "startup.device_init_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    device = getattr(app.state, "device", None)
    if device is not None:
        device.dispose()


@app.get("/health")
def health(req: Request):
    device = getattr(app.state, "device", None)
    ready = bool(device and all(s.is_loaded for s in device.stores()))
    content = {
        "status": "ok" if ready else "degraded",
        "env": settings.env,
        "service": "pos-sync",
        "version": settings.api_version,
        "tenant_id": device.tenant_id if device else "",
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    if not ready:
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/meta")
def meta():
    return {
        "service": "pos-sync",
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
