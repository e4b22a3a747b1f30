"""
FastAPI Application — gateway HTTP surface + background send worker.

Provides:
- Status callback endpoint the gateway (or any worker) reports to
- Authorized health and diagnostics for the gateway process
- Immediate send endpoint that bypasses the schedule
- Dispatch worker lifecycle, started and stopped with the app
"""
from __future__ import annotations

import secrets
import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from backend.reporter import SECRET_HEADER
from config.logging_setup import configure_logging
from config.settings import Settings, get_settings
from models.schemas import MessageStatus, SendRequest, parse_status_report
from utils.clock import iso, utcnow
from worker.bootstrap import Gateway, build_gateway

logger = structlog.get_logger()

router = APIRouter()


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def _gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _authorized(request: Request) -> bool:
    expected = _settings(request).gateway.secret
    provided = request.headers.get(SECRET_HEADER)
    return bool(expected and provided) and secrets.compare_digest(provided.encode(), expected.encode())


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": error, **extra}, status_code=status_code)


async def _json_body(request: Request) -> Optional[Any]:
    try:
        return await request.json()
    except ValueError:
        return None


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health():
    return {"ok": True, "timestamp": iso(utcnow())}


@router.post("/gateway/health")
async def gateway_health(request: Request):
    if not _authorized(request):
        return _error(401, "unauthorized")
    settings = _settings(request)
    return {
        "ok": True,
        "timestamp": iso(utcnow()),
        "workerEnabled": settings.worker.enabled,
        "version": settings.gateway.version,
    }


@router.get("/gateway/stats")
async def gateway_stats(request: Request):
    if not _authorized(request):
        return _error(401, "unauthorized")
    gw = _gateway(request)
    return {
        "workerRunning": gw.worker.running,
        "workerBusy": gw.worker.busy,
        "receiptsTracking": gw.tracker.active,
        "sender": gw.sender.metrics.to_dict(),
    }


# ══════════════════════════════════════════════════════════════
#  DIRECT SEND
# ══════════════════════════════════════════════════════════════

@router.post("/gateway/send")
async def gateway_send(request: Request):
    """Send right now, outside the schedule, and report the result."""
    if not _authorized(request):
        return _error(401, "unauthorized")

    try:
        req = SendRequest.model_validate(await _json_body(request))
    except ValidationError:
        return _error(400, "invalid_input")

    gw = _gateway(request)
    try:
        await gw.sender.send(req.to, req.body)
    except Exception as e:
        message = str(e) or "Unknown error"
        await gw.reporter.report(req.message_id, MessageStatus.FAILED, {
            "sendMethod": gw.sender.method,
            "error": message,
        })
        return {"status": MessageStatus.FAILED.value, "error": message}

    await gw.reporter.report(req.message_id, MessageStatus.SENT, {
        "sendMethod": gw.sender.method,
        "sentAt": iso(utcnow()),
    })
    return {"status": MessageStatus.SENT.value}


# ══════════════════════════════════════════════════════════════
#  STATUS CALLBACK
# ══════════════════════════════════════════════════════════════

@router.post("/api/gateway/status")
async def gateway_status(request: Request):
    if not _settings(request).gateway.secret:
        return _error(500, "missing_secret")
    if not _authorized(request):
        return _error(401, "unauthorized")

    try:
        report = parse_status_report(await _json_body(request))
    except ValidationError:
        return _error(400, "invalid_input")

    change = await _gateway(request).reconciler.apply(report)
    if change is None:
        return _error(404, "not_found")
    if not change.applied:
        return {"ok": True, "ignored": True}
    return {"ok": True}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    """
    Build the app. With a prebuilt gateway the routes work without running
    the lifespan; otherwise the lifespan builds one from settings and owns it.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)

        owned = app.state.gateway is None
        if owned:
            app.state.gateway = await build_gateway(settings)
        gw: Gateway = app.state.gateway

        if settings.worker.enabled:
            await gw.worker.start()
        else:
            logger.info("dispatch_worker_disabled")

        logger.info("gateway_started",
                    port=settings.gateway.port,
                    store_backend=type(gw.store).__name__,
                    worker_enabled=settings.worker.enabled,
                    secret_configured=bool(settings.gateway.secret))
        yield

        if owned:
            await gw.close()
        else:
            await gw.worker.stop()
        logger.info("gateway_stopped")

    app = FastAPI(
        title="Message Gateway API",
        description="Scheduled iMessage dispatch, delivery receipts and status callbacks",
        version=settings.gateway.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().gateway.port)
