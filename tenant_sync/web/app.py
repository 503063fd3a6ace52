"""FastAPI application for Notion webhooks and sync administration.

Routes:
    POST /api/webhooks/notion         Notion webhook delivery
    GET  /api/webhooks/notion/health  Webhook endpoint configuration
    POST /api/admin/sync/trigger      Run a full or incremental sync now
    GET  /api/admin/sync/status       Run statistics and recent errors
    GET  /api/admin/sync/health       200 when healthy, 503 otherwise
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tenant_sync import __version__
from tenant_sync.app_factory import Services
from tenant_sync.sync.engine import RunStatus, SyncKind
from tenant_sync.webhook.handler import verify_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-notion-signature"
TIMESTAMP_HEADER = "x-notion-timestamp"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_services(request: Request) -> Services:
    return request.app.state.services


# ── Webhooks ─────────────────────────────────────────────────────────────

webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@webhook_router.post("/notion")
async def notion_webhook(
    request: Request, services: Services = Depends(get_services)
) -> JSONResponse:
    """Receive one Notion webhook delivery.

    Returns 401 only for signature failures. Processing failures are
    reported with success=false and a 200 so Notion keeps the subscription
    active; unexpected faults return 500.
    """
    body = await request.body()
    secret = services.settings.webhook_secret

    if secret:
        signature = request.headers.get(SIGNATURE_HEADER)
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        if not verify_signature(secret, body, signature, timestamp):
            logger.warning("Rejected webhook with invalid signature")
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"success": False, "error": "Invalid signature"},
            )

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.error("Webhook body is not valid JSON")
        return JSONResponse(
            content={
                "success": False,
                "message": "Invalid JSON body",
                "timestamp": _now(),
            }
        )

    try:
        result = await run_in_threadpool(services.webhook_handler.handle, payload)
    except Exception as e:
        logger.exception("Unexpected error processing webhook")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal server error",
                "message": str(e),
                "timestamp": _now(),
            },
        )

    content = result.to_dict()
    if result.challenge is None:
        content["timestamp"] = _now()
    return JSONResponse(content=content)


@webhook_router.get("/notion/health")
def notion_webhook_health(services: Services = Depends(get_services)) -> dict:
    settings = services.settings
    return {
        "success": True,
        "message": "Notion webhook endpoint is healthy",
        "timestamp": _now(),
        "config": {
            "signature_verification": settings.verifies_signatures,
            "has_notion_api_key": bool(settings.notion_token),
            "collection_id": settings.collection_id,
        },
    }


# ── Admin ────────────────────────────────────────────────────────────────

admin_router = APIRouter(prefix="/api/admin/sync", tags=["admin"])


class TriggerRequest(BaseModel):
    kind: str = "incremental"
    since: Optional[datetime] = None


@admin_router.post("/trigger")
def trigger_sync(
    body: TriggerRequest, services: Services = Depends(get_services)
) -> dict:
    """Run a sync synchronously and return its SyncRun."""
    try:
        kind = SyncKind(body.kind)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"kind must be 'full' or 'incremental', got '{body.kind}'",
        )

    since = body.since
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    run = services.scheduler.trigger_manual_sync(kind, since=since)
    if run.status == RunStatus.ALREADY_IN_PROGRESS:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=run.errors[0]
        )
    return run.to_dict()


@admin_router.get("/status")
def sync_status(services: Services = Depends(get_services)) -> dict:
    stats = services.scheduler.get_last_sync_stats()
    stats["tenants"] = services.db.get_tenant_count()
    return stats


@admin_router.get("/health")
def sync_health(services: Services = Depends(get_services)) -> JSONResponse:
    healthy = services.scheduler.is_healthy()
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"healthy": healthy, "timestamp": _now()},
    )


# ── Application ──────────────────────────────────────────────────────────


def create_app(services: Services, start_scheduler: Optional[bool] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Wired runtime components
        start_scheduler: Run the scheduler thread for the app's lifetime.
            Defaults to settings.scheduler_enabled.
    """
    if start_scheduler is None:
        start_scheduler = services.settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if start_scheduler:
            services.scheduler.start()
        try:
            yield
        finally:
            if start_scheduler:
                await run_in_threadpool(services.scheduler.stop)

    app = FastAPI(title="tenant-sync", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.include_router(webhook_router)
    app.include_router(admin_router)
    return app
