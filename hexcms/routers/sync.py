"""Webhook + administrative sync API."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Literal, Optional

import pydantic
from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from hexcms import config
from hexcms.changeset import changeset_from_entries, changeset_from_push
from hexcms.models import PushNotification

logger = logging.getLogger("hexcms.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncPathItem(BaseModel):
    path: str = Field(..., min_length=1)
    operation: Literal["added", "modified", "removed", "upsert", "delete"] = "upsert"


class SyncPathsRequest(BaseModel):
    paths: list[SyncPathItem]
    revision: str = Field(..., min_length=1)
    revisionAt: str = ""
    force: bool = False
    trigger: str = "api"


class ResyncRequest(BaseModel):
    ref: Optional[str] = None
    background: bool = True


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a GitHub ``X-Hub-Signature-256`` header against ``body``."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


@sync_router.post("/webhook")
async def receive_webhook(request: Request):
    """Apply a repository push notification.

    Returns 200 with the aggregate summary for every well-formed push, even
    when individual entries fail.
    """
    sync_engine = _get_sync_engine(request)
    body = await request.body()

    secret = getattr(request.app.state, "webhook_secret", config.WEBHOOK_SECRET)
    if secret and not verify_signature(body, request.headers.get("x-hub-signature-256"), secret):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = request.headers.get("x-github-event", "push")
    if event == "ping":
        return {"status": "ok", "message": "pong"}
    if event != "push":
        return {"status": "ignored", "message": f"Event type {event!r} not supported"}

    try:
        payload = PushNotification.model_validate(json.loads(body or b"null"))
        changeset = changeset_from_push(payload, content_root=sync_engine.settings.content_root)
    except (ValueError, pydantic.ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"Malformed push notification: {exc}") from exc

    logger.info(
        "Webhook push %s on %s: %d content entries",
        changeset.revision[:12],
        payload.ref or "?",
        len(changeset.entries),
    )
    result = await sync_engine.sync_changeset(changeset)
    return {"status": "ok", "result": result.model_dump(exclude={"outcomes"}), "success": result.success}


@sync_router.post("/paths")
async def sync_paths(request: Request, body: SyncPathsRequest):
    """Sync an explicit list of content paths at ``revision``."""
    if not body.paths:
        raise HTTPException(status_code=400, detail="No paths provided")
    sync_engine = _get_sync_engine(request)
    try:
        changeset = changeset_from_entries(
            [(item.path, item.operation) for item in body.paths],
            body.revision,
            revision_at=body.revisionAt,
            content_root=sync_engine.settings.content_root,
            force=body.force,
            trigger=body.trigger,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = await sync_engine.sync_changeset(changeset)
    return {"status": "ok", "result": result.model_dump()}


@sync_router.post("/resync")
async def trigger_resync(request: Request, background_tasks: BackgroundTasks, body: ResyncRequest):
    """Reload every content file at the latest revision of ``ref``."""
    sync_engine = _get_sync_engine(request)
    if body.background:
        background_tasks.add_task(sync_engine.full_resync, body.ref)
        return {"status": "ok", "mode": "background", "message": "Full resync triggered in background"}

    result = await sync_engine.full_resync(body.ref, wait=True)
    return {"status": "ok", "mode": "foreground", "result": result.model_dump(exclude={"outcomes"})}


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync operations."""
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@sync_router.get("/ledger")
async def list_ledger(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status: Optional[Literal["success", "error", "skipped"]] = None,
    revision: Optional[str] = None,
    changeset_id: Optional[str] = Query(None, alias="changesetId"),
    file_path: Optional[str] = Query(None, alias="filePath"),
):
    """Page through ledger entries, newest first."""
    sync_engine = _get_sync_engine(request)
    items = await sync_engine.ledger_entries(
        limit=limit,
        offset=offset,
        status=status,
        revision=revision,
        changeset_id=changeset_id,
        file_path=file_path,
    )
    return {"status": "ok", "count": len(items), "items": items}


@sync_router.get("/ledger/summary")
async def ledger_summary(
    request: Request,
    revision: Optional[str] = None,
    changeset_id: Optional[str] = Query(None, alias="changesetId"),
):
    sync_engine = _get_sync_engine(request)
    summary = await sync_engine.ledger_summary(revision=revision, changeset_id=changeset_id)
    return {"status": "ok", **summary}


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Live operations snapshot."""
    sync_engine = _get_sync_engine(request)
    return {
        "status": "active",
        "source": sync_engine.fetcher.source_name,
        "operations": await sync_engine.get_observability_snapshot(),
    }
