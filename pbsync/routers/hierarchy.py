"""ProductBoard hierarchy sync API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from pbsync.models import SyncRequest

logger = logging.getLogger("pbsync.hierarchy")

hierarchy_router = APIRouter(prefix="/api/hierarchy", tags=["hierarchy"])


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


@hierarchy_router.post("/sync")
async def trigger_hierarchy_sync(request: Request, body: SyncRequest):
    """Run one hierarchy sync in the foreground and report its outcome."""
    sync_engine = _get_sync_engine(request)
    outcome = await sync_engine.run(body)
    if not outcome.success:
        logger.warning("Hierarchy sync %s failed: %s", outcome.run_id, outcome.error)
        return JSONResponse(status_code=500, content=outcome.to_response())
    return outcome.to_response()


@hierarchy_router.get("/runs")
async def list_sync_runs(
    request: Request,
    workspace_id: str | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
):
    """List recent sync runs, newest first."""
    sync_engine = _get_sync_engine(request)
    runs = await sync_engine.list_runs(workspace_id, limit)
    return {"status": "ok", "count": len(runs), "items": runs}


@hierarchy_router.get("/runs/{run_id}")
async def get_sync_run(request: Request, run_id: str):
    sync_engine = _get_sync_engine(request)
    run = await sync_engine.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")
    return run
