"""Autosave Routes — mutation entry points and lifecycle hooks for the editor UI.

Invariants:
    - Mutations are validated by Pydantic before reaching the manager
    - POST /nodes and /links only buffer; the debounced commit sends them
    - keepalive flushes run as a background task and return immediately

Design Decisions:
    - 202 Accepted for buffered mutations: the remote write happens later
    - keepalive flush in BackgroundTasks: page unload must not wait on the network
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from marble_sync.api.dependencies import get_sync_core
from marble_sync.schemas.graph import (
    AutosaveStatusResponse, LinkChangeRequest, NodeMutation,
)
from marble_sync.services.composition import SyncCore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/autosave", tags=["autosave"])


def _status_of(core: SyncCore) -> AutosaveStatusResponse:
    return AutosaveStatusResponse(
        status=core.autosave.status, has_pending=core.autosave.has_pending(),
    )


@router.get("/status", response_model=AutosaveStatusResponse)
async def get_status(core: SyncCore = Depends(get_sync_core)):
    return _status_of(core)


@router.post(
    "/nodes", response_model=AutosaveStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def mark_node_dirty(body: NodeMutation, core: SyncCore = Depends(get_sync_core)):
    """Buffer a node edit (last write wins per node)."""
    core.autosave.mark_node_dirty(body.model_dump(exclude_none=True), reason="bridge")
    return _status_of(core)


@router.post(
    "/links", response_model=AutosaveStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def mark_link_change(body: LinkChangeRequest, core: SyncCore = Depends(get_sync_core)):
    """Buffer a link create/delete/update (merged per undirected edge key)."""
    core.autosave.mark_link_change(body.to_change())
    return _status_of(core)


@router.post("/flush", response_model=AutosaveStatusResponse)
async def flush(
    background_tasks: BackgroundTasks,
    keepalive: bool = Query(False),
    core: SyncCore = Depends(get_sync_core),
):
    """Commit now; keepalive=true is fire-and-forget (page hide/unload)."""
    if keepalive:
        background_tasks.add_task(core.autosave.flush, keepalive=True)
        logger.info("Keepalive flush scheduled")
        return _status_of(core)
    await core.autosave.flush()
    return _status_of(core)
