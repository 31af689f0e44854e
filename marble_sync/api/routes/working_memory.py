"""Working Memory Routes — snapshots, session binding and visibility settings.

Invariants:
    - Reads return copies; the store's snapshot is never exposed live
    - Session/project changes are mirrored onto the autosave manager's project

Design Decisions:
    - Snapshots are returned as plain JSON: the shape is owned by the store,
      not duplicated in response models
"""

import logging

from fastapi import APIRouter, Depends

from marble_sync.api.dependencies import get_sync_core
from marble_sync.schemas.working_memory import (
    InitialiseRequest, SessionUpdate, SettingsUpdate,
)
from marble_sync.services.composition import SyncCore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/working-memory", tags=["working-memory"])


@router.get("")
async def get_snapshot(core: SyncCore = Depends(get_sync_core)):
    return core.working_memory.get_snapshot()


@router.get("/nodes/{node_id}")
async def get_snapshot_for_node(node_id: str, core: SyncCore = Depends(get_sync_core)):
    """Node-scoped view: the node, its 1-hop neighbourhood, and its messages."""
    return core.working_memory.get_snapshot_for_node(node_id)


@router.post("/initialise")
async def initialise(body: InitialiseRequest, core: SyncCore = Depends(get_sync_core)):
    snapshot = core.working_memory.initialise(
        project_id=body.project_id,
        session_id=body.session_id,
        active_node_id=body.active_node_id,
    )
    if body.project_id:
        core.autosave.set_project(body.project_id)
    return snapshot


@router.patch("/session")
async def update_session(body: SessionUpdate, core: SyncCore = Depends(get_sync_core)):
    snapshot = await core.working_memory.set_session(body.model_dump(exclude_none=True))
    if body.project_id:
        core.autosave.set_project(body.project_id)
    return snapshot


@router.get("/settings")
async def get_settings(core: SyncCore = Depends(get_sync_core)):
    return core.working_memory.get_settings()


@router.patch("/settings")
async def update_settings(body: SettingsUpdate, core: SyncCore = Depends(get_sync_core)):
    """Partial config update; history_length is clamped to [1, 200]."""
    return core.working_memory.update_settings(body.to_partial())
