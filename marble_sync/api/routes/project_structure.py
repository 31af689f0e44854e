"""Project Structure Routes — cached partitioned structure per project.

Invariants:
    - GET serves the cache unless force=true
    - Rebuild never fails on an empty/failed fetch: it returns the retained
      structure plus the one-shot warning event

Design Decisions:
    - Warning delivered in the response body (the UI's warning channel) rather than
      as an error status, since the retained structure is still valid
"""

from fastapi import APIRouter, Depends, Query

from marble_sync.api.dependencies import get_sync_core
from marble_sync.schemas.graph import ProjectStructureResponse
from marble_sync.services.composition import SyncCore

router = APIRouter(prefix="/api/v1/projects", tags=["project-structure"])


@router.get("/{project_id}/structure", response_model=ProjectStructureResponse)
async def get_structure(
    project_id: str,
    force: bool = Query(False),
    core: SyncCore = Depends(get_sync_core),
):
    structure = await core.structure.get_snapshot(project_id, force=force)
    return ProjectStructureResponse(project_id=project_id, structure=structure)


@router.post("/{project_id}/structure/rebuild", response_model=ProjectStructureResponse)
async def rebuild_structure(project_id: str, core: SyncCore = Depends(get_sync_core)):
    structure = await core.structure.rebuild_structure(project_id)
    warning = core.structure.last_warning
    return ProjectStructureResponse(
        project_id=project_id,
        structure=structure,
        warning=warning.to_event() if warning is not None else None,
    )
