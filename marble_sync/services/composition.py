"""Composition Root — wires the remote client and the three sync components.

Invariants:
    - Every collaborator is passed through a constructor; nothing is a module global
    - One SyncCore per editor process (the bridge keeps it on app.state)
    - aclose() attempts a best-effort keepalive flush before closing the HTTP client

Design Decisions:
    - Working memory is built first: it is the sink the structure service and the
      autosave manager push into
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from marble_sync.config import Settings
from marble_sync.core.domain_types import SaveStatus
from marble_sync.core.errors import StructureRebuildWarning
from marble_sync.core.repository_protocols import RemoteStore
from marble_sync.infrastructure.remote_store import RemoteStoreClient
from marble_sync.services.autosave import AutosaveManager
from marble_sync.services.structure_service import ProjectStructureService
from marble_sync.services.working_memory import WorkingMemoryStore

logger = logging.getLogger(__name__)


@dataclass
class SyncCore:
    remote: RemoteStore
    working_memory: WorkingMemoryStore
    structure: ProjectStructureService
    autosave: AutosaveManager

    async def bind_project(self, project_id: str) -> dict:
        """Point autosave at project_id and load its structure into working memory."""
        self.autosave.set_project(project_id)
        return await self.structure.sync_to_working_memory(project_id)

    async def aclose(self) -> None:
        try:
            if self.autosave.has_pending():
                await self.autosave.flush(keepalive=True)
        except Exception:
            logger.warning("Shutdown flush failed", exc_info=True)
        await self.autosave.close()
        await self.working_memory.drain()
        aclose = getattr(self.remote, "aclose", None)
        if aclose is not None:
            await aclose()


def build_sync_core(
    settings: Settings,
    remote: RemoteStore | None = None,
    on_status_change: Callable[[SaveStatus], None] | None = None,
    on_warning: Callable[[StructureRebuildWarning], None] | None = None,
) -> SyncCore:
    if remote is None:
        remote = RemoteStoreClient(
            settings.remote_base_url,
            max_retries=settings.remote_max_retries,
            base_delay_ms=settings.remote_base_delay_ms,
            max_delay_ms=settings.remote_max_delay_ms,
            timeout_seconds=settings.remote_timeout_seconds,
            keepalive_timeout_seconds=settings.remote_keepalive_timeout_seconds,
        )
    working_memory = WorkingMemoryStore(remote, defaults=settings.working_memory_defaults())
    structure = ProjectStructureService(
        remote, working_memory=working_memory, on_warning=on_warning,
    )
    autosave = AutosaveManager(
        remote,
        structure_service=structure,
        working_memory=working_memory,
        delay_ms=settings.autosave_delay_ms,
        min_delay_ms=settings.autosave_min_delay_ms,
        on_status_change=on_status_change,
    )
    return SyncCore(
        remote=remote, working_memory=working_memory,
        structure=structure, autosave=autosave,
    )
