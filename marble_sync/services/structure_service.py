"""Project Structure Service — per-project cache of the partitioned structure.

Invariants:
    - Concurrent get_snapshot calls for one uncached project share ONE remote fetch
    - Callers always receive a structural copy, never the cached object
    - An empty fetch never overwrites a non-empty cached/known-good structure
    - A superseded fetch (clear_cache or force started a newer one) never writes the cache
    - Rebuild failures are delivered once on the on_warning channel, never raised

Design Decisions:
    - In-flight fetches are asyncio Tasks keyed by project id; waiters await them
      through asyncio.shield so a cancelled caller does not cancel the shared fetch
    - Last-known-good kept separately from the cache so rebuild's invalidation
      cannot lose the previous structure
    - Working memory is pushed through its public setters; its own visibility gate
      decides what becomes visible (ADR: one owner per state)
"""

import asyncio
import logging
from collections.abc import Callable

from marble_sync.core.errors import ErrorContext, StructureRebuildWarning
from marble_sync.core.graph_sanitize import (
    clone_structure, empty_structure, is_empty_structure, normalise_id,
)
from marble_sync.core.partition import structure_from_payload
from marble_sync.core.repository_protocols import RemoteStore

logger = logging.getLogger(__name__)

WarningListener = Callable[[StructureRebuildWarning], None]


class ProjectStructureService:
    """Fetches, partitions and caches project structure; feeds working memory."""

    def __init__(
        self,
        remote: RemoteStore,
        *,
        working_memory=None,
        on_warning: WarningListener | None = None,
    ):
        self.remote = remote
        self.working_memory = working_memory
        self.on_warning = on_warning
        self.last_warning: StructureRebuildWarning | None = None
        self._cache: dict[str, dict] = {}
        self._known_good: dict[str, dict] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    # ─── Cache ───────────────────────────────────────────────────

    async def get_snapshot(self, project_id: str, force: bool = False) -> dict:
        structure, _ = await self._load(normalise_id(project_id), force)
        return clone_structure(structure)

    def clear_cache(self, project_id: str | None = None) -> None:
        """Drop cached structure and in-flight fetch for one project, or for all."""
        pid = normalise_id(project_id)
        if not pid:
            self._cache.clear()
            self._known_good.clear()
            self._in_flight.clear()
            return
        self._cache.pop(pid, None)
        self._known_good.pop(pid, None)
        self._in_flight.pop(pid, None)

    async def _load(self, pid: str, force: bool) -> tuple[dict, bool]:
        if not pid:
            return empty_structure(), False
        if not force and pid in self._cache:
            return self._cache[pid], False
        task = self._in_flight.get(pid)
        if force or task is None:
            task = asyncio.create_task(self._fetch(pid))
            self._in_flight[pid] = task
        return await asyncio.shield(task)

    async def _fetch(self, pid: str) -> tuple[dict, bool]:
        """One remote fetch; returns (structure, retained_previous)."""
        try:
            payload = await self.remote.fetch_graph(pid)
            structure = structure_from_payload(payload)
            previous = self._cache.get(pid) or self._known_good.get(pid)
            retained = is_empty_structure(structure) and not is_empty_structure(previous)
            if retained:
                structure = previous
            if self._in_flight.get(pid) is asyncio.current_task():
                self._cache[pid] = structure
                if not is_empty_structure(structure):
                    self._known_good[pid] = structure
            else:
                logger.debug("Discarding superseded structure fetch", extra={"project_id": pid})
            return structure, retained
        finally:
            if self._in_flight.get(pid) is asyncio.current_task():
                del self._in_flight[pid]

    # ─── Rebuild / sync ──────────────────────────────────────────

    async def rebuild_structure(self, project_id: str) -> dict:
        """Invalidate and refetch; keeps the previous structure on empty or failed fetch."""
        pid = normalise_id(project_id)
        for other in [p for p in set(self._cache) | set(self._known_good) if p != pid]:
            self.clear_cache(other)
        previous = self._cache.pop(pid, None) or self._known_good.get(pid)
        self._in_flight.pop(pid, None)
        self.last_warning = None

        try:
            structure, retained = await self._load(pid, force=True)
        except Exception as e:
            structure = previous or empty_structure()
            if previous is not None:
                self._cache[pid] = previous
            self._warn(
                pid, f"Structure rebuild failed, keeping previous snapshot: {e}", "fetch_failed",
            )
        else:
            if retained:
                self._warn(
                    pid, "Structure rebuild returned no nodes, keeping previous snapshot",
                    "empty_response",
                )

        await self._push_to_working_memory(pid, structure)
        return clone_structure(structure)

    async def sync_to_working_memory(self, project_id: str, force: bool = False) -> dict:
        """Bind working memory to project_id and push the (cached or fetched) structure."""
        pid = normalise_id(project_id)
        structure = await self.get_snapshot(pid, force=force)
        await self._push_to_working_memory(pid, structure)
        return structure

    async def _push_to_working_memory(self, pid: str, structure: dict) -> None:
        if self.working_memory is None:
            return
        await self.working_memory.set_session({"project_id": pid})
        self.working_memory.set_project_structure(clone_structure(structure))

    def _warn(self, pid: str, message: str, reason: str) -> None:
        warning = StructureRebuildWarning(message, reason, ErrorContext(project_id=pid))
        self.last_warning = warning
        logger.warning(message, extra={"project_id": pid, "reason": reason})
        if self.on_warning is None:
            return
        try:
            self.on_warning(warning)
        except Exception:
            logger.warning("Structure warning listener failed", exc_info=True)
