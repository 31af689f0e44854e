"""Autosave Manager — debounced, coalesced commit of dirty nodes and link changes.

Invariants:
    - At most one commit pass in flight; a commit requested meanwhile is deferred
      and runs exactly once after the pass completes
    - Node entries overwrite (last write wins); link entries merge via core/link_merge.py
    - A failed entry stays pending for the retry pass; other entries still attempt
    - An entry re-marked while its commit is in flight is kept (superseded entries are
      never removed by the older pass)
    - Status listeners fire only on real transitions:
      idle → dirty → saving → {saved → idle | error → saving}

Design Decisions:
    - Timers are loop.call_later handles; the fired commit runs as a tracked task
      so close()/drain() can cancel or await it
    - Only changed fields are sent: the last committed label/content/meta per node is
      kept as a baseline and meta goes out as a top-level metaUpdates delta
    - Collaborators (structure service, working memory) are injected, never imported
      as module globals (ADR: no singletons)
"""

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from marble_sync.core.domain_types import EdgeKey, LinkAction, LinkOutcome, SaveStatus
from marble_sync.core.errors import InvalidMutationError
from marble_sync.core.graph_sanitize import normalise_id
from marble_sync.core.link_merge import build_edge_key, merge_link_change
from marble_sync.core.repository_protocols import (
    RemoteStore, StructureRebuilder, WorkingMemoryRefresher,
)

logger = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 1700
MIN_DELAY_MS = 250

NODE_REFRESH_REASON = "context:updated"
LINK_REFRESH_REASON = "graph:link-changed"

StatusListener = Callable[[SaveStatus], None]


@dataclass
class _PendingNode:
    """Identity wrapper: a pass removes the entry only if it is still this object."""
    node: object


def _node_id(node: object) -> str:
    if isinstance(node, Mapping):
        return normalise_id(node.get("id"))
    return normalise_id(getattr(node, "id", None))


def _persistence_of(node: object) -> dict:
    """Serialisation hook when the node has one, the mapping itself otherwise."""
    to_persistence = getattr(node, "to_persistence", None)
    if callable(to_persistence):
        data = to_persistence()
        return dict(data) if isinstance(data, Mapping) else {}
    if isinstance(node, Mapping):
        return dict(node)
    return {}


def _write_back(node: object, field: str, value: object) -> None:
    if isinstance(node, dict):
        node[field] = value
    elif not isinstance(node, Mapping):
        setattr(node, field, value)


class AutosaveManager:
    """Mutation buffer and committer for one editor project."""

    def __init__(
        self,
        remote: RemoteStore,
        project_id: str | None = None,
        *,
        structure_service: StructureRebuilder | None = None,
        working_memory: WorkingMemoryRefresher | None = None,
        delay_ms: int = DEFAULT_DELAY_MS,
        min_delay_ms: int = MIN_DELAY_MS,
        on_status_change: StatusListener | None = None,
    ):
        self.remote = remote
        self.project_id = normalise_id(project_id) or None
        self.structure_service = structure_service
        self.working_memory = working_memory
        self.delay_ms = max(min_delay_ms, delay_ms)

        self._pending_nodes: dict[str, _PendingNode] = {}
        self._pending_links: dict[EdgeKey, dict] = {}
        self._committed: dict[str, dict] = {}
        self._in_flight = False
        self._rerun_requested = False
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

        self._status = SaveStatus.IDLE
        self._listeners: list[StatusListener] = []
        if on_status_change is not None:
            self._listeners.append(on_status_change)

    # ─── Status ──────────────────────────────────────────────────

    @property
    def status(self) -> SaveStatus:
        return self._status

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, status: SaveStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug(f"Autosave status → {status.value}", extra={"status": status.value})
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.warning("Autosave status listener failed", exc_info=True)

    # ─── Mutation entry points ───────────────────────────────────

    def set_project(self, project_id: str | None) -> None:
        self.project_id = normalise_id(project_id) or None

    def mark_node_dirty(self, node: object, reason: str | None = None) -> None:
        node_id = _node_id(node)
        if not node_id:
            raise InvalidMutationError("Node has no id", field="id")
        self._pending_nodes[node_id] = _PendingNode(node=node)
        logger.debug(
            f"Node marked dirty ({reason or 'edit'})",
            extra={"node_id": node_id, "reason": reason},
        )
        if not self._in_flight:
            self._set_status(SaveStatus.DIRTY)
        self._schedule()

    def mark_link_change(self, change: Mapping) -> None:
        from_id, to_id = normalise_id(change.get("from")), normalise_id(change.get("to"))
        if not from_id or not to_id:
            raise InvalidMutationError("Link change needs both endpoints", field="from/to")
        key = build_edge_key(from_id, to_id, change.get("type"))
        existing = self._pending_links.get(key)
        try:
            merged = merge_link_change(existing, change)
        except ValueError:
            logger.warning(f"Ignoring link change with unknown action {change.get('action')!r}")
            return
        if merged is None:
            self._pending_links.pop(key, None)
        else:
            self._pending_links[key] = merged
        if not self._in_flight:
            if self.has_pending():
                self._set_status(SaveStatus.DIRTY)
            elif self._status in (SaveStatus.DIRTY, SaveStatus.ERROR):
                # create + delete cancelled the only pending entry
                self._set_status(SaveStatus.IDLE)
        self._schedule()

    def has_pending(self) -> bool:
        return bool(self._pending_nodes or self._pending_links or self._in_flight)

    # ─── Scheduling ──────────────────────────────────────────────

    def _schedule(self, delay_ms: int | None = None) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        delay = self.delay_ms if delay_ms is None else delay_ms
        self._timer = loop.call_later(delay / 1000, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._spawn(self.commit())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self) -> None:
        """Await commit passes already started by timers or deferrals."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─── Commit ──────────────────────────────────────────────────

    async def flush(self, keepalive: bool = False) -> None:
        """Immediate commit; keepalive makes every remote call best-effort."""
        await self.commit(keepalive=keepalive)

    async def commit(self, keepalive: bool = False) -> None:
        if self._in_flight:
            self._rerun_requested = True
            return
        if not self._pending_nodes and not self._pending_links:
            if self._status != SaveStatus.IDLE:
                self._set_status(SaveStatus.SAVED)
                self._set_status(SaveStatus.IDLE)
            return

        self._cancel_timer()
        self._in_flight = True
        self._set_status(SaveStatus.SAVING)
        nodes = list(self._pending_nodes.items())
        links = list(self._pending_links.items())
        failed = 0
        structure_changed = False
        node_refresh: set[str] = set()
        link_refresh: set[str] = set()

        try:
            for node_id, pending in nodes:
                try:
                    await self._process_node(node_id, pending.node, keepalive)
                except Exception:
                    failed += 1
                    logger.error(
                        "Failed to persist node", exc_info=True,
                        extra={"node_id": node_id, "project_id": self.project_id},
                    )
                    continue
                node_refresh.add(node_id)
                if self._pending_nodes.get(node_id) is pending:
                    del self._pending_nodes[node_id]

            for key, entry in links:
                try:
                    outcome = await self._process_link(entry, keepalive)
                except Exception:
                    failed += 1
                    logger.error(
                        f"Failed to persist link {entry['action']}", exc_info=True,
                        extra={"project_id": self.project_id},
                    )
                    continue
                if outcome is LinkOutcome.STRUCTURE:
                    structure_changed = True
                link_refresh.update((entry["from"], entry["to"]))
                if self._pending_links.get(key) is entry:
                    del self._pending_links[key]
        finally:
            self._in_flight = False

        if failed:
            logger.warning(
                f"Autosave pass finished with {failed} failed entr(y/ies); retry scheduled",
                extra={"project_id": self.project_id},
            )
            self._set_status(SaveStatus.ERROR)
            self._schedule()
        else:
            logger.info(
                f"Autosave committed {len(nodes)} node(s), {len(links)} link(s)",
                extra={"project_id": self.project_id},
            )
            self._set_status(SaveStatus.SAVED)
            self._set_status(SaveStatus.DIRTY if self.has_pending() else SaveStatus.IDLE)

        await self._after_commit(structure_changed, node_refresh, link_refresh)

        if self._rerun_requested:
            self._rerun_requested = False
            self._spawn(self.commit(keepalive=keepalive))

    async def _process_node(self, node_id: str, node: object, keepalive: bool) -> bool:
        """Send the changed fields of one node; False when nothing changed."""
        raw = _persistence_of(node)
        meta = raw.get("meta") if isinstance(raw.get("meta"), Mapping) else {}
        baseline = self._committed.get(node_id)

        body: dict = {}
        for field in ("label", "content"):
            value = raw.get(field)
            if value is not None and (baseline is None or baseline.get(field) != value):
                body[field] = value
        previous_meta = baseline.get("meta", {}) if baseline else {}
        meta_updates = {k: v for k, v in meta.items() if previous_meta.get(k) != v}
        if meta_updates:
            body["metaUpdates"] = copy.deepcopy(meta_updates)
        if not body:
            return False

        body["project_id"] = self.project_id
        response = await self.remote.update_node(node_id, body, keepalive=keepalive)

        committed = {
            "label": raw.get("label"),
            "content": raw.get("content"),
            "meta": copy.deepcopy(dict(meta)),
        }
        echo = response.get("node", response) if isinstance(response, Mapping) else None
        if isinstance(echo, Mapping):
            if isinstance(echo.get("meta"), Mapping):
                _write_back(node, "meta", copy.deepcopy(dict(echo["meta"])))
                committed["meta"] = copy.deepcopy(dict(echo["meta"]))
            for field in ("label", "content"):
                if isinstance(echo.get(field), str):
                    _write_back(node, field, echo[field])
                    committed[field] = echo[field]
        self._committed[node_id] = committed
        return True

    async def _process_link(self, entry: Mapping, keepalive: bool) -> LinkOutcome:
        payload = {
            "from": entry["from"],
            "to": entry["to"],
            "type": entry["type"],
            "project_id": self.project_id,
        }
        action = LinkAction(entry["action"])
        if action is LinkAction.CREATE:
            await self.remote.create_edge({**payload, "props": entry["props"]}, keepalive=keepalive)
            return LinkOutcome.STRUCTURE
        if action is LinkAction.DELETE:
            await self.remote.delete_edge(payload, keepalive=keepalive)
            return LinkOutcome.STRUCTURE
        if action is LinkAction.UPDATE:
            await self.remote.update_edge({**payload, "props": entry["props"]}, keepalive=keepalive)
            return LinkOutcome.PROPS
        return LinkOutcome.NONE

    async def _after_commit(
        self, structure_changed: bool, node_refresh: set[str], link_refresh: set[str],
    ) -> None:
        """Rebuild structure then refresh working memory for touched nodes."""
        if not self.project_id:
            return
        if structure_changed and self.structure_service is not None:
            try:
                await self.structure_service.rebuild_structure(self.project_id)
            except Exception:
                logger.error(
                    "Failed to rebuild project structure after link mutation",
                    exc_info=True, extra={"project_id": self.project_id},
                )
        if self.working_memory is None:
            return
        refreshes = [
            (node_id, NODE_REFRESH_REASON) for node_id in sorted(node_refresh)
        ] + [
            (node_id, LINK_REFRESH_REASON) for node_id in sorted(link_refresh)
        ]
        results = await asyncio.gather(
            *(
                self.working_memory.refresh(
                    self.project_id, node_id, reason, active_only=True,
                )
                for node_id, reason in refreshes
            ),
            return_exceptions=True,
        )
        for (node_id, reason), result in zip(refreshes, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Working memory refresh after autosave failed: {result}",
                    extra={"node_id": node_id, "reason": reason},
                )
