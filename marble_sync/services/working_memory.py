"""Working Memory Store — the canonical, visibility-filtered snapshot and its subscribers.

Invariants:
    - One mutable snapshot, mutated only through this class's operations
    - Every effective change stamps session.timestamp, notifies subscribers, and
      persists the changed facet remotely in the background
    - An unchanged value neither stamps, notifies, nor persists
    - Remote persistence failures are logged; the local snapshot is never rolled back
    - Hidden facets (config flags off) are held in HiddenStructure, never discarded
    - Subscribers receive copies; a failing subscriber never breaks notification

Design Decisions:
    - Pure snapshot logic lives in core/working_memory_snapshot.py; this class only
      sequences state changes, notification, and persistence
    - Remote hydration (session load, node context, refresh dedup) delegated to
      WorkingMemoryHydrator so this file stays about local state
    - Background work tracked as tasks; drain() awaits them (tests, shutdown)
"""

import asyncio
import json
import logging
from collections.abc import Callable, Mapping

from marble_sync.core.domain_types import WorkingMemoryPart
from marble_sync.core.graph_sanitize import (
    clone_graph, merge_structure_parts, normalise_id, safe_string, sanitize_graph,
)
from marble_sync.core.repository_protocols import RemoteStore
from marble_sync.core.working_memory_snapshot import (
    HiddenStructure, apply_visibility, build_default_memory, build_node_scoped_snapshot,
    clone_memory, coerce_working_history, now_iso, resolve_messages,
    sanitize_config, sanitize_fetched_context, sanitize_memory_snapshot,
    sanitize_node_context,
)
from marble_sync.schemas.working_memory import WorkingMemoryPatch
from marble_sync.services.working_memory_hydration import WorkingMemoryHydrator

logger = logging.getLogger(__name__)

MemoryListener = Callable[[dict], None]
SettingsListener = Callable[[dict], None]

_GRAPH_PARTS = {
    "project_graph": WorkingMemoryPart.PROJECT_GRAPH,
    "elements_graph": WorkingMemoryPart.ELEMENTS_GRAPH,
}


class WorkingMemoryStore:
    """Session/graph/message working memory with remote per-facet persistence."""

    def __init__(self, remote: RemoteStore | None = None, *, defaults: Mapping | None = None):
        self.remote = remote
        self._defaults = sanitize_config(defaults)
        self._memory = build_default_memory(defaults=self._defaults)
        self._hidden = HiddenStructure()
        self._listeners: list[MemoryListener] = []
        self._settings_listeners: list[SettingsListener] = []
        self._tasks: set[asyncio.Task] = set()
        self.hydrator = WorkingMemoryHydrator(self, remote)
        apply_visibility(self._memory, self._hidden)

    # ─── Reads ───────────────────────────────────────────────────

    def get_snapshot(self) -> dict:
        return clone_memory(self._memory)

    def get_snapshot_for_node(self, node_id: str | None = None) -> dict:
        return build_node_scoped_snapshot(self._memory, node_id)

    def get_settings(self) -> dict:
        return dict(self._memory["config"])

    @property
    def session(self) -> dict:
        return dict(self._memory["session"])

    def serialise(self, node_only: bool = False, node_id: str | None = None) -> str:
        """Pretty JSON of the snapshot (or of a node-scoped view)."""
        payload = self.get_snapshot_for_node(node_id) if node_only else self.get_snapshot()
        return json.dumps(payload, indent=2, ensure_ascii=False, default=str)

    # ─── Lifecycle ───────────────────────────────────────────────

    def initialise(
        self,
        project_id: str | None = None,
        session_id: str | None = None,
        active_node_id: str | None = None,
    ) -> dict:
        """Reset to defaults, bind identity, hydrate from the remote store."""
        self.hydrator.cancel()
        self._memory = build_default_memory(defaults=self._defaults)
        self._hidden.reset()
        session = self._memory["session"]
        for key, value in (
            ("project_id", project_id), ("session_id", session_id),
            ("active_node_id", active_node_id),
        ):
            if value is not None:
                session[key] = normalise_id(value)
        apply_visibility(self._memory, self._hidden)
        self._changed(settings=True)
        if session["session_id"]:
            self.hydrator.ensure_session_loaded(
                session["session_id"], session["project_id"],
                {"project_id": session["project_id"], "active_node_id": session["active_node_id"]},
            )
        return self.get_snapshot()

    def reset(self) -> dict:
        self.hydrator.cancel()
        self._memory = build_default_memory(defaults=self._defaults)
        self._hidden.reset()
        apply_visibility(self._memory, self._hidden)
        self._changed(settings=True)
        return self.get_snapshot()

    async def set_session(self, partial: Mapping) -> dict:
        """Update identity; a new session re-hydrates, a new active node refreshes."""
        current = self._memory["session"]
        nxt = dict(current)
        overrides = {}
        for key in ("session_id", "project_id", "active_node_id"):
            if partial.get(key) is not None:
                nxt[key] = normalise_id(partial[key])
                if key != "session_id":
                    overrides[key] = nxt[key]
        session_changed = nxt["session_id"] != current["session_id"]
        project_changed = nxt["project_id"] != current["project_id"]
        node_changed = nxt["active_node_id"] != current["active_node_id"]
        if not (session_changed or project_changed or node_changed):
            return self.get_snapshot()

        if session_changed or node_changed:
            self.hydrator.cancel()
        if session_changed or project_changed:
            self._hidden.reset()
        self._memory["session"] = nxt
        apply_visibility(self._memory, self._hidden)
        self._changed(settings=True)

        if session_changed:
            self.hydrator.ensure_session_loaded(nxt["session_id"], nxt["project_id"], overrides)
        elif nxt["session_id"]:
            self._persist(WorkingMemoryPart.SESSION, dict(nxt))
        if node_changed and (nxt["session_id"] or (nxt["project_id"] and nxt["active_node_id"])):
            await self.refresh(nxt["project_id"], nxt["active_node_id"], "session-node-change")
        return self.get_snapshot()

    async def refresh(
        self, project_id: str | None = None, node_id: str | None = None,
        reason: str = "manual", *, active_only: bool = False,
    ) -> None:
        await self.hydrator.refresh(project_id, node_id, reason, active_only=active_only)

    # ─── Structure ───────────────────────────────────────────────

    def set_project_graph(self, graph: object) -> dict:
        return self._update_structure({"project_graph": sanitize_graph(graph)})

    def set_elements_graph(self, graph: object) -> dict:
        return self._update_structure({"elements_graph": sanitize_graph(graph)})

    def set_project_structure(self, structure: object) -> dict:
        return self._update_structure(structure if isinstance(structure, Mapping) else {})

    def _update_structure(self, incoming: Mapping) -> dict:
        if self._memory["config"]["include_project_structure"]:
            previous = self._memory["project_structure"]
            merged = merge_structure_parts(previous, incoming)
            self._memory["project_structure"] = merged
            changed = {k: merged[k] for k in _GRAPH_PARTS if previous[k] != merged[k]}
            links_changed = previous["cross_links"] != merged["cross_links"]
        else:
            changed = self._update_hidden_structure(incoming)
            links_changed = False
        if not changed and not links_changed:
            return self.get_snapshot()
        self._changed()
        for key, graph in changed.items():
            self._persist(_GRAPH_PARTS[key], clone_graph(graph))
        return self.get_snapshot()

    def _update_hidden_structure(self, incoming: Mapping) -> dict:
        """Changed graph parts after merging incoming into the hidden holding area."""
        keys = [k for k in incoming if k in _GRAPH_PARTS]
        if len(incoming) == 1 and keys:
            changed, graph = self._hidden.update_part(keys[0], incoming[keys[0]])
            return {keys[0]: graph} if changed else {}
        changed_project, changed_elements, structure = self._hidden.update(incoming)
        flags = {"project_graph": changed_project, "elements_graph": changed_elements}
        return {k: structure[k] for k, flag in flags.items() if flag}

    def ensure_project_structure_included(self) -> dict:
        if self._memory["config"]["include_project_structure"]:
            return self.get_settings()
        return self.update_settings({"include_project_structure": True})

    # ─── Context facets ──────────────────────────────────────────

    def set_node_context(self, context: object) -> dict:
        nxt = sanitize_node_context(context)
        target = normalise_id(nxt.get("id")) or None
        return self._update_facet(
            "node_context", nxt, "include_context", WorkingMemoryPart.NODE_CONTEXT, target,
        )

    def set_fetched_context(self, context: object) -> dict:
        return self._update_facet(
            "fetched_context", sanitize_fetched_context(context), "include_context",
            WorkingMemoryPart.FETCHED_CONTEXT,
        )

    def set_working_history(self, value: object) -> dict:
        return self._update_facet(
            "working_history", coerce_working_history(value), "include_working_history",
            WorkingMemoryPart.WORKING_HISTORY, sync_node_history=True,
        )

    def _update_facet(
        self,
        name: str,
        value: object,
        flag: str,
        part: WorkingMemoryPart,
        node_id: str | None = None,
        sync_node_history: bool = False,
    ) -> dict:
        """Visible facet when its flag is on, hidden-but-persisted when off."""
        visible = self._memory["config"][flag]
        current = self._memory[name] if visible else self._hidden.facets.get(name, type(value)())
        if current == value:
            return self.get_snapshot()
        if visible:
            self._memory[name] = value
        elif value:
            self._hidden.facets[name] = value
        else:
            self._hidden.facets.pop(name, None)
        self._changed()
        if sync_node_history:
            self.spawn(self._persist_working_history(value))
        else:
            self._persist(part, value, node_id=node_id)
        return self.get_snapshot()

    # ─── Messages ────────────────────────────────────────────────

    def set_messages(self, messages: object, metadata: Mapping | None = None) -> dict:
        """Sort, bound to history_length, and recompute last_user_message."""
        meta_source = self._memory["messages_meta"] if metadata is None else metadata
        limited, meta, last_user = resolve_messages(
            messages, meta_source, self._memory["config"]["history_length"],
        )
        if (
            limited == self._memory["messages"]
            and meta == self._memory["messages_meta"]
            and last_user == self._memory["last_user_message"]
        ):
            return self.get_snapshot()
        self._memory["messages"] = limited
        self._memory["messages_meta"] = meta
        self._memory["last_user_message"] = last_user
        self._changed()
        self._persist(WorkingMemoryPart.MESSAGES_META, dict(meta))
        self._persist(
            WorkingMemoryPart.LAST_USER_MESSAGE, last_user,
            options={"messages": [dict(m) for m in limited], "metadata": dict(meta)},
        )
        return self.get_snapshot()

    def append_message(self, message: Mapping, metadata: Mapping | None = None) -> dict:
        return self.set_messages([*self._memory["messages"], dict(message)], metadata)

    # ─── Settings ────────────────────────────────────────────────

    def update_settings(self, partial: Mapping) -> dict:
        """Merge into config, re-apply the visibility gate, persist config."""
        current = self._memory["config"]
        nxt = sanitize_config(partial, base=current)
        if nxt == current:
            return self.get_settings()
        if current["include_project_structure"] and not nxt["include_project_structure"]:
            self._hidden.thaw()
        self._memory["config"] = nxt
        apply_visibility(self._memory, self._hidden)
        self._changed(settings=True)
        self._persist(WorkingMemoryPart.CONFIG, dict(nxt))
        if self._memory["session"]["session_id"]:
            self._persist(WorkingMemoryPart.SESSION, dict(self._memory["session"]))
        return self.get_settings()

    # ─── Remote snapshot ─────────────────────────────────────────

    def apply_remote_snapshot(
        self, snapshot: object, session_id: str, project_id: str, overrides: Mapping,
    ) -> None:
        """Merge a full remote snapshot over current state (hidden facets folded back)."""
        fallback = clone_memory(self._memory)
        if self._hidden.structure is not None:
            fallback["project_structure"] = merge_structure_parts(
                fallback["project_structure"], self._hidden.structure,
            )
        fallback.update(self._hidden.facets)
        self._hidden.reset()
        self._memory = sanitize_memory_snapshot(snapshot, fallback)
        session = self._memory["session"]
        session["session_id"] = session_id
        if project_id:
            session["project_id"] = project_id
        for key in ("project_id", "active_node_id"):
            if overrides.get(key) is not None:
                session[key] = safe_string(overrides[key])
        apply_visibility(self._memory, self._hidden)
        self._changed(settings=True)
        self._persist(WorkingMemoryPart.SESSION, dict(session))

    # ─── Subscriptions ───────────────────────────────────────────

    def subscribe(self, listener: MemoryListener) -> Callable[[], None]:
        return self._subscribe(self._listeners, listener, self.get_snapshot)

    def subscribe_settings(self, listener: SettingsListener) -> Callable[[], None]:
        return self._subscribe(self._settings_listeners, listener, self.get_settings)

    def _subscribe(self, listeners: list, listener: Callable, current: Callable) -> Callable[[], None]:
        listeners.append(listener)
        try:
            listener(current())
        except Exception:
            logger.warning("Working memory listener failed on initial replay", exc_info=True)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _changed(self, settings: bool = False) -> None:
        self._memory["session"]["timestamp"] = now_iso()
        self._notify(self._listeners, self.get_snapshot)
        if settings:
            self._notify(self._settings_listeners, self.get_settings)

    def _notify(self, listeners: list, current: Callable) -> None:
        for listener in list(listeners):
            try:
                listener(current())
            except Exception:
                logger.warning("Working memory listener failed", exc_info=True)

    # ─── Persistence ─────────────────────────────────────────────

    def _persist(
        self, part: WorkingMemoryPart, value: object,
        node_id: str | None = None, options: Mapping | None = None,
    ) -> None:
        self.spawn(self._send_part(part, value, node_id, options))

    async def _send_part(
        self, part: WorkingMemoryPart, value: object,
        node_id: str | None = None, options: Mapping | None = None,
    ) -> bool:
        """PATCH one facet; False when skipped or failed (best-effort)."""
        if self.remote is None:
            return False
        session = self._memory["session"]
        scoped_node = normalise_id(node_id) or normalise_id(session["active_node_id"])
        if not session["session_id"] and not (session["project_id"] and scoped_node):
            return False
        payload_options = dict(options or {})
        if scoped_node:
            payload_options.setdefault("node_id", scoped_node)
        body = WorkingMemoryPatch(
            session_id=session["session_id"],
            project_id=session["project_id"],
            node_id=scoped_node or None,
            value=value,
            options=payload_options or None,
        )
        try:
            await self.remote.patch_working_memory(part, body.model_dump())
        except Exception as e:
            logger.warning(
                f"Failed to persist working memory part: {e}",
                extra={"part": part.value, "session_id": session["session_id"]},
            )
            return False
        return True

    async def _persist_working_history(self, value: str) -> None:
        """Persist the facet, then mirror it onto the active node."""
        session = dict(self._memory["session"])
        persisted = await self._send_part(WorkingMemoryPart.WORKING_HISTORY, value)
        node_id, project_id = session["active_node_id"], session["project_id"]
        if not persisted or not node_id or not project_id:
            return
        try:
            await self.remote.update_node_working_history(node_id, project_id, value)
        except Exception as e:
            logger.warning(
                f"Failed to sync node working history: {e}",
                extra={"node_id": node_id, "project_id": project_id},
            )

    def spawn(self, coro) -> asyncio.Task | None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop; skipping background working memory task")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Await outstanding persistence and hydration tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

