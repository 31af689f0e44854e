"""Working Memory Hydration — remote loads into the store, deduplicated and cancellable.

Invariants:
    - Session loads chain: a load requested while another runs starts after it;
      an identical pending request is reused instead of queued twice
    - Node-context hydrations carry a monotonically increasing sequence token; only
      the latest token's response is applied, superseded ones are discarded
    - Refreshes are deduplicated by (project_id, node_id, reason), default reason "manual"
    - Hydration never raises into callers; remote failures degrade to stale state

Design Decisions:
    - Abort is a flag on the token rather than Task.cancel(): deduplicated waiters
      share the task and must not see CancelledError
    - Commit-triggered refreshes (active_only) skip nodes other than the active
      one; hydration writes the store's message facet, which belongs to the active
      node. Explicit refreshes always run
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from marble_sync.core.graph_sanitize import normalise_id, safe_string
from marble_sync.core.messages import default_messages_meta, normalise_history_length
from marble_sync.core.repository_protocols import RemoteStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_REASON = "manual"


@dataclass
class HydrationToken:
    sequence: int
    aborted: bool = False


def refresh_key(project_id: str, node_id: str, reason: str | None) -> str:
    return f"{project_id}::{node_id}::{safe_string(reason).strip() or DEFAULT_REFRESH_REASON}"


class WorkingMemoryHydrator:
    """Pulls session snapshots and node context from the remote store into a store."""

    def __init__(self, store, remote: RemoteStore | None):
        self._store = store
        self.remote = remote
        self._sequence = 0
        self._active: HydrationToken | None = None
        self._pending_load: asyncio.Task | None = None
        self._pending_load_key: tuple | None = None
        self._refreshes: dict[str, asyncio.Task] = {}

    # ─── Session load ────────────────────────────────────────────

    def ensure_session_loaded(
        self, session_id: str, project_id: str, overrides: Mapping | None = None,
    ) -> asyncio.Task | None:
        if not session_id or self.remote is None:
            return None
        overrides = dict(overrides or {})
        key = (session_id, project_id, tuple(sorted(overrides.items())))
        previous = self._pending_load
        if previous is not None and not previous.done() and self._pending_load_key == key:
            return previous
        task = self._store.spawn(self._chained_load(previous, session_id, project_id, overrides))
        self._pending_load = task
        self._pending_load_key = key
        return task

    async def _chained_load(
        self, previous: asyncio.Task | None, session_id: str, project_id: str,
        overrides: dict,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.gather(previous, return_exceptions=True)
        await self.load_session(session_id, project_id, overrides)

    async def load_session(self, session_id: str, project_id: str, overrides: Mapping) -> None:
        try:
            data = await self.remote.fetch_working_memory(session_id, project_id)
        except Exception as e:
            logger.warning(
                f"Failed to load working memory from remote store: {e}",
                extra={"session_id": session_id, "project_id": project_id},
            )
            return
        snapshot = data.get("memory") if isinstance(data, Mapping) else None
        self._store.apply_remote_snapshot(snapshot, session_id, project_id, overrides)
        logger.info(
            "Working memory hydrated from remote store",
            extra={"session_id": session_id, "project_id": project_id},
        )

    # ─── Node context ────────────────────────────────────────────

    def cancel(self) -> None:
        """Abort the in-flight node hydration, if any."""
        if self._active is not None:
            self._active.aborted = True
            self._active = None

    async def hydrate_node_context(
        self, project_id: str | None = None, node_id: str | None = None,
    ) -> None:
        session = self._store.session
        pid = normalise_id(project_id) or session["project_id"]
        nid = normalise_id(node_id) or session["active_node_id"]
        sid = session["session_id"]
        if not pid or not nid or self.remote is None:
            logger.debug("Node context hydration skipped: missing scope identifiers")
            return

        self.cancel()
        self._sequence += 1
        token = HydrationToken(self._sequence)
        self._active = token
        config = self._store.get_settings()
        include_history = config["include_working_history"]
        history_length = normalise_history_length(config["history_length"])
        try:
            payload = await self.remote.fetch_working_memory_context({
                "session_id": sid or None,
                "project_id": pid,
                "node_id": nid,
                "history_length": history_length,
                "include_working_history": include_history,
            })
            if not isinstance(payload, Mapping) or not payload.get("messages"):
                payload = await self._fallback_messages(payload, sid, pid, nid, history_length)
            if token.aborted or token.sequence != self._sequence:
                logger.debug("Discarding superseded node context", extra={"node_id": nid})
                return
            self._apply_context(payload, include_history)
        except Exception as e:
            if token.aborted:
                return
            logger.warning(
                f"Failed to hydrate working memory context: {e}",
                extra={"node_id": nid, "project_id": pid},
            )
        finally:
            if self._active is token:
                self._active = None

    async def _fallback_messages(
        self, payload: object, sid: str, pid: str, nid: str, limit: int,
    ) -> dict:
        """Context returned no messages: query the messages endpoint directly."""
        base = dict(payload) if isinstance(payload, Mapping) else {}
        params = {"node_id": nid, "limit": limit}
        if sid:
            params["session_id"] = sid
        else:
            params["project_id"] = pid
        try:
            direct = await self.remote.fetch_messages(params)
        except Exception as e:
            logger.warning(f"Fallback message fetch failed: {e}", extra={"node_id": nid})
            return base
        if isinstance(direct, Mapping):
            base["messages"] = direct.get("messages") or []
            base["messages_meta"] = direct
        return base

    def _apply_context(self, payload: Mapping, include_history: bool) -> None:
        has_messages = isinstance(payload.get("messages"), list)
        has_meta = isinstance(payload.get("messages_meta"), Mapping)
        has_last_user = "last_user_message" in payload
        if has_messages or has_meta or has_last_user:
            current = self._store.get_snapshot()
            metadata = payload["messages_meta"] if has_meta else None
            if metadata is None and has_last_user:
                metadata = {
                    **(current["messages_meta"] or default_messages_meta()),
                    "last_user_message": safe_string(payload["last_user_message"]),
                }
            messages = payload["messages"] if has_messages else current["messages"]
            self._store.set_messages(messages, metadata)
        if include_history and "working_history" in payload:
            self._store.set_working_history(payload["working_history"])

    # ─── Refresh ─────────────────────────────────────────────────

    async def refresh(
        self, project_id: str | None = None, node_id: str | None = None,
        reason: str | None = DEFAULT_REFRESH_REASON, *, active_only: bool = False,
    ) -> None:
        """Hydrate node context for a scope; identical concurrent requests share one run."""
        session = self._store.session
        pid = normalise_id(project_id) or session["project_id"]
        nid = normalise_id(node_id) or session["active_node_id"]
        if not pid or not nid:
            return
        active = session["active_node_id"]
        if active_only and active and nid != active:
            logger.info(
                "Refresh skipped for inactive node", extra={"node_id": nid, "reason": reason},
            )
            return
        key = refresh_key(pid, nid, reason)
        task = self._refreshes.get(key)
        if task is None:
            task = self._store.spawn(self.hydrate_node_context(pid, nid))
            if task is None:
                return
            self._refreshes[key] = task
            task.add_done_callback(lambda done: self._forget_refresh(key, done))
        await asyncio.shield(task)

    def _forget_refresh(self, key: str, task: asyncio.Task) -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]
