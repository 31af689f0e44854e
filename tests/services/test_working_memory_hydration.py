"""Working Memory Hydration — tests for remote loads, stale-response discard and refresh dedup.

Invariants:
    - Only the latest node-context hydration is applied
    - Context without messages falls back to the messages endpoint
    - Identical concurrent refreshes share one remote fetch
    - Commit-triggered refreshes skip nodes other than the active one; explicit
      refreshes always run
    - Remote failures never raise into callers
"""

import asyncio

from marble_sync.core.errors import RemoteStoreError
from marble_sync.services.working_memory_hydration import refresh_key


def _message(msg_id, content):
    return {
        "id": msg_id, "role": "user", "content": content,
        "created_at": f"2024-01-01T00:00:{int(msg_id):02d}Z",
    }


# ==============================================================================
# Node context
# ==============================================================================


async def test_context_applied_to_store(store, remote):
    remote.context_responses = [{
        "messages": [_message("1", "hi"), _message("2", "more")],
        "messages_meta": {"total_count": 2},
        "working_history": "ctx notes",
    }]

    await store.hydrator.hydrate_node_context("proj-1", "n1")

    params = remote.calls_for("fetch_working_memory_context")[0]["params"]
    assert params == {
        "session_id": None, "project_id": "proj-1", "node_id": "n1",
        "history_length": 20, "include_working_history": True,
    }
    snapshot = store.get_snapshot()
    assert [m["content"] for m in snapshot["messages"]] == ["hi", "more"]
    assert snapshot["messages_meta"]["total_count"] == 2
    assert snapshot["working_history"] == "ctx notes"


async def test_empty_context_falls_back_to_messages_endpoint(store, remote):
    remote.context_responses = [{"working_history": "x"}]
    remote.messages_response = {"messages": [_message("1", "direct")], "total_count": 1}

    await store.hydrator.hydrate_node_context("proj-1", "n1")

    params = remote.calls_for("fetch_messages")[0]["params"]
    assert params == {"node_id": "n1", "limit": 20, "project_id": "proj-1"}
    snapshot = store.get_snapshot()
    assert snapshot["last_user_message"] == "direct"
    assert snapshot["working_history"] == "x"


async def test_fallback_prefers_session_scope(store, remote):
    await store.set_session({"session_id": "s1", "project_id": "proj-1"})
    await store.drain()
    remote.calls.clear()

    await store.hydrator.hydrate_node_context(None, "n1")

    params = remote.calls_for("fetch_messages")[0]["params"]
    assert params["session_id"] == "s1"
    assert "project_id" not in params


async def test_superseded_hydration_discarded(store, remote):
    gate = remote.gate("fetch_working_memory_context")
    remote.context_responses = [
        {"messages": [_message("2", "newer")]},
        {"messages": [_message("1", "older")]},
    ]

    stale = asyncio.create_task(store.hydrator.hydrate_node_context("proj-1", "n1"))
    await asyncio.sleep(0)
    remote.gates.clear()
    await store.hydrator.hydrate_node_context("proj-1", "n1")
    gate.set()
    await stale

    assert [m["content"] for m in store.get_snapshot()["messages"]] == ["newer"]


async def test_working_history_ignored_when_hidden(store, remote):
    store.update_settings({"include_working_history": False})
    remote.context_responses = [{"messages": [_message("1", "hi")], "working_history": "secret"}]

    await store.hydrator.hydrate_node_context("proj-1", "n1")

    params = remote.calls_for("fetch_working_memory_context")[0]["params"]
    assert params["include_working_history"] is False
    assert store.get_snapshot()["working_history"] == ""


async def test_context_failure_keeps_state(store, remote):
    store.set_messages([_message("1", "kept")])
    remote.fail("fetch_working_memory_context", RemoteStoreError("down", "context"))

    await store.hydrator.hydrate_node_context("proj-1", "n1")

    assert store.get_snapshot()["last_user_message"] == "kept"


async def test_missing_scope_skips_hydration(store, remote):
    await store.hydrator.hydrate_node_context(None, None)
    assert remote.calls == []


# ==============================================================================
# Refresh
# ==============================================================================


async def test_identical_refreshes_share_one_fetch(store, remote):
    gate = remote.gate("fetch_working_memory_context")
    first = asyncio.create_task(store.refresh("proj-1", "n1", "context:updated"))
    second = asyncio.create_task(store.refresh("proj-1", "n1", "context:updated"))
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(first, second)

    assert len(remote.calls_for("fetch_working_memory_context")) == 1

    await store.refresh("proj-1", "n1", "context:updated")
    assert len(remote.calls_for("fetch_working_memory_context")) == 2


async def test_commit_refresh_for_inactive_node_skipped(store, remote):
    store.initialise(project_id="proj-1", active_node_id="n1")

    await store.refresh("proj-1", "n2", "graph:link-changed", active_only=True)

    assert remote.calls_for("fetch_working_memory_context") == []


async def test_explicit_refresh_for_inactive_node_runs(store, remote):
    store.initialise(project_id="proj-1", active_node_id="n1")

    await store.refresh("proj-1", "n2", "manual")

    nodes = [c["params"]["node_id"] for c in remote.calls_for("fetch_working_memory_context")]
    assert "n2" in nodes


def test_refresh_key_default_reason():
    assert refresh_key("p", "n", None) == "p::n::manual"
    assert refresh_key("p", "n", " ctx ") == "p::n::ctx"


# ==============================================================================
# Session load
# ==============================================================================


async def test_identical_pending_session_load_reused(store, remote):
    first = store.hydrator.ensure_session_loaded("s1", "proj-1", {})
    second = store.hydrator.ensure_session_loaded("s1", "proj-1", {})
    await store.drain()

    assert first is second
    assert len(remote.calls_for("fetch_working_memory")) == 1


async def test_session_loads_run_in_order(store, remote):
    store.hydrator.ensure_session_loaded("s1", "proj-1", {})
    store.hydrator.ensure_session_loaded("s2", "proj-1", {})
    await store.drain()

    assert [c["session_id"] for c in remote.calls_for("fetch_working_memory")] == ["s1", "s2"]
    assert store.session["session_id"] == "s2"


async def test_session_load_failure_keeps_state(store, remote):
    remote.fail("fetch_working_memory", RemoteStoreError("down", "fetch_working_memory"))

    await store.hydrator.load_session("s1", "proj-1", {})

    assert store.session["session_id"] == ""
