"""Autosave Manager — tests for buffering, coalescing and committing mutations.

Invariants:
    - Status transitions: idle → dirty → saving → saved → idle, or → error
    - Only changed fields reach the remote store; meta goes out as metaUpdates
    - Failed entries stay pending and are retried; other entries still commit
    - A commit requested while one is in flight runs exactly once afterwards
    - Link create/delete rebuilds structure; every commit refreshes working memory

Design Decisions:
    - Debounce set to 60s in the fixture; tests call flush() directly except the
      debounce test, which uses a short delay
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from marble_sync.core.domain_types import SaveStatus
from marble_sync.core.errors import InvalidMutationError, RemoteStoreError
from marble_sync.services.autosave import AutosaveManager

from tests.fake_remote_store import FakeRemoteStore


# -- Helpers -------------------------------------------------------------------

def _node(node_id="n1", label="Scene", content="Text", **meta):
    return {"id": node_id, "label": label, "content": content, "meta": dict(meta)}


def _record_status(manager):
    seen = []
    manager.subscribe_status(seen.append)
    return seen


class _EditorNode:
    """Editor-side node object with a serialisation hook."""

    def __init__(self, node_id, label):
        self.id = node_id
        self.label = label
        self.meta = {}

    def to_persistence(self):
        return {"id": self.id, "label": self.label, "meta": dict(self.meta)}


# ==============================================================================
# Node commits
# ==============================================================================


async def test_node_commit_sends_fields_and_walks_status(autosave, remote):
    seen = _record_status(autosave)

    autosave.mark_node_dirty(_node(notes="rain"))
    assert autosave.status is SaveStatus.DIRTY
    await autosave.flush()

    call = remote.calls_for("update_node")[0]
    assert call["node_id"] == "n1"
    assert call["payload"] == {
        "label": "Scene", "content": "Text",
        "metaUpdates": {"notes": "rain"}, "project_id": "proj-1",
    }
    assert seen == [SaveStatus.DIRTY, SaveStatus.SAVING, SaveStatus.SAVED, SaveStatus.IDLE]
    assert not autosave.has_pending()


async def test_second_commit_sends_only_changed_fields(autosave, remote):
    autosave.mark_node_dirty(_node(notes="rain", mood="dark"))
    await autosave.flush()

    autosave.mark_node_dirty(_node(label="Scene 2", notes="rain", mood="light"))
    await autosave.flush()

    payload = remote.calls_for("update_node")[1]["payload"]
    assert payload == {"label": "Scene 2", "metaUpdates": {"mood": "light"}, "project_id": "proj-1"}


async def test_unchanged_node_sends_nothing(autosave, remote):
    autosave.mark_node_dirty(_node())
    await autosave.flush()
    autosave.mark_node_dirty(_node())
    await autosave.flush()

    assert len(remote.calls_for("update_node")) == 1
    assert autosave.status is SaveStatus.IDLE


async def test_last_write_wins_per_node(autosave, remote):
    autosave.mark_node_dirty(_node(label="first"))
    autosave.mark_node_dirty(_node(label="second"))
    await autosave.flush()

    calls = remote.calls_for("update_node")
    assert len(calls) == 1
    assert calls[0]["payload"]["label"] == "second"


async def test_node_without_id_rejected(autosave):
    with pytest.raises(InvalidMutationError):
        autosave.mark_node_dirty({"label": "orphan"})
    assert not autosave.has_pending()


async def test_remote_echo_written_back_to_node(autosave, remote):
    remote.node_responses["n1"] = {"node": {"meta": {"notes": "rain", "wordCount": 2}}}
    node = _node(notes="rain")

    autosave.mark_node_dirty(node)
    await autosave.flush()

    assert node["meta"] == {"notes": "rain", "wordCount": 2}


async def test_persistence_hook_and_attribute_write_back(autosave, remote):
    remote.node_responses["n9"] = {"label": "Renamed", "meta": {"x": 1}}
    node = _EditorNode("n9", "Draft")

    autosave.mark_node_dirty(node)
    await autosave.flush()

    assert remote.calls_for("update_node")[0]["payload"]["label"] == "Draft"
    assert node.label == "Renamed"
    assert node.meta == {"x": 1}


async def test_keepalive_flag_reaches_remote(autosave, remote):
    autosave.mark_node_dirty(_node())
    await autosave.flush(keepalive=True)
    assert remote.calls_for("update_node")[0]["keepalive"] is True


# ==============================================================================
# Failures
# ==============================================================================


async def test_failed_node_stays_pending_and_others_commit(autosave, remote):
    remote.fail("update_node", RemoteStoreError("boom", "update_node"))
    seen = _record_status(autosave)

    autosave.mark_node_dirty(_node("n1"))
    autosave.mark_node_dirty(_node("n2"))
    await autosave.flush()

    assert [c["node_id"] for c in remote.calls_for("update_node")] == ["n1", "n2"]
    assert autosave.status is SaveStatus.ERROR
    assert autosave.has_pending()
    assert seen[-1] is SaveStatus.ERROR

    await autosave.flush()
    assert [c["node_id"] for c in remote.calls_for("update_node")] == ["n1", "n2", "n1"]
    assert autosave.status is SaveStatus.IDLE
    assert not autosave.has_pending()


async def test_cancelling_failed_link_create_returns_to_idle(autosave, remote):
    remote.fail("create_edge", RemoteStoreError("boom", "create_edge"))
    autosave.mark_link_change({"action": "create", "from": "a", "to": "b"})
    await autosave.flush()
    assert autosave.status is SaveStatus.ERROR

    autosave.mark_link_change({"action": "delete", "from": "a", "to": "b"})
    assert not autosave.has_pending()
    assert autosave.status is SaveStatus.IDLE

    await autosave.flush()
    assert autosave.status is SaveStatus.IDLE
    assert len(remote.calls_for("create_edge")) == 1
    assert remote.calls_for("delete_edge") == []


async def test_empty_commit_settles_any_status_to_idle(autosave, remote):
    seen = _record_status(autosave)
    autosave._set_status(SaveStatus.ERROR)

    await autosave.flush()

    assert seen[-2:] == [SaveStatus.SAVED, SaveStatus.IDLE]
    assert remote.calls == []


async def test_failing_status_listener_does_not_break_commit(autosave, remote):
    def broken(_status):
        raise RuntimeError("listener bug")

    autosave.subscribe_status(broken)
    autosave.mark_node_dirty(_node())
    await autosave.flush()

    assert autosave.status is SaveStatus.IDLE


async def test_unsubscribe_stops_notifications(autosave):
    seen = []
    unsubscribe = autosave.subscribe_status(seen.append)
    unsubscribe()
    autosave.mark_node_dirty(_node())
    assert seen == []


# ==============================================================================
# Links
# ==============================================================================


async def test_create_then_delete_sends_nothing(autosave, remote):
    autosave.mark_link_change({"action": "create", "from": "a", "to": "b"})
    assert autosave.status is SaveStatus.DIRTY
    autosave.mark_link_change({"action": "delete", "from": "b", "to": "a"})

    assert not autosave.has_pending()
    assert autosave.status is SaveStatus.IDLE
    await autosave.flush()
    assert remote.calls == []


async def test_link_create_sends_props(autosave, remote):
    autosave.mark_link_change({"action": "create", "from": "b", "to": "a", "props": {"w": 1}})
    autosave.mark_link_change({"action": "update", "from": "a", "to": "b", "props": {"w": 2}})
    await autosave.flush()

    assert remote.calls_for("create_edge")[0]["payload"] == {
        "from": "a", "to": "b", "type": "LINKS_TO", "project_id": "proj-1", "props": {"w": 2},
    }
    assert remote.calls_for("update_edge") == []


async def test_link_missing_endpoint_rejected(autosave):
    with pytest.raises(InvalidMutationError):
        autosave.mark_link_change({"action": "create", "from": "a", "to": " "})


async def test_unknown_link_action_ignored(autosave):
    autosave.mark_link_change({"action": "rename", "from": "a", "to": "b"})
    assert not autosave.has_pending()


async def test_structure_rebuilt_and_memory_refreshed_after_link_commit():
    remote = FakeRemoteStore()
    structure = AsyncMock()
    memory = AsyncMock()
    manager = AutosaveManager(
        remote, "proj-1", structure_service=structure, working_memory=memory,
        delay_ms=60_000,
    )
    try:
        manager.mark_link_change({"action": "delete", "from": "a", "to": "b"})
        manager.mark_node_dirty(_node("n1"))
        await manager.flush()
    finally:
        await manager.close()

    structure.rebuild_structure.assert_awaited_once_with("proj-1")
    assert all(c.kwargs == {"active_only": True} for c in memory.refresh.await_args_list)
    refreshed = sorted(c.args for c in memory.refresh.await_args_list)
    assert refreshed == [
        ("proj-1", "a", "graph:link-changed"),
        ("proj-1", "b", "graph:link-changed"),
        ("proj-1", "n1", "context:updated"),
    ]


async def test_link_update_does_not_rebuild_structure():
    remote = FakeRemoteStore()
    structure = AsyncMock()
    manager = AutosaveManager(remote, "proj-1", structure_service=structure, delay_ms=60_000)
    try:
        manager.mark_link_change({"action": "update", "from": "a", "to": "b", "props": {"w": 1}})
        await manager.flush()
    finally:
        await manager.close()

    assert remote.calls_for("update_edge")[0]["payload"]["props"] == {"w": 1}
    structure.rebuild_structure.assert_not_awaited()


async def test_rebuild_failure_does_not_fail_commit():
    remote = FakeRemoteStore()
    structure = AsyncMock()
    structure.rebuild_structure.side_effect = RuntimeError("down")
    manager = AutosaveManager(remote, "proj-1", structure_service=structure, delay_ms=60_000)
    try:
        manager.mark_link_change({"action": "create", "from": "a", "to": "b"})
        await manager.flush()
    finally:
        await manager.close()

    assert manager.status is SaveStatus.IDLE


# ==============================================================================
# Scheduling
# ==============================================================================


async def test_commit_during_flight_is_deferred_and_runs_once(autosave, remote):
    gate = remote.gate("update_node")
    autosave.mark_node_dirty(_node(label="v1"))
    first = asyncio.create_task(autosave.flush())
    await asyncio.sleep(0)
    assert autosave.status is SaveStatus.SAVING

    autosave.mark_node_dirty(_node(label="v2"))
    await autosave.flush()
    await autosave.flush()
    assert len(remote.calls_for("update_node")) == 1

    gate.set()
    await first
    await autosave.drain()

    labels = [c["payload"].get("label") for c in remote.calls_for("update_node")]
    assert labels == ["v1", "v2"]
    assert autosave.status is SaveStatus.IDLE


async def test_debounce_coalesces_marks_into_one_commit(remote):
    manager = AutosaveManager(remote, "proj-1", delay_ms=20, min_delay_ms=0)
    try:
        manager.mark_node_dirty(_node(label="a"))
        await asyncio.sleep(0.005)
        manager.mark_node_dirty(_node(label="b"))
        await asyncio.sleep(0.08)
        await manager.drain()
    finally:
        await manager.close()

    calls = remote.calls_for("update_node")
    assert [c["payload"]["label"] for c in calls] == ["b"]


async def test_delay_floor_applied(remote):
    manager = AutosaveManager(remote, delay_ms=10, min_delay_ms=250)
    assert manager.delay_ms == 250
