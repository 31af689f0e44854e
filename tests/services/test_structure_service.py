"""Project Structure Service — tests for caching, fetch sharing and rebuild fallbacks.

Invariants:
    - Concurrent requests for one project share a single remote fetch
    - Callers get copies; mutating one never changes the cache
    - Empty or failed rebuilds keep the previous structure and warn once
    - A fetch superseded by clear_cache never writes the cache
    - Working memory receives the structure through its public setters
"""

import asyncio

from marble_sync.core.errors import RemoteStoreError
from marble_sync.services.structure_service import ProjectStructureService
from marble_sync.services.working_memory import WorkingMemoryStore

from tests.fake_remote_store import graph_payload


def _node_ids(structure, part="project_graph"):
    return [n["id"] for n in structure[part]["nodes"]]


# ==============================================================================
# Cache
# ==============================================================================


async def test_snapshot_partitioned_and_cached(structure_service, remote):
    remote.graphs["proj-1"] = graph_payload()

    first = await structure_service.get_snapshot("proj-1")
    second = await structure_service.get_snapshot("proj-1")

    assert _node_ids(first) == ["p1", "p2"]
    assert _node_ids(first, "elements_graph") == ["e1"]
    assert first["cross_links"] == [{"from": "p2", "to": "e1", "type": "LINKS_TO"}]
    assert second == first
    assert len(remote.calls_for("fetch_graph")) == 1


async def test_concurrent_requests_share_one_fetch(structure_service, remote):
    remote.graphs["proj-1"] = graph_payload()
    gate = remote.gate("fetch_graph")

    waiters = [asyncio.create_task(structure_service.get_snapshot("proj-1")) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*waiters)

    assert len(remote.calls_for("fetch_graph")) == 1
    assert all(r == results[0] for r in results)
    assert results[0] is not results[1]


async def test_returned_snapshot_is_a_copy(structure_service, remote):
    remote.graphs["proj-1"] = graph_payload()
    snapshot = await structure_service.get_snapshot("proj-1")
    snapshot["project_graph"]["nodes"].clear()

    again = await structure_service.get_snapshot("proj-1")
    assert _node_ids(again) == ["p1", "p2"]


async def test_force_and_clear_cache_refetch(structure_service, remote):
    remote.graphs["proj-1"] = graph_payload()
    await structure_service.get_snapshot("proj-1")
    await structure_service.get_snapshot("proj-1", force=True)
    structure_service.clear_cache("proj-1")
    await structure_service.get_snapshot("proj-1")
    structure_service.clear_cache()
    await structure_service.get_snapshot("proj-1")

    assert len(remote.calls_for("fetch_graph")) == 4


async def test_empty_fetch_keeps_cached_structure(structure_service, remote):
    remote.graphs["proj-1"] = graph_payload()
    await structure_service.get_snapshot("proj-1")

    remote.graphs["proj-1"] = {"nodes": [], "edges": []}
    refreshed = await structure_service.get_snapshot("proj-1", force=True)

    assert _node_ids(refreshed) == ["p1", "p2"]


async def test_blank_project_id_returns_empty_without_fetch(structure_service, remote):
    result = await structure_service.get_snapshot("  ")
    assert _node_ids(result) == []
    assert remote.calls == []


async def test_superseded_fetch_does_not_write_cache(remote):
    old = {"nodes": [{"id": "old"}], "edges": []}
    new = {"nodes": [{"id": "new"}], "edges": []}
    payloads = iter([old, new])
    release = asyncio.Event()

    async def fetch_graph(project_id):
        payload = next(payloads)
        if payload is old:
            await release.wait()
        return payload

    remote.fetch_graph = fetch_graph
    service = ProjectStructureService(remote)

    stale = asyncio.create_task(service.get_snapshot("proj-1"))
    await asyncio.sleep(0)
    service.clear_cache("proj-1")
    fresh = await service.get_snapshot("proj-1")
    release.set()
    await stale

    assert _node_ids(fresh) == ["new"]
    assert _node_ids(await service.get_snapshot("proj-1")) == ["new"]


# ==============================================================================
# Rebuild
# ==============================================================================


async def test_rebuild_empty_response_keeps_previous_and_warns(remote):
    warnings = []
    service = ProjectStructureService(remote, on_warning=warnings.append)
    remote.graphs["proj-1"] = graph_payload()
    await service.get_snapshot("proj-1")

    remote.graphs["proj-1"] = {"nodes": []}
    result = await service.rebuild_structure("proj-1")

    assert _node_ids(result) == ["p1", "p2"]
    assert len(warnings) == 1
    assert warnings[0].reason == "empty_response"
    assert service.last_warning is warnings[0]
    assert warnings[0].to_event()["type"] == "warning"


async def test_rebuild_fetch_failure_keeps_previous_and_warns(remote):
    warnings = []
    service = ProjectStructureService(remote, on_warning=warnings.append)
    remote.graphs["proj-1"] = graph_payload()
    await service.get_snapshot("proj-1")

    remote.fail("fetch_graph", RemoteStoreError("down", "fetch_graph", status_code=503))
    result = await service.rebuild_structure("proj-1")

    assert _node_ids(result) == ["p1", "p2"]
    assert [w.reason for w in warnings] == ["fetch_failed"]
    cached = await service.get_snapshot("proj-1")
    assert _node_ids(cached) == ["p1", "p2"]
    assert len(remote.calls_for("fetch_graph")) == 2


async def test_rebuild_failure_without_previous_returns_empty(remote):
    service = ProjectStructureService(remote)
    remote.fail("fetch_graph", RemoteStoreError("down", "fetch_graph"))

    result = await service.rebuild_structure("proj-1")

    assert _node_ids(result) == []
    assert service.last_warning.reason == "fetch_failed"


async def test_successful_rebuild_clears_warning(remote):
    service = ProjectStructureService(remote)
    remote.fail("fetch_graph", RemoteStoreError("down", "fetch_graph"))
    await service.rebuild_structure("proj-1")

    remote.graphs["proj-1"] = graph_payload()
    result = await service.rebuild_structure("proj-1")

    assert _node_ids(result) == ["p1", "p2"]
    assert service.last_warning is None


async def test_rebuild_evicts_other_projects(remote):
    service = ProjectStructureService(remote)
    remote.graphs["proj-1"] = graph_payload()
    remote.graphs["proj-2"] = graph_payload()
    await service.get_snapshot("proj-2")

    await service.rebuild_structure("proj-1")
    await service.get_snapshot("proj-2")

    assert [c["project_id"] for c in remote.calls_for("fetch_graph")] == [
        "proj-2", "proj-1", "proj-2",
    ]


async def test_failing_warning_listener_is_contained(remote):
    def broken(_warning):
        raise RuntimeError("listener bug")

    service = ProjectStructureService(remote, on_warning=broken)
    remote.fail("fetch_graph", RemoteStoreError("down", "fetch_graph"))

    result = await service.rebuild_structure("proj-1")
    assert _node_ids(result) == []


# ==============================================================================
# Working memory sync
# ==============================================================================


async def test_sync_pushes_structure_into_working_memory(remote):
    store = WorkingMemoryStore()
    service = ProjectStructureService(remote, working_memory=store)
    remote.graphs["proj-1"] = graph_payload()

    await service.sync_to_working_memory("proj-1")

    snapshot = store.get_snapshot()
    assert snapshot["session"]["project_id"] == "proj-1"
    assert _node_ids(snapshot["project_structure"]) == ["p1", "p2"]


async def test_sync_respects_hidden_structure(remote):
    store = WorkingMemoryStore(defaults={"include_project_structure": False})
    service = ProjectStructureService(remote, working_memory=store)
    remote.graphs["proj-1"] = graph_payload()

    await service.sync_to_working_memory("proj-1")
    assert _node_ids(store.get_snapshot()["project_structure"]) == []

    store.update_settings({"include_project_structure": True})
    assert _node_ids(store.get_snapshot()["project_structure"]) == ["p1", "p2"]
