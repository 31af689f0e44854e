"""In-memory RemoteStore double — records every call, scripted responses and failures.

Usage:
    remote = FakeRemoteStore()
    remote.graphs["p1"] = {"nodes": [...], "edges": [...]}
    remote.fail("update_node", RemoteStoreError("boom", "update_node"))
    ...
    assert remote.calls_for("update_node")[0]["payload"]["label"] == "x"
"""

import asyncio

from marble_sync.core.domain_types import WorkingMemoryPart


class FakeRemoteStore:
    """Implements the RemoteStore protocol; nothing leaves the process."""

    def __init__(self):
        self.calls: list[dict] = []
        self.graphs: dict[str, object] = {}
        self.node_responses: dict[str, object] = {}
        self.working_memory: dict | None = None
        self.context_responses: list[object] = []
        self.messages_response: object = None
        self.failures: dict[str, list[Exception]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.closed = False

    # -- Scripting ---------------------------------------------------------------

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    def gate(self, operation: str) -> asyncio.Event:
        """Block `operation` until the returned event is set."""
        event = asyncio.Event()
        self.gates[operation] = event
        return event

    def calls_for(self, operation: str) -> list[dict]:
        return [c for c in self.calls if c["operation"] == operation]

    def patched_parts(self) -> list[str]:
        return [c["part"] for c in self.calls_for("patch_working_memory")]

    async def _record(self, operation: str, **kwargs) -> None:
        self.calls.append({"operation": operation, **kwargs})
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    # -- Graph -------------------------------------------------------------------

    async def fetch_graph(self, project_id):
        await self._record("fetch_graph", project_id=project_id)
        return self.graphs.get(project_id)

    async def update_node(self, node_id, payload, *, keepalive=False):
        await self._record("update_node", node_id=node_id, payload=payload, keepalive=keepalive)
        return self.node_responses.get(node_id, {"ok": True})

    async def create_edge(self, payload, *, keepalive=False):
        await self._record("create_edge", payload=payload, keepalive=keepalive)
        return {"ok": True}

    async def delete_edge(self, payload, *, keepalive=False):
        await self._record("delete_edge", payload=payload, keepalive=keepalive)
        return None

    async def update_edge(self, payload, *, keepalive=False):
        await self._record("update_edge", payload=payload, keepalive=keepalive)
        return {"ok": True}

    # -- Working memory ----------------------------------------------------------

    async def fetch_working_memory(self, session_id, project_id):
        await self._record("fetch_working_memory", session_id=session_id, project_id=project_id)
        return self.working_memory

    async def fetch_working_memory_context(self, params):
        await self._record("fetch_working_memory_context", params=params)
        if self.context_responses:
            return self.context_responses.pop(0)
        return None

    async def fetch_messages(self, params):
        await self._record("fetch_messages", params=params)
        return self.messages_response

    async def patch_working_memory(self, part, payload):
        await self._record(
            "patch_working_memory", part=WorkingMemoryPart(part).value, payload=payload,
        )
        return {"ok": True}

    async def update_node_working_history(self, node_id, project_id, working_history):
        await self._record(
            "update_node_working_history", node_id=node_id,
            project_id=project_id, working_history=working_history,
        )
        return {"ok": True}

    async def aclose(self):
        self.closed = True


def graph_payload():
    """Flat graph as the remote /api/graph endpoint returns it."""
    return {
        "nodes": [
            {"id": "p1", "label": "Book", "meta": {"builder": "project"}},
            {"id": "p2", "label": "Chapter", "meta": {"builder": "project"}},
            {"id": "e1", "label": "Hero", "meta": {"builder": "elements", "elementType": "Character"}},
        ],
        "edges": [
            {"from": "p1", "to": "p2", "type": "CHILD_OF"},
            {"from": "p2", "to": "e1", "type": "LINKS_TO"},
        ],
    }
