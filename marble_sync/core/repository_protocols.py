"""Boundary Protocols — contracts between the sync core and the remote store.

Invariants:
    - Core NEVER imports from infrastructure — dependency arrows point inward only
    - All remote IO accessed through the RemoteStore Protocol
    - Implementations provided by the composition root via constructor injection

Design Decisions:
    - Protocol over ABC: structural subtyping, test fakes need no inheritance
    - Async in Protocol: boundary methods are async because implementations do IO,
      the pure core functions that shape their payloads are never async
"""

from typing import Protocol

from marble_sync.core.domain_types import WorkingMemoryPart


class PersistableNode(Protocol):
    """A node object the editor owns; the committer reads it via to_persistence()."""
    id: str

    def to_persistence(self) -> dict: ...


class RemoteStore(Protocol):
    """Contract for the editor's remote graph/working-memory store."""
    async def fetch_graph(self, project_id: str) -> dict | None: ...
    async def update_node(
        self, node_id: str, payload: dict, *, keepalive: bool = False,
    ) -> dict | None: ...
    async def create_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None: ...
    async def delete_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None: ...
    async def update_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None: ...
    async def fetch_working_memory(
        self, session_id: str, project_id: str,
    ) -> dict | None: ...
    async def fetch_working_memory_context(self, params: dict) -> dict | None: ...
    async def fetch_messages(self, params: dict) -> dict | None: ...
    async def patch_working_memory(
        self, part: WorkingMemoryPart, payload: dict,
    ) -> dict | None: ...
    async def update_node_working_history(
        self, node_id: str, project_id: str, working_history: str,
    ) -> dict | None: ...


class WorkingMemoryRefresher(Protocol):
    """What the committer needs from the working memory store after a commit."""
    async def refresh(
        self, project_id: str | None = None, node_id: str | None = None,
        reason: str = "manual", *, active_only: bool = False,
    ) -> None: ...


class StructureRebuilder(Protocol):
    """What the committer needs from the structure service after a commit."""
    async def rebuild_structure(self, project_id: str) -> dict: ...
