"""Graph Schemas — Pydantic models for node/edge wire bodies and structure responses.

Invariants:
    - Remote bodies serialise with wire aliases (from, to, metaUpdates)
    - Node updates carry metaUpdates (merged server-side), never a full meta
    - Edge endpoints are non-empty trimmed strings

Design Decisions:
    - Separate from working-memory schemas: graph bodies go to /api/node and
      /api/edge, working-memory bodies go to /api/working-memory (ADR: responsibility separation)
    - populate_by_name on aliased models: services build them with Python names
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marble_sync.core.domain_types import SaveStatus


def _strip_required(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("identifier cannot be empty or whitespace")
    return v


# --- Remote store bodies -----------------------------------------------------

class NodeUpdatePayload(BaseModel):
    """PATCH /api/node/{id} body: only the changed fields are set."""
    model_config = ConfigDict(populate_by_name=True)

    label: str | None = None
    content: str | None = None
    meta_updates: dict[str, Any] | None = Field(None, alias="metaUpdates")
    project_id: str | None = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class EdgePayload(BaseModel):
    """POST|DELETE|PATCH /api/edge body."""
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    type: str
    props: dict[str, Any] | None = None
    project_id: str | None = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Bridge requests ---------------------------------------------------------

class NodeMutation(BaseModel):
    """A node edit reported by the UI; marks the node dirty."""
    id: str = Field(min_length=1)
    label: str | None = None
    content: str | None = None
    meta: dict[str, Any] | None = None

    @field_validator("id")
    @classmethod
    def strip_id(cls, v: str) -> str:
        return _strip_required(v)


class LinkChangeRequest(BaseModel):
    """A link create/delete/update reported by the UI."""
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["create", "delete", "update"]
    from_id: str = Field(alias="from", min_length=1)
    to_id: str = Field(alias="to", min_length=1)
    type: str | None = None
    props: dict[str, Any] | None = None

    @field_validator("from_id", "to_id")
    @classmethod
    def strip_endpoint(cls, v: str) -> str:
        return _strip_required(v)

    def to_change(self) -> dict:
        return self.model_dump(by_alias=True)


# --- Responses ---------------------------------------------------------------

class AutosaveStatusResponse(BaseModel):
    status: SaveStatus
    has_pending: bool


class NodeLink(BaseModel):
    to: str
    type: str


class StructureNode(BaseModel):
    """A node entry inside a partitioned subgraph."""
    id: str
    label: str = ""
    type: str = ""
    builder: str = ""
    children: list[str] | None = None
    links: list[NodeLink] = []


class StructureEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    type: str


class StructureGraph(BaseModel):
    nodes: list[StructureNode] = []
    edges: list[StructureEdge] = []


class ProjectStructure(BaseModel):
    """Partitioned structure: project graph, elements graph, cross-links."""
    project_graph: StructureGraph = StructureGraph()
    elements_graph: StructureGraph = StructureGraph()
    cross_links: list[StructureEdge] = []


class ProjectStructureResponse(BaseModel):
    project_id: str
    structure: ProjectStructure
    warning: dict | None = None
