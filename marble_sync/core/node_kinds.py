"""Node Kinds — variant dispatch table for project vs elements nodes.

Invariants:
    - Every node classifies to exactly one NodeKind; unclassifiable → PROJECT
    - meta.builder wins over payload presence; payload presence wins over default
    - Label/type extraction never returns "" (falls back to id / kind default)

Design Decisions:
    - Frozen behaviour records keyed by NodeKind instead of runtime class lookup
    - Elements payload checked before project payload when builder is absent,
      matching how element nodes are serialised (elementType without elementData)
"""

from collections.abc import Mapping
from dataclasses import dataclass

from marble_sync.core.domain_types import NodeKind
from marble_sync.core.graph_sanitize import pick_first_string


@dataclass(frozen=True)
class NodeKindBehavior:
    """How one node kind is recognised and summarised."""
    kind: NodeKind
    payload_field: str
    marker_fields: tuple[str, ...]
    type_field: str | None
    default_type: str
    tracks_children: bool

    def has_payload(self, meta: Mapping) -> bool:
        return any(meta.get(name) is not None for name in (self.payload_field, *self.marker_fields))

    def label_for(self, node: Mapping, meta: Mapping, node_id: str) -> str:
        payload = meta.get(self.payload_field)
        payload = payload if isinstance(payload, Mapping) else {}
        return pick_first_string(
            payload.get("title"), node.get("label"), meta.get("title"), meta.get("name"),
        ) or node_id

    def type_for(self, node: Mapping, meta: Mapping) -> str:
        payload = meta.get(self.payload_field)
        payload = payload if isinstance(payload, Mapping) else {}
        return pick_first_string(
            payload.get("type"),
            meta.get(self.type_field) if self.type_field else None,
            meta.get("type"),
        ) or self.default_type


NODE_KINDS: dict[NodeKind, NodeKindBehavior] = {
    NodeKind.PROJECT: NodeKindBehavior(
        kind=NodeKind.PROJECT,
        payload_field="projectData",
        marker_fields=(),
        type_field=None,
        default_type="project",
        tracks_children=True,
    ),
    NodeKind.ELEMENTS: NodeKindBehavior(
        kind=NodeKind.ELEMENTS,
        payload_field="elementData",
        marker_fields=("elementType",),
        type_field="elementType",
        default_type="element",
        tracks_children=False,
    ),
}


def node_meta(node: Mapping) -> Mapping:
    meta = node.get("meta")
    return meta if isinstance(meta, Mapping) else {}


def classify_node(node: Mapping) -> NodeKind:
    """Discriminator first, builder-specific payload second, PROJECT by default."""
    meta = node_meta(node)
    builder = meta.get("builder")
    if isinstance(builder, str):
        try:
            return NodeKind(builder.strip().lower())
        except ValueError:
            pass
    for kind in (NodeKind.ELEMENTS, NodeKind.PROJECT):
        if NODE_KINDS[kind].has_payload(meta):
            return kind
    return NodeKind.PROJECT


def behavior_for(kind: NodeKind) -> NodeKindBehavior:
    return NODE_KINDS[kind]
