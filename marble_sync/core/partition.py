"""Structure Partitioner — flat node/edge lists → project graph, elements graph, cross-links.

Invariants:
    - Pure and stateless: same input, same output; inputs never mutated
    - A node belongs to exactly one subgraph (NodeKind via node_kinds.classify_node)
    - Edge type normalised: trimmed, upper-case, default LINKS_TO
    - Edges deduplicated by (from, to, type): later duplicates dropped, not merged
    - Edges with an endpoint outside the node set are dropped (dangling)
    - Output order follows input order

Design Decisions:
    - Per-node links derived from cross_links by graph_sanitize.reconcile_cross_links
      (one code path for fresh partitions and revalidated pre-partitioned payloads)
    - children tracked only for CHILD_OF edges between two project nodes
"""

import logging
from collections.abc import Iterable, Mapping

from marble_sync.core.domain_types import CHILD_OF_EDGE_TYPE, NodeKind
from marble_sync.core.graph_sanitize import (
    normalise_edge_type, normalise_id, reconcile_cross_links, sanitize_structure,
)
from marble_sync.core.node_kinds import behavior_for, classify_node, node_meta

logger = logging.getLogger(__name__)


def _build_node_entry(node: Mapping, node_id: str, kind: NodeKind) -> dict:
    behavior = behavior_for(kind)
    meta = node_meta(node)
    entry = {
        "id": node_id,
        "label": behavior.label_for(node, meta, node_id),
        "type": behavior.type_for(node, meta),
        "builder": kind.value,
    }
    if behavior.tracks_children:
        entry["children"] = []
    entry["links"] = []
    return entry


def partition(nodes: Iterable | None, edges: Iterable | None) -> dict:
    """Partition a flat graph into {project_graph, elements_graph, cross_links}."""
    project_graph: dict = {"nodes": [], "edges": []}
    elements_graph: dict = {"nodes": [], "edges": []}
    cross_links: list[dict] = []
    kinds: dict[str, NodeKind] = {}
    entries: dict[str, dict] = {}

    for node in nodes or []:
        if not isinstance(node, Mapping):
            continue
        node_id = normalise_id(node.get("id"))
        if not node_id or node_id in kinds:
            continue
        kind = classify_node(node)
        entry = _build_node_entry(node, node_id, kind)
        kinds[node_id] = kind
        entries[node_id] = entry
        target = project_graph if kind is NodeKind.PROJECT else elements_graph
        target["nodes"].append(entry)

    seen: set[tuple[str, str, str]] = set()
    dropped = 0
    for edge in edges or []:
        if not isinstance(edge, Mapping):
            continue
        from_id = normalise_id(edge.get("from"))
        to_id = normalise_id(edge.get("to"))
        from_kind, to_kind = kinds.get(from_id), kinds.get(to_id)
        if from_kind is None or to_kind is None:
            dropped += 1
            continue
        edge_type = normalise_edge_type(edge.get("type"))
        key = (from_id, to_id, edge_type)
        if key in seen:
            continue
        seen.add(key)
        record = {"from": from_id, "to": to_id, "type": edge_type}

        if from_kind is NodeKind.PROJECT and to_kind is NodeKind.PROJECT:
            project_graph["edges"].append(record)
            if edge_type == CHILD_OF_EDGE_TYPE:
                children = entries[from_id]["children"]
                if to_id not in children:
                    children.append(to_id)
        elif from_kind is NodeKind.ELEMENTS and to_kind is NodeKind.ELEMENTS:
            elements_graph["edges"].append(record)
        else:
            cross_links.append(record)

    if dropped:
        logger.debug(f"Partition dropped {dropped} dangling edge(s)")

    return reconcile_cross_links({
        "project_graph": project_graph,
        "elements_graph": elements_graph,
        "cross_links": cross_links,
    })


def structure_from_payload(payload: object) -> dict:
    """Remote graph response → partitioned structure.

    Pre-partitioned payloads (project_graph / elements_graph keys) are revalidated,
    flat {nodes, edges} payloads are partitioned.
    """
    if not isinstance(payload, Mapping):
        return partition([], [])
    if "project_graph" in payload or "elements_graph" in payload:
        return sanitize_structure(payload)
    nodes = payload.get("nodes")
    edges = payload.get("edges")
    return partition(
        nodes if isinstance(nodes, list) else [],
        edges if isinstance(edges, list) else [],
    )
