"""Graph Sanitisation — defensive ingestion and structural clone for partitioned graphs.

Invariants:
    - All functions are pure: inputs are never mutated, new dicts are returned
    - Malformed entries are dropped, missing fields default (never raise)
    - Every edge endpoint exists in its subgraph's node set (dangling edges dropped)
    - Per-node "links" are a derived index over cross_links, recomputed, never edited

Design Decisions:
    - Explicit per-type clone functions instead of a serialize round-trip
    - A flat {nodes, edges} payload handed to sanitize_structure is treated as the
      project graph (legacy callers push the project graph without wrapping it)
"""

from collections.abc import Mapping

from marble_sync.core.domain_types import DEFAULT_EDGE_TYPE


# ─── Scalars ─────────────────────────────────────────────────────

def safe_string(value: object) -> str:
    """None → "", everything else → str()."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def normalise_id(value: object) -> str:
    """Identity as a trimmed string ("" when absent)."""
    return safe_string(value).strip()


def normalise_edge_type(value: object) -> str:
    """Edge types are trimmed and upper-cased, defaulting to LINKS_TO."""
    if isinstance(value, str) and value.strip():
        return value.strip().upper()
    return DEFAULT_EDGE_TYPE


def pick_first_string(*candidates: object) -> str:
    """First non-blank string among candidates (trimmed), else ""."""
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


# ─── Factories ───────────────────────────────────────────────────

def empty_graph() -> dict:
    return {"nodes": [], "edges": []}


def empty_structure() -> dict:
    return {
        "project_graph": empty_graph(),
        "elements_graph": empty_graph(),
        "cross_links": [],
    }


def is_empty_structure(structure: Mapping | None) -> bool:
    """True when both subgraphs have zero nodes and zero edges and no cross-links."""
    if not isinstance(structure, Mapping):
        return True
    for key in ("project_graph", "elements_graph"):
        graph = structure.get(key)
        if isinstance(graph, Mapping) and (graph.get("nodes") or graph.get("edges")):
            return False
    return not structure.get("cross_links")


# ─── Clone ───────────────────────────────────────────────────────

def clone_node(node: Mapping) -> dict:
    copied = dict(node)
    if isinstance(node.get("children"), list):
        copied["children"] = list(node["children"])
    if isinstance(node.get("links"), list):
        copied["links"] = [dict(link) for link in node["links"]]
    return copied


def clone_graph(graph: Mapping | None) -> dict:
    if not isinstance(graph, Mapping):
        return empty_graph()
    return {
        "nodes": [clone_node(n) for n in graph.get("nodes") or []],
        "edges": [dict(e) for e in graph.get("edges") or []],
    }


def clone_structure(structure: Mapping | None) -> dict:
    """Structural copy — callers never receive the live cached object."""
    if not isinstance(structure, Mapping):
        return empty_structure()
    return {
        "project_graph": clone_graph(structure.get("project_graph")),
        "elements_graph": clone_graph(structure.get("elements_graph")),
        "cross_links": [dict(link) for link in structure.get("cross_links") or []],
    }


# ─── Entries ─────────────────────────────────────────────────────

def _sanitize_links(links: object) -> list[dict]:
    if not isinstance(links, list):
        return []
    result = []
    for link in links:
        if not isinstance(link, Mapping):
            continue
        target = normalise_id(link.get("to"))
        if target:
            result.append({"to": target, "type": normalise_edge_type(link.get("type"))})
    return result


def sanitize_graph_node(node: object) -> dict | None:
    """Keep id/label/type/builder (+ children/links when supplied)."""
    if not isinstance(node, Mapping):
        return None
    node_id = normalise_id(node.get("id"))
    if not node_id:
        return None
    label = node.get("label")
    if label is None:
        label = node.get("title")
    entry = {
        "id": node_id,
        "label": safe_string(label),
        "type": safe_string(node.get("type")),
        "builder": safe_string(node.get("builder")),
    }
    children = node.get("children")
    if isinstance(children, list):
        entry["children"] = [c for c in (normalise_id(v) for v in children) if c]
    if "links" in node:
        entry["links"] = _sanitize_links(node.get("links"))
    return entry


def sanitize_graph_edge(edge: object) -> dict | None:
    if not isinstance(edge, Mapping):
        return None
    from_id = normalise_id(edge.get("from"))
    to_id = normalise_id(edge.get("to"))
    if not from_id or not to_id:
        return None
    return {"from": from_id, "to": to_id, "type": normalise_edge_type(edge.get("type"))}


def sanitize_graph(graph: object) -> dict:
    """Sanitised {nodes, edges}; duplicate nodes and dangling/duplicate edges dropped."""
    if not isinstance(graph, Mapping):
        return empty_graph()
    nodes: list[dict] = []
    seen_ids: set[str] = set()
    for raw in graph.get("nodes") or []:
        node = sanitize_graph_node(raw)
        if node and node["id"] not in seen_ids:
            seen_ids.add(node["id"])
            nodes.append(node)
    edges: list[dict] = []
    seen_edges: set[tuple[str, str, str]] = set()
    for raw in graph.get("edges") or []:
        edge = sanitize_graph_edge(raw)
        if not edge or edge["from"] not in seen_ids or edge["to"] not in seen_ids:
            continue
        key = (edge["from"], edge["to"], edge["type"])
        if key not in seen_edges:
            seen_edges.add(key)
            edges.append(edge)
    return {"nodes": nodes, "edges": edges}


def _sanitize_cross_links(links: object) -> list[dict]:
    if not isinstance(links, list):
        return []
    return [e for e in (sanitize_graph_edge(link) for link in links) if e]


# ─── Cross-link index ────────────────────────────────────────────

def _cross_links_from_node_links(project_ids: set, element_ids: set, nodes: list[dict]) -> list[dict]:
    """Rebuild cross_links from per-node links (pre-partitioned payloads without them)."""
    result = []
    for node in nodes:
        for link in node.get("links") or []:
            target = link["to"]
            crosses = (node["id"] in project_ids and target in element_ids) or (
                node["id"] in element_ids and target in project_ids
            )
            if crosses:
                result.append({"from": node["id"], "to": target, "type": link["type"]})
    return result


def reconcile_cross_links(structure: dict, derive_from_nodes: bool = False) -> dict:
    """Drop non-crossing/dangling cross-links and recompute every node's links.

    derive_from_nodes also reads cross-links off per-node links; only for payloads
    that carry no cross_links key. An explicit empty list stays empty.
    Mutates and returns the given (already sanitised, caller-owned) structure.
    """
    project_nodes = structure["project_graph"]["nodes"]
    element_nodes = structure["elements_graph"]["nodes"]
    project_ids = {n["id"] for n in project_nodes}
    element_ids = {n["id"] for n in element_nodes}

    candidates = list(structure.get("cross_links") or [])
    if derive_from_nodes:
        candidates += _cross_links_from_node_links(
            project_ids, element_ids, project_nodes + element_nodes,
        )
    cross_links: list[dict] = []
    seen: set[tuple[str, str, str]] = set()
    for link in candidates:
        a, b = link["from"], link["to"]
        crosses = (a in project_ids and b in element_ids) or (a in element_ids and b in project_ids)
        if not crosses:
            continue
        low, high = sorted((a, b))
        key = (low, high, link["type"])
        if key in seen:
            continue
        seen.add(key)
        cross_links.append({"from": a, "to": b, "type": link["type"]})
    structure["cross_links"] = cross_links

    index: dict[str, list[dict]] = {}
    for link in cross_links:
        for source, target in ((link["from"], link["to"]), (link["to"], link["from"])):
            bucket = index.setdefault(source, [])
            entry = {"to": target, "type": link["type"]}
            if entry not in bucket:
                bucket.append(entry)
    for node in project_nodes + element_nodes:
        node["links"] = index.get(node["id"], [])
    return structure


# ─── Structure ───────────────────────────────────────────────────

def sanitize_structure(structure: object, fallback: Mapping | None = None) -> dict:
    """Revalidate a partitioned structure, filling absent parts from fallback."""
    base = sanitize_structure(fallback) if isinstance(fallback, Mapping) else empty_structure()
    if not isinstance(structure, Mapping):
        return base
    has_project = "project_graph" in structure
    has_elements = "elements_graph" in structure
    if has_project or has_elements or "cross_links" in structure:
        result = {
            "project_graph": sanitize_graph(structure["project_graph"]) if has_project
            else base["project_graph"],
            "elements_graph": sanitize_graph(structure["elements_graph"]) if has_elements
            else base["elements_graph"],
            "cross_links": _sanitize_cross_links(structure["cross_links"])
            if "cross_links" in structure else base["cross_links"],
        }
    elif "nodes" in structure or "edges" in structure:
        result = {
            "project_graph": sanitize_graph(structure),
            "elements_graph": base["elements_graph"],
            "cross_links": base["cross_links"],
        }
    else:
        result = base
    for node in result["project_graph"]["nodes"]:
        node.setdefault("children", [])
    return reconcile_cross_links(
        result, derive_from_nodes="cross_links" not in structure,
    )


def merge_structure_parts(current: Mapping | None, incoming: object) -> dict:
    """Parts present in incoming replace current's; absent parts are kept."""
    return sanitize_structure(incoming, fallback=current)
