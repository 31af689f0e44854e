"""Working Memory Snapshot — pure construction, visibility gating and node scoping.

Invariants:
    - Snapshot shape: session, project_structure, node_context, fetched_context,
      working_history, messages, messages_meta, last_user_message, config
    - len(messages) <= config.history_length, chronological order
    - A hidden facet is cleared from the visible snapshot but kept in
      HiddenStructure until its visibility flag is re-enabled (no data loss)
    - Node-scoped views never raise: unknown nodes scope to empty structure/messages

Design Decisions:
    - apply_visibility mutates the memory/hidden objects it is handed (the store
      owns both); every other function returns new objects
    - Structure is frozen into the holding area on first hide only; later hidden
      updates merge into the frozen copy, re-enabling merges it back
    - clone_memory is explicit per facet; fetched_context is free-form JSON and is
      the only facet copied with copy.deepcopy
"""

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from marble_sync.core.domain_types import DEFAULT_HISTORY_LENGTH
from marble_sync.core.graph_sanitize import (
    clone_graph, clone_structure, empty_structure, merge_structure_parts,
    normalise_id, safe_string, sanitize_graph, sanitize_structure,
)
from marble_sync.core.messages import (
    derive_last_user_message, limit_messages,
    normalise_auto_refresh_interval, normalise_history_length,
    sanitize_messages_meta,
)

DEFAULT_CONFIG: dict = {
    "history_length": DEFAULT_HISTORY_LENGTH,
    "include_project_structure": True,
    "include_context": True,
    "include_working_history": True,
    "auto_refresh_interval": 0,
}

CONTEXT_FACETS = ("node_context", "fetched_context")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Facet sanitisers ────────────────────────────────────────────

def sanitize_config(source: object, base: Mapping | None = None) -> dict:
    """Merge a partial config over base (defaults when absent), coercing types."""
    base = dict(base) if isinstance(base, Mapping) else dict(DEFAULT_CONFIG)
    src = source if isinstance(source, Mapping) else {}

    def pick(key):
        value = src.get(key)
        return base.get(key, DEFAULT_CONFIG[key]) if value is None else value

    return {
        "history_length": normalise_history_length(pick("history_length")),
        "include_project_structure": bool(pick("include_project_structure")),
        "include_context": bool(pick("include_context")),
        "include_working_history": bool(pick("include_working_history")),
        "auto_refresh_interval": normalise_auto_refresh_interval(pick("auto_refresh_interval")),
    }


def _sanitize_custom_fields(items: object) -> list[dict]:
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        key = safe_string(item.get("key")).strip()
        value = safe_string(item.get("value"))
        if key or value:
            result.append({"key": key, "value": value})
    return result


def _sanitize_linked_elements(items: object) -> list[dict]:
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        item_id = safe_string(item.get("id"))
        if item_id:
            result.append({
                "id": item_id,
                "label": safe_string(item.get("label") or item_id),
                "type": safe_string(item.get("type")),
            })
    return result


def _sanitize_context_meta(meta: object, fallback: Mapping) -> dict:
    source = meta if isinstance(meta, Mapping) else {}
    result: dict = {}
    notes = source.get("notes", fallback.get("notes"))
    if isinstance(notes, str) and notes.strip():
        result["notes"] = notes
    custom = _sanitize_custom_fields(source.get("customFields", fallback.get("customFields")))
    if custom:
        result["customFields"] = custom
    linked = _sanitize_linked_elements(
        source.get("linked_elements", fallback.get("linked_elements")),
    )
    if linked:
        result["linked_elements"] = linked
    return result


def sanitize_node_context(context: object) -> dict:
    if not isinstance(context, Mapping) or not context:
        return {}
    return {
        "id": safe_string(context.get("id", context.get("node_id"))),
        "label": safe_string(context.get("label", context.get("title"))),
        "type": safe_string(context.get("type", context.get("builder"))),
        "meta": _sanitize_context_meta(context.get("meta"), context),
    }


def sanitize_fetched_context(context: object) -> dict:
    if not isinstance(context, Mapping):
        return {}
    return copy.deepcopy(dict(context))


def coerce_working_history(value: object) -> str:
    """String as-is, {"text": ...} unwrapped, anything else JSON-encoded."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and value.get("text"):
        return safe_string(value["text"])
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


# ─── Whole snapshot ──────────────────────────────────────────────

def resolve_messages(
    messages: object, meta: object, history_length: object, last_user: object = None,
) -> tuple[list[dict], dict, str]:
    """Bounded chronological messages plus metadata; last_user_message is derived
    from the retained messages first, then metadata, then the explicit fallback."""
    limited = limit_messages(messages, history_length)
    resolved_meta = sanitize_messages_meta(meta, last_user_fallback=safe_string(last_user))
    resolved = derive_last_user_message(limited) or resolved_meta["last_user_message"]
    resolved_meta["last_user_message"] = resolved
    return limited, resolved_meta, resolved


def _structure_from(source: Mapping, base: Mapping | None) -> dict:
    """project_structure, or loose project_graph/elements_graph keys, over base."""
    structure = merge_structure_parts(base, source.get("project_structure"))
    parts = {
        key: source[key] for key in ("project_graph", "elements_graph")
        if source.get(key) is not None
    }
    return merge_structure_parts(structure, parts) if parts else structure


def build_default_memory(overrides: Mapping | None = None, defaults: Mapping | None = None) -> dict:
    """Fresh snapshot; overrides may pre-populate any facet."""
    src = overrides if isinstance(overrides, Mapping) else {}
    session = src.get("session") if isinstance(src.get("session"), Mapping) else {}
    config = sanitize_config(src.get("config"), base=sanitize_config(defaults))
    messages, meta, last_user = resolve_messages(
        src.get("messages"), src.get("messages_meta"), config["history_length"],
        src.get("last_user_message"),
    )
    return {
        "session": {
            "session_id": safe_string(session.get("session_id")),
            "project_id": safe_string(session.get("project_id")),
            "active_node_id": safe_string(session.get("active_node_id")),
            "timestamp": session.get("timestamp") or now_iso(),
        },
        "project_structure": _structure_from(src, None),
        "node_context": sanitize_node_context(src.get("node_context")),
        "fetched_context": sanitize_fetched_context(src.get("fetched_context")),
        "working_history": coerce_working_history(src.get("working_history")),
        "messages": messages,
        "messages_meta": meta,
        "last_user_message": last_user,
        "config": config,
    }


def sanitize_memory_snapshot(snapshot: object, current: Mapping | None = None) -> dict:
    """Merge a remote full snapshot over current state; absent facets keep current values."""
    base = clone_memory(current) if isinstance(current, Mapping) else build_default_memory()
    if not isinstance(snapshot, Mapping):
        return base
    session = snapshot.get("session") if isinstance(snapshot.get("session"), Mapping) else {}
    config = sanitize_config(snapshot.get("config"), base=base["config"])
    messages_source = snapshot.get("messages", base["messages"])
    meta_source = snapshot.get("messages_meta", base["messages_meta"])
    messages, meta, last_user = resolve_messages(
        messages_source, meta_source, config["history_length"], snapshot.get("last_user_message"),
    )

    def keep(key, sanitize):
        value = snapshot.get(key)
        return sanitize(base[key] if value is None else value)

    return {
        "session": {
            "session_id": safe_string(session.get("session_id", base["session"]["session_id"])),
            "project_id": safe_string(session.get("project_id", base["session"]["project_id"])),
            "active_node_id": safe_string(
                session.get("active_node_id", base["session"]["active_node_id"]),
            ),
            "timestamp": session.get("timestamp") or base["session"]["timestamp"],
        },
        "project_structure": _structure_from(snapshot, base["project_structure"]),
        "node_context": keep("node_context", sanitize_node_context),
        "fetched_context": keep("fetched_context", sanitize_fetched_context),
        "working_history": keep("working_history", coerce_working_history),
        "messages": messages,
        "messages_meta": meta,
        "last_user_message": last_user,
        "config": config,
    }


def clone_memory(memory: Mapping) -> dict:
    return {
        "session": dict(memory["session"]),
        "project_structure": clone_structure(memory["project_structure"]),
        "node_context": copy.deepcopy(memory["node_context"]),
        "fetched_context": copy.deepcopy(memory["fetched_context"]),
        "working_history": memory["working_history"],
        "messages": [dict(m) for m in memory["messages"]],
        "messages_meta": dict(memory["messages_meta"]),
        "last_user_message": memory["last_user_message"],
        "config": dict(memory["config"]),
    }


# ─── Visibility gate ─────────────────────────────────────────────

@dataclass
class HiddenStructure:
    """Holding area for facets hidden by config flags."""

    structure: dict | None = None
    structure_frozen: bool = False
    facets: dict = field(default_factory=dict)

    def reset(self) -> None:
        self.structure = None
        self.structure_frozen = False
        self.facets.clear()

    def reset_structure(self) -> None:
        self.structure = None
        self.structure_frozen = False

    def thaw(self) -> None:
        self.structure_frozen = False

    def structure_snapshot(self) -> dict:
        return sanitize_structure(self.structure)

    def absorb(self, visible: Mapping) -> None:
        """Freeze the visible structure into the holding area (first hide only)."""
        if self.structure_frozen:
            return
        self.structure = merge_structure_parts(self.structure, visible)
        self.structure_frozen = True

    def update_part(self, key: str, graph: object) -> tuple[bool, dict]:
        previous = self.structure_snapshot()
        merged = merge_structure_parts(previous, {key: sanitize_graph(graph)})
        self.structure = merged
        self.structure_frozen = True
        return previous[key] != merged[key], clone_graph(merged[key])

    def update(self, structure: object) -> tuple[bool, bool, dict]:
        previous = self.structure_snapshot()
        merged = merge_structure_parts(previous, structure)
        self.structure = merged
        self.structure_frozen = True
        return (
            previous["project_graph"] != merged["project_graph"],
            previous["elements_graph"] != merged["elements_graph"],
            clone_structure(merged),
        )


def apply_visibility(memory: dict, hidden: HiddenStructure) -> None:
    """Gate facets by config flags and re-bound messages (mutates both arguments)."""
    config = memory["config"]
    if not config["include_project_structure"]:
        hidden.absorb(memory["project_structure"])
        memory["project_structure"] = empty_structure()
    elif hidden.structure is not None:
        memory["project_structure"] = merge_structure_parts(
            memory["project_structure"], hidden.structure,
        )
        hidden.reset_structure()
    else:
        hidden.thaw()

    facet_flags = [(name, "include_context") for name in CONTEXT_FACETS]
    facet_flags.append(("working_history", "include_working_history"))
    for name, flag in facet_flags:
        empty = "" if name == "working_history" else {}
        if not config[flag]:
            if memory[name]:
                hidden.facets[name] = memory[name]
            memory[name] = empty
        elif name in hidden.facets:
            memory[name] = hidden.facets.pop(name)

    messages, meta, last_user = resolve_messages(
        memory["messages"], memory["messages_meta"], config["history_length"],
    )
    memory["messages"] = messages
    memory["messages_meta"] = meta
    memory["last_user_message"] = last_user


# ─── Node scope ──────────────────────────────────────────────────

def _neighbours(edges: list[dict], target: str) -> set[str]:
    ids: set[str] = set()
    for edge in edges:
        if edge["from"] == target:
            ids.add(edge["to"])
        if edge["to"] == target:
            ids.add(edge["from"])
    return ids


def _scope_graph(graph: dict, target: str) -> dict:
    keep = _neighbours(graph["edges"], target) | {target}
    return {
        "nodes": [n for n in graph["nodes"] if n["id"] in keep],
        "edges": [e for e in graph["edges"] if target in (e["from"], e["to"])],
    }


def _scope_messages(scoped: dict, messages: list[dict], meta: Mapping) -> None:
    scoped["messages"] = messages
    last_user = derive_last_user_message(messages)
    scoped["messages_meta"] = {
        **sanitize_messages_meta(meta),
        "filtered_count": len(messages),
        "last_user_message": last_user,
    }
    scoped["last_user_message"] = last_user


def build_node_scoped_snapshot(snapshot: Mapping, node_id: object = None) -> dict:
    """Restrict a snapshot to one node and its 1-hop neighbourhood."""
    scoped = clone_memory(snapshot)
    structure = sanitize_structure(snapshot["project_structure"])
    target = normalise_id(node_id) or normalise_id(scoped["session"]["active_node_id"])
    if not target:
        scoped["project_structure"] = structure
        return scoped

    project, elements = structure["project_graph"], structure["elements_graph"]
    in_project = any(n["id"] == target for n in project["nodes"])
    in_elements = any(n["id"] == target for n in elements["nodes"])
    if not in_project and not in_elements:
        scoped["project_structure"] = empty_structure()
        _scope_messages(scoped, [], snapshot["messages_meta"])
        return scoped

    cross_links = [c for c in structure["cross_links"] if target in (c["from"], c["to"])]
    linked = _neighbours(cross_links, target)
    owning, other = ("project_graph", "elements_graph") if in_project else (
        "elements_graph", "project_graph",
    )
    scoped["project_structure"] = {
        owning: _scope_graph(structure[owning], target),
        other: {
            "nodes": [n for n in structure[other]["nodes"] if n["id"] in linked],
            "edges": [],
        },
        "cross_links": cross_links,
    }
    messages = [
        dict(m) for m in snapshot["messages"]
        if not m.get("node_id") or m.get("node_id") == target
    ]
    _scope_messages(scoped, messages, snapshot["messages_meta"])
    return scoped

