"""Link Merge Policy — coalesces pending edge mutations into one net action per edge.

Invariants:
    - Key is order-independent: (A, B, T) and (B, A, T) collide
    - create + delete before commit → None (entry cancelled, nothing to send)
    - delete wins over a later update
    - update over create folds props into the pending create
    - update over update replaces the pending props
    - Returned entries are new dicts; the existing entry is never mutated

Design Decisions:
    - Pure function over plain dicts so the merge table is testable without timers
    - create over delete/update becomes create with the incoming props
"""

from collections.abc import Mapping

from marble_sync.core.domain_types import EdgeKey, LinkAction
from marble_sync.core.graph_sanitize import normalise_edge_type, normalise_id


def build_edge_key(from_id: object, to_id: object, edge_type: object = None) -> EdgeKey:
    low, high = sorted((normalise_id(from_id), normalise_id(to_id)))
    return (low, high, normalise_edge_type(edge_type))


def _entry(action: LinkAction, key: EdgeKey, props: Mapping | None) -> dict:
    return {
        "action": action,
        "from": key[0],
        "to": key[1],
        "type": key[2],
        "props": dict(props or {}),
    }


def merge_link_change(existing: Mapping | None, change: Mapping) -> dict | None:
    """Apply one incoming change over the pending entry for the same edge key.

    Returns the new pending entry, or None when the pair cancels out.
    Raises ValueError for an unknown action.
    """
    key = build_edge_key(change.get("from"), change.get("to"), change.get("type"))
    action = LinkAction(change.get("action"))
    props = change.get("props") if isinstance(change.get("props"), Mapping) else {}
    current = LinkAction(existing["action"]) if existing else None

    if action is LinkAction.CREATE:
        return _entry(LinkAction.CREATE, key, props)

    if action is LinkAction.DELETE:
        if current is LinkAction.CREATE:
            return None
        return _entry(LinkAction.DELETE, key, None)

    # UPDATE
    if current is LinkAction.DELETE:
        return dict(existing)
    if current is LinkAction.CREATE:
        return _entry(LinkAction.CREATE, key, {**existing["props"], **props})
    return _entry(LinkAction.UPDATE, key, props)
