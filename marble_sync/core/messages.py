"""Messages — sanitisation, chronological ordering and bounded history for working memory.

Invariants:
    - Ordering: created_at timestamp, then numeric id, then lexical id
    - limit_messages keeps the most recent N (N clamped to [1, MAX_HISTORY_LENGTH])
    - last_user_message is the content of the last non-empty role=user entry
    - Returns NEW lists — never mutates input

Design Decisions:
    - Unparseable timestamps sort as epoch 0 rather than raising
    - Naive timestamps are read as UTC (the remote store writes UTC)
"""

import functools
from collections.abc import Mapping
from datetime import datetime, timezone

from marble_sync.core.domain_types import (
    DEFAULT_HISTORY_LENGTH, MAX_AUTO_REFRESH_INTERVAL, MAX_HISTORY_LENGTH,
)
from marble_sync.core.graph_sanitize import safe_string


# === Normalisers ==============================================================

def _parse_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def normalise_history_length(value: object, default: int = DEFAULT_HISTORY_LENGTH) -> int:
    """Non-numeric → default; numeric → clamped to [1, MAX_HISTORY_LENGTH]."""
    parsed = _parse_int(value)
    if parsed is None:
        parsed = default
    return max(1, min(parsed, MAX_HISTORY_LENGTH))


def normalise_auto_refresh_interval(value: object) -> int:
    """Seconds between automatic refreshes; 0 disables, capped at MAX_AUTO_REFRESH_INTERVAL."""
    parsed = _parse_int(value)
    if parsed is None or parsed < 0:
        return 0
    return min(parsed, MAX_AUTO_REFRESH_INTERVAL)


# === Messages =================================================================

def sanitize_message(message: object) -> dict | None:
    if not isinstance(message, Mapping):
        return None
    created_at = message.get("created_at")
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat()
    node_id = message.get("node_id")
    return {
        "id": safe_string(message.get("id")),
        "session_id": safe_string(message.get("session_id")),
        "node_id": None if node_id in (None, "") else safe_string(node_id),
        "role": safe_string(message.get("role") or "user"),
        "message_type": safe_string(message.get("message_type")),
        "content": safe_string(message.get("content")),
        "created_at": safe_string(created_at),
    }


def _timestamp(value: str) -> float:
    if not value:
        return 0.0
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _numeric_id(value: str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def compare_messages(a: Mapping, b: Mapping) -> int:
    """Chronological comparator: timestamp, then numeric id, then lexical id."""
    a_time, b_time = _timestamp(a.get("created_at", "")), _timestamp(b.get("created_at", ""))
    if a_time != b_time:
        return -1 if a_time < b_time else 1
    a_id, b_id = safe_string(a.get("id")), safe_string(b.get("id"))
    a_num, b_num = _numeric_id(a_id), _numeric_id(b_id)
    if a_num is not None and b_num is not None and a_num != b_num:
        return -1 if a_num < b_num else 1
    if a_id != b_id:
        return -1 if a_id < b_id else 1
    return 0


def sort_messages(messages: list[dict]) -> list[dict]:
    return sorted(messages, key=functools.cmp_to_key(compare_messages))


def limit_messages(messages: object, history_length: object = DEFAULT_HISTORY_LENGTH) -> list[dict]:
    """Sanitise, order chronologically, keep the most recent history_length."""
    items = messages if isinstance(messages, list) else []
    ordered = sort_messages([m for m in (sanitize_message(i) for i in items) if m])
    limit = normalise_history_length(history_length)
    return ordered[-limit:]


def derive_last_user_message(messages: list[Mapping]) -> str:
    last = ""
    for entry in messages:
        if entry.get("role") == "user" and entry.get("content"):
            last = entry["content"]
    return last


# === Metadata =================================================================

def default_messages_meta() -> dict:
    return {
        "total_count": 0,
        "filtered_count": 0,
        "has_more": False,
        "next_cursor": None,
        "last_user_message": "",
    }


def sanitize_messages_meta(meta: object, last_user_fallback: str = "") -> dict:
    """Counts/cursor/last_user_message with safe defaults."""
    result = default_messages_meta()
    if not isinstance(meta, Mapping):
        result["last_user_message"] = safe_string(last_user_fallback)
        return result
    for key in ("total_count", "filtered_count"):
        parsed = _parse_int(meta.get(key))
        if parsed is not None and parsed >= 0:
            result[key] = parsed
    if meta.get("has_more") is not None:
        result["has_more"] = bool(meta.get("has_more"))
    cursor = meta.get("next_cursor", meta.get("cursor"))
    if cursor not in (None, ""):
        result["next_cursor"] = safe_string(cursor)
    last_user = meta.get("last_user_message")
    if isinstance(last_user, str) and last_user.strip():
        result["last_user_message"] = last_user
    else:
        result["last_user_message"] = safe_string(last_user_fallback)
    synced = meta.get("last_synced_at")
    if isinstance(synced, str) and synced.strip():
        result["last_synced_at"] = synced
    return result
