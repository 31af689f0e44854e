"""Messages — tests for normalisers, chronological ordering and bounded history.

Invariants:
    - history_length: non-numeric → 20, numeric clamped to [1, 200]
    - Ordering: timestamp, then numeric id, then lexical id
    - limit_messages keeps the most recent N
"""

from marble_sync.core.messages import (
    derive_last_user_message, limit_messages, normalise_auto_refresh_interval,
    normalise_history_length, sanitize_message, sanitize_messages_meta,
)


# -- Normalisers ---------------------------------------------------------------

def test_history_length_clamped():
    assert normalise_history_length(0) == 1
    assert normalise_history_length(-4) == 1
    assert normalise_history_length(500) == 200
    assert normalise_history_length("50") == 50
    assert normalise_history_length(7.9) == 7


def test_history_length_non_numeric_uses_default():
    assert normalise_history_length("abc") == 20
    assert normalise_history_length(None) == 20
    assert normalise_history_length(True) == 20


def test_auto_refresh_interval_bounds():
    assert normalise_auto_refresh_interval(-5) == 0
    assert normalise_auto_refresh_interval("junk") == 0
    assert normalise_auto_refresh_interval(30) == 30
    assert normalise_auto_refresh_interval(10_000) == 600


# -- Ordering ------------------------------------------------------------------

def test_messages_sorted_by_timestamp_then_id():
    messages = [
        {"id": "10", "content": "c", "created_at": "2024-01-01T00:00:01Z"},
        {"id": "2", "content": "b", "created_at": "2024-01-01T00:00:01Z"},
        {"id": "x", "content": "a", "created_at": "2024-01-01T00:00:00Z"},
    ]
    ordered = limit_messages(messages, 10)
    assert [m["id"] for m in ordered] == ["x", "2", "10"]


def test_lexical_id_breaks_ties_for_non_numeric_ids():
    messages = [
        {"id": "b", "created_at": "2024-01-01T00:00:00Z"},
        {"id": "a", "created_at": "2024-01-01T00:00:00Z"},
    ]
    assert [m["id"] for m in limit_messages(messages, 10)] == ["a", "b"]


def test_unparseable_timestamp_sorts_first():
    messages = [
        {"id": "1", "created_at": "2024-01-01T00:00:00Z"},
        {"id": "2", "created_at": "not a date"},
    ]
    assert [m["id"] for m in limit_messages(messages, 10)] == ["2", "1"]


def test_limit_keeps_most_recent():
    messages = [
        {"id": str(i), "created_at": f"2024-01-01T00:00:0{i}Z"} for i in range(5)
    ]
    assert [m["id"] for m in limit_messages(messages, 2)] == ["3", "4"]


def test_malformed_entries_dropped_and_input_untouched():
    messages = [None, "text", {"id": 1, "content": "hi"}]
    result = limit_messages(messages, 5)
    assert len(result) == 1
    assert result[0]["id"] == "1"
    assert result[0]["role"] == "user"
    assert messages[2] == {"id": 1, "content": "hi"}


def test_sanitize_message_blank_node_id_is_none():
    assert sanitize_message({"id": "1", "node_id": ""})["node_id"] is None


# -- Last user message ---------------------------------------------------------

def test_last_user_message_skips_empty_and_assistant():
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": ""},
    ]
    assert derive_last_user_message(messages) == "first"


def test_last_user_message_empty_history():
    assert derive_last_user_message([]) == ""


# -- Metadata ------------------------------------------------------------------

def test_meta_defaults_and_cursor_alias():
    meta = sanitize_messages_meta({"total_count": "12", "cursor": "abc", "has_more": 1})
    assert meta["total_count"] == 12
    assert meta["filtered_count"] == 0
    assert meta["next_cursor"] == "abc"
    assert meta["has_more"] is True


def test_meta_last_user_fallback():
    assert sanitize_messages_meta(None, "hello")["last_user_message"] == "hello"
    assert sanitize_messages_meta({"last_user_message": "  "}, "x")["last_user_message"] == "x"
