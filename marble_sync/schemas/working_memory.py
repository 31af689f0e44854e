"""Working Memory Schemas — Pydantic models for working-memory wire bodies.

Invariants:
    - WorkingMemoryPatch mirrors PATCH /api/working-memory/{part}
    - SettingsUpdate fields are all optional: absent means unchanged
    - Range clamping (history length, refresh interval) happens in the store, not here

Design Decisions:
    - Settings are accepted loosely and normalised by core/messages.py so the
      bridge and programmatic callers share one clamping rule
"""

from typing import Any

from pydantic import BaseModel, field_validator


class WorkingMemoryPatch(BaseModel):
    """Remote persistence body for one working-memory facet."""
    session_id: str = ""
    project_id: str = ""
    node_id: str | None = None
    value: Any = None
    options: dict[str, Any] | None = None

    def to_wire(self) -> dict:
        body = self.model_dump()
        if body["options"] is None:
            body.pop("options")
        return body


class WorkingHistoryUpdate(BaseModel):
    """PATCH /api/node/{id}/working-history body."""
    project_id: str
    working_history: str


class SessionUpdate(BaseModel):
    session_id: str | None = None
    project_id: str | None = None
    active_node_id: str | None = None

    @field_validator("session_id", "project_id", "active_node_id")
    @classmethod
    def strip_ids(cls, v: str | None) -> str | None:
        return v.strip() if isinstance(v, str) else v


class InitialiseRequest(SessionUpdate):
    """Bind a session/project and hydrate from the remote store."""


class SettingsUpdate(BaseModel):
    history_length: int | str | None = None
    include_project_structure: bool | None = None
    include_context: bool | None = None
    include_working_history: bool | None = None
    auto_refresh_interval: int | str | None = None

    def to_partial(self) -> dict:
        return self.model_dump(exclude_none=True)
