"""Domain Types — rich types that replace bare primitives across the sync core.

Invariants:
    - NodeId, ProjectId, SessionId wrap str — identities are always strings after ingestion
    - All valid states encoded as Enums — no raw string matching in services
    - Edge types are upper-case; LINKS_TO is the default type

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON without custom encoders (status flows to the UI as-is)
"""

from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

NodeId = NewType("NodeId", str)
ProjectId = NewType("ProjectId", str)
SessionId = NewType("SessionId", str)

EdgeKey = tuple[str, str, str]  # (sorted_from, sorted_to, TYPE)


# ─── Constants ───────────────────────────────────────────────────

DEFAULT_EDGE_TYPE = "LINKS_TO"
CHILD_OF_EDGE_TYPE = "CHILD_OF"

MAX_HISTORY_LENGTH = 200
DEFAULT_HISTORY_LENGTH = 20
MAX_AUTO_REFRESH_INTERVAL = 600  # seconds


# ─── Enums ───────────────────────────────────────────────────────

class NodeKind(str, Enum):
    """Logical subgraph a node belongs to — decided by meta.builder."""
    PROJECT = "project"
    ELEMENTS = "elements"


class SaveStatus(str, Enum):
    """Autosave status machine: idle → dirty → saving → saved → idle | error."""
    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class LinkAction(str, Enum):
    """Pending edge mutation kind."""
    CREATE = "create"
    DELETE = "delete"
    UPDATE = "update"


class LinkOutcome(str, Enum):
    """What committing one link entry changed remotely."""
    STRUCTURE = "structure"  # create/delete: partition must be rebuilt
    PROPS = "props"          # update: props only
    NONE = "none"            # nothing sent


class WorkingMemoryPart(str, Enum):
    """Remotely persisted working-memory fields (PATCH /working-memory/{part})."""
    SESSION = "session"
    PROJECT_GRAPH = "project_graph"
    ELEMENTS_GRAPH = "elements_graph"
    NODE_CONTEXT = "node_context"
    FETCHED_CONTEXT = "fetched_context"
    WORKING_HISTORY = "working_history"
    MESSAGES_META = "messages_meta"
    LAST_USER_MESSAGE = "last_user_message"
    CONFIG = "config"
