"""Error Hierarchy — typed, categorized exceptions for all sync-core failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Nothing here is fatal to the process: callers degrade to stale local state
    - to_response() produces REST envelope; to_event() produces warning-channel envelope
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with SyncError base: bridge handler catches all (ADR: uniform error shape)
    - ErrorContext as dataclass: rich observability without coupling to logging framework
    - StructureRebuildWarning is delivered, not raised (one-shot warning channel)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    REMOTE_STORE = "remote_store"
    TIMEOUT = "timeout"
    STRUCTURE = "structure"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    project_id: str | None = None
    session_id: str | None = None
    node_id: str | None = None
    part: str | None = None
    user_message: str | None = None
    debug_info: dict[str, Any] | None = None
    retry_after_ms: int | None = None


class SyncError(Exception):
    """Base exception for all sync-core errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "project_id": self.context.project_id,
                    "session_id": self.context.session_id,
                    "node_id": self.context.node_id,
                    "retry_after_ms": self.context.retry_after_ms,
                },
            }
        }

    def to_event(self) -> dict:
        """Convert to a warning-channel event for the UI."""
        return {
            "type": "warning" if self.severity == ErrorSeverity.WARNING else "error",
            "data": {
                "code": self.code,
                "message": self.context.user_message or self.message,
                "severity": self.severity.value,
                "recoverable": self.severity in (
                    ErrorSeverity.INFO, ErrorSeverity.WARNING,
                ),
                "project_id": self.context.project_id,
            },
        }


# ─── Validation Errors (400-level) ──────────────────────────────

class InvalidMutationError(SyncError):
    """A mutation arrived without a usable identity (node id, edge endpoints)."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "INVALID_MUTATION", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, 400,
        )
        self.field = field


# ─── Remote Store Errors (500-level) ────────────────────────────

class RemoteStoreError(SyncError):
    """Remote store call failed (non-2xx status or transport failure after retries)."""
    def __init__(
        self,
        message: str,
        operation: str,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.retry_after_ms = retry_after_ms
        super().__init__(
            f"Remote store {operation} failed: {message}",
            "REMOTE_STORE_ERROR", ErrorCategory.REMOTE_STORE,
            ErrorSeverity.ERROR, ctx, 502,
        )
        self.operation = operation
        self.status_code = status_code


class RemoteTimeoutError(RemoteStoreError):
    """Remote store call timed out."""
    def __init__(self, operation: str, context: ErrorContext | None = None):
        super().__init__("request timed out", operation, context=context)
        self.code = "REMOTE_STORE_TIMEOUT"
        self.category = ErrorCategory.TIMEOUT
        self.http_status = 504


# ─── Structure Warnings ─────────────────────────────────────────

class StructureRebuildWarning(SyncError):
    """Structure rebuild kept the previous snapshot (empty response or fetch failure)."""
    def __init__(self, message: str, reason: str, context: ErrorContext | None = None):
        super().__init__(
            message, "STRUCTURE_REBUILD_WARNING", ErrorCategory.STRUCTURE,
            ErrorSeverity.WARNING, context, 200,
        )
        self.reason = reason


# ─── Configuration Errors ───────────────────────────────────────

class SyncNotConfiguredError(SyncError):
    """Bridge endpoint called before the sync core was wired."""
    def __init__(self, context: ErrorContext | None = None):
        super().__init__(
            "Sync core is not initialised",
            "SYNC_NOT_CONFIGURED", ErrorCategory.CONFIGURATION,
            ErrorSeverity.CRITICAL, context, 503,
        )
