"""Resilient Remote Store Client — httpx.AsyncClient with retry, backoff, and error mapping.

Invariants:
    - Rate limits (429): exponential backoff with jitter, respects Retry-After header
    - Transient errors (5xx, connection): max_retries retries with exponential backoff
    - Client errors (4xx except 429): immediate failure, no retry
    - Keepalive (best-effort) requests: single attempt, short timeout
    - All failures mapped to RemoteStoreError / RemoteTimeoutError (core/errors.py)
    - 204 or empty body → None

Design Decisions:
    - Wrapper over raw client: isolates retry logic from the services (ADR: single responsibility)
    - ±25% jitter on backoff: prevents thundering herd when many editors reconnect
    - Bodies built from pydantic schemas so aliases (from/to/metaUpdates) live in one place
"""

import asyncio
import random
import logging

import httpx

from marble_sync.core.domain_types import WorkingMemoryPart
from marble_sync.core.errors import (
    ErrorContext, RemoteStoreError, RemoteTimeoutError,
)
from marble_sync.schemas.graph import EdgePayload, NodeUpdatePayload
from marble_sync.schemas.working_memory import WorkingHistoryUpdate, WorkingMemoryPatch

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class RemoteStoreClient:
    """Implements the RemoteStore protocol over JSON/HTTP."""

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        base_delay_ms: int = 500,
        max_delay_ms: int = 10_000,
        timeout_seconds: float = 30.0,
        keepalive_timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.keepalive_timeout_seconds = keepalive_timeout_seconds

    async def aclose(self) -> None:
        await self.client.aclose()

    # ─── Graph ───────────────────────────────────────────────────

    async def fetch_graph(self, project_id: str) -> dict | None:
        return await self._request(
            "GET", "/api/graph", "fetch_graph",
            params={"project_id": project_id},
            context=ErrorContext(project_id=project_id),
        )

    async def update_node(
        self, node_id: str, payload: dict, *, keepalive: bool = False,
    ) -> dict | None:
        body = NodeUpdatePayload.model_validate(payload).to_wire()
        return await self._request(
            "PATCH", f"/api/node/{node_id}", "update_node",
            json=body, keepalive=keepalive,
            context=ErrorContext(project_id=body.get("project_id"), node_id=node_id),
        )

    async def create_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None:
        return await self._edge("POST", "create_edge", payload, keepalive)

    async def delete_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None:
        return await self._edge("DELETE", "delete_edge", payload, keepalive)

    async def update_edge(self, payload: dict, *, keepalive: bool = False) -> dict | None:
        return await self._edge("PATCH", "update_edge", payload, keepalive)

    async def _edge(self, method: str, operation: str, payload: dict, keepalive: bool):
        body = EdgePayload.model_validate(payload).to_wire()
        return await self._request(
            method, "/api/edge", operation, json=body, keepalive=keepalive,
            context=ErrorContext(project_id=body.get("project_id")),
        )

    # ─── Working memory ──────────────────────────────────────────

    async def fetch_working_memory(self, session_id: str, project_id: str) -> dict | None:
        params = {k: v for k, v in (("session_id", session_id), ("project_id", project_id)) if v}
        return await self._request(
            "GET", "/api/working-memory", "fetch_working_memory", params=params,
            context=ErrorContext(project_id=project_id, session_id=session_id),
        )

    async def fetch_working_memory_context(self, params: dict) -> dict | None:
        return await self._request(
            "GET", "/api/working-memory/context", "fetch_working_memory_context",
            params=_query(params),
            context=ErrorContext(
                project_id=params.get("project_id"), node_id=params.get("node_id"),
            ),
        )

    async def fetch_messages(self, params: dict) -> dict | None:
        return await self._request(
            "GET", "/api/messages", "fetch_messages", params=_query(params),
            context=ErrorContext(
                project_id=params.get("project_id"), node_id=params.get("node_id"),
            ),
        )

    async def patch_working_memory(
        self, part: WorkingMemoryPart, payload: dict,
    ) -> dict | None:
        part = WorkingMemoryPart(part)
        body = WorkingMemoryPatch.model_validate(payload).to_wire()
        return await self._request(
            "PATCH", f"/api/working-memory/{part.value}", "patch_working_memory",
            json=body,
            context=ErrorContext(
                project_id=body["project_id"], session_id=body["session_id"],
                node_id=body["node_id"], part=part.value,
            ),
        )

    async def update_node_working_history(
        self, node_id: str, project_id: str, working_history: str,
    ) -> dict | None:
        body = WorkingHistoryUpdate(
            project_id=project_id, working_history=working_history,
        ).model_dump()
        return await self._request(
            "PATCH", f"/api/node/{node_id}/working-history",
            "update_node_working_history", json=body,
            context=ErrorContext(project_id=project_id, node_id=node_id),
        )

    # ─── Transport ───────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        keepalive: bool = False,
        context: ErrorContext | None = None,
    ) -> dict | None:
        """Send one request with retry on transient failures."""
        attempts = 1 if keepalive else self.max_retries + 1
        timeout = self.keepalive_timeout_seconds if keepalive else httpx.USE_CLIENT_DEFAULT
        for attempt in range(attempts):
            is_last = attempt >= attempts - 1
            try:
                response = await self.client.request(
                    method, path, params=params, json=json, timeout=timeout,
                )
            except httpx.TimeoutException:
                raise RemoteTimeoutError(operation, context=context)
            except httpx.TransportError as e:
                if is_last:
                    raise RemoteStoreError(
                        f"transport failure after {attempt + 1} attempt(s): {e}",
                        operation, context=context,
                    )
                await self._sleep_backoff(operation, attempt, None, str(e))
                continue

            if response.status_code < 400:
                logger.debug(
                    f"Remote {operation} ok",
                    extra={"status": response.status_code, "attempt": attempt + 1},
                )
                return _decode(response)

            retry_after_ms = _extract_retry_after(response)
            if response.status_code in _RETRYABLE_STATUS and not is_last:
                await self._sleep_backoff(
                    operation, attempt, retry_after_ms, f"HTTP {response.status_code}",
                )
                continue
            raise RemoteStoreError(
                _error_message(response), operation,
                status_code=response.status_code,
                retry_after_ms=retry_after_ms,
                context=context,
            )
        return None

    async def _sleep_backoff(
        self, operation: str, attempt: int, retry_after_ms: int | None, cause: str,
    ) -> None:
        delay = retry_after_ms or self._backoff(attempt)
        logger.warning(
            f"Remote {operation} failed ({cause}), retry after {delay}ms",
            extra={"attempt": attempt + 1},
        )
        await asyncio.sleep(delay / 1000)

    def _backoff(self, attempt: int) -> int:
        """Exponential backoff with ±25% jitter."""
        delay = min(self.max_delay_ms, (2 ** attempt) * self.base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311


def _query(params: dict) -> dict:
    """Drop empty values; booleans go over the wire as true/false."""
    query = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        query[key] = str(value).lower() if isinstance(value, bool) else value
    return query


def _decode(response: httpx.Response) -> dict | None:
    if response.status_code == 204 or not response.content:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {"data": data}


def _error_message(response: httpx.Response) -> str:
    """Prefer the JSON "error" field, then the reason phrase."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


def _extract_retry_after(response: httpx.Response) -> int | None:
    """Extract Retry-After header (returns milliseconds)."""
    val = response.headers.get("retry-after")
    if not val:
        return None
    try:
        return int(float(val) * 1000)
    except ValueError:
        return None
