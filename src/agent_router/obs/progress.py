"""Ordered progress events for one turn."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from typing import Any

from agent_router.obs.logging import get_logger
from agent_router.types import EventType, ProgressEvent

logger = get_logger(name=__name__)

SENSITIVE_KEYS = ("password", "token", "api_key", "secret", "auth")
MAX_STRING_LENGTH = 100
MAX_ARRAY_ITEMS = 10
RESULT_SUMMARY_KEYS = (
    "ok",
    "success",
    "error",
    "count",
    "length",
    "results_count",
    "entities_count",
    "message",
)


class ProgressEmitter:
    """Append-only event log with an async stream view.

    At most one terminal event (``done`` or ``error``) is accepted; anything
    emitted after it, or after ``close()``, is dropped.
    """

    def __init__(self) -> None:
        self._events: list[ProgressEvent] = []
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._finished = False
        self._closed = False

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        return tuple(self._events)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event_type: EventType, **data: Any) -> ProgressEvent | None:
        if self._finished or self._closed:
            logger.debug("progress_event_dropped", type=event_type.value)
            return None
        event = ProgressEvent(
            type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            data=data,
        )
        self._events.append(event)
        self._queue.put_nowait(event)
        if event_type.terminal:
            self._finished = True
            self._queue.put_nowait(None)
        return event

    def close(self) -> None:
        """Stop accepting events and end the stream without a terminal event."""
        if self._closed:
            return
        self._closed = True
        if not self._finished:
            self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def progress(self, message: str, **extra: Any) -> ProgressEvent | None:
        return self.emit(EventType.PROGRESS, message=message, **extra)

    def tool_start(
        self,
        tool_name: str,
        *,
        tool_description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
    ) -> ProgressEvent | None:
        data: dict[str, Any] = {"tool_name": tool_name}
        if tool_description:
            data["tool_description"] = tool_description
        if parameters:
            data["parameters"] = sanitize_parameters(parameters)
        return self.emit(EventType.TOOL_START, **data)

    def tool_end(
        self,
        tool_name: str,
        *,
        success: bool,
        duration_ms: float,
        result: Any = None,
    ) -> ProgressEvent | None:
        data: dict[str, Any] = {
            "tool_name": tool_name,
            "success": success,
            "duration_ms": round(duration_ms, 2),
        }
        summary = summarize_result(result)
        if summary:
            data["result"] = summary
        return self.emit(EventType.TOOL_END, **data)

    def handoff(self, from_agent: str, to_agent: str, reason: str | None = None) -> ProgressEvent | None:
        data: dict[str, Any] = {"from_agent": from_agent, "to_agent": to_agent}
        if reason:
            data["reason"] = reason
        return self.emit(EventType.HANDOFF, **data)


def sanitize_parameters(parameters: Mapping[str, Any]) -> dict[str, Any]:
    """Redact sensitive keys and shorten long values for display."""
    sanitized: dict[str, Any] = {}
    for key, value in parameters.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            sanitized[key] = value[:MAX_STRING_LENGTH] + "..."
        elif isinstance(value, (list, tuple)) and len(value) > MAX_ARRAY_ITEMS:
            sanitized[key] = f"[Array({len(value)})]"
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_parameters(value)
        else:
            sanitized[key] = value
    return sanitized


def summarize_result(result: Any) -> dict[str, Any] | None:
    """Reduce a tool result to status and count fields only."""
    if not isinstance(result, Mapping):
        return None
    summary: dict[str, Any] = {}
    for key in RESULT_SUMMARY_KEYS:
        if key not in result:
            continue
        value = result[key]
        if isinstance(value, (bool, int, float)) or (key in ("error", "message") and isinstance(value, str)):
            summary[key] = value[:MAX_STRING_LENGTH] if isinstance(value, str) else value
    if "results" in result and isinstance(result["results"], list):
        summary["results_count"] = len(result["results"])
    if "entities" in result and isinstance(result["entities"], list):
        summary["entities_count"] = len(result["entities"])
    return summary or None
