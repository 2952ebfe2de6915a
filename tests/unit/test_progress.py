import pytest

from agent_router.obs.progress import ProgressEmitter, sanitize_parameters, summarize_result
from agent_router.types import EventType


def test_sanitize_parameters_redacts_and_truncates() -> None:
    sanitized = sanitize_parameters(
        {
            "entity_id": "lock.front_door",
            "API_KEY": "abc",
            "auth_header": "Bearer x",
            "note": "n" * 150,
            "items": list(range(12)),
            "short": [1, 2],
            "nested": {"password": "hunter2", "level": 3},
        }
    )

    assert sanitized == {
        "entity_id": "lock.front_door",
        "API_KEY": "[REDACTED]",
        "auth_header": "[REDACTED]",
        "note": "n" * 100 + "...",
        "items": "[Array(12)]",
        "short": [1, 2],
        "nested": {"password": "[REDACTED]", "level": 3},
    }


def test_summarize_result_keeps_counts_only() -> None:
    summary = summarize_result(
        {
            "ok": True,
            "results": [{"title": "a"}, {"title": "b"}],
            "entities": [],
            "raw": "x" * 500,
            "message": "NO_RESULTS",
        }
    )

    assert summary == {"ok": True, "message": "NO_RESULTS", "results_count": 2, "entities_count": 0}
    assert summarize_result("plain text") is None


def test_only_one_terminal_event_is_accepted() -> None:
    emitter = ProgressEmitter()
    emitter.progress("Analyzing request...")
    emitter.emit(EventType.DONE, content="hi")

    assert emitter.finished
    assert emitter.emit(EventType.ERROR, error="late") is None
    assert emitter.progress("late") is None
    assert [event.type for event in emitter.events] == [EventType.PROGRESS, EventType.DONE]


def test_tool_events_carry_sanitized_payloads() -> None:
    emitter = ProgressEmitter()
    emitter.tool_start("ha_call", tool_description="Control devices", parameters={"token": "t"})
    emitter.tool_end("ha_call", success=True, duration_ms=12.3456, result={"ok": True})
    emitter.handoff("orchestrator", "home", "home request")

    start, end, handoff = (event.as_dict() for event in emitter.events)
    assert start["data"] == {
        "tool_name": "ha_call",
        "tool_description": "Control devices",
        "parameters": {"token": "[REDACTED]"},
    }
    assert end["data"] == {"tool_name": "ha_call", "success": True, "duration_ms": 12.35, "result": {"ok": True}}
    assert handoff["type"] == "handoff"
    assert handoff["data"]["to_agent"] == "home"


@pytest.mark.asyncio
async def test_stream_ends_after_terminal_event() -> None:
    emitter = ProgressEmitter()
    emitter.progress("one")
    emitter.emit(EventType.DONE, content="two")

    events = [event.type async for event in emitter.stream()]

    assert events == [EventType.PROGRESS, EventType.DONE]


@pytest.mark.asyncio
async def test_close_ends_stream_without_terminal_event() -> None:
    emitter = ProgressEmitter()
    emitter.progress("one")
    emitter.close()

    events = [event.type async for event in emitter.stream()]

    assert events == [EventType.PROGRESS]
    assert emitter.closed
    assert not emitter.finished
    assert emitter.progress("after close") is None
