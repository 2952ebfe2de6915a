from typing import Any

import pytest
from pydantic import BaseModel

from agent_router.agent.registry import ToolContext, ToolDescriptor, ToolRegistry
from agent_router.obs.tracing import TraceStore

CONTEXT = ToolContext(requester_id="alice", specialist_id="general")


class EchoInput(BaseModel):
    text: str


async def _upper(data: EchoInput, context: ToolContext) -> dict[str, Any]:
    if data.text == "boom":
        raise RuntimeError("exploded")
    return {"ok": True, "text": data.text.upper()}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDescriptor(
            name="echo",
            description="uppercase",
            domain="test",
            args_schema=EchoInput,
            handler=_upper,
        )
    )
    return registry


@pytest.mark.asyncio
async def test_tool_observer_captures_latency_and_payload() -> None:
    registry = _registry()

    observed = []
    registry.set_observer(observed.append)
    result = await registry.execute("echo", {"text": "hello"}, CONTEXT)
    registry.set_observer(None)

    assert result == {"ok": True, "text": "HELLO"}
    assert len(observed) == 1
    assert observed[0].name == "echo"
    assert observed[0].input_payload == {"text": "hello"}
    assert observed[0].latency_ms >= 0.0
    assert observed[0].success


@pytest.mark.asyncio
async def test_failed_tool_is_observed_and_aggregated() -> None:
    registry = _registry()
    store = TraceStore()
    registry.set_observer(store.observe_tool)

    await registry.execute("echo", {"text": "hi"}, CONTEXT)
    with pytest.raises(RuntimeError):
        await registry.execute("echo", {"text": "boom"}, CONTEXT)

    stats = store.tool_summary()["echo"]
    assert stats["calls"] == 2
    assert stats["failures"] == 1
    assert store.summary()["tool_failures"] == 1
