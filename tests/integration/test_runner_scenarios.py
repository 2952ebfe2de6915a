import asyncio
from collections.abc import Sequence

import pytest

from agent_router.agent.fallback import DeterministicChatModel
from agent_router.agent.models import ChatMessage, ChatModel, ToolSpec
from agent_router.agent.registry import ToolRegistry
from agent_router.agent.runner import ExecutionRunner
from agent_router.approval.engine import ApprovalEngine
from agent_router.config import AgentConfig, ModelTierConfig
from agent_router.errors import (
    ApprovalDenied,
    EmptyOutput,
    GuardrailRejection,
)
from agent_router.integrations.home_assistant import InMemoryHomeBackend
from agent_router.obs.progress import ProgressEmitter
from agent_router.obs.tracing import TraceStore
from agent_router.routing.policy import RoutingPolicy
from agent_router.types import (
    ApprovalStatus,
    EventType,
    ModelReply,
    ModelTier,
    Pattern,
    Query,
    QueryOverrides,
)

MANAGER_OVERRIDES = QueryOverrides(model_tier=ModelTier.COMPLEX, synthesize=True)


class _CountingModel(DeterministicChatModel):
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[ChatMessage], list[str]]] = []

    async def invoke(self, model: str, messages: Sequence[ChatMessage], tools: Sequence[ToolSpec]) -> ModelReply:
        self.calls.append((model, list(messages), [spec.name for spec in tools]))
        return await super().invoke(model, messages, tools)


class _MemoryOfflineModel(_CountingModel):
    async def invoke(self, model: str, messages: Sequence[ChatMessage], tools: Sequence[ToolSpec]) -> ModelReply:
        if "Memory Specialist" in messages[0].content:
            raise RuntimeError("memory store offline")
        return await super().invoke(model, messages, tools)


class _SlowSpecialistModel(DeterministicChatModel):
    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0
        self.specialist_calls = 0

    async def invoke(self, model: str, messages: Sequence[ChatMessage], tools: Sequence[ToolSpec]) -> ModelReply:
        if "Specialist" not in messages[0].content:
            return await super().invoke(model, messages, tools)
        self.specialist_calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return ModelReply(text="Specialist finding recorded.")


class _ScriptedModel:
    def __init__(self, text: str) -> None:
        self.text = text

    async def invoke(self, model: str, messages: Sequence[ChatMessage], tools: Sequence[ToolSpec]) -> ModelReply:
        return ModelReply(text=self.text)


def _runner(
    registry: ToolRegistry,
    tiers: ModelTierConfig,
    chat_model: ChatModel | None = None,
    *,
    config: AgentConfig | None = None,
    trace_store: TraceStore | None = None,
) -> ExecutionRunner:
    return ExecutionRunner(
        registry=registry,
        policy=RoutingPolicy(registry, tiers),
        approvals=ApprovalEngine(registry),
        chat_model=chat_model or DeterministicChatModel(),
        tiers=tiers,
        config=config,
        trace_store=trace_store,
    )


def _types(emitter: ProgressEmitter) -> list[EventType]:
    return [event.type for event in emitter.events]


async def _wait_for_pending(approvals: ApprovalEngine) -> str:
    for _ in range(100):
        pending = approvals.pending()
        if pending:
            return pending[0].id
        await asyncio.sleep(0.005)
    raise AssertionError("no approval request was created")


@pytest.mark.asyncio
async def test_simple_home_command_runs_without_approval(
    registry: ToolRegistry, tiers: ModelTierConfig, home: InMemoryHomeBackend
) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()

    result = await runner.run(Query("turn off the living room light"), requester_id="alice", emitter=emitter)

    assert _types(emitter) == [
        EventType.METADATA,
        EventType.TOOL_START,
        EventType.TOOL_END,
        EventType.DELTA,
        EventType.DONE,
    ]
    metadata = emitter.events[0].data
    assert metadata["model_tier"] == "fast"
    assert metadata["model"] == "fast-model"
    assert metadata["tools"] == ["ha_call"]
    assert metadata["complexity"] == "simple"
    assert home.calls == [("light", "turn_off", "light.living_room")]
    assert result.content == "Done. I called turn_off on light.living_room."
    assert result.tools_used == ["ha_call"]

    done = emitter.events[-1].data
    assert done["done"] is True
    assert done["route"] == {"pattern": "direct", "specialists": ["home"]}
    assert done["turn_id"] == result.turn_id


@pytest.mark.asyncio
async def test_denied_unlock_never_reaches_the_device(
    registry: ToolRegistry, tiers: ModelTierConfig, home: InMemoryHomeBackend
) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()

    with pytest.raises(ApprovalDenied):
        await runner.run(
            Query("unlock the front door"),
            requester_id="alice",
            emitter=emitter,
            on_need_approval=lambda request: "denied",
        )

    assert EventType.TOOL_START not in _types(emitter)
    assert home.calls == []
    error = emitter.events[-1]
    assert error.type is EventType.ERROR
    assert error.data["kind"] == "approval_denied"
    approval = emitter.events[1].data["approval"]
    assert approval["risk_level"] == "critical"
    assert approval["parameters"]["entity_id"] == "lock.front_door"
    assert runner.approvals.audit_log()[-1].status is ApprovalStatus.DENIED


@pytest.mark.asyncio
async def test_approved_unlock_runs_and_flags_sensitive_output(
    registry: ToolRegistry, tiers: ModelTierConfig, home: InMemoryHomeBackend
) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()

    result = await runner.run(
        Query("unlock the front door"),
        requester_id="alice",
        emitter=emitter,
        on_need_approval=lambda request: "approved",
    )

    assert home.calls == [("lock", "unlock", "lock.front_door")]
    assert result.content == "Done. I called unlock on lock.front_door."
    flagged = [
        event
        for event in emitter.events
        if event.type is EventType.PROGRESS and event.data.get("validator") == "home-assistant-safety"
    ]
    assert flagged[0].data["actions"] == ["unlock"]
    assert emitter.events[-1].type is EventType.DONE


@pytest.mark.asyncio
async def test_manager_flags_sensitive_specialist_output(
    registry: ToolRegistry, tiers: ModelTierConfig, home: InMemoryHomeBackend
) -> None:
    model = _CountingModel()
    runner = _runner(registry, tiers, model)
    emitter = ProgressEmitter()

    result = await runner.run(
        Query("unlock the front door", overrides=MANAGER_OVERRIDES),
        requester_id="alice",
        emitter=emitter,
        on_need_approval=lambda request: "approved",
    )

    assert result.decision.pattern is Pattern.MANAGER
    assert home.calls == [("lock", "unlock", "lock.front_door")]
    flagged = [
        event
        for event in emitter.events
        if event.type is EventType.PROGRESS and event.data.get("validator") == "home-assistant-safety"
    ]
    assert flagged[0].data["actions"] == ["unlock"]
    assert flagged[0].data["specialist"] == "home"
    _, synthesis_messages, _ = model.calls[-1]
    home_result = next(message.content for message in synthesis_messages if message.name == "call_home")
    assert '"flagged_actions": ["unlock"]' in home_result
    assert emitter.events[-1].type is EventType.DONE


@pytest.mark.asyncio
async def test_externally_resolved_approval_resumes_turn(
    registry: ToolRegistry, tiers: ModelTierConfig, home: InMemoryHomeBackend
) -> None:
    runner = _runner(registry, tiers)
    task = asyncio.create_task(runner.run(Query("unlock the front door"), requester_id="alice"))

    approval_id = await _wait_for_pending(runner.approvals)
    assert home.calls == []
    runner.approvals.resolve(approval_id, "approved", "alice")

    result = await task
    assert result.tools_used == ["ha_call"]
    assert home.calls == [("lock", "unlock", "lock.front_door")]


@pytest.mark.asyncio
async def test_oversized_input_is_rejected_before_any_model_call(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    model = _CountingModel()
    runner = _runner(registry, tiers, model)
    emitter = ProgressEmitter()

    with pytest.raises(GuardrailRejection):
        await runner.run(Query("a" * 10_001), requester_id="alice", emitter=emitter)

    assert model.calls == []
    assert _types(emitter) == [EventType.ERROR]
    assert emitter.events[0].data["details"]["validator"] == "sanitize-user-input"


@pytest.mark.asyncio
async def test_manager_synthesizes_despite_failed_specialist(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    model = _MemoryOfflineModel()
    runner = _runner(registry, tiers, model)
    emitter = ProgressEmitter()
    text = "Check the lights, recall my preferences and search the latest news"

    result = await runner.run(Query(text, overrides=MANAGER_OVERRIDES), requester_id="alice", emitter=emitter)

    assert result.decision.pattern is Pattern.MANAGER
    assert result.decision.target_specialists == ("home", "memory", "research")
    _, synthesis_messages, synthesis_tools = model.calls[-1]
    assert synthesis_tools == []
    tool_results = [message for message in synthesis_messages if message.role == "tool"]
    assert len(tool_results) == 3
    assert '"success": false' in next(message.content for message in tool_results if message.name == "call_memory")
    assert "The memory specialist could not help: memory store offline." in result.content
    assert emitter.events[-1].type is EventType.DONE


@pytest.mark.asyncio
async def test_manager_fan_out_is_bounded(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    model = _SlowSpecialistModel()
    runner = _runner(registry, tiers, model, config=AgentConfig(manager_fan_out=2))

    result = await runner.run(Query("Summarize everything.", overrides=MANAGER_OVERRIDES), requester_id="alice")

    assert result.decision.target_specialists == ("home", "memory", "research", "code")
    assert model.specialist_calls == 4
    assert model.max_active == 2


@pytest.mark.asyncio
async def test_sub_turns_use_specialist_default_tier(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    model = _CountingModel()
    runner = _runner(registry, tiers, model)

    await runner.run(Query("Summarize everything.", overrides=MANAGER_OVERRIDES), requester_id="alice")

    specialist_models = {
        messages[0].content.split(".")[0]: used_model
        for used_model, messages, _ in model.calls
        if messages[0].content.startswith("You are the ")
    }
    assert specialist_models["You are the Home Control Specialist"] == "fast-model"
    assert specialist_models["You are the Research Specialist"] == "balanced-model"


@pytest.mark.asyncio
async def test_complex_query_hands_off_to_intent_specialist(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()

    result = await runner.run(
        Query("Compare the kitchen light and bedroom light"), requester_id="alice", emitter=emitter
    )

    assert result.decision.pattern is Pattern.HANDOFF
    handoffs = [event for event in emitter.events if event.type is EventType.HANDOFF]
    assert len(handoffs) == 1
    assert handoffs[0].data["from_agent"] == "orchestrator"
    assert handoffs[0].data["to_agent"] == "home"
    assert result.tools_used == ["ha_search"]


@pytest.mark.asyncio
async def test_output_guardrail_trip_fails_turn(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    runner = _runner(registry, tiers, _ScriptedModel("Use the key sk-" + "a" * 40 + " for access."))
    emitter = ProgressEmitter()

    with pytest.raises(GuardrailRejection) as excinfo:
        await runner.run(Query("hello"), requester_id="alice", emitter=emitter)

    assert excinfo.value.stage == "output"
    assert EventType.DELTA not in _types(emitter)
    assert emitter.events[-1].data["kind"] == "guardrail_rejection"


@pytest.mark.asyncio
async def test_blank_model_reply_is_empty_output(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    runner = _runner(registry, tiers, _ScriptedModel("   "))
    emitter = ProgressEmitter()

    with pytest.raises(EmptyOutput):
        await runner.run(Query("hello"), requester_id="alice", emitter=emitter)

    assert emitter.events[-1].data["kind"] == "empty_output"


@pytest.mark.asyncio
async def test_production_errors_hide_details(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    runner = _runner(registry, tiers, _ScriptedModel(""))
    runner.debug = False
    emitter = ProgressEmitter()

    with pytest.raises(EmptyOutput):
        await runner.run(Query("hello"), requester_id="alice", emitter=emitter)

    assert "details" not in emitter.events[-1].data


@pytest.mark.asyncio
async def test_tool_failure_is_reported_to_the_model(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()

    result = await runner.run(Query("turn off the garage fan"), requester_id="alice", emitter=emitter)

    tool_end = next(event for event in emitter.events if event.type is EventType.TOOL_END)
    assert tool_end.data["success"] is False
    assert "Unknown entity: fan.garage" in result.content
    assert result.tools_used == []
    assert emitter.events[-1].type is EventType.DONE


@pytest.mark.asyncio
async def test_cancelled_turn_denies_its_approvals(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    runner = _runner(registry, tiers)
    emitter = ProgressEmitter()
    task = asyncio.create_task(
        runner.run(Query("unlock the front door"), requester_id="alice", emitter=emitter)
    )

    approval_id = await _wait_for_pending(runner.approvals)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert runner.approvals.pending() == []
    entry = next(entry for entry in runner.approvals.audit_log() if entry.id == approval_id)
    assert entry.status is ApprovalStatus.DENIED
    assert entry.reason == "cancelled"
    assert emitter.closed
    assert not emitter.finished
    assert not {EventType.DONE, EventType.ERROR} & set(_types(emitter))


@pytest.mark.asyncio
async def test_stream_yields_events_until_done(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    runner = _runner(registry, tiers)

    events = [event async for event in runner.stream(Query("what's the weather in Paris"), requester_id="alice")]

    assert events[0].type is EventType.METADATA
    assert events[-1].type is EventType.DONE
    assert "Paris weather today" in events[-1].data["content"]


@pytest.mark.asyncio
async def test_turns_are_recorded_in_trace_store(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    store = TraceStore()
    runner = _runner(registry, tiers, trace_store=store)

    result = await runner.run(Query("turn off the living room light"), requester_id="alice")
    with pytest.raises(GuardrailRejection):
        await runner.run(Query("a" * 10_001), requester_id="alice")

    record = store.get(result.turn_id)
    assert record.status == "done"
    assert record.pattern == "direct"
    assert [trace.name for trace in record.tool_traces] == ["ha_call"]
    summary = store.summary()
    assert summary["total_requests"] == 2
    assert summary["failed_requests"] == 1
