"""Execution runner: drives one conversation turn end to end.

States::

    validating -> routing -> executing -> finalizing -> done
                                                     \\-> failed

Every turn ends in exactly one terminal progress event. Cancelling the task
running a turn cancels its specialist sub-turns, denies the approval requests it
owns and closes its emitter without a terminal event.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

from pydantic import BaseModel, Field

from agent_router.agent.fallback import CONSULT_PREFIX, TRANSFER_PREFIX
from agent_router.agent.models import ChatMessage, ChatModel, ToolSpec
from agent_router.agent.registry import ToolContext, ToolRegistry
from agent_router.approval.engine import ApprovalEngine, DecisionChannel
from agent_router.config import AgentConfig, ClassifierConfig, GuardrailConfig, ModelTierConfig
from agent_router.errors import (
    ApprovalError,
    EmptyOutput,
    RouterError,
    ToolExecutionError,
)
from agent_router.guardrails.pipeline import GuardrailPipeline, build_guardrails
from agent_router.obs.logging import get_logger
from agent_router.obs.progress import ProgressEmitter, sanitize_parameters
from agent_router.obs.tracing import Timer, TraceStore
from agent_router.routing import rules
from agent_router.routing.classifier import classify
from agent_router.routing.policy import RoutingPolicy
from agent_router.types import (
    ApprovalRequest,
    EventType,
    GuardrailResult,
    ProgressEvent,
    Pattern,
    Query,
    RoutingDecision,
    ToolCallRequest,
    ToolInvocation,
    ToolTrace,
)

logger = get_logger(name=__name__)

ORCHESTRATOR = "orchestrator"

_ORCHESTRATOR_PROMPT = (
    "You are the orchestrator of a team of specialists. Transfer the conversation "
    "to the single specialist best suited to handle the request."
)
_MANAGER_PROMPT = (
    "You coordinate a team of specialists. Consult the specialists relevant to the "
    "request, then write one final answer that synthesizes their findings. If a "
    "specialist fails, work with the results you have."
)


class TurnState(str, Enum):
    VALIDATING = "validating"
    ROUTING = "routing"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class TransferInput(BaseModel):
    reason: str = Field(default="", description="Why this specialist should take over.")


class SpecialistTask(BaseModel):
    task: str = Field(min_length=1, description="What the specialist should work on.")


@dataclass(slots=True)
class TurnResult:
    turn_id: str
    content: str
    decision: RoutingDecision
    tools_used: list[str]
    duration_ms: float
    events: tuple[ProgressEvent, ...] = ()


@dataclass(slots=True)
class _Turn:
    turn_id: str
    requester_id: str
    thread_id: str | None
    emitter: ProgressEmitter
    on_need_approval: DecisionChannel | None
    state: TurnState = TurnState.VALIDATING
    tool_traces: list[ToolTrace] = field(default_factory=list)

    def transition(self, state: TurnState) -> None:
        logger.info("turn_state_changed", turn_id=self.turn_id, previous=self.state.value, state=state.value)
        self.state = state

    @property
    def tools_used(self) -> list[str]:
        used: list[str] = []
        for trace in self.tool_traces:
            if trace.success and trace.name not in used:
                used.append(trace.name)
        return used


class ExecutionRunner:
    """Runs turns against a registry, routing policy, approvals and a chat model."""

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        policy: RoutingPolicy,
        approvals: ApprovalEngine,
        chat_model: ChatModel,
        tiers: ModelTierConfig,
        config: AgentConfig | None = None,
        guardrail_config: GuardrailConfig | None = None,
        classifier_config: ClassifierConfig | None = None,
        trace_store: TraceStore | None = None,
        debug: bool = True,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.approvals = approvals
        self.chat_model = chat_model
        self.tiers = tiers
        self.config = config or AgentConfig()
        self.guardrail_config = guardrail_config or GuardrailConfig()
        self.classifier_config = classifier_config or ClassifierConfig()
        self.trace_store = trace_store
        self.debug = debug
        self._pipelines: dict[str, GuardrailPipeline] = {}

    def guardrails(self, domain: str = rules.GENERAL_SPECIALIST) -> GuardrailPipeline:
        pipeline = self._pipelines.get(domain)
        if pipeline is None:
            pipeline = build_guardrails(domain, self.guardrail_config)
            self._pipelines[domain] = pipeline
        return pipeline

    async def run(
        self,
        query: Query,
        *,
        requester_id: str,
        thread_id: str | None = None,
        emitter: ProgressEmitter | None = None,
        on_need_approval: DecisionChannel | None = None,
        turn_id: str | None = None,
    ) -> TurnResult:
        """Run one turn, emitting progress events as it goes.

        Raises the turn's ``RouterError`` after the ``error`` event is emitted.
        """
        turn = _Turn(
            turn_id=turn_id or f"turn_{uuid.uuid4().hex}",
            requester_id=requester_id,
            thread_id=thread_id,
            emitter=emitter or ProgressEmitter(),
            on_need_approval=on_need_approval,
        )
        logger.info("turn_started", turn_id=turn.turn_id, requester_id=requester_id)
        decision: RoutingDecision | None = None
        timer = Timer()
        with timer:
            try:
                self.guardrails().check_input(query.text)

                turn.transition(TurnState.ROUTING)
                score = classify(query.text, query.history, config=self.classifier_config)
                decision = self.policy.route(score, query.overrides, text=query.text)
                turn.emitter.emit(
                    EventType.METADATA,
                    turn_id=turn.turn_id,
                    complexity=score.tier.value,
                    classifier_rule=score.rule,
                    ruleset_version=rules.RULESET_VERSION,
                    model=decision.model,
                    model_tier=decision.model_tier.value,
                    pattern=decision.pattern.value,
                    tools=list(decision.tool_names),
                    specialists=list(decision.target_specialists),
                    reasoning=decision.reasoning,
                    warnings=list(decision.warnings),
                )

                turn.transition(TurnState.EXECUTING)
                content, domain = await self._execute(turn, decision, query)

                turn.transition(TurnState.FINALIZING)
                if not content:
                    raise EmptyOutput(domain)
                self._flag_sensitive(turn, self.guardrails(domain).check_output(content))
            except asyncio.CancelledError:
                cancelled = self.approvals.cancel_owned(turn.turn_id)
                turn.emitter.close()
                logger.info("turn_cancelled", turn_id=turn.turn_id, approvals_cancelled=cancelled)
                self._record(turn, query, decision, "", "cancelled", timer.lap_ms(), "cancelled")
                raise
            except RouterError as exc:
                self._fail(turn, query, decision, exc, timer.lap_ms())
                raise
            except Exception as exc:
                logger.exception("turn_crashed", turn_id=turn.turn_id)
                self._fail(turn, query, decision, exc, timer.lap_ms())
                raise
            finally:
                self.approvals.cancel_owned(turn.turn_id)

        turn.transition(TurnState.DONE)
        turn.emitter.emit(EventType.DELTA, content=content)
        turn.emitter.emit(
            EventType.DONE,
            content=content,
            done=True,
            duration_ms=round(timer.elapsed_ms, 2),
            model=decision.model,
            model_tier=decision.model_tier.value,
            route={"pattern": decision.pattern.value, "specialists": list(decision.target_specialists)},
            tools_used=turn.tools_used,
            turn_id=turn.turn_id,
        )
        self._record(turn, query, decision, content, "done", timer.elapsed_ms, None)
        return TurnResult(
            turn_id=turn.turn_id,
            content=content,
            decision=decision,
            tools_used=turn.tools_used,
            duration_ms=timer.elapsed_ms,
            events=turn.emitter.events,
        )

    async def stream(
        self,
        query: Query,
        *,
        requester_id: str,
        thread_id: str | None = None,
        on_need_approval: DecisionChannel | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield progress events while the turn runs in its own task.

        Closing the iterator early (client disconnect) cancels the turn.
        """
        emitter = ProgressEmitter()
        task = asyncio.create_task(
            self.run(
                query,
                requester_id=requester_id,
                thread_id=thread_id,
                emitter=emitter,
                on_need_approval=on_need_approval,
            )
        )
        try:
            async for event in emitter.stream():
                yield event
        finally:
            if not task.done():
                task.cancel()
            # Failures were already reported as the turn's error event.
            await asyncio.gather(task, return_exceptions=True)

    async def _execute(self, turn: _Turn, decision: RoutingDecision, query: Query) -> tuple[str, str]:
        """Dispatch on the routing pattern; returns (final text, output domain)."""
        if decision.pattern is Pattern.MANAGER:
            content = await self._manage(turn, decision, query)
            return content, rules.GENERAL_SPECIALIST

        if decision.pattern is Pattern.HANDOFF:
            specialist_id, reason = await self._choose_handoff(turn, decision, query)
            turn.emitter.handoff(ORCHESTRATOR, specialist_id, reason)
        else:
            specialist_id = decision.target_specialists[0] if decision.target_specialists else ORCHESTRATOR

        tool_names = self._allowed_tools(decision, specialist_id)
        messages = [self._specialist_prompt(specialist_id), *_history(query), ChatMessage("user", query.text)]
        content = await self._agent_loop(
            turn,
            model=decision.model,
            specialist_id=specialist_id,
            tool_names=tool_names,
            messages=messages,
        )
        return content, specialist_id

    async def _agent_loop(
        self,
        turn: _Turn,
        *,
        model: str,
        specialist_id: str,
        tool_names: Sequence[str],
        messages: list[ChatMessage],
    ) -> str:
        """Model/tool loop for one specialist; tools run one at a time.

        A batch in which every call was refused by approval, with nothing having
        succeeded earlier, ends the loop by raising that refusal.
        """
        specs = self.registry.tool_specs(tool_names)
        succeeded = 0
        for _ in range(self.config.max_iterations):
            reply = await self.chat_model.invoke(model, messages, specs)
            if not reply.tool_calls:
                return (reply.text or "").strip()

            messages.append(ChatMessage("assistant", reply.text or "", tool_calls=reply.tool_calls))
            refusals: list[ApprovalError] = []
            for call in reply.tool_calls:
                outcome, refusal = await self._call_tool(turn, specialist_id, call, tool_names)
                messages.append(
                    ChatMessage("tool", json.dumps(outcome, default=str), tool_call_id=call.id, name=call.name)
                )
                if refusal is not None:
                    refusals.append(refusal)
                elif outcome.get("success"):
                    succeeded += 1
            if refusals and len(refusals) == len(reply.tool_calls) and succeeded == 0:
                raise refusals[0]

        # Out of iterations: ask for an answer with tools withdrawn.
        reply = await self.chat_model.invoke(model, messages, [])
        return (reply.text or "").strip()

    async def _call_tool(
        self,
        turn: _Turn,
        specialist_id: str,
        call: ToolCallRequest,
        tool_names: Sequence[str],
    ) -> tuple[dict[str, Any], ApprovalError | None]:
        if call.name not in tool_names:
            return {"success": False, "error": f"Tool {call.name} is not available to {specialist_id}"}, None

        invocation = ToolInvocation(call.name, dict(call.arguments), specialist_id)
        descriptor = self.registry.describe_tool(call.name)
        context = ToolContext(turn.requester_id, specialist_id, turn.thread_id)

        async def _execute() -> dict[str, Any]:
            turn.emitter.tool_start(
                call.name,
                tool_description=descriptor.description,
                parameters=invocation.arguments,
            )
            started = perf_counter()
            try:
                result = await self.registry.execute(call.name, invocation.arguments, context)
            except Exception as exc:
                elapsed = (perf_counter() - started) * 1000.0
                turn.tool_traces.append(ToolTrace(call.name, invocation.arguments, str(exc)[:320], elapsed, False))
                turn.emitter.tool_end(call.name, success=False, duration_ms=elapsed, result={"error": str(exc)})
                raise ToolExecutionError(call.name, str(exc)) from exc
            elapsed = (perf_counter() - started) * 1000.0
            turn.tool_traces.append(
                ToolTrace(call.name, invocation.arguments, json.dumps(result, default=str)[:320], elapsed)
            )
            turn.emitter.tool_end(call.name, success=True, duration_ms=elapsed, result=result)
            return result

        def _announce(request: ApprovalRequest) -> None:
            payload = request.as_dict()
            payload["parameters"] = sanitize_parameters(payload["parameters"])
            turn.emitter.progress("Waiting for approval", approval=payload)

        try:
            result = await self.approvals.execute_with_approval(
                invocation,
                _execute,
                turn.requester_id,
                turn.on_need_approval,
                thread_id=turn.thread_id,
                owner=turn.turn_id,
                on_request=_announce,
            )
        except ApprovalError as exc:
            turn.emitter.progress("Tool call not approved", tool_name=call.name, kind=exc.kind)
            return {"success": False, "error": exc.message, "kind": exc.kind}, exc
        except ToolExecutionError as exc:
            logger.warning("tool_failed", turn_id=turn.turn_id, tool_name=call.name, error=exc.message)
            return {"success": False, "error": exc.message, "kind": exc.kind}, None
        return {"success": True, "result": result}, None

    async def _choose_handoff(
        self,
        turn: _Turn,
        decision: RoutingDecision,
        query: Query,
    ) -> tuple[str, str | None]:
        targets = list(decision.target_specialists)
        if not targets:
            return ORCHESTRATOR, None
        if len(targets) == 1:
            return targets[0], "only eligible specialist"

        specs = [
            ToolSpec(
                name=f"{TRANSFER_PREFIX}{specialist.id}",
                description=f"Transfer to {specialist.display_name}. {specialist.description}",
                args_schema=TransferInput,
            )
            for specialist in (self.registry.specialist(target) for target in targets)
        ]
        messages = [ChatMessage("system", _ORCHESTRATOR_PROMPT), *_history(query), ChatMessage("user", query.text)]
        reply = await self.chat_model.invoke(decision.model, messages, specs)
        for call in reply.tool_calls:
            target = call.name[len(TRANSFER_PREFIX) :] if call.name.startswith(TRANSFER_PREFIX) else None
            if target in targets:
                reason = call.arguments.get("reason")
                return target, str(reason) if reason else None
        return targets[0], "default specialist"

    async def _manage(self, turn: _Turn, decision: RoutingDecision, query: Query) -> str:
        targets = {specialist_id: self.registry.specialist(specialist_id) for specialist_id in decision.target_specialists}
        specs = [
            ToolSpec(
                name=f"{CONSULT_PREFIX}{specialist.id}",
                description=f"Ask the {specialist.display_name}. {specialist.description}",
                args_schema=SpecialistTask,
            )
            for specialist in targets.values()
        ]
        messages = [ChatMessage("system", _MANAGER_PROMPT), *_history(query), ChatMessage("user", query.text)]
        reply = await self.chat_model.invoke(decision.model, messages, specs)

        calls = [
            call
            for call in reply.tool_calls
            if call.name.startswith(CONSULT_PREFIX) and call.name[len(CONSULT_PREFIX) :] in targets
        ]
        if not calls:
            return (reply.text or "").strip()

        messages.append(ChatMessage("assistant", reply.text or "", tool_calls=tuple(calls)))
        semaphore = asyncio.Semaphore(self.config.manager_fan_out)

        async def _consult(call: ToolCallRequest) -> dict[str, Any]:
            specialist_id = call.name[len(CONSULT_PREFIX) :]
            task = str(call.arguments.get("task") or query.text)
            async with semaphore:
                return await self._sub_turn(turn, decision, specialist_id, task)

        results = await asyncio.gather(*(_consult(call) for call in calls))
        for call, result in zip(calls, results):
            messages.append(ChatMessage("tool", json.dumps(result, default=str), tool_call_id=call.id, name=call.name))

        final = await self.chat_model.invoke(decision.model, messages, [])
        return (final.text or "").strip()

    async def _sub_turn(
        self,
        turn: _Turn,
        decision: RoutingDecision,
        specialist_id: str,
        task: str,
    ) -> dict[str, Any]:
        """Bounded specialist run; failures come back as structured data."""
        specialist = self.registry.specialist(specialist_id)
        turn.emitter.progress(f"Consulting {specialist.display_name}", specialist=specialist_id)
        try:
            self.guardrails().check_input(task)
            content = await self._agent_loop(
                turn,
                model=self.tiers.model_for(specialist.model_tier_default),
                specialist_id=specialist_id,
                tool_names=self._allowed_tools(decision, specialist_id),
                messages=[self._specialist_prompt(specialist_id), ChatMessage("user", task)],
            )
            if not content:
                raise EmptyOutput(specialist_id)
            flagged = self._flag_sensitive(
                turn, self.guardrails(specialist_id).check_output(content), specialist=specialist_id
            )
        except Exception as exc:
            logger.warning("specialist_failed", turn_id=turn.turn_id, specialist=specialist_id, error=str(exc))
            return {
                "specialist": specialist_id,
                "success": False,
                "error": str(exc),
                "kind": getattr(exc, "kind", "internal_error"),
            }
        result: dict[str, Any] = {"specialist": specialist_id, "success": True, "output": content}
        if flagged:
            result["flagged_actions"] = flagged
        return result

    def _flag_sensitive(self, turn: _Turn, results: Sequence[GuardrailResult], **extra: Any) -> list[str]:
        """Surface output validators that flagged sensitive actions; returns the actions."""
        actions: list[str] = []
        for result in results:
            if result.info.get("flagged"):
                flagged = list(result.info.get("actions", []))
                actions.extend(flagged)
                turn.emitter.progress(
                    "Sensitive actions mentioned in response",
                    validator=result.validator,
                    actions=flagged,
                    **extra,
                )
        return actions

    def _allowed_tools(self, decision: RoutingDecision, specialist_id: str) -> list[str]:
        if specialist_id == ORCHESTRATOR:
            return list(decision.tool_names)
        allowed = self.registry.specialist(specialist_id).allowed_tools
        return [name for name in decision.tool_names if name in allowed]

    def _specialist_prompt(self, specialist_id: str) -> ChatMessage:
        if specialist_id == ORCHESTRATOR:
            return ChatMessage("system", "You are a helpful assistant. Use the provided tools when needed.")
        specialist = self.registry.specialist(specialist_id)
        return ChatMessage(
            "system",
            f"You are the {specialist.display_name}. {specialist.description} "
            "Use only the tools provided and answer concisely.",
        )

    def _fail(
        self,
        turn: _Turn,
        query: Query,
        decision: RoutingDecision | None,
        exc: Exception,
        latency_ms: float,
    ) -> None:
        turn.transition(TurnState.FAILED)
        if isinstance(exc, RouterError):
            kind, message = exc.kind, exc.message
        else:
            kind, message = "internal_error", "Internal error while running the turn"
        data: dict[str, Any] = {"error": message, "kind": kind, "turn_id": turn.turn_id}
        if self.debug:
            data["details"] = exc.details() if isinstance(exc, RouterError) else {"exception": repr(exc)}
        turn.emitter.emit(EventType.ERROR, **data)
        logger.info("turn_failed", turn_id=turn.turn_id, kind=kind)
        self._record(turn, query, decision, "", "failed", latency_ms, kind)

    def _record(
        self,
        turn: _Turn,
        query: Query,
        decision: RoutingDecision | None,
        content: str,
        status: str,
        latency_ms: float,
        error_kind: str | None,
    ) -> None:
        if self.trace_store is None:
            return
        self.trace_store.create_record(
            turn_id=turn.turn_id,
            query=query.text,
            answer=content,
            status=status,
            latency_ms=latency_ms,
            complexity=decision.complexity.value if decision and decision.complexity else None,
            model_tier=decision.model_tier if decision else None,
            model=decision.model if decision else None,
            pattern=decision.pattern.value if decision else None,
            specialists=list(decision.target_specialists) if decision else [],
            tool_traces=turn.tool_traces,
            error_kind=error_kind,
        )


def _history(query: Query) -> list[ChatMessage]:
    return [ChatMessage(message.role, message.content) for message in query.history]
