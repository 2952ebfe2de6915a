"""FastAPI entrypoint for turn, approval, classification and trace endpoints.

Run with ``uvicorn agent_router.api.main:create_app --factory``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, Literal

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agent_router.agent.catalog import build_backends, build_registry, missing_dependencies
from agent_router.agent.discovery import CapabilityDiscovery
from agent_router.agent.fallback import DeterministicChatModel
from agent_router.agent.models import ChatModel, openai_chat_model
from agent_router.agent.registry import ToolRegistry
from agent_router.agent.runner import ExecutionRunner
from agent_router.approval.engine import ApprovalEngine, DecisionChannel
from agent_router.config import RouterSettings, describe_settings, load_settings
from agent_router.errors import (
    AlreadyResolved,
    ApprovalNotFound,
    RequesterMismatch,
    RouterError,
)
from agent_router.integrations.home_assistant import HomeBackend
from agent_router.integrations.search import SearchBackend
from agent_router.obs.logging import configure_logging
from agent_router.obs.progress import ProgressEmitter
from agent_router.obs.tracing import TraceStore
from agent_router.routing.classifier import classify
from agent_router.routing.policy import RoutingPolicy
from agent_router.types import Message, ModelTier, Pattern, Query, QueryOverrides

REQUESTER_HEADER = "X-Requester-Id"


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class TurnRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    text: str
    history: list[HistoryMessage] = Field(default_factory=list)
    model_tier: ModelTier | None = None
    tools: list[str] | None = None
    pattern: Pattern | None = None
    synthesize: bool = False
    thread_id: str | None = None
    # Pre-approved policy for tool calls that need approval.
    approval_decision: Literal["approved", "denied"] | None = None

    def to_query(self) -> Query:
        return Query(
            text=self.text,
            history=tuple(Message(item.role, item.content) for item in self.history),
            overrides=QueryOverrides(
                model_tier=self.model_tier,
                tools=tuple(self.tools) if self.tools is not None else None,
                pattern=self.pattern,
                synthesize=self.synthesize,
            ),
        )


class ResolveRequest(BaseModel):
    status: Literal["approved", "denied"]
    reason: str | None = None


@dataclass(slots=True)
class RouterServices:
    settings: RouterSettings
    registry: ToolRegistry
    approvals: ApprovalEngine
    policy: RoutingPolicy
    runner: ExecutionRunner
    trace_store: TraceStore
    llm_configured: bool


def build_services(
    settings: RouterSettings,
    *,
    chat_model: ChatModel | None = None,
    home: HomeBackend | None = None,
    search: SearchBackend | None = None,
) -> RouterServices:
    """Wire every component from validated settings."""
    default_home, default_search = build_backends(settings)
    home = home or default_home
    search = search or default_search

    discovery = CapabilityDiscovery(home.fetch_states, ttl_seconds=settings.discovery().cache_ttl_seconds)
    registry = build_registry(
        home=home,
        search=search,
        sqlite_path=settings.memory_db_path,
        discovery=discovery,
    )
    trace_store = TraceStore()
    registry.set_observer(trace_store.observe_tool)

    llm_configured = chat_model is not None or bool(settings.openai_api_key)
    if chat_model is None:
        chat_model = (
            openai_chat_model(settings.openai_api_key)
            if settings.openai_api_key
            else DeterministicChatModel()
        )

    approvals = ApprovalEngine(registry, settings.approval())
    policy = RoutingPolicy(registry, settings.model_tiers())
    runner = ExecutionRunner(
        registry=registry,
        policy=policy,
        approvals=approvals,
        chat_model=chat_model,
        tiers=settings.model_tiers(),
        config=settings.agent(),
        guardrail_config=settings.guardrails(),
        classifier_config=settings.classifier(),
        trace_store=trace_store,
        debug=settings.debug,
    )
    return RouterServices(
        settings=settings,
        registry=registry,
        approvals=approvals,
        policy=policy,
        runner=runner,
        trace_store=trace_store,
        llm_configured=llm_configured,
    )


def create_app(
    settings: RouterSettings | None = None,
    *,
    chat_model: ChatModel | None = None,
    home: HomeBackend | None = None,
    search: SearchBackend | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    services = build_services(settings, chat_model=chat_model, home=home, search=search)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        services.approvals.close()

    app = FastAPI(title="Agent Router", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "llm_configured": services.llm_configured,
            "model_mode": "langchain" if settings.openai_api_key else "deterministic",
            "missing_dependencies": missing_dependencies(services.registry, settings),
            "trace_count": len(services.trace_store.list_recent(limit=1000)),
        }

    @app.get("/config")
    def config() -> dict[str, Any]:
        return {
            **describe_settings(),
            "model_tiers": settings.model_tiers().model_dump(),
            "specialists": [
                {
                    "id": specialist.id,
                    "display_name": specialist.display_name,
                    "allowed_tools": sorted(specialist.allowed_tools),
                    "model_tier_default": specialist.model_tier_default.value,
                }
                for specialist in services.registry.specialists()
            ],
        }

    @app.get("/classify")
    def classify_text(text: str) -> dict[str, Any]:
        score = classify(text, config=settings.classifier())
        try:
            decision = services.policy.route(score, text=text)
        except RouterError as exc:
            raise HTTPException(status_code=422, detail=exc.message) from exc
        return {
            "tier": score.tier.value,
            "score": score.score,
            "rule": score.rule,
            "signals": asdict(score.signals),
            "route": {
                "model_tier": decision.model_tier.value,
                "model": decision.model,
                "tools": list(decision.tool_names),
                "pattern": decision.pattern.value,
                "specialists": list(decision.target_specialists),
                "warnings": list(decision.warnings),
            },
        }

    @app.post("/turns")
    async def stream_turn(
        request: TurnRequest,
        requester_id: str = Header(default="anonymous", alias=REQUESTER_HEADER),
    ) -> StreamingResponse:
        async def _events() -> AsyncIterator[str]:
            async for event in services.runner.stream(
                request.to_query(),
                requester_id=requester_id,
                thread_id=request.thread_id,
                on_need_approval=_decision_channel(request),
            ):
                yield f"data: {json.dumps(event.as_dict(), default=str)}\n\n"

        return StreamingResponse(_events(), media_type="text/event-stream")

    @app.post("/turns/run")
    async def run_turn(
        request: TurnRequest,
        requester_id: str = Header(default="anonymous", alias=REQUESTER_HEADER),
    ) -> dict[str, Any]:
        emitter = ProgressEmitter()
        try:
            result = await services.runner.run(
                request.to_query(),
                requester_id=requester_id,
                thread_id=request.thread_id,
                emitter=emitter,
                on_need_approval=_decision_channel(request),
            )
        except RouterError as exc:
            return {
                "status": "failed",
                "error": exc.message,
                "kind": exc.kind,
                "events": [event.as_dict() for event in emitter.events],
            }
        return {
            "status": "done",
            "turn_id": result.turn_id,
            "content": result.content,
            "tools_used": result.tools_used,
            "route": {
                "pattern": result.decision.pattern.value,
                "model_tier": result.decision.model_tier.value,
                "specialists": list(result.decision.target_specialists),
            },
            "events": [event.as_dict() for event in result.events],
        }

    @app.post("/approvals/{approval_id}/resolve")
    async def resolve_approval(
        approval_id: str,
        request: ResolveRequest,
        requester_id: str = Header(default="anonymous", alias=REQUESTER_HEADER),
    ) -> dict[str, Any]:
        try:
            response = services.approvals.resolve(approval_id, request.status, requester_id, request.reason)
        except ApprovalNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message) from exc
        except AlreadyResolved as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc
        except RequesterMismatch as exc:
            raise HTTPException(status_code=403, detail=exc.message) from exc
        return response.as_dict()

    @app.get("/approvals")
    async def list_approvals(
        pending: bool = True,
        requester: str | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        if pending:
            return {"items": [request.as_dict() for request in services.approvals.pending(requester)]}
        entries = [
            entry
            for entry in services.approvals.audit_log(limit=limit)
            if requester is None or entry.requester_id == requester
        ]
        return {"items": [json.loads(json.dumps(asdict(entry), default=str)) for entry in entries]}

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in services.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{turn_id}")
    def trace_detail(turn_id: str) -> dict[str, Any]:
        try:
            record = services.trace_store.get(turn_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return {**services.trace_store.summary(), "tools": services.trace_store.tool_summary()}

    return app


def _decision_channel(request: TurnRequest) -> DecisionChannel | None:
    if request.approval_decision is None:
        return None
    decision = request.approval_decision
    return lambda approval: decision
