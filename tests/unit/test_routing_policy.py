from typing import Any

import pytest
from pydantic import BaseModel

from agent_router.agent.registry import SpecialistDescriptor, ToolContext, ToolDescriptor, ToolRegistry
from agent_router.config import ModelTierConfig
from agent_router.errors import RoutingUnresolvedTool
from agent_router.routing.classifier import classify
from agent_router.routing.policy import RoutingPolicy
from agent_router.types import (
    ComplexityScore,
    ComplexitySignals,
    ComplexityTier,
    ModelTier,
    Pattern,
    QueryOverrides,
)

_NO_SIGNALS = ComplexitySignals(0, 0, 0, 0, 0)


def _score(tier: ComplexityTier) -> ComplexityScore:
    return ComplexityScore(tier=tier, signals=_NO_SIGNALS, score=50)


def _allowed(registry: ToolRegistry, specialist_ids: tuple[str, ...]) -> set[str]:
    allowed: set[str] = set()
    for specialist_id in specialist_ids:
        allowed |= registry.specialist(specialist_id).allowed_tools
    return allowed


class _Empty(BaseModel):
    pass


async def _noop(data: _Empty, context: ToolContext) -> dict[str, Any]:
    return {"ok": True}


def _tool(name: str) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=name, domain="test", args_schema=_Empty, handler=_noop)


def test_simple_home_command_gets_only_the_home_control_tool(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    text = "turn off the living room light"
    decision = RoutingPolicy(registry, tiers).route(classify(text), text=text)

    assert decision.model_tier is ModelTier.FAST
    assert decision.model == "fast-model"
    assert decision.tool_names == ("ha_call",)
    assert decision.pattern is Pattern.DIRECT
    assert decision.target_specialists == ("home",)
    assert decision.complexity is ComplexityTier.SIMPLE
    assert decision.warnings == ()


def test_simple_informational_query_gets_search(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    text = "what's the weather in Paris"
    decision = RoutingPolicy(registry, tiers).route(classify(text), text=text)

    assert decision.tool_names == ("web_search",)
    assert decision.target_specialists == ("research",)


def test_simple_query_without_intent_gets_small_default_set(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    decision = RoutingPolicy(registry, tiers).route(classify("hello"), text="hello")

    assert decision.tool_names == ("memory_search", "web_search")
    assert decision.pattern is Pattern.DIRECT


def test_moderate_query_gets_balanced_tier_and_default_tools(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    decision = RoutingPolicy(registry, tiers).route(_score(ComplexityTier.MODERATE), text="anything")

    assert decision.model_tier is ModelTier.BALANCED
    assert decision.tool_names == ("ha_search", "ha_call", "memory_search", "memory_add", "web_search")
    assert decision.pattern is Pattern.DIRECT
    assert decision.target_specialists == ("general",)


def test_complex_query_hands_off(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    text = "compare the latest news about smart lights"
    decision = RoutingPolicy(registry, tiers).route(_score(ComplexityTier.COMPLEX), text=text)

    assert decision.model_tier is ModelTier.COMPLEX
    assert decision.pattern is Pattern.HANDOFF
    assert decision.target_specialists == ("home", "research", "general")
    assert "code_interpreter" in decision.tool_names


def test_synthesis_request_uses_manager_and_drops_unreachable_tools(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    text = "compare the latest news about smart lights"
    decision = RoutingPolicy(registry, tiers).route(
        _score(ComplexityTier.COMPLEX),
        QueryOverrides(synthesize=True),
        text=text,
    )

    assert decision.pattern is Pattern.MANAGER
    assert decision.target_specialists == ("home", "research")
    assert decision.tool_names == ("ha_search", "ha_call", "memory_search", "web_search")
    assert any("code_interpreter" in warning for warning in decision.warnings)


def test_manager_without_intent_consults_every_domain_specialist(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    decision = RoutingPolicy(registry, tiers).route(
        _score(ComplexityTier.COMPLEX),
        QueryOverrides(synthesize=True),
        text="Summarize everything.",
    )

    assert decision.target_specialists == ("home", "memory", "research", "code")


def test_explicit_override_wins_and_reports_unresolved_tools(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    decision = RoutingPolicy(registry, tiers).route(
        _score(ComplexityTier.COMPLEX),
        QueryOverrides(model_tier=ModelTier.FAST, tools=("web_search", "stock_ticker")),
        text="compare stock prices",
    )

    assert decision.model_tier is ModelTier.FAST
    assert decision.pattern is Pattern.DIRECT
    assert decision.tool_names == ("web_search",)
    assert decision.complexity is None
    assert decision.reasoning == "explicit override"
    assert decision.warnings == ("Unresolved tools: stock_ticker",)


def test_tool_override_alone_keeps_balanced_tier(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    decision = RoutingPolicy(registry, tiers).route(
        _score(ComplexityTier.SIMPLE),
        QueryOverrides(tools=("ha_call",)),
    )

    assert decision.model_tier is ModelTier.BALANCED
    assert decision.target_specialists == ("home",)


def test_override_with_no_resolvable_tool_fails(registry: ToolRegistry, tiers: ModelTierConfig) -> None:
    with pytest.raises(RoutingUnresolvedTool) as excinfo:
        RoutingPolicy(registry, tiers).route(
            _score(ComplexityTier.SIMPLE),
            QueryOverrides(tools=("stock_ticker",)),
        )

    assert excinfo.value.missing == ["stock_ticker"]


@pytest.mark.parametrize(
    ("tier", "text", "synthesize"),
    [
        (ComplexityTier.SIMPLE, "turn on the fan", False),
        (ComplexityTier.SIMPLE, "search for news", False),
        (ComplexityTier.MODERATE, "remember my favourite color", False),
        (ComplexityTier.COMPLEX, "remember and compute my budget", False),
        (ComplexityTier.COMPLEX, "remember and compute my budget", True),
    ],
)
def test_tools_are_always_within_selected_specialists(
    registry: ToolRegistry,
    tiers: ModelTierConfig,
    tier: ComplexityTier,
    text: str,
    synthesize: bool,
) -> None:
    decision = RoutingPolicy(registry, tiers).route(
        _score(tier), QueryOverrides(synthesize=synthesize), text=text
    )

    assert set(decision.tool_names) <= _allowed(registry, decision.target_specialists)


def test_tool_override_pulls_in_a_specialist_that_can_run_it(
    registry: ToolRegistry, tiers: ModelTierConfig
) -> None:
    text = "research the latest news"
    decision = RoutingPolicy(registry, tiers).route(
        classify(text),
        QueryOverrides(model_tier=ModelTier.COMPLEX, tools=("ha_call",), pattern=Pattern.MANAGER),
        text=text,
    )

    assert decision.tool_names == ("ha_call",)
    assert decision.target_specialists == ("research", "home")
    assert decision.warnings == ()


def test_tool_override_no_specialist_can_run_fails(tiers: ModelTierConfig) -> None:
    registry = ToolRegistry()
    registry.register(_tool("echo"))
    registry.register(_tool("orphan"))
    registry.register_specialist(
        SpecialistDescriptor(id="echoer", display_name="Echoer", allowed_tools=frozenset({"echo"}))
    )
    registry.seal()

    with pytest.raises(RoutingUnresolvedTool) as excinfo:
        RoutingPolicy(registry, tiers).route(_score(ComplexityTier.SIMPLE), QueryOverrides(tools=("orphan",)))

    assert excinfo.value.missing == ["orphan"]
