"""Routing policy: complexity + overrides -> model tier, tools, pattern."""

from __future__ import annotations

from collections.abc import Sequence

from agent_router.agent.registry import SpecialistDescriptor, ToolRegistry
from agent_router.config import ModelTierConfig
from agent_router.errors import RoutingUnresolvedTool
from agent_router.obs.logging import get_logger
from agent_router.routing import rules
from agent_router.types import (
    ComplexityScore,
    ComplexityTier,
    ModelTier,
    Pattern,
    QueryOverrides,
    RoutingDecision,
)

logger = get_logger(name=__name__)

_TIER_FOR_COMPLEXITY = {
    ComplexityTier.SIMPLE: ModelTier.FAST,
    ComplexityTier.MODERATE: ModelTier.BALANCED,
    ComplexityTier.COMPLEX: ModelTier.COMPLEX,
}


class RoutingPolicy:
    """Turns a complexity score into a ``RoutingDecision``.

    Explicit overrides win outright. Otherwise the tier follows the complexity,
    tools are narrowed by intent keywords for simple queries, and complex queries
    are handed off (or fanned out to specialists when synthesis is requested).
    Tool names the registry cannot resolve are reported as warnings.
    """

    def __init__(self, registry: ToolRegistry, tiers: ModelTierConfig) -> None:
        self._registry = registry
        self._tiers = tiers

    def route(
        self,
        score: ComplexityScore,
        overrides: QueryOverrides | None = None,
        *,
        text: str = "",
    ) -> RoutingDecision:
        overrides = overrides or QueryOverrides()

        if overrides.explicit:
            tier = overrides.model_tier or ModelTier.BALANCED
            requested = overrides.tools if overrides.tools is not None else _tools_for_model_tier(tier)
            pattern = overrides.pattern or (Pattern.HANDOFF if tier is ModelTier.COMPLEX else Pattern.DIRECT)
            if overrides.synthesize and overrides.pattern is None and tier is ModelTier.COMPLEX:
                pattern = Pattern.MANAGER
            complexity = None
            reasoning = "explicit override"
        else:
            tier = _TIER_FOR_COMPLEXITY[score.tier]
            requested = self._tools_for_complexity(score.tier, text)
            if score.tier is ComplexityTier.COMPLEX:
                pattern = Pattern.MANAGER if overrides.synthesize else Pattern.HANDOFF
            else:
                pattern = Pattern.DIRECT
            if overrides.pattern is not None:
                pattern = overrides.pattern
            complexity = score.tier
            reasoning = f"{score.tier.value} query ({score.rule}, score {score.score})"

        warnings: list[str] = []
        found, missing = self._registry.resolve(requested)
        if missing:
            logger.warning("routing_unresolved_tool", missing=missing)
            if not found:
                raise RoutingUnresolvedTool(missing)
            warnings.append("Unresolved tools: " + ", ".join(missing))
        names = [descriptor.name for descriptor in found]

        targets = self._select_specialists(pattern, names, text)
        if overrides.tools is not None:
            # Explicitly requested tools pull in a specialist that can run them.
            targets = self._cover_tools(targets, names)
        allowed = set().union(*(specialist.allowed_tools for specialist in targets)) if targets else set()
        dropped = [name for name in names if name not in allowed]
        if dropped:
            logger.warning("routing_tools_outside_specialists", dropped=dropped)
            warnings.append("Tools not allowed for selected specialists: " + ", ".join(dropped))
            names = [name for name in names if name in allowed]
            if not names:
                raise RoutingUnresolvedTool(dropped)

        decision = RoutingDecision(
            model_tier=tier,
            model=self._tiers.model_for(tier),
            tool_names=tuple(names),
            pattern=pattern,
            target_specialists=tuple(specialist.id for specialist in targets),
            complexity=complexity,
            reasoning=reasoning,
            warnings=tuple(warnings),
        )
        logger.info(
            "route_selected",
            model_tier=decision.model_tier.value,
            pattern=decision.pattern.value,
            tools=list(decision.tool_names),
            specialists=list(decision.target_specialists),
        )
        return decision

    def _tools_for_complexity(self, tier: ComplexityTier, text: str) -> tuple[str, ...]:
        if tier is ComplexityTier.SIMPLE:
            if rules.HOME_INTENT.search(text):
                return rules.HOME_TOOLS
            if rules.INFORMATION_INTENT.search(text):
                return rules.INFORMATION_TOOLS
            return rules.SIMPLE_DEFAULT_TOOLS
        if tier is ComplexityTier.MODERATE:
            return rules.DEFAULT_TOOLS
        return rules.FULL_TOOLS

    def _select_specialists(
        self,
        pattern: Pattern,
        tool_names: Sequence[str],
        text: str,
    ) -> list[SpecialistDescriptor]:
        specialists = self._registry.specialists()
        if not specialists:
            return []
        by_id = {specialist.id: specialist for specialist in specialists}
        general = by_id.get(rules.GENERAL_SPECIALIST)

        if pattern is Pattern.DIRECT:
            covering = [s for s in specialists if set(tool_names) <= s.allowed_tools]
            if covering:
                return [min(covering, key=lambda s: len(s.allowed_tools))]
            return [general] if general is not None else [max(specialists, key=lambda s: len(s.allowed_tools))]

        matched = [
            by_id[specialist_id]
            for specialist_id, intent in rules.SPECIALIST_INTENTS
            if specialist_id in by_id and intent.search(text)
        ]

        if pattern is Pattern.HANDOFF:
            candidates = [s for s in matched if s.allowed_tools & set(tool_names)]
            if general is not None:
                candidates.append(general)
            return candidates or list(specialists)

        # Manager: specialists are tools of the orchestrator.
        if matched:
            return matched
        return [s for s in specialists if s is not general] or list(specialists)

    def _cover_tools(
        self,
        targets: list[SpecialistDescriptor],
        tool_names: Sequence[str],
    ) -> list[SpecialistDescriptor]:
        covered = list(targets)
        for name in tool_names:
            if any(name in specialist.allowed_tools for specialist in covered):
                continue
            able = [s for s in self._registry.specialists() if name in s.allowed_tools]
            if able:
                covered.append(min(able, key=lambda s: len(s.allowed_tools)))
        return covered


def _tools_for_model_tier(tier: ModelTier) -> tuple[str, ...]:
    if tier is ModelTier.FAST:
        return rules.SIMPLE_DEFAULT_TOOLS
    if tier is ModelTier.BALANCED:
        return rules.DEFAULT_TOOLS
    return rules.FULL_TOOLS
