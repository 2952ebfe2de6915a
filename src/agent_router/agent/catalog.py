"""Static specialist catalog and registry bootstrap."""

from __future__ import annotations

from agent_router.agent.discovery import CapabilityDiscovery
from agent_router.agent.registry import SpecialistDescriptor, ToolRegistry
from agent_router.agent.tools import register_builtin_tools
from agent_router.config import RouterSettings
from agent_router.integrations.home_assistant import HomeAssistantClient, HomeBackend, InMemoryHomeBackend
from agent_router.integrations.search import SearchBackend, StaticSearchBackend, TavilySearchBackend
from agent_router.types import ModelTier

ORCHESTRATOR_ID = "orchestrator"

DEFAULT_SPECIALISTS: tuple[SpecialistDescriptor, ...] = (
    SpecialistDescriptor(
        id="home",
        display_name="Home Control Specialist",
        description="Expert in smart home device control and automation.",
        allowed_tools=frozenset({"ha_search", "ha_call"}),
        model_tier_default=ModelTier.FAST,
    ),
    SpecialistDescriptor(
        id="memory",
        display_name="Memory Specialist",
        description="Expert in user preferences, habits, and long-term context.",
        allowed_tools=frozenset({"memory_add", "memory_search"}),
        model_tier_default=ModelTier.FAST,
    ),
    SpecialistDescriptor(
        id="research",
        display_name="Research Specialist",
        description="Expert in web research, fact-checking, and information gathering.",
        allowed_tools=frozenset({"web_search", "memory_search"}),
        model_tier_default=ModelTier.BALANCED,
    ),
    SpecialistDescriptor(
        id="code",
        display_name="Code Execution Specialist",
        description="Expert in Python code execution, calculations, and data analysis.",
        allowed_tools=frozenset({"code_interpreter", "web_search"}),
        model_tier_default=ModelTier.BALANCED,
    ),
    SpecialistDescriptor(
        id="general",
        display_name="General Problem Solver",
        description="Expert in complex reasoning spanning multiple domains.",
        allowed_tools=frozenset(
            {"ha_search", "ha_call", "memory_add", "memory_search", "web_search", "code_interpreter"}
        ),
        model_tier_default=ModelTier.COMPLEX,
    ),
)


def build_registry(
    *,
    home: HomeBackend,
    search: SearchBackend,
    sqlite_path: str,
    discovery: CapabilityDiscovery | None = None,
    specialists: tuple[SpecialistDescriptor, ...] = DEFAULT_SPECIALISTS,
) -> ToolRegistry:
    """Register every tool and specialist, then seal the registry."""
    registry = ToolRegistry(discovery=discovery)
    register_builtin_tools(registry, home=home, search=search, sqlite_path=sqlite_path)
    for specialist in specialists:
        registry.register_specialist(specialist)
    registry.seal()
    return registry


def build_backends(settings: RouterSettings) -> tuple[HomeBackend, SearchBackend]:
    home: HomeBackend
    if settings.home_assistant_url and settings.home_assistant_token:
        home = HomeAssistantClient(settings.home_assistant_url, settings.home_assistant_token)
    else:
        home = InMemoryHomeBackend()

    search: SearchBackend
    if settings.tavily_api_key:
        search = TavilySearchBackend(settings.tavily_api_key)
    else:
        search = StaticSearchBackend()
    return home, search


def missing_dependencies(registry: ToolRegistry, settings: RouterSettings) -> dict[str, list[str]]:
    """Tools whose external collaborator is running on an offline stand-in."""
    configured = {
        "home_assistant": bool(settings.home_assistant_url and settings.home_assistant_token),
        "search": bool(settings.tavily_api_key),
    }
    report: dict[str, list[str]] = {}
    for descriptor in registry.specs():
        missing = [dep for dep in descriptor.dependencies if not configured.get(dep, False)]
        if missing:
            report[descriptor.name] = missing
    return report
