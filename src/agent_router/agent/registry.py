"""Tool and specialist registry built on Pydantic v2 models."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from agent_router.agent.models import ToolSpec
from agent_router.errors import RegistryError, UnknownToolError
from agent_router.obs.logging import get_logger
from agent_router.types import ModelTier, RiskLevel, ToolTrace

if TYPE_CHECKING:
    from agent_router.agent.discovery import CapabilityDiscovery, CapabilitySnapshot

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Who is calling a tool, passed to every handler."""

    requester_id: str
    specialist_id: str
    thread_id: str | None = None


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[dict[str, Any]]]


class ToolDescriptor(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1)
    description: str
    domain: str
    risk_level: RiskLevel = RiskLevel.LOW
    dangerous_operations: frozenset[str] = frozenset()
    cost_hint: str = "Free"
    args_schema: type[BaseModel]
    handler: ToolHandler
    dependencies: tuple[str, ...] = ()

    async def invoke(self, payload: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data, context)


class SpecialistDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str = Field(min_length=1)
    display_name: str
    description: str = ""
    allowed_tools: frozenset[str]
    model_tier_default: ModelTier = ModelTier.BALANCED


class ToolRegistry:
    """Static catalog of tools and specialists.

    Tools and specialists are registered during bootstrap, then the registry is
    sealed and becomes read-only. A specialist that references an undeclared
    tool is a fatal bootstrap error.
    """

    def __init__(self, *, discovery: CapabilityDiscovery | None = None) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._specialists: dict[str, SpecialistDescriptor] = {}
        self._observer: Callable[[ToolTrace], None] | None = None
        self._discovery = discovery
        self._sealed = False

    def register(self, descriptor: ToolDescriptor) -> None:
        self._ensure_mutable()
        if descriptor.name in self._tools:
            raise RegistryError(f"Tool already registered: {descriptor.name}", tool_name=descriptor.name)
        self._tools[descriptor.name] = descriptor

    def register_specialist(self, specialist: SpecialistDescriptor) -> None:
        self._ensure_mutable()
        if specialist.id in self._specialists:
            raise RegistryError(f"Specialist already registered: {specialist.id}", specialist=specialist.id)
        undeclared = sorted(specialist.allowed_tools - self._tools.keys())
        if undeclared:
            raise RegistryError(
                f"Specialist {specialist.id} references undeclared tools: {', '.join(undeclared)}",
                specialist=specialist.id,
                undeclared=undeclared,
            )
        self._specialists[specialist.id] = specialist

    def seal(self) -> None:
        self._sealed = True
        logger.info(
            "registry_sealed",
            tools=sorted(self._tools),
            specialists=sorted(self._specialists),
        )

    @property
    def sealed(self) -> bool:
        return self._sealed

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def describe_tool(self, name: str) -> ToolDescriptor:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(name)
        return descriptor

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def specialist(self, specialist_id: str) -> SpecialistDescriptor:
        specialist = self._specialists.get(specialist_id)
        if specialist is None:
            raise RegistryError(f"Unknown specialist: {specialist_id}", specialist=specialist_id)
        return specialist

    def specialists(self) -> list[SpecialistDescriptor]:
        return list(self._specialists.values())

    def tools_for_specialist(self, specialist_id: str) -> list[ToolDescriptor]:
        allowed = self.specialist(specialist_id).allowed_tools
        return [tool for name, tool in self._tools.items() if name in allowed]

    def resolve(self, names: Iterable[str]) -> tuple[list[ToolDescriptor], list[str]]:
        found: list[ToolDescriptor] = []
        missing: list[str] = []
        for name in names:
            descriptor = self._tools.get(name)
            if descriptor is None:
                missing.append(name)
            elif descriptor not in found:
                found.append(descriptor)
        return found, missing

    def specs(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def tool_specs(self, names: Sequence[str]) -> list[ToolSpec]:
        """Model-facing specs for the named tools, in the given order."""
        return [
            ToolSpec(name=descriptor.name, description=descriptor.description, args_schema=descriptor.args_schema)
            for descriptor in self.resolve(names)[0]
        ]

    async def capabilities(self) -> CapabilitySnapshot | None:
        """Latest published capability snapshot, if discovery is configured."""
        if self._discovery is None:
            return None
        return await self._discovery.snapshot()

    def invalidate_capabilities(self) -> None:
        if self._discovery is not None:
            self._discovery.invalidate()

    async def execute(
        self,
        name: str,
        payload: dict[str, Any],
        context: ToolContext,
    ) -> dict[str, Any]:
        descriptor = self.describe_tool(name)
        start = perf_counter()
        success = False
        output: dict[str, Any] = {}
        try:
            output = await descriptor.invoke(payload, context)
            success = True
            return output
        finally:
            latency_ms = (perf_counter() - start) * 1000.0
            if self._observer is not None:
                self._observer(
                    ToolTrace(
                        name=descriptor.name,
                        input_payload=payload,
                        output_preview=json.dumps(output, default=str)[:320],
                        latency_ms=latency_ms,
                        success=success,
                    )
                )

    def _ensure_mutable(self) -> None:
        if self._sealed:
            raise RegistryError("Registry is sealed; tools and specialists are fixed at startup")
