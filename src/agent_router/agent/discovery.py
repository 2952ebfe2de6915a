"""Capability discovery for externally managed devices.

Discovery never mutates the registry. It periodically republishes an immutable
snapshot of the entities exposed by the home-automation backend; readers always
see a complete snapshot and only the refresh path writes.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agent_router.obs.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class EntityState:
    entity_id: str
    state: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        return self.entity_id.split(".", 1)[0]

    @property
    def friendly_name(self) -> str:
        name = self.attributes.get("friendly_name")
        return str(name) if name else self.entity_id


@dataclass(slots=True, frozen=True)
class CapabilitySnapshot:
    entities: tuple[EntityState, ...]
    fetched_at: datetime
    version: int

    def domains(self) -> set[str]:
        return {entity.domain for entity in self.entities}

    def search(self, query: str, *, domain: str | None = None, limit: int = 10) -> list[EntityState]:
        terms = [term for term in query.lower().split() if term]
        hits: list[tuple[int, EntityState]] = []
        for entity in self.entities:
            if domain and entity.domain != domain:
                continue
            haystack = f"{entity.entity_id} {entity.friendly_name}".lower().replace("_", " ")
            score = sum(1 for term in terms if term in haystack)
            if score or not terms:
                hits.append((score, entity))
        hits.sort(key=lambda item: (-item[0], item[1].entity_id))
        return [entity for _, entity in hits[:limit]]


StateFetcher = Callable[[], Awaitable[list[EntityState]]]


class CapabilityDiscovery:
    """TTL-cached snapshot publisher (default TTL: 30 minutes)."""

    def __init__(
        self,
        fetcher: StateFetcher,
        *,
        ttl_seconds: float = 1800.0,
        included_domains: Iterable[str] | None = None,
        excluded_entities: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self._ttl_seconds = ttl_seconds
        self._included = frozenset(included_domains) if included_domains is not None else None
        self._excluded = frozenset(excluded_entities)
        self._clock = clock
        self._snapshot: CapabilitySnapshot | None = None
        self._fetched_monotonic = 0.0
        self._version = 0
        self._lock = asyncio.Lock()

    @property
    def current(self) -> CapabilitySnapshot | None:
        return self._snapshot

    def is_fresh(self) -> bool:
        if self._snapshot is None:
            return False
        return (self._clock() - self._fetched_monotonic) < self._ttl_seconds

    async def snapshot(self) -> CapabilitySnapshot:
        if self.is_fresh():
            assert self._snapshot is not None
            return self._snapshot
        async with self._lock:
            if self.is_fresh():
                assert self._snapshot is not None
                return self._snapshot
            return await self._refresh()

    def invalidate(self) -> None:
        """Force the next reader to rediscover."""
        self._fetched_monotonic = 0.0
        self._snapshot = None
        logger.info("capabilities_invalidated", version=self._version)

    async def _refresh(self) -> CapabilitySnapshot:
        states = await self._fetcher()
        entities = tuple(
            state
            for state in states
            if (self._included is None or state.domain in self._included)
            and state.entity_id not in self._excluded
        )
        self._version += 1
        snapshot = CapabilitySnapshot(
            entities=entities,
            fetched_at=datetime.now(timezone.utc),
            version=self._version,
        )
        self._snapshot = snapshot
        self._fetched_monotonic = self._clock()
        logger.info("capabilities_refreshed", version=snapshot.version, entities=len(entities))
        return snapshot
