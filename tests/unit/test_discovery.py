import asyncio

import pytest

from agent_router.agent.discovery import CapabilityDiscovery, EntityState


class _Fetcher:
    def __init__(self) -> None:
        self.calls = 0
        self.states = [
            EntityState("light.kitchen", "off", {"friendly_name": "Kitchen Light"}),
            EntityState("light.bedroom", "on", {"friendly_name": "Bedroom Light"}),
            EntityState("lock.front_door", "locked", {"friendly_name": "Front Door"}),
            EntityState("sensor.secret", "1"),
        ]

    async def __call__(self) -> list[EntityState]:
        self.calls += 1
        await asyncio.sleep(0)
        return list(self.states)


@pytest.mark.asyncio
async def test_snapshot_is_cached_until_ttl() -> None:
    now = [100.0]
    fetcher = _Fetcher()
    discovery = CapabilityDiscovery(fetcher, ttl_seconds=60, clock=lambda: now[0])

    first = await discovery.snapshot()
    now[0] += 59
    assert await discovery.snapshot() is first
    assert fetcher.calls == 1

    now[0] += 2
    second = await discovery.snapshot()
    assert fetcher.calls == 2
    assert second.version == first.version + 1


@pytest.mark.asyncio
async def test_concurrent_readers_share_one_refresh() -> None:
    fetcher = _Fetcher()
    discovery = CapabilityDiscovery(fetcher)

    snapshots = await asyncio.gather(*(discovery.snapshot() for _ in range(5)))

    assert fetcher.calls == 1
    assert all(snapshot is snapshots[0] for snapshot in snapshots)


@pytest.mark.asyncio
async def test_filters_and_invalidation() -> None:
    fetcher = _Fetcher()
    discovery = CapabilityDiscovery(
        fetcher,
        included_domains=["light", "lock"],
        excluded_entities=["light.bedroom"],
    )

    snapshot = await discovery.snapshot()
    assert [entity.entity_id for entity in snapshot.entities] == ["light.kitchen", "lock.front_door"]
    assert snapshot.domains() == {"light", "lock"}

    discovery.invalidate()
    assert discovery.current is None
    assert not discovery.is_fresh()
    await discovery.snapshot()
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_snapshot_search_ranks_by_matching_terms() -> None:
    discovery = CapabilityDiscovery(_Fetcher())
    snapshot = await discovery.snapshot()

    hits = snapshot.search("kitchen light")
    assert [entity.entity_id for entity in hits][:2] == ["light.kitchen", "light.bedroom"]
    assert [entity.entity_id for entity in snapshot.search("door", domain="lock")] == ["lock.front_door"]
    assert snapshot.search("front door")[0].friendly_name == "Front Door"
