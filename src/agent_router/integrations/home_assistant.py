"""Home-automation backends: Home Assistant REST and an in-memory stand-in."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from agent_router.agent.discovery import EntityState
from agent_router.obs.logging import get_logger

logger = get_logger(name=__name__)

_SERVICE_STATES = {
    "turn_on": "on",
    "turn_off": "off",
    "lock": "locked",
    "unlock": "unlocked",
    "open": "open",
    "close": "closed",
    "open_cover": "open",
    "close_cover": "closed",
    "disarm": "disarmed",
    "arm_home": "armed_home",
    "arm_away": "armed_away",
}


class HomeBackend(Protocol):
    async def fetch_states(self) -> list[EntityState]:
        ...

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        ...


class HomeAssistantClient:
    """Thin async client for the Home Assistant REST API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def fetch_states(self) -> list[EntityState]:
        async with self._client() as client:
            response = await client.get("/api/states")
            response.raise_for_status()
            payload = response.json()
        return [
            EntityState(
                entity_id=str(item["entity_id"]),
                state=str(item.get("state", "unknown")),
                attributes=dict(item.get("attributes") or {}),
            )
            for item in payload
            if isinstance(item, dict) and "entity_id" in item
        ]

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        body = dict(data)
        if entity_id:
            body["entity_id"] = entity_id
        async with self._client() as client:
            response = await client.post(f"/api/services/{domain}/{service}", json=body)
            response.raise_for_status()
            changed = response.json()
        logger.info("ha_service_called", domain=domain, service=service, entity_id=entity_id)
        return {
            "ok": True,
            "domain": domain,
            "service": service,
            "entity_id": entity_id,
            "count": len(changed) if isinstance(changed, list) else 0,
        }


class InMemoryHomeBackend:
    """Offline device model used when no Home Assistant instance is configured."""

    def __init__(self, entities: list[EntityState] | None = None) -> None:
        self._states: dict[str, EntityState] = {
            entity.entity_id: entity for entity in (entities or default_entities())
        }
        self.calls: list[tuple[str, str, str | None]] = []

    async def fetch_states(self) -> list[EntityState]:
        return list(self._states.values())

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        self.calls.append((domain, service, entity_id))
        if entity_id is not None and entity_id not in self._states:
            return {"ok": False, "error": f"Unknown entity: {entity_id}"}
        if entity_id is not None:
            current = self._states[entity_id]
            new_state = _SERVICE_STATES.get(service, current.state)
            self._states[entity_id] = EntityState(
                entity_id=entity_id,
                state=new_state,
                attributes={**current.attributes, **data},
            )
        return {
            "ok": True,
            "domain": domain,
            "service": service,
            "entity_id": entity_id,
            "count": 1 if entity_id else 0,
        }


def default_entities() -> list[EntityState]:
    return [
        EntityState("light.living_room", "on", {"friendly_name": "Living Room Light"}),
        EntityState("light.kitchen", "off", {"friendly_name": "Kitchen Light"}),
        EntityState("light.bedroom", "off", {"friendly_name": "Bedroom Light"}),
        EntityState("switch.coffee_maker", "off", {"friendly_name": "Coffee Maker"}),
        EntityState("fan.bedroom", "off", {"friendly_name": "Bedroom Fan"}),
        EntityState("climate.hallway", "heat", {"friendly_name": "Hallway Thermostat"}),
        EntityState("lock.front_door", "locked", {"friendly_name": "Front Door"}),
        EntityState("lock.back_door", "locked", {"friendly_name": "Back Door"}),
        EntityState("garage_door.main", "closed", {"friendly_name": "Garage Door"}),
        EntityState("cover.living_room_blinds", "closed", {"friendly_name": "Living Room Blinds"}),
        EntityState("alarm_control_panel.home", "armed_home", {"friendly_name": "Home Alarm"}),
    ]
