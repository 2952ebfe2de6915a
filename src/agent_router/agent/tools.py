"""Built-in tool implementations."""

from __future__ import annotations

import asyncio
import re
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agent_router.agent.registry import ToolContext, ToolDescriptor, ToolRegistry
from agent_router.integrations.home_assistant import HomeBackend
from agent_router.integrations.search import SearchBackend
from agent_router.types import RiskLevel

HOME_DANGEROUS_OPERATIONS = frozenset(
    {
        "lock.unlock",
        "lock.open",
        "alarm_control_panel.disarm",
        "garage_door.open",
        "cover.open",
        "climate.turn_off",
    }
)


class HomeSearchInput(BaseModel):
    query: str = Field(default="", max_length=200)
    domain: str | None = None
    limit: int = Field(default=10, ge=1, le=50)


class HomeCallInput(BaseModel):
    domain: str = Field(min_length=1)
    service: str = Field(min_length=1)
    entity_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class MemoryAddInput(BaseModel):
    content: str = Field(min_length=1, max_length=2000)
    tags: list[str] = Field(default_factory=list)


class MemorySearchInput(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)


class WebSearchInput(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=5, ge=1, le=10)


class CodeInterpreterInput(BaseModel):
    code: str = Field(min_length=1, max_length=20_000)
    timeout_seconds: float = Field(default=10.0, gt=0.0, le=60.0)


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    home: HomeBackend,
    search: SearchBackend,
    sqlite_path: str = "agent_router.db",
) -> None:
    """Register the default tool set.

    Tools:
    - `ha_search`: search discovered smart-home entities.
    - `ha_call`: call a smart-home service (risk depends on the operation).
    - `memory_add` / `memory_search`: SQLite-backed long-term memory.
    - `web_search`: web research through the configured search backend.
    - `code_interpreter`: run Python in a subprocess sandbox.
    """

    db_file = Path(sqlite_path)
    _ensure_memory_table(db_file)

    async def _ha_search(input_data: HomeSearchInput, context: ToolContext) -> dict[str, Any]:
        snapshot = await registry.capabilities()
        if snapshot is None:
            entities = await home.fetch_states()
            matches = [
                entity
                for entity in entities
                if (input_data.domain is None or entity.domain == input_data.domain)
            ][: input_data.limit]
        else:
            matches = snapshot.search(input_data.query, domain=input_data.domain, limit=input_data.limit)
        return {
            "ok": True,
            "count": len(matches),
            "entities": [
                {"entity_id": entity.entity_id, "name": entity.friendly_name, "state": entity.state}
                for entity in matches
            ],
        }

    async def _ha_call(input_data: HomeCallInput, context: ToolContext) -> dict[str, Any]:
        result = await home.call_service(
            input_data.domain,
            input_data.service,
            input_data.entity_id,
            input_data.data,
        )
        if not result.get("ok", False):
            raise RuntimeError(str(result.get("error", "service call failed")))
        registry.invalidate_capabilities()
        return result

    async def _memory_add(input_data: MemoryAddInput, context: ToolContext) -> dict[str, Any]:
        return await asyncio.to_thread(
            _insert_memory, db_file, context.requester_id, input_data.content, input_data.tags
        )

    async def _memory_search(input_data: MemorySearchInput, context: ToolContext) -> dict[str, Any]:
        rows = await asyncio.to_thread(
            _search_memories, db_file, context.requester_id, input_data.query, input_data.limit
        )
        return {"ok": True, "count": len(rows), "results": rows}

    async def _web_search(input_data: WebSearchInput, context: ToolContext) -> dict[str, Any]:
        results = await search.search(input_data.query, max_results=input_data.max_results)
        if not results:
            return {"ok": True, "count": 0, "results": [], "message": "NO_RESULTS"}
        return {"ok": True, "count": len(results), "results": results}

    async def _code_interpreter(input_data: CodeInterpreterInput, context: ToolContext) -> dict[str, Any]:
        return await _run_python(input_data.code, input_data.timeout_seconds)

    registry.register(
        ToolDescriptor(
            name="ha_search",
            description="Search for smart home devices and areas.",
            domain="home",
            risk_level=RiskLevel.LOW,
            args_schema=HomeSearchInput,
            handler=_ha_search,
            dependencies=("home_assistant",),
        )
    )
    registry.register(
        ToolDescriptor(
            name="ha_call",
            description="Control smart home devices by calling a domain service.",
            domain="home",
            risk_level=RiskLevel.HIGH,
            dangerous_operations=HOME_DANGEROUS_OPERATIONS,
            args_schema=HomeCallInput,
            handler=_ha_call,
            dependencies=("home_assistant",),
        )
    )
    registry.register(
        ToolDescriptor(
            name="memory_add",
            description="Store a persistent memory or user preference.",
            domain="memory",
            risk_level=RiskLevel.LOW,
            cost_hint="Local storage",
            args_schema=MemoryAddInput,
            handler=_memory_add,
        )
    )
    registry.register(
        ToolDescriptor(
            name="memory_search",
            description="Search stored memories and preferences.",
            domain="memory",
            risk_level=RiskLevel.LOW,
            cost_hint="Local storage",
            args_schema=MemorySearchInput,
            handler=_memory_search,
        )
    )
    registry.register(
        ToolDescriptor(
            name="web_search",
            description="Search the web for up-to-date information.",
            domain="research",
            risk_level=RiskLevel.LOW,
            cost_hint="Search API cost",
            args_schema=WebSearchInput,
            handler=_web_search,
            dependencies=("search",),
        )
    )
    registry.register(
        ToolDescriptor(
            name="code_interpreter",
            description="Execute Python code in a sandboxed subprocess.",
            domain="code",
            risk_level=RiskLevel.HIGH,
            cost_hint="Local CPU",
            args_schema=CodeInterpreterInput,
            handler=_code_interpreter,
        )
    )


async def _run_python(code: str, timeout_seconds: float) -> dict[str, Any]:
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        "-c",
        code,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"code execution timed out after {timeout_seconds:.0f}s")
    return {
        "ok": process.returncode == 0,
        "exit_code": process.returncode,
        "stdout": _truncate(stdout.decode("utf-8", errors="replace"), 4000),
        "stderr": _truncate(stderr.decode("utf-8", errors="replace"), 2000),
    }


def _insert_memory(db_path: Path, user_id: str, content: str, tags: list[str]) -> dict[str, Any]:
    created_at = datetime.now(timezone.utc).isoformat()
    with sqlite3.connect(db_path) as conn:
        cur = conn.execute(
            "INSERT INTO memories(user_id, content, tags, created_at) VALUES(?, ?, ?, ?)",
            (user_id, content, ",".join(tags), created_at),
        )
        conn.commit()
        memory_id = cur.lastrowid
    return {"ok": True, "id": memory_id, "message": "Memory stored"}


def _search_memories(db_path: Path, user_id: str, query: str, limit: int) -> list[dict[str, Any]]:
    terms = [term for term in re.findall(r"\w+", query.lower()) if len(term) > 2]
    with sqlite3.connect(db_path) as conn:
        cur = conn.execute(
            "SELECT id, content, tags, created_at FROM memories WHERE user_id = ? ORDER BY id DESC",
            (user_id,),
        )
        rows = cur.fetchall()

    scored: list[tuple[int, dict[str, Any]]] = []
    for memory_id, content, tags, created_at in rows:
        text = f"{content} {tags}".lower()
        score = sum(1 for term in terms if term in text)
        if score or not terms:
            scored.append(
                (
                    score,
                    {
                        "id": memory_id,
                        "content": content,
                        "tags": [tag for tag in tags.split(",") if tag],
                        "created_at": created_at,
                    },
                )
            )
    scored.sort(key=lambda item: -item[0])
    return [row for _, row in scored[:limit]]


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _ensure_memory_table(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS memories ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "user_id TEXT NOT NULL, "
            "content TEXT NOT NULL, "
            "tags TEXT NOT NULL DEFAULT '', "
            "created_at TEXT NOT NULL)"
        )
        conn.commit()
