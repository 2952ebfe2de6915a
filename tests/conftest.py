from __future__ import annotations

from pathlib import Path

import pytest

from agent_router.agent.catalog import build_registry
from agent_router.agent.registry import ToolRegistry
from agent_router.config import ModelTierConfig, RouterSettings
from agent_router.integrations.home_assistant import InMemoryHomeBackend
from agent_router.integrations.search import StaticSearchBackend


@pytest.fixture
def tiers() -> ModelTierConfig:
    return ModelTierConfig(fast="fast-model", balanced="balanced-model", complex="complex-model")


@pytest.fixture
def home() -> InMemoryHomeBackend:
    return InMemoryHomeBackend()


@pytest.fixture
def search() -> StaticSearchBackend:
    return StaticSearchBackend(
        [
            {
                "title": "Paris weather today",
                "url": "https://example.com/paris-weather",
                "snippet": "Sunny weather in Paris with a high of 21C.",
            }
        ]
    )


@pytest.fixture
def registry(tmp_path: Path, home: InMemoryHomeBackend, search: StaticSearchBackend) -> ToolRegistry:
    return build_registry(home=home, search=search, sqlite_path=str(tmp_path / "memory.db"))


@pytest.fixture
def settings(tmp_path: Path) -> RouterSettings:
    return RouterSettings(
        _env_file=None,
        fast_model="fast-model",
        balanced_model="balanced-model",
        complex_model="complex-model",
        memory_db_path=str(tmp_path / "memory.db"),
        environment="test",
    )
