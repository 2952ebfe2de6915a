"""Configuration models for the agent router."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_router.errors import ConfigurationError
from agent_router.types import ModelTier, RiskLevel


class ModelTierConfig(BaseModel):
    """Maps routing tiers onto concrete model identifiers."""

    fast: str = Field(min_length=1)
    balanced: str = Field(min_length=1)
    complex: str = Field(min_length=1)

    def model_for(self, tier: ModelTier) -> str:
        return {
            ModelTier.FAST: self.fast,
            ModelTier.BALANCED: self.balanced,
            ModelTier.COMPLEX: self.complex,
        }[tier]


class GuardrailConfig(BaseModel):
    """Length ceilings and thresholds used by the standard validators."""

    max_input_length: int = Field(default=10_000, ge=1)
    min_output_length: int = Field(default=10, ge=0)
    max_output_length: int = Field(default=50_000, ge=1)
    injection_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    special_char_ratio: float = Field(default=0.3, gt=0.0, le=1.0)


class ApprovalConfig(BaseModel):
    ttl_ms: int = Field(default=60_000, ge=1)
    risk_overrides: dict[str, RiskLevel] = Field(default_factory=dict)

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_ms / 1000.0


class ClassifierConfig(BaseModel):
    history_escalation_threshold: int = Field(default=10, ge=0)


class AgentConfig(BaseModel):
    """Configures agent execution and fan-out limits."""

    max_iterations: int = Field(default=6, ge=1)
    manager_fan_out: int = Field(default=5, ge=1)
    target_latency_seconds: float = Field(default=8.0, gt=0.0)


class DiscoveryConfig(BaseModel):
    cache_ttl_seconds: float = Field(default=1800.0, gt=0.0)


REQUIRED_SETTINGS = ("fast_model", "balanced_model", "complex_model")


class RouterSettings(BaseSettings):
    """Environment-level configuration validated once at startup."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fast_model: str = Field(min_length=1)
    balanced_model: str = Field(min_length=1)
    complex_model: str = Field(min_length=1)

    approval_ttl_ms: int = Field(default=60_000, ge=1)
    max_input_length: int = Field(default=10_000, ge=1)
    max_output_length: int = Field(default=50_000, ge=1)
    min_output_length: int = Field(default=10, ge=0)
    tool_risk_overrides: dict[str, RiskLevel] = Field(default_factory=dict)
    manager_fan_out: int = Field(default=5, ge=1)
    max_iterations: int = Field(default=6, ge=1)
    capability_cache_ttl_seconds: float = Field(default=1800.0, gt=0.0)
    history_escalation_threshold: int = Field(default=10, ge=0)
    environment: Literal["development", "test", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    memory_db_path: str = "agent_router.db"

    home_assistant_url: str | None = None
    home_assistant_token: str | None = None
    tavily_api_key: str | None = None
    openai_api_key: str | None = None

    @property
    def debug(self) -> bool:
        return self.environment != "production"

    def model_tiers(self) -> ModelTierConfig:
        return ModelTierConfig(
            fast=self.fast_model,
            balanced=self.balanced_model,
            complex=self.complex_model,
        )

    def guardrails(self) -> GuardrailConfig:
        return GuardrailConfig(
            max_input_length=self.max_input_length,
            min_output_length=self.min_output_length,
            max_output_length=self.max_output_length,
        )

    def approval(self) -> ApprovalConfig:
        return ApprovalConfig(
            ttl_ms=self.approval_ttl_ms,
            risk_overrides=dict(self.tool_risk_overrides),
        )

    def classifier(self) -> ClassifierConfig:
        return ClassifierConfig(
            history_escalation_threshold=self.history_escalation_threshold
        )

    def agent(self) -> AgentConfig:
        return AgentConfig(
            max_iterations=self.max_iterations,
            manager_fan_out=self.manager_fan_out,
        )

    def discovery(self) -> DiscoveryConfig:
        return DiscoveryConfig(cache_ttl_seconds=self.capability_cache_ttl_seconds)


def load_settings(**overrides: Any) -> RouterSettings:
    """Load settings from the environment, failing fast on missing keys."""
    try:
        return RouterSettings(**overrides)
    except ValidationError as exc:
        missing = [
            "ROUTER_" + str(error["loc"][0]).upper()
            for error in exc.errors()
            if error["type"] == "missing" and error["loc"]
        ]
        if missing:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(missing),
                missing=missing,
            ) from exc
        raise ConfigurationError(
            f"Invalid configuration: {exc}",
            errors=[str(error["msg"]) for error in exc.errors()],
        ) from exc


def describe_settings() -> dict[str, Any]:
    """Enumerate required and optional settings with their defaults."""
    required: list[str] = []
    optional: dict[str, Any] = {}
    for name, field_info in RouterSettings.model_fields.items():
        env_name = "ROUTER_" + name.upper()
        if field_info.is_required():
            required.append(env_name)
        else:
            default = field_info.get_default(call_default_factory=True)
            optional[env_name] = default.value if isinstance(default, RiskLevel) else default
    return {"required": required, "optional": optional}
