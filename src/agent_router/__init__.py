"""Agent router package."""

from .config import RouterSettings, load_settings
from .types import ComplexityTier, ModelTier, Pattern, Query, QueryOverrides, RiskLevel

__all__ = [
    "ComplexityTier",
    "ModelTier",
    "Pattern",
    "Query",
    "QueryOverrides",
    "RiskLevel",
    "RouterSettings",
    "load_settings",
]
