"""Turn tracing and cost accounting."""

from __future__ import annotations

import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agent_router.types import ModelTier, ToolTrace

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TurnTrace:
    turn_id: str
    timestamp_utc: str
    query: str
    complexity: str | None
    model_tier: str | None
    model: str | None
    pattern: str | None
    specialists: list[str]
    tool_traces: list[ToolTrace]
    status: str
    error_kind: str | None
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float


@dataclass(slots=True)
class CostModel:
    """Token pricing per model tier (USD per 1K tokens, input/output)."""

    prices: dict[ModelTier, tuple[float, float]] = field(
        default_factory=lambda: {
            ModelTier.FAST: (0.00015, 0.0006),
            ModelTier.BALANCED: (0.0025, 0.01),
            ModelTier.COMPLEX: (0.005, 0.015),
        }
    )

    def estimate_cost(self, tier: ModelTier | None, input_tokens: int, output_tokens: int) -> float:
        input_per_1k, output_per_1k = self.prices.get(tier or ModelTier.BALANCED, (0.0, 0.0))
        return (input_tokens / 1000.0) * input_per_1k + (output_tokens / 1000.0) * output_per_1k


@dataclass(slots=True)
class _ToolStats:
    calls: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, cost_model: CostModel | None = None, max_records: int = 500) -> None:
        self._records: dict[str, TurnTrace] = {}
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records
        self._tool_stats: dict[str, _ToolStats] = defaultdict(_ToolStats)

    def observe_tool(self, trace: ToolTrace) -> None:
        """Registry observer: aggregate per-tool latency and failures."""
        stats = self._tool_stats[trace.name]
        stats.calls += 1
        stats.total_latency_ms += trace.latency_ms
        if not trace.success:
            stats.failures += 1

    def create_record(
        self,
        *,
        turn_id: str,
        query: str,
        answer: str,
        status: str,
        latency_ms: float,
        complexity: str | None = None,
        model_tier: ModelTier | None = None,
        model: str | None = None,
        pattern: str | None = None,
        specialists: list[str] | None = None,
        tool_traces: list[ToolTrace] | None = None,
        error_kind: str | None = None,
    ) -> TurnTrace:
        input_tokens = estimate_token_count(query)
        output_tokens = estimate_token_count(answer)
        record = TurnTrace(
            turn_id=turn_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=query,
            complexity=complexity,
            model_tier=model_tier.value if model_tier else None,
            model=model,
            pattern=pattern,
            specialists=list(specialists or []),
            tool_traces=list(tool_traces or []),
            status=status,
            error_kind=error_kind,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=self._cost_model.estimate_cost(model_tier, input_tokens, output_tokens),
            latency_ms=latency_ms,
        )
        self._records[turn_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, turn_id: str) -> TurnTrace:
        record = self._records.get(turn_id)
        if record is None:
            raise KeyError(f"Trace not found: {turn_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnTrace]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        tool_calls = sum(stats.calls for stats in self._tool_stats.values())
        tool_failures = sum(stats.failures for stats in self._tool_stats.values())
        if total == 0:
            return {
                "total_requests": 0,
                "failed_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_usd": 0.0,
                "tool_calls": tool_calls,
                "tool_failures": tool_failures,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_requests": total,
            "failed_requests": sum(1 for record in records if record.status != "done"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
            "tool_calls": tool_calls,
            "tool_failures": tool_failures,
        }

    def tool_summary(self) -> dict[str, dict[str, float | int]]:
        return {
            name: {
                "calls": stats.calls,
                "failures": stats.failures,
                "avg_latency_ms": stats.total_latency_ms / stats.calls if stats.calls else 0.0,
            }
            for name, stats in sorted(self._tool_stats.items())
        }


class Timer:
    """Simple context timer used by the runner."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

    def lap_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
