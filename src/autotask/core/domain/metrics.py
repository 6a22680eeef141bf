"""
Execution metrics for turns and tool calls.

Prometheus counters and histograms registered on a per-instance
CollectorRegistry. Constructed once by the application factory and passed to
the components that record into it; snapshot() reads the collectors back into
plain dicts.
"""

import time
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

SUCCESS = "success"
FAILURE = "failure"


def _summary(succeeded: float, failed: float, total_seconds: float) -> dict[str, Any]:
    count = int(succeeded + failed)
    return {
        "count": count,
        "succeeded": int(succeeded),
        "failed": int(failed),
        "success_rate": (succeeded / count) * 100 if count else 0.0,
        "average_ms": round(total_seconds * 1000 / count, 2) if count else 0.0,
    }


def _samples(collector, suffix: str):
    for family in collector.collect():
        for sample in family.samples:
            if sample.name.endswith(suffix):
                yield sample


class ExecutionMetrics:
    """Counts and timings for turns and tool executions."""

    def __init__(self, namespace: str = "autotask"):
        self.namespace = namespace
        self.started_at = time.monotonic()
        self._build()

    def _build(self) -> None:
        self.registry = CollectorRegistry()
        self.turns = Counter(
            "turns", "Orchestrator turns", ["outcome"], namespace=self.namespace, registry=self.registry
        )
        self.turn_duration = Histogram(
            "turn_duration_seconds", "Orchestrator turn duration", namespace=self.namespace, registry=self.registry
        )
        self.tool_executions = Counter(
            "tool_executions",
            "Tool executions",
            ["tool_name", "outcome"],
            namespace=self.namespace,
            registry=self.registry,
        )
        self.tool_duration = Histogram(
            "tool_execution_seconds",
            "Tool execution time",
            ["tool_name"],
            namespace=self.namespace,
            registry=self.registry,
        )

    def record_request(self, duration_ms: float, success: bool) -> None:
        self.turns.labels(outcome=SUCCESS if success else FAILURE).inc()
        self.turn_duration.observe(duration_ms / 1000)

    def record_tool(self, tool_name: str, duration_ms: float, success: bool) -> None:
        self.tool_executions.labels(tool_name=tool_name, outcome=SUCCESS if success else FAILURE).inc()
        self.tool_duration.labels(tool_name=tool_name).observe(duration_ms / 1000)

    def snapshot(self) -> dict[str, Any]:
        turn_counts = {SUCCESS: 0.0, FAILURE: 0.0}
        for sample in _samples(self.turns, "_total"):
            turn_counts[sample.labels["outcome"]] += sample.value
        turn_seconds = sum(sample.value for sample in _samples(self.turn_duration, "_sum"))

        tool_counts: dict[str, dict[str, float]] = {}
        for sample in _samples(self.tool_executions, "_total"):
            counts = tool_counts.setdefault(sample.labels["tool_name"], {SUCCESS: 0.0, FAILURE: 0.0})
            counts[sample.labels["outcome"]] += sample.value
        tool_seconds = {
            sample.labels["tool_name"]: sample.value for sample in _samples(self.tool_duration, "_sum")
        }

        per_tool = {
            name: _summary(counts[SUCCESS], counts[FAILURE], tool_seconds.get(name, 0.0))
            for name, counts in tool_counts.items()
        }
        return {
            "uptime_s": round(time.monotonic() - self.started_at, 1),
            "requests": _summary(turn_counts[SUCCESS], turn_counts[FAILURE], turn_seconds),
            "tools": _summary(
                sum(c[SUCCESS] for c in tool_counts.values()),
                sum(c[FAILURE] for c in tool_counts.values()),
                sum(tool_seconds.values()),
            ),
            "per_tool": per_tool,
        }

    def exposition(self) -> str:
        """Prometheus text exposition of this instance's registry."""
        return generate_latest(self.registry).decode("utf-8")

    def reset(self) -> None:
        self._build()
