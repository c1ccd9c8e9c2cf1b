"""Anomaly detection - data models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AnomalyType(StrEnum):
    """Category of a finding."""

    LOOP = "loop"
    CONTRADICTION = "contradiction"
    COST_OUTLIER = "cost_outlier"
    LATENCY_OUTLIER = "latency_outlier"
    TOKEN_OUTLIER = "token_outlier"
    TIMEOUT_RISK = "timeout_risk"
    ERROR_PATTERN = "error_pattern"
    REDUNDANT_CALLS = "redundant_calls"


class Severity(StrEnum):
    """How urgently a finding needs attention."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TimeoutRecommendation(StrEnum):
    """Action suggested by the timeout prediction."""

    CONTINUE = "continue"
    MONITOR = "monitor"
    TERMINATE = "terminate"


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class Anomaly(BaseModel):
    """A pattern flagged over a trace's graph."""

    id: str = Field(description="Stable id; the same finding on the same graph keeps its id")
    type: AnomalyType
    severity: Severity
    title: str
    description: str = ""
    affected_nodes: list[str] = Field(default_factory=list, description="Node ids")
    cost_impact: float = Field(default=0.0, ge=0)
    latency_impact: float = Field(default=0.0, ge=0)
    suggestions: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    circuit_breaker_triggered: bool = False
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Pass-specific evidence (z-score, similarity, loop pattern, ...)",
    )


class AnomalySummary(BaseModel):
    """Counts and impact totals across all findings."""

    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    total_cost_impact: float = 0.0
    total_latency_impact: float = 0.0

    @classmethod
    def from_anomalies(cls, anomalies: list[Anomaly]) -> AnomalySummary:
        summary = cls(total=len(anomalies))
        for anomaly in anomalies:
            summary.by_type[anomaly.type.value] = summary.by_type.get(anomaly.type.value, 0) + 1
            summary.by_severity[anomaly.severity.value] = (
                summary.by_severity.get(anomaly.severity.value, 0) + 1
            )
            summary.total_cost_impact += anomaly.cost_impact
            summary.total_latency_impact += anomaly.latency_impact
        return summary


class AnomalyDetectionResult(BaseModel):
    """Output of a detection run over one trace."""

    trace_id: str
    anomalies: list[Anomaly] = Field(default_factory=list)
    summary: AnomalySummary = Field(default_factory=AnomalySummary)


class TimeoutPrediction(BaseModel):
    """Projected cost and duration of a run in progress."""

    current_cost: float = 0.0
    projected_cost: float = 0.0
    current_latency: float = 0.0
    projected_latency: float = 0.0
    remaining_nodes: int = 0
    cost_threshold: float = 0.0
    recommendation: TimeoutRecommendation = TimeoutRecommendation.CONTINUE
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class HistoricalBaseline(BaseModel):
    """Samples from earlier runs used in place of the current trace's own.

    ``run_costs`` are totals of whole runs; the other lists are per-node
    values.
    """

    node_costs: list[float] = Field(default_factory=list)
    node_latencies: list[float] = Field(default_factory=list)
    node_tokens: list[float] = Field(default_factory=list)
    run_costs: list[float] = Field(default_factory=list)
