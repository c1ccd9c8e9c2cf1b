"""Configuration for the anomaly detection passes.

Usage:
    from agenttrace.anomaly.config import AnomalyConfig

    config = AnomalyConfig(outlier_sigma=2.5, expected_total_nodes=12)
    detector = AnomalyDetector(config)

    # Or start from a preset
    detector = AnomalyDetector(AnomalyConfig.sensitive())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AntonymGroup:
    """Two sets of terms that contradict each other."""

    positive: frozenset[str]
    negative: frozenset[str]

    @classmethod
    def of(cls, positive: list[str], negative: list[str]) -> AntonymGroup:
        return cls(
            frozenset(t.lower() for t in positive),
            frozenset(t.lower() for t in negative),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {"positive": sorted(self.positive), "negative": sorted(self.negative)}


def _default_antonym_groups() -> list[AntonymGroup]:
    return [
        AntonymGroup.of(["vegetarian", "vegan"], ["meat", "steak", "beef"]),
        AntonymGroup.of(["cheap", "budget"], ["expensive", "luxury"]),
        AntonymGroup.of(["yes", "accept", "approve"], ["no", "reject", "deny"]),
        AntonymGroup.of(["enable", "on"], ["disable", "off"]),
        AntonymGroup.of(["allow", "permit"], ["deny", "block"]),
        AntonymGroup.of(["true", "correct", "valid"], ["false", "incorrect", "invalid"]),
        AntonymGroup.of(["success", "pass"], ["failure", "fail"]),
    ]


@dataclass
class AnomalyConfig:
    """Thresholds for every detection pass."""

    # Outliers
    outlier_multiplier: float = 3.0
    high_multiplier: float = 5.0
    outlier_sigma: float = 3.0
    min_samples: int = 3

    # Repeated calls
    repeated_call_threshold: int = 3
    repeated_call_high: int = 5
    circuit_breaker_at: int = 5
    fuzzy_similarity_threshold: float = 0.9

    # Structural loops
    min_cycle_length: int = 3
    long_cycle_length: int = 5

    # Contradictions
    contradiction_min_similarity: float = 0.3
    contradiction_similarity: float = 0.4
    max_compare_chars: int = 500
    antonym_groups: list[AntonymGroup] = field(default_factory=_default_antonym_groups)

    # Timeout risk
    expected_total_nodes: int = 5
    cost_budget: float | None = None

    # Error patterns
    error_keywords: list[str] = field(
        default_factory=lambda: [
            "error",
            "failed",
            "exception",
            "timeout",
            "invalid",
            "unauthorized",
        ]
    )
    error_pattern_high: int = 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "outlier_multiplier": self.outlier_multiplier,
            "high_multiplier": self.high_multiplier,
            "outlier_sigma": self.outlier_sigma,
            "min_samples": self.min_samples,
            "repeated_call_threshold": self.repeated_call_threshold,
            "repeated_call_high": self.repeated_call_high,
            "circuit_breaker_at": self.circuit_breaker_at,
            "fuzzy_similarity_threshold": self.fuzzy_similarity_threshold,
            "min_cycle_length": self.min_cycle_length,
            "long_cycle_length": self.long_cycle_length,
            "contradiction_min_similarity": self.contradiction_min_similarity,
            "contradiction_similarity": self.contradiction_similarity,
            "max_compare_chars": self.max_compare_chars,
            "antonym_groups": [g.to_dict() for g in self.antonym_groups],
            "expected_total_nodes": self.expected_total_nodes,
            "cost_budget": self.cost_budget,
            "error_keywords": self.error_keywords,
            "error_pattern_high": self.error_pattern_high,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnomalyConfig:
        defaults = cls()
        groups = data.get("antonym_groups")
        return cls(
            outlier_multiplier=data.get("outlier_multiplier", defaults.outlier_multiplier),
            high_multiplier=data.get("high_multiplier", defaults.high_multiplier),
            outlier_sigma=data.get("outlier_sigma", defaults.outlier_sigma),
            min_samples=data.get("min_samples", defaults.min_samples),
            repeated_call_threshold=data.get(
                "repeated_call_threshold", defaults.repeated_call_threshold
            ),
            repeated_call_high=data.get("repeated_call_high", defaults.repeated_call_high),
            circuit_breaker_at=data.get("circuit_breaker_at", defaults.circuit_breaker_at),
            fuzzy_similarity_threshold=data.get(
                "fuzzy_similarity_threshold", defaults.fuzzy_similarity_threshold
            ),
            min_cycle_length=data.get("min_cycle_length", defaults.min_cycle_length),
            long_cycle_length=data.get("long_cycle_length", defaults.long_cycle_length),
            contradiction_min_similarity=data.get(
                "contradiction_min_similarity", defaults.contradiction_min_similarity
            ),
            contradiction_similarity=data.get(
                "contradiction_similarity", defaults.contradiction_similarity
            ),
            max_compare_chars=data.get("max_compare_chars", defaults.max_compare_chars),
            antonym_groups=(
                [AntonymGroup.of(g["positive"], g["negative"]) for g in groups]
                if groups is not None
                else defaults.antonym_groups
            ),
            expected_total_nodes=data.get("expected_total_nodes", defaults.expected_total_nodes),
            cost_budget=data.get("cost_budget"),
            error_keywords=data.get("error_keywords", defaults.error_keywords),
            error_pattern_high=data.get("error_pattern_high", defaults.error_pattern_high),
        )

    @classmethod
    def sensitive(cls) -> AnomalyConfig:
        """Lower thresholds; flags more, with more false positives."""
        return cls(
            outlier_multiplier=2.0,
            high_multiplier=3.0,
            outlier_sigma=2.0,
            repeated_call_threshold=2,
            circuit_breaker_at=3,
            fuzzy_similarity_threshold=0.8,
        )

    @classmethod
    def relaxed(cls) -> AnomalyConfig:
        """Higher thresholds for noisy agents."""
        return cls(
            outlier_multiplier=5.0,
            high_multiplier=8.0,
            outlier_sigma=4.0,
            repeated_call_threshold=5,
            repeated_call_high=8,
            circuit_breaker_at=8,
        )
