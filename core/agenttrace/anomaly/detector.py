"""Anomaly detector - heuristic analysis passes over a trace snapshot.

Each pass is independent and reads only the snapshot, the config and an
optional historical baseline:

* Structural loops: cycles in the parent/child edges.
* Repeated calls: the same tool called with the same (or near-same) input.
* Outliers: nodes far above the typical cost, latency or token count.
* Contradictions: decisions that pick opposite ends of an antonym pair.
* Timeout risk: projected cost of a run in progress against a threshold.
* Error patterns: nodes that failed or reported failures in their output.

Results are concatenated without cross-pass deduplication. A failing pass
is logged and skipped; ``detect`` always returns a result.
"""

from __future__ import annotations

import hashlib
import logging
import math
import statistics
from collections.abc import Callable
from typing import Any

from agenttrace.anomaly.config import AnomalyConfig, AntonymGroup
from agenttrace.anomaly.schemas import (
    Anomaly,
    AnomalyDetectionResult,
    AnomalySummary,
    AnomalyType,
    HistoricalBaseline,
    Severity,
    TimeoutPrediction,
    TimeoutRecommendation,
)
from agenttrace.anomaly.similarity import (
    contains_any,
    normalize_input,
    text_similarity,
    tokenize,
)
from agenttrace.anomaly.stats import MetricStatistics
from agenttrace.graph.schemas import (
    NO_RESPONSE_PLACEHOLDER,
    GraphSnapshot,
    Node,
    NodeStatus,
    NodeType,
    ToolNodeData,
    TraceStatus,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuneable constants
# ---------------------------------------------------------------------------

_LOOP_CONFIDENCE = 0.8
_REPEAT_CONFIDENCE = 0.9
_CONTRADICTION_CONFIDENCE = 0.85
_ERROR_PATTERN_CONFIDENCE = 0.8
_CRITICAL_Z = 3.0

_LOOP_SUGGESTIONS = [
    "Add loop detection and break conditions",
    "Implement maximum iteration limits",
    "Review the decision logic that leads to this cycle",
    "Consider adding timeout mechanisms",
]

_CONTRADICTION_SUGGESTIONS = [
    "Review the reasoning between these steps for consistency",
    "Carry earlier decisions forward in the prompt context",
    "Add a consistency check before acting on a decision",
]

_ERROR_SUGGESTIONS = [
    "Add retry with backoff for transient failures",
    "Validate tool inputs before invoking the tool",
    "Check credentials and permissions of failing tools",
]

DetectionPass = Callable[[GraphSnapshot, HistoricalBaseline | None], list[Anomaly]]


def _finding_id(prefix: str, *parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def _finite(value: float) -> float | None:
    return round(value, 4) if math.isfinite(value) else None


def _sum_cost(nodes: list[Node]) -> float:
    return sum(n.cost or 0.0 for n in nodes)


def _sum_latency(nodes: list[Node]) -> float:
    return sum(n.latency or 0.0 for n in nodes)


def _opposing_terms(
    words_a: set[str], words_b: set[str], groups: list[AntonymGroup]
) -> tuple[str, str] | None:
    """First antonym pair where each text sits on a different side."""
    for group in groups:
        if contains_any(words_a, group.positive) and contains_any(words_b, group.negative):
            return min(words_a & group.positive), min(words_b & group.negative)
        if contains_any(words_a, group.negative) and contains_any(words_b, group.positive):
            return min(words_a & group.negative), min(words_b & group.positive)
    return None


def predict_timeout(
    snapshot: GraphSnapshot,
    config: AnomalyConfig | None = None,
    baseline: HistoricalBaseline | None = None,
) -> TimeoutPrediction | None:
    """Project the final cost and duration of a run.

    Averages come from the finalized nodes that report a cost. The threshold
    is the configured budget, else the outlier threshold of historical run
    totals, else the outlier threshold of the current nodes' costs.

    Returns:
        None when there are too few priced nodes to project from.
    """
    config = config or AnomalyConfig()
    completed = [n for n in snapshot.nodes if n.is_finalized]
    costs = [n.cost for n in completed if n.cost]
    if not costs:
        return None

    latencies = [n.latency for n in completed if n.latency is not None]
    avg_cost = statistics.fmean(costs)
    avg_latency = statistics.fmean(latencies) if latencies else 0.0

    current_cost = _sum_cost(snapshot.nodes)
    current_latency = _sum_latency(snapshot.nodes)
    remaining = max(1, config.expected_total_nodes - len(snapshot.nodes))

    if config.cost_budget is not None:
        threshold = config.cost_budget
    elif baseline is not None and len(baseline.run_costs) >= config.min_samples:
        threshold = MetricStatistics.from_values(baseline.run_costs).threshold(config.outlier_sigma)
    elif len(costs) >= config.min_samples:
        threshold = MetricStatistics.from_values(costs).threshold(config.outlier_sigma)
    else:
        return None

    projected_cost = current_cost + remaining * avg_cost
    if projected_cost > 2 * threshold:
        recommendation, confidence = TimeoutRecommendation.TERMINATE, 0.9
    elif projected_cost > threshold:
        recommendation, confidence = TimeoutRecommendation.MONITOR, 0.8
    else:
        recommendation, confidence = TimeoutRecommendation.CONTINUE, 0.7

    return TimeoutPrediction(
        current_cost=current_cost,
        projected_cost=projected_cost,
        current_latency=current_latency,
        projected_latency=current_latency + remaining * avg_latency,
        remaining_nodes=remaining,
        cost_threshold=threshold,
        recommendation=recommendation,
        confidence=confidence,
    )


class AnomalyDetector:
    """Runs every detection pass over a snapshot.

    Usage::

        detector = AnomalyDetector()
        result = detector.detect(store.snapshot(trace_id))

        for anomaly in result.anomalies:
            print(anomaly.severity, anomaly.title)
    """

    def __init__(self, config: AnomalyConfig | None = None) -> None:
        self.config = config or AnomalyConfig()

    @property
    def passes(self) -> list[DetectionPass]:
        return [
            self.detect_structural_loops,
            self.detect_repeated_calls,
            self.detect_outliers,
            self.detect_contradictions,
            self.detect_timeout_risk,
            self.detect_error_patterns,
        ]

    def detect(
        self,
        snapshot: GraphSnapshot,
        baseline: HistoricalBaseline | None = None,
    ) -> AnomalyDetectionResult:
        """Run all passes and summarize the findings."""
        anomalies: list[Anomaly] = []
        for detection_pass in self.passes:
            try:
                anomalies.extend(detection_pass(snapshot, baseline))
            except Exception as e:
                logger.error(
                    f"Anomaly pass {detection_pass.__name__} failed on trace "
                    f"{snapshot.trace_id}: {e}"
                )

        logger.debug(f"Detected {len(anomalies)} anomalies in trace {snapshot.trace_id}")
        return AnomalyDetectionResult(
            trace_id=snapshot.trace_id,
            anomalies=anomalies,
            summary=AnomalySummary.from_anomalies(anomalies),
        )

    def check_node(
        self,
        snapshot: GraphSnapshot,
        node_id: str,
        baseline: HistoricalBaseline | None = None,
    ) -> list[Anomaly]:
        """Findings that involve one node, e.g. right after it finished."""
        return [
            a for a in self.detect(snapshot, baseline).anomalies if node_id in a.affected_nodes
        ]

    # ------------------------------------------------------------------
    # Pass 1 - structural loops
    # ------------------------------------------------------------------

    def detect_structural_loops(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        adjacency: dict[str, list[str]] = {}
        for edge in snapshot.edges:
            adjacency.setdefault(edge.from_node, []).append(edge.to_node)

        roots = [n.run_id for n in snapshot.ordered_nodes()]
        known = set(roots)
        roots += [run_id for run_id in adjacency if run_id not in known]

        cycles: list[list[str]] = []
        seen: set[frozenset[str]] = set()
        visited: set[str] = set()

        for root in roots:
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            on_path = {root}
            stack = [(root, iter(adjacency.get(root, [])))]

            while stack:
                current, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(current)
                    continue
                if child in on_path:
                    cycle = path[path.index(child) :]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                elif child not in visited:
                    visited.add(child)
                    path.append(child)
                    on_path.add(child)
                    stack.append((child, iter(adjacency.get(child, []))))

        anomalies = []
        for cycle in cycles:
            if len(cycle) < self.config.min_cycle_length:
                continue
            nodes = [snapshot.get_node_by_run(r) for r in cycle]
            members = [n for n in nodes if n is not None]
            names = [n.name if n else run_id for n, run_id in zip(nodes, cycle)]
            pattern = " -> ".join(names + names[:1])
            node_ids = [snapshot.node_id_for_run(r) for r in cycle]

            anomalies.append(
                Anomaly(
                    id=_finding_id("loop", *sorted(node_ids)),
                    type=AnomalyType.LOOP,
                    severity=(
                        Severity.HIGH if len(cycle) > self.config.long_cycle_length else Severity.MEDIUM
                    ),
                    title="Execution loop detected",
                    description=f"Cycle of {len(cycle)} steps: {pattern}",
                    affected_nodes=node_ids,
                    cost_impact=_sum_cost(members),
                    latency_impact=_sum_latency(members),
                    suggestions=list(_LOOP_SUGGESTIONS),
                    confidence=_LOOP_CONFIDENCE,
                    metadata={"loop_pattern": pattern, "cycle_length": len(cycle)},
                )
            )
        return anomalies

    # ------------------------------------------------------------------
    # Pass 2 - repeated calls
    # ------------------------------------------------------------------

    def detect_repeated_calls(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        tool_nodes = [
            n
            for n in snapshot.ordered_nodes()
            if n.type == NodeType.TOOL and isinstance(n.data, ToolNodeData)
        ]

        groups: dict[tuple[str, str], list[Node]] = {}
        for node in tool_nodes:
            key = (node.data.tool_name, normalize_input(node.data.input))
            groups.setdefault(key, []).append(node)

        anomalies = []
        flagged: set[str] = set()
        for (tool_name, normalized), members in groups.items():
            if len(members) > self.config.repeated_call_threshold:
                anomalies.append(self._repeated_call_anomaly(tool_name, normalized, members, 1.0))
                flagged.update(n.id for n in members)

        # Near-identical inputs among the calls not already flagged
        by_tool: dict[str, list[tuple[Node, str]]] = {}
        for node in tool_nodes:
            if node.id not in flagged:
                by_tool.setdefault(node.data.tool_name, []).append(
                    (node, normalize_input(node.data.input))
                )

        for tool_name, items in by_tool.items():
            clusters: list[list[tuple[Node, str, float]]] = []
            for node, normalized in items:
                for cluster in clusters:
                    score = text_similarity(
                        cluster[0][1], normalized, self.config.max_compare_chars
                    )
                    if score >= self.config.fuzzy_similarity_threshold:
                        cluster.append((node, normalized, score))
                        break
                else:
                    clusters.append([(node, normalized, 1.0)])

            for cluster in clusters:
                if len(cluster) > self.config.repeated_call_threshold:
                    similarity = statistics.fmean(score for _, _, score in cluster[1:])
                    anomalies.append(
                        self._repeated_call_anomaly(
                            tool_name, cluster[0][1], [n for n, _, _ in cluster], similarity
                        )
                    )
        return anomalies

    def _repeated_call_anomaly(
        self, tool_name: str, normalized: str, members: list[Node], similarity: float
    ) -> Anomaly:
        count = len(members)
        fuzzy = similarity < 1.0
        circuit_breaker = count >= self.config.circuit_breaker_at

        suggestions = [
            f"Cache results of {tool_name} for identical inputs",
            "Deduplicate tool calls before invoking the tool",
            "Add a break condition so the agent stops re-issuing the same call",
        ]
        if circuit_breaker:
            suggestions.insert(
                0,
                f"Implement circuit breaker: Stop after {self.config.repeated_call_threshold} "
                "identical calls",
            )

        kind = "similar" if fuzzy else "identical"
        return Anomaly(
            id=_finding_id("repeat", tool_name, *sorted(n.id for n in members)),
            type=AnomalyType.LOOP if circuit_breaker else AnomalyType.REDUNDANT_CALLS,
            severity=Severity.HIGH if count > self.config.repeated_call_high else Severity.MEDIUM,
            title=f"Repeated {tool_name} calls",
            description=f"{tool_name} was called {count} times with {kind} input",
            affected_nodes=[n.id for n in members],
            cost_impact=_sum_cost(members),
            latency_impact=_sum_latency(members),
            suggestions=suggestions,
            confidence=round(_REPEAT_CONFIDENCE * similarity, 4),
            circuit_breaker_triggered=circuit_breaker,
            metadata={
                "tool_name": tool_name,
                "call_count": count,
                "normalized_input": normalized[:200],
                "fuzzy": fuzzy,
                "similarity": round(similarity, 4),
                "loop_pattern": f"{tool_name} x{count}",
            },
        )

    # ------------------------------------------------------------------
    # Pass 3 - cost / latency / token outliers
    # ------------------------------------------------------------------

    def detect_outliers(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        metrics: list[tuple[str, AnomalyType, Callable[[Node], float | None], list[float]]] = [
            (
                "cost",
                AnomalyType.COST_OUTLIER,
                lambda n: n.cost,
                baseline.node_costs if baseline else [],
            ),
            (
                "latency",
                AnomalyType.LATENCY_OUTLIER,
                lambda n: n.latency,
                baseline.node_latencies if baseline else [],
            ),
            (
                "tokens",
                AnomalyType.TOKEN_OUTLIER,
                lambda n: float(n.tokens.total) if n.tokens else None,
                baseline.node_tokens if baseline else [],
            ),
        ]

        finalized = [n for n in snapshot.ordered_nodes() if n.is_finalized]
        anomalies = []
        for metric, anomaly_type, value_of, history in metrics:
            values = [(n, value_of(n)) for n in finalized]
            values = [(n, v) for n, v in values if v is not None and v > 0]
            samples = history or [v for _, v in values]
            if len(samples) < self.config.min_samples:
                continue

            stats = MetricStatistics.from_values(samples)
            if stats.mean <= 0:
                continue

            for node, value in values:
                above_sigma = stats.is_outlier(value, self.config.outlier_sigma)
                multiple = stats.multiple(value)
                if not above_sigma and multiple <= self.config.outlier_multiplier:
                    continue
                anomalies.append(
                    self._outlier_anomaly(metric, anomaly_type, node, value, stats, above_sigma)
                )

        if baseline is not None and len(baseline.run_costs) >= self.config.min_samples:
            run_stats = MetricStatistics.from_values(baseline.run_costs)
            run_cost = _sum_cost(snapshot.nodes)
            if run_stats.is_outlier(run_cost, self.config.outlier_sigma):
                z = run_stats.z_score(run_cost)
                priced = [n for n in snapshot.nodes if n.cost]
                anomalies.append(
                    Anomaly(
                        id=_finding_id("run-cost", snapshot.trace_id),
                        type=AnomalyType.COST_OUTLIER,
                        severity=Severity.CRITICAL if z > _CRITICAL_Z else Severity.HIGH,
                        title="Run cost far above historical runs",
                        description=(
                            f"Run cost ${run_cost:.4f} is {z:.1f} standard deviations above "
                            f"the historical mean of ${run_stats.mean:.4f}"
                        ),
                        affected_nodes=[n.id for n in priced],
                        cost_impact=max(0.0, run_cost - run_stats.mean),
                        suggestions=[
                            "Compare this run's prompts and tool usage with a typical run",
                            "Set a per-run cost budget",
                        ],
                        confidence=0.85,
                        metadata={
                            "z_score": _finite(z),
                            "threshold": run_stats.threshold(self.config.outlier_sigma),
                            "mean": run_stats.mean,
                            "stddev": run_stats.stddev,
                        },
                    )
                )
        return anomalies

    def _outlier_anomaly(
        self,
        metric: str,
        anomaly_type: AnomalyType,
        node: Node,
        value: float,
        stats: MetricStatistics,
        above_sigma: bool,
    ) -> Anomaly:
        multiple = stats.multiple(value)
        z = stats.z_score(value)
        if above_sigma:
            severity = Severity.CRITICAL
        elif multiple > self.config.high_multiplier:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        excess = max(0.0, value - stats.mean)
        suggestions = {
            "cost": [
                f"Consider a cheaper model or shorter prompt for {node.name}",
                "Cache results of expensive steps",
            ],
            "latency": [
                f"Investigate why {node.name} is slow",
                "Add a timeout to this step",
            ],
            "tokens": [
                "Reduce prompt length or trim conversation history",
                "Summarize context before sending it to the model",
            ],
        }[metric]

        return Anomaly(
            id=_finding_id(f"{metric}-outlier", node.id),
            type=anomaly_type,
            severity=severity,
            title=f"Unusual {metric} in {node.name}",
            description=(
                f"{metric.capitalize()} {value:.4g} is {multiple:.1f}x the mean "
                f"({stats.mean:.4g}, z-score {z:.1f})"
            ),
            affected_nodes=[node.id],
            cost_impact=excess if metric == "cost" else 0.0,
            latency_impact=excess if metric == "latency" else 0.0,
            suggestions=suggestions,
            confidence=0.9 if above_sigma else 0.8,
            metadata={
                "metric": metric,
                "value": value,
                "mean": stats.mean,
                "stddev": stats.stddev,
                "multiple": _finite(multiple),
                "z_score": _finite(z),
                "threshold": stats.threshold(self.config.outlier_sigma),
            },
        )

    # ------------------------------------------------------------------
    # Pass 4 - contradictions
    # ------------------------------------------------------------------

    def detect_contradictions(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        decisions = [
            n
            for n in sorted(snapshot.nodes, key=lambda n: (n.start_time, n.sequence))
            if n.type in (NodeType.LLM, NodeType.CUSTOM)
            and n.output_text().strip()
            and n.output_text() != NO_RESPONSE_PLACEHOLDER
        ]
        words = {n.id: tokenize(n.output_text()) for n in decisions}

        anomalies = []
        for i, first in enumerate(decisions):
            for second in decisions[i + 1 :]:
                terms = _opposing_terms(
                    words[first.id], words[second.id], self.config.antonym_groups
                )
                if terms is None:
                    continue

                similarity = text_similarity(
                    first.output_text(), second.output_text(), self.config.max_compare_chars
                )
                if similarity <= self.config.contradiction_min_similarity:
                    continue
                if similarity <= self.config.contradiction_similarity:
                    continue

                anomalies.append(
                    Anomaly(
                        id=_finding_id("contradiction", first.id, second.id),
                        type=AnomalyType.CONTRADICTION,
                        severity=Severity.HIGH,
                        title="Contradictory decisions",
                        description=(
                            f"{first.name} chose '{terms[0]}' but {second.name} later chose "
                            f"'{terms[1]}'"
                        ),
                        affected_nodes=[first.id, second.id],
                        suggestions=list(_CONTRADICTION_SUGGESTIONS),
                        confidence=_CONTRADICTION_CONFIDENCE,
                        metadata={"similarity": round(similarity, 4), "terms": list(terms)},
                    )
                )
        return anomalies

    # ------------------------------------------------------------------
    # Pass 5 - timeout risk
    # ------------------------------------------------------------------

    def detect_timeout_risk(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        if snapshot.trace.status != TraceStatus.RUNNING:
            return []

        prediction = predict_timeout(snapshot, self.config, baseline)
        if prediction is None or prediction.recommendation == TimeoutRecommendation.CONTINUE:
            return []

        terminate = prediction.recommendation == TimeoutRecommendation.TERMINATE
        running = [n.id for n in snapshot.nodes if not n.is_finalized]
        return [
            Anomaly(
                id=_finding_id("timeout", snapshot.trace_id, prediction.recommendation),
                type=AnomalyType.TIMEOUT_RISK,
                severity=Severity.CRITICAL if terminate else Severity.MEDIUM,
                title="Run projected to exceed its cost threshold",
                description=(
                    f"Projected cost ${prediction.projected_cost:.4f} against a threshold of "
                    f"${prediction.cost_threshold:.4f} with {prediction.remaining_nodes} "
                    f"step(s) remaining; recommendation: {prediction.recommendation}"
                ),
                affected_nodes=running or [n.id for n in snapshot.nodes],
                cost_impact=max(0.0, prediction.projected_cost - prediction.current_cost),
                latency_impact=max(0.0, prediction.projected_latency - prediction.current_latency),
                suggestions=(
                    ["Terminate the run", "Set a per-run cost budget"]
                    if terminate
                    else ["Monitor the run closely", "Set a per-run cost budget"]
                ),
                confidence=prediction.confidence,
                circuit_breaker_triggered=terminate,
                metadata={"prediction": prediction.model_dump(mode="json")},
            )
        ]

    # ------------------------------------------------------------------
    # Pass 6 - error patterns
    # ------------------------------------------------------------------

    def detect_error_patterns(
        self, snapshot: GraphSnapshot, baseline: HistoricalBaseline | None = None
    ) -> list[Anomaly]:
        keywords = [k.lower() for k in self.config.error_keywords]
        matched: list[Node] = []
        found: set[str] = set()

        for node in snapshot.ordered_nodes():
            text = f"{node.output_text()} {node.error or ''}".lower()
            hits = {k for k in keywords if k in text}
            if node.status == NodeStatus.ERROR or hits:
                matched.append(node)
                found.update(hits)

        if not matched:
            return []

        count = len(matched)
        metadata: dict[str, Any] = {
            "error_count": count,
            "keywords": sorted(found),
            "failed_nodes": [n.id for n in matched if n.status == NodeStatus.ERROR],
        }
        return [
            Anomaly(
                id=_finding_id("errors", *sorted(n.id for n in matched)),
                type=AnomalyType.ERROR_PATTERN,
                severity=Severity.HIGH if count > self.config.error_pattern_high else Severity.MEDIUM,
                title="Error pattern detected",
                description=f"{count} step(s) failed or reported errors",
                affected_nodes=[n.id for n in matched],
                cost_impact=_sum_cost(matched),
                latency_impact=_sum_latency(matched),
                suggestions=list(_ERROR_SUGGESTIONS),
                confidence=_ERROR_PATTERN_CONFIDENCE,
                metadata=metadata,
            )
        ]
