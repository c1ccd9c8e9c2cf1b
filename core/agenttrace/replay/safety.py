"""Replay safety evaluation.

The mode is a pure function of the side effects found at or after the start
node::

    BLOCKED     any effect is critical and irreversible
    WARNING     else any effect depends on an external system
    SIMULATION  else any effect at all
    SAFE        otherwise
"""

from __future__ import annotations

import logging

from agenttrace.graph.schemas import GraphSnapshot, Node
from agenttrace.replay.schemas import ReplayMode, SafetyAnalysis, SideEffect
from agenttrace.replay.side_effects import SideEffectClassifier

logger = logging.getLogger(__name__)

_MODE_WARNINGS = {
    ReplayMode.BLOCKED: "Replay would repeat critical, irreversible side effects",
    ReplayMode.WARNING: "Replay depends on external systems",
    ReplayMode.SIMULATION: "Replay would repeat side effects; they will be simulated",
}

_MODE_RECOMMENDATIONS = {
    ReplayMode.BLOCKED: [
        "Consider modifying the agent to avoid critical side effects",
        "Use simulation mode for testing without side effects",
    ],
    ReplayMode.WARNING: [
        "Enable mock mode to simulate external calls",
        "Review external dependencies before replay",
    ],
    ReplayMode.SIMULATION: ["Safe to replay with mocked side effects"],
    ReplayMode.SAFE: ["Safe to replay - no side effects detected"],
}


def determine_replay_mode(side_effects: list[SideEffect]) -> ReplayMode:
    """Most restrictive mode implied by a set of side effects."""
    if any(e.is_blocking for e in side_effects):
        return ReplayMode.BLOCKED
    if any(e.external_dependency for e in side_effects):
        return ReplayMode.WARNING
    if side_effects:
        return ReplayMode.SIMULATION
    return ReplayMode.SAFE


def nodes_from(snapshot: GraphSnapshot, start: Node) -> list[Node]:
    """Nodes at or after ``start`` in creation order."""
    return [n for n in snapshot.ordered_nodes() if n.sequence >= start.sequence]


def analyze_safety(
    snapshot: GraphSnapshot,
    start_node_id: str,
    classifier: SideEffectClassifier | None = None,
) -> SafetyAnalysis:
    """Classify side effects from a start node onward.

    An unknown start node yields SAFE with a warning rather than an error.
    """
    classifier = classifier or SideEffectClassifier()
    start = snapshot.resolve(start_node_id)
    if start is None:
        logger.warning(f"Safety analysis: node {start_node_id} not found in trace {snapshot.trace_id}")
        return SafetyAnalysis(
            trace_id=snapshot.trace_id,
            start_node_id=start_node_id,
            mode=ReplayMode.SAFE,
            warnings=[f"Start node {start_node_id} not found in trace {snapshot.trace_id}"],
        )

    side_effects = classifier.classify_all(nodes_from(snapshot, start))
    mode = determine_replay_mode(side_effects)

    warnings = []
    if mode in _MODE_WARNINGS:
        warnings.append(_MODE_WARNINGS[mode])
    for effect in side_effects:
        reversibility = "reversible" if effect.reversible else "irreversible"
        warnings.append(f"{effect.severity} {effect.category} ({reversibility}): {effect.description}")

    logger.debug(
        f"Safety analysis for trace {snapshot.trace_id} from {start.id}: {mode} "
        f"({len(side_effects)} side effects)"
    )
    return SafetyAnalysis(
        trace_id=snapshot.trace_id,
        start_node_id=start.id,
        mode=mode,
        side_effects=side_effects,
        warnings=warnings,
        recommendations=list(_MODE_RECOMMENDATIONS[mode]),
    )
