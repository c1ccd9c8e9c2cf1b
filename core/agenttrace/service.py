"""TraceService - ingestion and query entry point.

Ties the pieces together:

- apply(): validate raw events, correlate them into the graph, publish
  updates and new anomaly findings
- get_trace_graph() / list_traces() / cost_analysis(): read the graph
- detect_anomalies(), analyze_replay_safety(), capture_state(), replay():
  analysis on a snapshot taken at request time

Events of one trace are applied strictly in order under a per-trace lock;
different traces are applied concurrently. The lock is dropped once a trace
stops running and no batch is waiting on it.

Usage::

    service = TraceService.from_env()
    ack = await service.apply(raw_events)

    subscription = service.subscribe(trace_id)
    async for notification in subscription:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agenttrace.anomaly.detector import AnomalyDetector
from agenttrace.anomaly.schemas import Anomaly, AnomalyDetectionResult, HistoricalBaseline
from agenttrace.config import AgentTraceConfig
from agenttrace.correlation.correlator import EventCorrelator, GraphUpdateKind
from agenttrace.correlation.notifications import (
    AnomalyNotification,
    NotificationChannel,
    Subscription,
    TraceUpdate,
    WebhookObserver,
)
from agenttrace.errors import InvalidEventError
from agenttrace.graph.schemas import (
    Edge,
    LLMNodeData,
    Node,
    NodeType,
    Trace,
    TraceEvent,
    TraceFilter,
    TraceListItem,
    TraceStatus,
    now_ms,
    parse_event,
)
from agenttrace.graph.store import FileGraphStore, GraphStore, InMemoryGraphStore
from agenttrace.replay.engine import ReplayEngine
from agenttrace.replay.live import CancellationToken, LiteLLMCaller, LLMCaller
from agenttrace.replay.schemas import (
    ReplayMode,
    ReplayModifications,
    ReplayOptions,
    ReplayResult,
    SafetyAnalysis,
    StateSnapshot,
)
from agenttrace.replay.side_effects import SideEffectClassifier

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cost-analysis thresholds
# ---------------------------------------------------------------------------

_TOP_NODES = 10
_MODEL_SWITCH_CANDIDATES = 3
_MODEL_SWITCH_SAVINGS = 0.9
_LONG_PROMPT_TOKENS = 2000
_LONG_PROMPT_SAVINGS = 0.5


class IngestionAck(BaseModel):
    """Acknowledgement for a batch of events."""

    received: int = 0
    applied: int = 0
    rejected: int = 0
    errors: list[str] = Field(default_factory=list)


class TraceGraph(BaseModel):
    """A trace with its nodes, edges and stored anomaly findings."""

    trace: Trace
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    anomalies: list[Anomaly] = Field(default_factory=list)


class NodeCost(BaseModel):
    node_id: str
    name: str
    type: NodeType
    cost: float = 0.0
    tokens: int = 0


class CostSuggestion(BaseModel):
    node_id: str
    title: str
    description: str
    potential_savings: float = 0.0


class CostAnalysis(BaseModel):
    """Where a trace's money went and how to spend less."""

    trace_id: str
    total_cost: float = 0.0
    total_tokens: int = 0
    avg_cost_per_node: float = 0.0
    top_nodes_by_cost: list[NodeCost] = Field(default_factory=list)
    cost_by_model: dict[str, float] = Field(default_factory=dict)
    suggestions: list[CostSuggestion] = Field(default_factory=list)


@dataclass
class _TraceSlot:
    """Lock for one trace and the number of batches using it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TraceService:
    """Ingestion and query facade over the graph store."""

    def __init__(
        self,
        store: GraphStore | None = None,
        config: AgentTraceConfig | None = None,
        channel: NotificationChannel | None = None,
        llm_caller: LLMCaller | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.config = config or AgentTraceConfig()
        if store is None:
            store = (
                FileGraphStore(Path(self.config.storage_path))
                if self.config.storage_path
                else InMemoryGraphStore()
            )
        self.store = store

        if channel is None:
            observers = []
            if self.config.notifications.webhook_url:
                observers.append(
                    WebhookObserver(
                        self.config.notifications.webhook_url,
                        timeout=self.config.notifications.webhook_timeout_seconds,
                    )
                )
            channel = NotificationChannel(self.config.notifications, observers=observers)
        self.channel = channel

        self.correlator = EventCorrelator(self.store, self.config.rates, clock=clock)
        self.detector = AnomalyDetector(self.config.anomaly)
        self.replay_engine = ReplayEngine(
            classifier=SideEffectClassifier(self.config.side_effects),
            llm_caller=llm_caller,
            rate_table=self.config.rates,
            live_config=self.config.live,
        )

        self._trace_slots: dict[str, _TraceSlot] = {}
        self._reported: dict[str, set[str]] = {}

    @classmethod
    def from_env(cls) -> TraceService:
        """Service configured from the environment, with live replay enabled."""
        config = AgentTraceConfig.from_env()
        return cls(config=config, llm_caller=LiteLLMCaller(config.live))

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def apply(self, events: Sequence[TraceEvent | dict[str, Any]]) -> IngestionAck:
        """Apply a batch of events.

        Invalid payloads are rejected and reported in the acknowledgement.

        Raises:
            PersistenceError: If the store could not persist a mutation.
                Resubmitting the batch is safe.
        """
        ack = IngestionAck(received=len(events))
        by_trace: dict[str, list[TraceEvent]] = {}

        for raw in events:
            if isinstance(raw, dict):
                try:
                    event = parse_event(raw)
                except InvalidEventError as e:
                    logger.warning(f"Rejected event: {e}")
                    ack.rejected += 1
                    ack.errors.append(str(e))
                    continue
            else:
                event = raw
            by_trace.setdefault(event.trace_id, []).append(event)

        counts = await asyncio.gather(
            *(self._apply_trace(trace_id, batch) for trace_id, batch in by_trace.items())
        )
        ack.applied = sum(counts)
        return ack

    async def _apply_trace(self, trace_id: str, events: list[TraceEvent]) -> int:
        slot = self._trace_slots.setdefault(trace_id, _TraceSlot())
        slot.users += 1
        try:
            async with slot.lock:
                return await self._apply_locked(trace_id, events)
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._release_if_finished(trace_id)

    async def _apply_locked(self, trace_id: str, events: list[TraceEvent]) -> int:
        applied = 0
        for event in events:
            updates = self.correlator.apply(event)
            applied += 1
            await self.channel.publish(
                TraceUpdate(trace_id=trace_id, event=event.model_dump(mode="json", by_alias=True))
            )
            for update in updates:
                if update.kind == GraphUpdateKind.NODE_FINALIZED and update.node is not None:
                    await self._check_node(trace_id, update.node.id)
        return applied

    def _release_if_finished(self, trace_id: str) -> None:
        trace = self.store.get_trace(trace_id)
        if trace is not None and trace.status == TraceStatus.RUNNING:
            return
        self._trace_slots.pop(trace_id, None)
        self._reported.pop(trace_id, None)
        logger.debug(f"Released ingestion state for trace {trace_id}")

    async def _check_node(self, trace_id: str, node_id: str) -> None:
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return

        reported = self._reported.get(trace_id)
        if reported is None:
            reported = self._reported[trace_id] = {
                a["id"] for a in self.store.get_anomalies(trace_id)
            }

        findings = [a for a in self.detector.check_node(snapshot, node_id) if a.id not in reported]
        if not findings:
            return

        payload = [a.model_dump(mode="json") for a in findings]
        self.store.upsert_anomalies(trace_id, payload)
        reported.update(a.id for a in findings)
        logger.info(f"{len(findings)} new anomalies in trace {trace_id}")
        await self.channel.publish(AnomalyNotification(trace_id=trace_id, anomalies=payload))

    def subscribe(self, trace_id: str | None = None) -> Subscription:
        return self.channel.subscribe(trace_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_trace_graph(self, trace_id: str) -> TraceGraph | None:
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return None
        return TraceGraph(
            trace=snapshot.trace,
            nodes=snapshot.nodes,
            edges=snapshot.edges,
            anomalies=[Anomaly.model_validate(a) for a in self.store.get_anomalies(trace_id)],
        )

    def list_traces(self, filters: TraceFilter | None = None) -> list[TraceListItem]:
        return self.store.list_traces(filters or TraceFilter())

    def cost_analysis(self, trace_id: str) -> CostAnalysis | None:
        """Cost breakdown and savings suggestions for a trace."""
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return None

        nodes = snapshot.nodes
        total_cost = sum(n.cost or 0.0 for n in nodes)
        analysis = CostAnalysis(
            trace_id=trace_id,
            total_cost=total_cost,
            total_tokens=sum(n.total_tokens for n in nodes),
            avg_cost_per_node=total_cost / len(nodes) if nodes else 0.0,
        )

        ranked = sorted(nodes, key=lambda n: n.cost or 0.0, reverse=True)[:_TOP_NODES]
        analysis.top_nodes_by_cost = [
            NodeCost(node_id=n.id, name=n.name, type=n.type, cost=n.cost or 0.0, tokens=n.total_tokens)
            for n in ranked
        ]

        for node in nodes:
            if isinstance(node.data, LLMNodeData):
                model = node.data.model or "unknown"
                analysis.cost_by_model[model] = analysis.cost_by_model.get(model, 0.0) + (
                    node.cost or 0.0
                )

        for position, node in enumerate(ranked):
            cost = node.cost or 0.0
            if (
                position < _MODEL_SWITCH_CANDIDATES
                and isinstance(node.data, LLMNodeData)
                and "gpt-4" in node.data.model.lower()
            ):
                analysis.suggestions.append(
                    CostSuggestion(
                        node_id=node.id,
                        title=f"Switch {node.data.model} to GPT-3.5",
                        description=(
                            f"{node.name} is among the most expensive steps; a cheaper model "
                            "may be good enough for it"
                        ),
                        potential_savings=cost * _MODEL_SWITCH_SAVINGS,
                    )
                )
            if node.total_tokens > _LONG_PROMPT_TOKENS:
                analysis.suggestions.append(
                    CostSuggestion(
                        node_id=node.id,
                        title="Reduce prompt length",
                        description=f"{node.name} used {node.total_tokens} tokens",
                        potential_savings=cost * _LONG_PROMPT_SAVINGS,
                    )
                )
        return analysis

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def detect_anomalies(
        self, trace_id: str, baseline: HistoricalBaseline | None = None
    ) -> AnomalyDetectionResult:
        """Full detection run; empty result for an unknown trace."""
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return AnomalyDetectionResult(trace_id=trace_id)
        return self.detector.detect(snapshot, baseline)

    def analyze_replay_safety(self, trace_id: str, node_id: str) -> SafetyAnalysis:
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return SafetyAnalysis(
                trace_id=trace_id,
                start_node_id=node_id,
                mode=ReplayMode.SAFE,
                warnings=[f"Trace {trace_id} not found"],
            )
        return self.replay_engine.analyze_safety(snapshot, node_id)

    def capture_state(self, trace_id: str, node_id: str) -> StateSnapshot | None:
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None or snapshot.resolve(node_id) is None:
            return None
        return self.replay_engine.capture_state(snapshot, node_id)

    async def replay(
        self,
        trace_id: str,
        node_id: str,
        modifications: ReplayModifications | None = None,
        options: ReplayOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ReplayResult:
        snapshot = self.store.snapshot(trace_id)
        if snapshot is None:
            return ReplayResult(
                success=False,
                original_trace_id=trace_id,
                start_node_id=node_id,
                error=f"Trace {trace_id} not found",
            )
        return await self.replay_engine.replay(
            snapshot, node_id, modifications, options, cancel_token
        )
