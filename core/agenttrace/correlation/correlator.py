"""EventCorrelator - turns the raw event stream into the execution graph.

Events are matched by run id: a ``*_start`` creates a running node, the
matching ``*_end`` (or ``error``) finalizes it, and ``parent_run_id`` links
children to their parent with an edge.

Application is idempotent per (trace id, run id, event type): a repeated
start finds the node already stored, a repeated end finds nothing pending,
and both are no-ops. A start whose node was stored but not fully applied
(the store raised ``PersistenceError`` part-way) is picked up again, so a
failed batch can be resubmitted as is. Callers must serialize ``apply`` per
trace id; different traces may be applied concurrently.

State for a trace is dropped once it stops running and is rebuilt from the
store if more events arrive for it.

Usage::

    store = InMemoryGraphStore()
    correlator = EventCorrelator(store)

    for event in events:
        for update in correlator.apply(event):
            publish(update)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agenttrace.correlation.costs import CostRateTable, derive_cost
from agenttrace.graph.schemas import (
    NO_PROMPT_PLACEHOLDER,
    NO_RESPONSE_PLACEHOLDER,
    ChainEndEvent,
    ChainNodeData,
    ChainStartEvent,
    CustomEvent,
    CustomNodeData,
    Edge,
    ErrorEvent,
    LLMEndEvent,
    LLMNodeData,
    LLMStartEvent,
    Node,
    NodeStatus,
    NodeType,
    TokenUsage,
    ToolEndEvent,
    ToolNodeData,
    ToolStartEvent,
    Trace,
    TraceEvent,
    TraceStatus,
    as_text,
    edge_id_for,
    node_id_for,
    now_ms,
)
from agenttrace.graph.store import GraphStore

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = "default"
MAX_DIAGNOSTICS = 100

_END_NODE_TYPES = {
    LLMEndEvent: NodeType.LLM,
    ToolEndEvent: NodeType.TOOL,
    ChainEndEvent: NodeType.CHAIN,
}


class GraphUpdateKind(StrEnum):
    """Kinds of graph mutation reported by the correlator."""

    TRACE_CREATED = "trace_created"
    NODE_CREATED = "node_created"
    NODE_FINALIZED = "node_finalized"
    EDGE_CREATED = "edge_created"
    TRACE_UPDATED = "trace_updated"


@dataclass
class GraphUpdate:
    """One mutation applied to the graph, in application order."""

    kind: GraphUpdateKind
    trace_id: str
    node: Node | None = None
    edge: Edge | None = None
    trace: Trace | None = None


@dataclass
class CorrelationContext:
    """Per-trace correlation state.

    ``pending_nodes`` holds nodes that have started but not yet finished,
    keyed by run id. ``diagnostics`` keeps the most recent correlation gaps,
    such as errors for runs that were never started.
    """

    trace_id: str
    pending_nodes: dict[str, Node] = field(default_factory=dict)
    diagnostics: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_DIAGNOSTICS))
    next_sequence: int = 0
    status: TraceStatus = TraceStatus.RUNNING


def aggregate_status(nodes: list[Node]) -> TraceStatus:
    """Trace status derived from its nodes.

    Running while any node runs. Once all nodes are finalized, a root node
    that ended in error fails the trace; errors of child nodes are assumed to
    have been handled by their parent.
    """
    if not nodes or any(not n.is_finalized for n in nodes):
        return TraceStatus.RUNNING

    run_ids = {n.run_id for n in nodes}
    roots = [n for n in nodes if n.parent_run_id is None or n.parent_run_id not in run_ids]
    if any(n.status == NodeStatus.ERROR for n in roots):
        return TraceStatus.ERROR
    return TraceStatus.COMPLETE


def _project_name(metadata: dict[str, Any]) -> str:
    return metadata.get("projectName") or metadata.get("project_name") or DEFAULT_PROJECT


def _normalize_custom(event: CustomEvent) -> CustomNodeData:
    data = event.data
    prompts = data.get("prompts")
    if isinstance(prompts, str):
        prompts = [prompts]
    if not prompts:
        single = data.get("prompt", data.get("input"))
        prompts = [as_text(single)] if single is not None else []
    prompts = [as_text(p) for p in prompts if as_text(p).strip()]

    response = as_text(data.get("response", data.get("output")))

    return CustomNodeData(
        name=event.name,
        prompts=prompts or [NO_PROMPT_PLACEHOLDER],
        response=response if response.strip() else NO_RESPONSE_PLACEHOLDER,
        payload=dict(data),
    )


class EventCorrelator:
    """Builds nodes, edges and trace aggregates from trace events."""

    def __init__(
        self,
        store: GraphStore,
        rate_table: CostRateTable | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._store = store
        self._rates = rate_table or CostRateTable()
        self._clock = clock
        self._contexts: dict[str, CorrelationContext] = {}
        self._lock = threading.Lock()

    @property
    def store(self) -> GraphStore:
        return self._store

    def get_context(self, trace_id: str) -> CorrelationContext | None:
        with self._lock:
            return self._contexts.get(trace_id)

    def apply(self, event: TraceEvent) -> list[GraphUpdate]:
        """Apply one event to the graph.

        Returns:
            The mutations applied, in order. Empty for no-op events.

        Raises:
            PersistenceError: If the store fails to persist a node or trace.
        """
        updates: list[GraphUpdate] = []
        context = self._ensure_trace(event, updates)

        if isinstance(event, (LLMStartEvent, ToolStartEvent, ChainStartEvent)):
            self._on_start(context, event, updates)
        elif isinstance(event, (LLMEndEvent, ToolEndEvent, ChainEndEvent)):
            self._on_end(context, event, updates)
        elif isinstance(event, ErrorEvent):
            self._on_error(context, event, updates)
        elif isinstance(event, CustomEvent):
            self._on_custom(context, event, updates)
        else:
            logger.warning(f"Ignoring unsupported event type: {event.type}")

        if context.status != TraceStatus.RUNNING and not context.pending_nodes:
            self._release(context)
        return updates

    def apply_all(self, events: list[TraceEvent]) -> list[GraphUpdate]:
        """Apply events in order and return all mutations."""
        updates: list[GraphUpdate] = []
        for event in events:
            updates.extend(self.apply(event))
        return updates

    # ------------------------------------------------------------------
    # Trace lifecycle
    # ------------------------------------------------------------------

    def _ensure_trace(self, event: TraceEvent, updates: list[GraphUpdate]) -> CorrelationContext:
        with self._lock:
            context = self._contexts.get(event.trace_id)
        if context is not None:
            return context

        context = CorrelationContext(trace_id=event.trace_id)
        if self._store.get_trace(event.trace_id) is None:
            trace = Trace(
                id=event.trace_id,
                project_name=_project_name(event.metadata),
                start_time=event.timestamp,
            )
            if self._store.create_trace(trace):
                logger.info(f"Created trace {trace.id} (project={trace.project_name})")
                updates.append(
                    GraphUpdate(GraphUpdateKind.TRACE_CREATED, trace.id, trace=trace)
                )
        else:
            # Known to the store but not to this correlator (after a restart,
            # or a finished trace whose context was released)
            nodes = self._store.get_nodes(event.trace_id)
            context.pending_nodes = {n.run_id: n for n in nodes if not n.is_finalized}
            context.next_sequence = max((n.sequence for n in nodes), default=-1) + 1
            context.status = aggregate_status(nodes) if nodes else TraceStatus.RUNNING

        with self._lock:
            return self._contexts.setdefault(event.trace_id, context)

    def _release(self, context: CorrelationContext) -> None:
        with self._lock:
            if self._contexts.get(context.trace_id) is context:
                del self._contexts[context.trace_id]
        logger.debug(f"Released correlation context for finished trace {context.trace_id}")

    def _refresh_trace(self, context: CorrelationContext, updates: list[GraphUpdate]) -> None:
        trace = self._store.get_trace(context.trace_id)
        if trace is None:
            logger.warning(f"Trace {context.trace_id} disappeared from the store")
            return

        nodes = self._store.get_nodes(context.trace_id)
        total_cost = sum(n.cost or 0.0 for n in nodes)
        status = aggregate_status(nodes)
        context.status = status
        if (trace.total_cost, trace.total_nodes, trace.status) == (total_cost, len(nodes), status):
            return

        trace.total_cost = total_cost
        trace.total_nodes = len(nodes)
        trace.status = status
        trace.end_time = self._clock() if status != TraceStatus.RUNNING else None

        self._store.update_trace(trace)
        updates.append(GraphUpdate(GraphUpdateKind.TRACE_UPDATED, trace.id, trace=trace))

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_start(
        self,
        context: CorrelationContext,
        event: LLMStartEvent | ToolStartEvent | ChainStartEvent,
        updates: list[GraphUpdate],
    ) -> None:
        node_id = node_id_for(event.trace_id, event.run_id)
        stored = self._store.get_node(node_id)
        if stored is not None:
            logger.debug(f"Duplicate {event.type} for run {event.run_id}, ignoring")
            if not stored.is_finalized:
                # An earlier delivery may have stopped at a persistence failure
                context.pending_nodes.setdefault(event.run_id, stored)
                if event.parent_run_id:
                    self._link(context, stored, updates)
                self._refresh_trace(context, updates)
            return

        node = context.pending_nodes.get(event.run_id)
        if node is None:
            node = self._new_node(context, event)
            context.next_sequence += 1
            context.pending_nodes[event.run_id] = node

        self._store.add_node(node)
        updates.append(GraphUpdate(GraphUpdateKind.NODE_CREATED, node.trace_id, node=node))
        logger.debug(f"Started {node.type} node {event.run_id} in trace {event.trace_id}")

        if event.parent_run_id:
            self._link(context, node, updates)
        self._refresh_trace(context, updates)

    def _new_node(
        self,
        context: CorrelationContext,
        event: LLMStartEvent | ToolStartEvent | ChainStartEvent,
    ) -> Node:
        if isinstance(event, LLMStartEvent):
            node_type = NodeType.LLM
            data: Any = LLMNodeData(
                model=event.model,
                prompts=list(event.prompts),
                invocation_params=dict(event.invocation_params),
            )
        elif isinstance(event, ToolStartEvent):
            node_type = NodeType.TOOL
            data = ToolNodeData(tool_name=event.tool_name, input=event.tool_input)
        else:
            node_type = NodeType.CHAIN
            data = ChainNodeData(chain_name=event.chain_name, inputs=event.inputs)

        return Node(
            id=node_id_for(event.trace_id, event.run_id),
            trace_id=event.trace_id,
            run_id=event.run_id,
            parent_run_id=event.parent_run_id,
            type=node_type,
            status=NodeStatus.RUNNING,
            sequence=context.next_sequence,
            start_time=event.timestamp,
            data=data,
            metadata=dict(event.metadata),
        )

    def _on_end(
        self,
        context: CorrelationContext,
        event: LLMEndEvent | ToolEndEvent | ChainEndEvent,
        updates: list[GraphUpdate],
    ) -> None:
        pending = context.pending_nodes.get(event.run_id)
        if pending is None:
            message = f"No pending node for {event.type} run {event.run_id} in trace {event.trace_id}"
            logger.warning(message)
            context.diagnostics.append(message)
            return

        if pending.type != _END_NODE_TYPES[type(event)]:
            message = (
                f"{event.type} for run {event.run_id} does not match its {pending.type} start, "
                "ignoring"
            )
            logger.warning(message)
            context.diagnostics.append(message)
            return

        node = pending.model_copy(deep=True)
        node.status = NodeStatus.COMPLETE
        node.end_time = event.timestamp
        node.metadata.update(event.metadata)

        if isinstance(event, LLMEndEvent):
            node.data.response = event.response
            node.tokens = event.tokens
            node.cost = event.cost
        elif isinstance(event, ToolEndEvent):
            if event.tool_name and not node.data.tool_name:
                node.data.tool_name = event.tool_name
            node.data.output = event.output
            node.tokens = event.tokens
            node.cost = event.cost
        else:
            node.data.outputs = event.outputs

        node.latency = (
            event.latency if event.latency is not None else max(0.0, event.timestamp - node.start_time)
        )
        node.cost, node.tokens = derive_cost(node, self._rates)

        self._finalize(context, node, updates)

    def _on_error(
        self, context: CorrelationContext, event: ErrorEvent, updates: list[GraphUpdate]
    ) -> None:
        pending = context.pending_nodes.get(event.run_id)
        if pending is None:
            message = f"Unattached error for run {event.run_id} in trace {event.trace_id}: {event.error}"
            logger.warning(message)
            context.diagnostics.append(message)
            return

        node = pending.model_copy(deep=True)
        node.status = NodeStatus.ERROR
        node.error = event.error or "Unknown error"
        node.end_time = event.timestamp
        node.latency = max(0.0, event.timestamp - node.start_time)
        if event.stack_trace:
            node.metadata["stackTrace"] = event.stack_trace
        logger.info(f"Run {event.run_id} in trace {event.trace_id} failed: {node.error}")

        self._finalize(context, node, updates)

    def _on_custom(
        self, context: CorrelationContext, event: CustomEvent, updates: list[GraphUpdate]
    ) -> None:
        node_id = node_id_for(event.trace_id, event.run_id)
        stored = self._store.get_node(node_id)
        if stored is not None:
            logger.debug(f"Duplicate custom event for run {event.run_id}, ignoring")
            if event.parent_run_id:
                self._link(context, stored, updates)
            self._refresh_trace(context, updates)
            return

        cost = event.data.get("cost")
        tokens = event.data.get("tokens")
        node = Node(
            id=node_id,
            trace_id=event.trace_id,
            run_id=event.run_id,
            parent_run_id=event.parent_run_id,
            type=NodeType.CUSTOM,
            status=NodeStatus.COMPLETE,
            sequence=context.next_sequence,
            start_time=event.timestamp,
            end_time=event.timestamp,
            latency=0.0,
            cost=float(cost) if isinstance(cost, (int, float)) else None,
            tokens=TokenUsage.model_validate(tokens) if isinstance(tokens, dict) else None,
            data=_normalize_custom(event),
            metadata=dict(event.metadata),
        )
        context.next_sequence += 1
        self._store.add_node(node)
        updates.append(GraphUpdate(GraphUpdateKind.NODE_CREATED, node.trace_id, node=node))
        updates.append(GraphUpdate(GraphUpdateKind.NODE_FINALIZED, node.trace_id, node=node))

        if event.parent_run_id:
            self._link(context, node, updates)
        self._refresh_trace(context, updates)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finalize(self, context: CorrelationContext, node: Node, updates: list[GraphUpdate]) -> None:
        self._store.update_node(node)
        updates.append(GraphUpdate(GraphUpdateKind.NODE_FINALIZED, node.trace_id, node=node))
        self._refresh_trace(context, updates)
        # Stays pending until the trace write succeeds
        context.pending_nodes.pop(node.run_id, None)

    def _link(self, context: CorrelationContext, child: Node, updates: list[GraphUpdate]) -> None:
        parent_run_id = child.parent_run_id
        if self._store.get_node(node_id_for(child.trace_id, parent_run_id)) is None:
            logger.warning(
                f"Parent run {parent_run_id} of {child.run_id} unknown in trace "
                f"{child.trace_id}, skipping edge"
            )
            return

        edge = Edge(
            id=edge_id_for(child.trace_id, parent_run_id, child.run_id),
            trace_id=child.trace_id,
            from_node=parent_run_id,
            to_node=child.run_id,
            created_at=child.start_time,
        )
        try:
            created = self._store.add_edge(edge)
        except Exception as e:
            logger.error(f"Failed to create edge {parent_run_id} -> {child.run_id}: {e}")
            return

        if created:
            updates.append(GraphUpdate(GraphUpdateKind.EDGE_CREATED, edge.trace_id, edge=edge))
