"""
Shared fixtures for core tests.

Provides a fresh in-memory store, a correlator bound to it with a fixed
clock, and factories for building events and hand-made graph snapshots.
"""

from typing import Any, Callable

import pytest

from agenttrace.correlation.correlator import EventCorrelator
from agenttrace.graph.schemas import (
    ChainNodeData,
    CustomNodeData,
    Edge,
    GraphSnapshot,
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
    TraceStatus,
    edge_id_for,
    node_id_for,
)
from agenttrace.errors import PersistenceError
from agenttrace.graph.store import InMemoryGraphStore

FIXED_NOW = 1_700_000_100_000.0
T0 = 1_700_000_000_000.0


@pytest.fixture
def store() -> InMemoryGraphStore:
    """Create a fresh InMemoryGraphStore."""
    return InMemoryGraphStore()


class FlakyGraphStore(InMemoryGraphStore):
    """In-memory store whose next write can be made to fail after the change is applied."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    def fail_next_write(self, times: int = 1) -> None:
        self.failures = times

    def _persist(self, trace_id: str) -> None:
        if self.failures:
            self.failures -= 1
            raise PersistenceError(f"simulated write failure for {trace_id}")


@pytest.fixture
def flaky_store() -> FlakyGraphStore:
    """Store that raises PersistenceError on demand."""
    return FlakyGraphStore()


@pytest.fixture
def correlator(store: InMemoryGraphStore) -> EventCorrelator:
    """Correlator over the shared store with a fixed clock."""
    return EventCorrelator(store, clock=lambda: FIXED_NOW)


@pytest.fixture
def llm_call() -> Callable[..., list]:
    """
    Factory for a start/end pair of LLM events.

    Returns:
        A function returning [LLMStartEvent, LLMEndEvent] for one run.
    """

    def _make(
        run_id: str,
        trace_id: str = "trace-1",
        parent: str | None = None,
        model: str = "gpt-4",
        prompt: str = "Hello",
        response: str = "Hi there",
        start: float = T0,
        end: float = T0 + 500,
        tokens: TokenUsage | None = None,
        cost: float | None = None,
    ) -> list:
        return [
            LLMStartEvent(
                trace_id=trace_id,
                run_id=run_id,
                parent_run_id=parent,
                model=model,
                prompts=[prompt],
                timestamp=start,
            ),
            LLMEndEvent(
                trace_id=trace_id,
                run_id=run_id,
                response=response,
                tokens=tokens,
                cost=cost,
                timestamp=end,
            ),
        ]

    return _make


@pytest.fixture
def tool_call() -> Callable[..., list]:
    """Factory for a start/end pair of tool events."""

    def _make(
        run_id: str,
        tool_name: str = "search",
        tool_input: Any = "query",
        output: Any = "result",
        trace_id: str = "trace-1",
        parent: str | None = None,
        start: float = T0,
        end: float = T0 + 100,
        cost: float | None = None,
    ) -> list:
        return [
            ToolStartEvent(
                trace_id=trace_id,
                run_id=run_id,
                parent_run_id=parent,
                tool_name=tool_name,
                tool_input=tool_input,
                timestamp=start,
            ),
            ToolEndEvent(
                trace_id=trace_id,
                run_id=run_id,
                tool_name=tool_name,
                output=output,
                cost=cost,
                timestamp=end,
            ),
        ]

    return _make


@pytest.fixture
def make_node() -> Callable[..., Node]:
    """
    Factory for finished nodes used in hand-built snapshots.

    ``kind`` selects the node data: "llm", "tool", "chain" or "custom".
    """

    def _make(
        run_id: str,
        kind: str = "llm",
        sequence: int = 0,
        trace_id: str = "trace-1",
        parent: str | None = None,
        status: NodeStatus = NodeStatus.COMPLETE,
        cost: float | None = None,
        latency: float | None = None,
        tokens: int | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        **data: Any,
    ) -> Node:
        if kind == "llm":
            node_type, node_data = NodeType.LLM, LLMNodeData(**data)
        elif kind == "tool":
            node_type, node_data = NodeType.TOOL, ToolNodeData(**data)
        elif kind == "chain":
            node_type, node_data = NodeType.CHAIN, ChainNodeData(**data)
        else:
            node_type, node_data = NodeType.CUSTOM, CustomNodeData(**data)

        start = T0 + sequence * 1000
        return Node(
            id=node_id_for(trace_id, run_id),
            trace_id=trace_id,
            run_id=run_id,
            parent_run_id=parent,
            type=node_type,
            status=status,
            sequence=sequence,
            start_time=start,
            end_time=None if status == NodeStatus.RUNNING else start + (latency or 0.0),
            cost=cost,
            tokens=TokenUsage(prompt=tokens) if tokens is not None else None,
            latency=latency,
            error=error,
            data=node_data,
            metadata=metadata or {},
        )

    return _make


@pytest.fixture
def make_snapshot() -> Callable[..., GraphSnapshot]:
    """
    Factory for a GraphSnapshot from nodes and (parent run, child run) pairs.

    Edges are derived from each node's parent_run_id unless given explicitly.
    """

    def _make(
        nodes: list[Node],
        edges: list[tuple[str, str]] | None = None,
        trace_id: str = "trace-1",
        status: TraceStatus = TraceStatus.COMPLETE,
    ) -> GraphSnapshot:
        if edges is None:
            edges = [(n.parent_run_id, n.run_id) for n in nodes if n.parent_run_id]
        return GraphSnapshot(
            trace=Trace(
                id=trace_id,
                start_time=T0,
                status=status,
                total_cost=sum(n.cost or 0.0 for n in nodes),
                total_nodes=len(nodes),
            ),
            nodes=nodes,
            edges=[
                Edge(
                    id=edge_id_for(trace_id, parent, child),
                    trace_id=trace_id,
                    from_node=parent,
                    to_node=child,
                    created_at=T0,
                )
                for parent, child in edges
            ],
        )

    return _make
