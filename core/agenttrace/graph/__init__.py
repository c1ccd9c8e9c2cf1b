"""Execution graph: event schemas, graph schemas and storage backends."""

from agenttrace.graph.schemas import (
    Edge,
    EventType,
    GraphSnapshot,
    Node,
    NodeStatus,
    NodeType,
    TokenUsage,
    Trace,
    TraceEvent,
    TraceFilter,
    TraceListItem,
    TraceStatus,
    parse_event,
)
from agenttrace.graph.store import FileGraphStore, GraphStore, InMemoryGraphStore

__all__ = [
    "Edge",
    "EventType",
    "GraphSnapshot",
    "Node",
    "NodeStatus",
    "NodeType",
    "TokenUsage",
    "Trace",
    "TraceEvent",
    "TraceFilter",
    "TraceListItem",
    "TraceStatus",
    "parse_event",
    "FileGraphStore",
    "GraphStore",
    "InMemoryGraphStore",
]
