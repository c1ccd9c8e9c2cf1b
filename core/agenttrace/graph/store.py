"""GraphStore - storage for traces, nodes, edges and anomaly findings.

Two backends share one protocol:

- InMemoryGraphStore: dict-backed, for tests and single-process use
- FileGraphStore: in-memory maps mirrored to one JSON file per trace

Storage layout of FileGraphStore:
    {base_path}/
      traces/
        {trace_id}.json     # trace, nodes, edges and anomalies

Every mutation is durable before the call returns. I/O failures are raised
as PersistenceError so ingestion callers can retry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agenttrace.errors import PersistenceError
from agenttrace.graph.schemas import (
    Edge,
    GraphSnapshot,
    Node,
    Trace,
    TraceFilter,
    TraceListItem,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class GraphStore(Protocol):
    """CRUD collaborator for the execution graph.

    Anomalies are stored as plain JSON-compatible dicts keyed by their
    ``id`` so the store does not depend on the detector's schema.
    """

    def create_trace(self, trace: Trace) -> bool: ...

    def update_trace(self, trace: Trace) -> None: ...

    def get_trace(self, trace_id: str) -> Trace | None: ...

    def list_traces(self, filters: TraceFilter | None = None) -> list[TraceListItem]: ...

    def add_node(self, node: Node) -> bool: ...

    def update_node(self, node: Node) -> None: ...

    def get_node(self, node_id: str) -> Node | None: ...

    def get_nodes(self, trace_id: str) -> list[Node]: ...

    def add_edge(self, edge: Edge) -> bool: ...

    def get_edges(self, trace_id: str) -> list[Edge]: ...

    def upsert_anomalies(self, trace_id: str, anomalies: list[dict[str, Any]]) -> None: ...

    def get_anomalies(self, trace_id: str) -> list[dict[str, Any]]: ...

    def snapshot(self, trace_id: str) -> GraphSnapshot | None: ...


class InMemoryGraphStore:
    """Thread-safe dict-backed graph store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._traces: dict[str, Trace] = {}
        self._nodes: dict[str, dict[str, Node]] = {}
        self._node_index: dict[str, str] = {}
        self._edges: dict[str, dict[str, Edge]] = {}
        self._anomalies: dict[str, dict[str, dict[str, Any]]] = {}

    # --- Traces ---

    def create_trace(self, trace: Trace) -> bool:
        """Create a trace record.

        Returns:
            False if a trace with the same id already exists.
        """
        with self._lock:
            if trace.id in self._traces:
                return False
            self._traces[trace.id] = trace.model_copy(deep=True)
            self._nodes.setdefault(trace.id, {})
            self._edges.setdefault(trace.id, {})
            self._anomalies.setdefault(trace.id, {})
        self._persist(trace.id)
        return True

    def update_trace(self, trace: Trace) -> None:
        with self._lock:
            if trace.id not in self._traces:
                raise KeyError(f"Unknown trace: {trace.id}")
            self._traces[trace.id] = trace.model_copy(deep=True)
        self._persist(trace.id)

    def get_trace(self, trace_id: str) -> Trace | None:
        with self._lock:
            trace = self._traces.get(trace_id)
            return trace.model_copy(deep=True) if trace else None

    def list_traces(self, filters: TraceFilter | None = None) -> list[TraceListItem]:
        """List traces newest first, optionally filtered by project and status."""
        filters = filters or TraceFilter()
        with self._lock:
            traces = list(self._traces.values())

        results = []
        for trace in traces:
            if filters.project_name and trace.project_name != filters.project_name:
                continue
            if filters.status and trace.status != filters.status:
                continue
            results.append(TraceListItem.from_trace(trace))

        results.sort(key=lambda t: t.start_time, reverse=True)
        return results[filters.offset : filters.offset + filters.limit]

    # --- Nodes ---

    def add_node(self, node: Node) -> bool:
        """Add a node to its trace.

        Returns:
            False if the node already exists.
        """
        with self._lock:
            nodes = self._nodes.get(node.trace_id)
            if nodes is None:
                raise KeyError(f"Unknown trace: {node.trace_id}")
            if node.id in nodes:
                return False
            nodes[node.id] = node.model_copy(deep=True)
            self._node_index[node.id] = node.trace_id
        self._persist(node.trace_id)
        return True

    def update_node(self, node: Node) -> None:
        with self._lock:
            nodes = self._nodes.get(node.trace_id)
            if nodes is None or node.id not in nodes:
                raise KeyError(f"Unknown node: {node.id}")
            nodes[node.id] = node.model_copy(deep=True)
        self._persist(node.trace_id)

    def get_node(self, node_id: str) -> Node | None:
        with self._lock:
            trace_id = self._node_index.get(node_id)
            if trace_id is None:
                return None
            return self._nodes[trace_id][node_id].model_copy(deep=True)

    def get_nodes(self, trace_id: str) -> list[Node]:
        with self._lock:
            nodes = self._nodes.get(trace_id, {})
            return sorted(
                (n.model_copy(deep=True) for n in nodes.values()),
                key=lambda n: n.sequence,
            )

    # --- Edges ---

    def add_edge(self, edge: Edge) -> bool:
        """Add an edge.

        Returns:
            False if an edge with the same id already exists.
        """
        with self._lock:
            edges = self._edges.get(edge.trace_id)
            if edges is None:
                raise KeyError(f"Unknown trace: {edge.trace_id}")
            if edge.id in edges:
                return False
            edges[edge.id] = edge.model_copy(deep=True)
        self._persist(edge.trace_id)
        return True

    def get_edges(self, trace_id: str) -> list[Edge]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._edges.get(trace_id, {}).values()]

    # --- Anomalies ---

    def upsert_anomalies(self, trace_id: str, anomalies: list[dict[str, Any]]) -> None:
        with self._lock:
            stored = self._anomalies.get(trace_id)
            if stored is None:
                raise KeyError(f"Unknown trace: {trace_id}")
            for anomaly in anomalies:
                stored[anomaly["id"]] = json.loads(json.dumps(anomaly, default=str))
        self._persist(trace_id)

    def get_anomalies(self, trace_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [json.loads(json.dumps(a)) for a in self._anomalies.get(trace_id, {}).values()]

    # --- Snapshots ---

    def snapshot(self, trace_id: str) -> GraphSnapshot | None:
        """Deep copy of a trace's graph, or None for an unknown trace."""
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                return None
            return GraphSnapshot(
                trace=trace.model_copy(deep=True),
                nodes=sorted(
                    (n.model_copy(deep=True) for n in self._nodes[trace_id].values()),
                    key=lambda n: n.sequence,
                ),
                edges=[e.model_copy(deep=True) for e in self._edges[trace_id].values()],
            )

    async def snapshot_async(self, trace_id: str) -> GraphSnapshot | None:
        """Async version of snapshot."""
        return await asyncio.to_thread(self.snapshot, trace_id)

    def _persist(self, trace_id: str) -> None:
        """Hook for durable backends; called after every mutation."""


class FileGraphStore(InMemoryGraphStore):
    """Graph store mirrored to one JSON file per trace.

    Existing trace files are loaded on construction, so a restarted process
    sees earlier traces.
    """

    def __init__(self, base_path: Path) -> None:
        super().__init__()
        self._base_path = Path(base_path)
        self._traces_dir = self._base_path / "traces"
        self._load_all()

    def ensure_dirs(self) -> None:
        """Create storage directories if they don't exist."""
        self._traces_dir.mkdir(parents=True, exist_ok=True)

    def get_trace_path(self, trace_id: str) -> Path:
        """Get the path for a trace file."""
        return self._traces_dir / f"{trace_id}.json"

    def _persist(self, trace_id: str) -> None:
        with self._lock:
            trace = self._traces[trace_id]
            payload = {
                "trace": trace.model_dump(mode="json"),
                "nodes": [n.model_dump(mode="json") for n in self._nodes[trace_id].values()],
                "edges": [e.model_dump(mode="json") for e in self._edges[trace_id].values()],
                "anomalies": list(self._anomalies[trace_id].values()),
            }
        path = self.get_trace_path(trace_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.ensure_dirs()
            tmp_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to save trace {trace_id} to {path}: {e}") from e
        logger.debug(f"Saved trace {trace_id} to {path}")

    def _load_all(self) -> None:
        if not self._traces_dir.exists():
            return
        for path in sorted(self._traces_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                trace = Trace.model_validate(data["trace"])
                nodes = [Node.model_validate(n) for n in data.get("nodes", [])]
                edges = [Edge.model_validate(e) for e in data.get("edges", [])]
            except Exception as e:
                logger.warning(f"Failed to load trace from {path}: {e}")
                continue

            self._traces[trace.id] = trace
            self._nodes[trace.id] = {n.id: n for n in nodes}
            self._edges[trace.id] = {e.id: e for e in edges}
            self._anomalies[trace.id] = {a["id"]: a for a in data.get("anomalies", []) if "id" in a}
            for node in nodes:
                self._node_index[node.id] = trace.id
        logger.info(f"Loaded {len(self._traces)} trace(s) from {self._traces_dir}")

    def delete_trace(self, trace_id: str) -> bool:
        """Delete a trace from memory and disk.

        Returns:
            True if deleted, False if not found.
        """
        with self._lock:
            if trace_id not in self._traces:
                return False
            del self._traces[trace_id]
            for node_id in self._nodes.pop(trace_id, {}):
                self._node_index.pop(node_id, None)
            self._edges.pop(trace_id, None)
            self._anomalies.pop(trace_id, None)
        path = self.get_trace_path(trace_id)
        if path.exists():
            path.unlink()
        return True
