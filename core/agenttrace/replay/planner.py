"""Execution planning for replay.

Nodes at or after the start node are ordered with Kahn's algorithm over the
edges whose endpoints are both in that set. Ties go to the node created
first. Nodes not touched by any such edge, and anything left over if the
edges contain a cycle, are appended in creation order.
"""

from __future__ import annotations

import heapq
import logging

from agenttrace.graph.schemas import GraphSnapshot, Node
from agenttrace.replay.safety import nodes_from

logger = logging.getLogger(__name__)


def topological_order(nodes: list[Node], edges: list[tuple[str, str]]) -> list[Node]:
    """Order nodes so every (parent run id, child run id) edge is respected."""
    by_run = {n.run_id: n for n in nodes}
    indegree = {run_id: 0 for run_id in by_run}
    children: dict[str, list[str]] = {run_id: [] for run_id in by_run}
    connected: set[str] = set()

    for parent, child in edges:
        if parent not in by_run or child not in by_run or parent == child:
            continue
        children[parent].append(child)
        indegree[child] += 1
        connected.update((parent, child))

    heap = [(by_run[r].sequence, r) for r in connected if indegree[r] == 0]
    heapq.heapify(heap)

    ordered: list[Node] = []
    placed: set[str] = set()
    while heap:
        _, run_id = heapq.heappop(heap)
        ordered.append(by_run[run_id])
        placed.add(run_id)
        for child in children[run_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, (by_run[child].sequence, child))

    leftover = [n for n in sorted(nodes, key=lambda n: n.sequence) if n.run_id not in placed]
    cyclic = [n.run_id for n in leftover if n.run_id in connected]
    if cyclic:
        logger.warning(f"Edges among {cyclic} form a cycle; appending in creation order")
    return ordered + leftover


def plan_replay(snapshot: GraphSnapshot, start: Node) -> list[Node]:
    """Nodes to replay from ``start``, in execution order."""
    selected = nodes_from(snapshot, start)
    edges = [(e.from_node, e.to_node) for e in snapshot.edges]
    return topological_order(selected, edges)
