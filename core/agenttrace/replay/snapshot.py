"""State snapshots: the agent's state just before an anchor node.

The checksum covers the nodes the snapshot was built from (plus the anchor)
and the edges among them, so a replay can tell whether the trace changed
between capture and execution.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from agenttrace.graph.schemas import (
    GraphSnapshot,
    LLMNodeData,
    Node,
    NodeType,
    ToolNodeData,
)
from agenttrace.replay.schemas import ChatMessage, StateSnapshot


def compute_checksum(nodes: list[Node], snapshot: GraphSnapshot) -> str:
    """SHA-256 over the canonical JSON of nodes and the edges among them."""
    run_ids = {n.run_id for n in nodes}
    edges = sorted(
        (e for e in snapshot.edges if e.from_node in run_ids and e.to_node in run_ids),
        key=lambda e: e.id,
    )
    payload = {
        "trace_id": snapshot.trace_id,
        "nodes": [n.model_dump(mode="json") for n in sorted(nodes, key=lambda n: n.sequence)],
        "edges": [{"id": e.id, "from": e.from_node, "to": e.to_node} for e in edges],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _preceding(snapshot: GraphSnapshot, anchor: Node) -> list[Node]:
    return [n for n in snapshot.ordered_nodes() if n.sequence < anchor.sequence]


def build_state_snapshot(snapshot: GraphSnapshot, anchor_node_id: str) -> StateSnapshot:
    """Reconstruct conversation, tool outputs and context before an anchor.

    Raises:
        KeyError: If the anchor node is not in the trace.
    """
    anchor = snapshot.resolve(anchor_node_id)
    if anchor is None:
        raise KeyError(f"Node {anchor_node_id} not found in trace {snapshot.trace_id}")

    preceding = _preceding(snapshot, anchor)
    history: list[ChatMessage] = []
    tool_outputs: dict[str, Any] = {}
    context: dict[str, Any] = {}

    for node in preceding:
        if node.type == NodeType.LLM and isinstance(node.data, LLMNodeData):
            prompt = "\n\n".join(node.data.prompts)
            if prompt:
                history.append(ChatMessage(role="user", content=prompt))
            if node.data.response:
                history.append(ChatMessage(role="assistant", content=node.data.response))
        elif node.type == NodeType.TOOL and isinstance(node.data, ToolNodeData):
            tool_outputs[node.data.tool_name] = {
                "input": node.data.input,
                "output": node.data.output,
                "timestamp": node.end_time or node.start_time,
            }

        node_context = node.metadata.get("context")
        if isinstance(node_context, dict):
            context.update(node_context)

    return StateSnapshot(
        trace_id=snapshot.trace_id,
        node_id=anchor.id,
        conversation_history=history,
        tool_outputs=tool_outputs,
        context_variables=context,
        node_count=len(preceding),
        checksum=compute_checksum(preceding + [anchor], snapshot),
    )


def verify_snapshot(state: StateSnapshot, snapshot: GraphSnapshot) -> bool:
    """True if the trace still matches what the state was built from."""
    anchor = snapshot.resolve(state.node_id)
    if anchor is None:
        return False
    return compute_checksum(_preceding(snapshot, anchor) + [anchor], snapshot) == state.checksum
