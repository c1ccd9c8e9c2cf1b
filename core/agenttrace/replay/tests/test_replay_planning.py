"""Tests for replay planning and state snapshots."""

from __future__ import annotations

import pytest

from agenttrace.graph.schemas import (
    ChainNodeData,
    Edge,
    GraphSnapshot,
    LLMNodeData,
    Node,
    NodeStatus,
    NodeType,
    ToolNodeData,
    Trace,
    edge_id_for,
    node_id_for,
)
from agenttrace.replay.planner import plan_replay, topological_order
from agenttrace.replay.snapshot import build_state_snapshot, compute_checksum, verify_snapshot

TRACE = "trace-p"


def _node(run_id: str, sequence: int, data=None, parent: str | None = None, **fields) -> Node:
    data = data or ChainNodeData(chain_name=run_id)
    node_type = {"llm": NodeType.LLM, "tool": NodeType.TOOL, "chain": NodeType.CHAIN}[data.kind]
    return Node(
        id=node_id_for(TRACE, run_id),
        trace_id=TRACE,
        run_id=run_id,
        parent_run_id=parent,
        type=node_type,
        status=NodeStatus.COMPLETE,
        sequence=sequence,
        start_time=1000.0 * sequence,
        end_time=1000.0 * sequence + 10,
        data=data,
        **fields,
    )


def _snapshot(nodes: list[Node]) -> GraphSnapshot:
    edges = [
        Edge(id=edge_id_for(TRACE, n.parent_run_id, n.run_id), trace_id=TRACE, from_node=n.parent_run_id, to_node=n.run_id)
        for n in nodes
        if n.parent_run_id
    ]
    return GraphSnapshot(trace=Trace(id=TRACE), nodes=nodes, edges=edges)


def _runs(nodes: list[Node]) -> list[str]:
    return [n.run_id for n in nodes]


class TestTopologicalOrder:
    def test_parents_before_children(self):
        nodes = [_node("a", 0), _node("b", 1), _node("c", 2)]
        assert _runs(topological_order(nodes, [("c", "b"), ("a", "c")])) == ["a", "c", "b"]

    def test_ties_broken_by_creation_order(self):
        nodes = [_node("root", 0), _node("y", 1), _node("x", 2)]
        ordered = topological_order(nodes, [("root", "x"), ("root", "y")])
        assert _runs(ordered) == ["root", "y", "x"]

    def test_unconnected_nodes_appended_in_creation_order(self):
        nodes = [_node("a", 0), _node("b", 1), _node("c", 2)]
        assert _runs(topological_order(nodes, [("c", "b")])) == ["c", "b", "a"]

    def test_cycle_falls_back_to_creation_order(self):
        nodes = [_node("a", 0), _node("b", 1), _node("c", 2)]
        assert _runs(topological_order(nodes, [("a", "b"), ("b", "a")])) == ["a", "b", "c"]

    def test_edges_outside_the_set_are_ignored(self):
        nodes = [_node("b", 1), _node("c", 2)]
        assert _runs(topological_order(nodes, [("a", "b"), ("b", "c")])) == ["b", "c"]


class TestPlanReplay:
    def test_plan_starts_at_start_node(self):
        nodes = [_node("root", 0), _node("a", 1, parent="root"), _node("b", 2, parent="a")]
        snapshot = _snapshot(nodes)

        assert _runs(plan_replay(snapshot, nodes[1])) == ["a", "b"]
        assert _runs(plan_replay(snapshot, nodes[0])) == ["root", "a", "b"]


@pytest.fixture
def conversation() -> GraphSnapshot:
    return _snapshot(
        [
            _node("ask", 0, LLMNodeData(model="gpt-4", prompts=["Plan a dinner"], response="Try pasta")),
            _node(
                "lookup",
                1,
                ToolNodeData(tool_name="recipes", input={"dish": "pasta"}, output=["carbonara"]),
                parent="ask",
                metadata={"context": {"diet": "none"}},
            ),
            _node("answer", 2, LLMNodeData(model="gpt-4", prompts=["Summarize"], response="Carbonara it is")),
        ]
    )


class TestStateSnapshot:
    def test_reconstructs_state_before_anchor(self, conversation):
        anchor = conversation.get_node_by_run("answer")
        state = build_state_snapshot(conversation, anchor.id)

        assert state.node_id == anchor.id
        assert state.node_count == 2
        assert [(m.role, m.content) for m in state.conversation_history] == [
            ("user", "Plan a dinner"),
            ("assistant", "Try pasta"),
        ]
        assert state.tool_outputs["recipes"]["output"] == ["carbonara"]
        assert state.tool_outputs["recipes"]["input"] == {"dish": "pasta"}
        assert state.context_variables == {"diet": "none"}

    def test_anchor_by_run_id(self, conversation):
        state = build_state_snapshot(conversation, "answer")
        assert state.node_id == node_id_for(TRACE, "answer")

    def test_first_node_has_empty_state(self, conversation):
        state = build_state_snapshot(conversation, "ask")
        assert state.conversation_history == []
        assert state.node_count == 0

    def test_unknown_anchor(self, conversation):
        with pytest.raises(KeyError):
            build_state_snapshot(conversation, "nope")

    def test_checksum_is_deterministic(self, conversation):
        first = build_state_snapshot(conversation, "answer").checksum
        assert build_state_snapshot(conversation.model_copy(deep=True), "answer").checksum == first
        assert len(first) == 64

    def test_verify_detects_changes_before_anchor(self, conversation):
        state = build_state_snapshot(conversation, "lookup")
        assert verify_snapshot(state, conversation)

        changed = conversation.model_copy(deep=True)
        changed.nodes[0].data.response = "Try salad"
        assert not verify_snapshot(state, GraphSnapshot(trace=changed.trace, nodes=changed.nodes, edges=changed.edges))

    def test_later_nodes_do_not_affect_checksum(self, conversation):
        state = build_state_snapshot(conversation, "lookup")
        nodes = conversation.nodes[:2]
        assert compute_checksum(nodes, conversation) == state.checksum
