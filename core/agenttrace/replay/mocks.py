"""Synthetic tool responses used when replay mocks external calls.

Mock ids are derived from the node id so repeated replays of the same
node produce the same payload.
"""

from __future__ import annotations

from typing import Any

from agenttrace.graph.schemas import Node, ToolNodeData
from agenttrace.replay.schemas import SideEffect, SideEffectCategory

MOCK_NOTE = "Simulated during replay; no real side effect occurred"

_SEVERITY_RANK = {"critical": 2, "warning": 1, "safe": 0}


def _mock_id(prefix: str, node: Node) -> str:
    return f"mock-{prefix}-{node.id.replace('-', '')[:12]}"


def primary_effect(effects: list[SideEffect]) -> SideEffect | None:
    """The most severe effect; declared effects win ties."""
    if not effects:
        return None
    return max(effects, key=lambda e: (_SEVERITY_RANK[e.severity], e.declared))


def mock_response(node: Node, effect: SideEffect) -> dict[str, Any]:
    """Synthetic payload standing in for a tool's real response."""
    original = node.data.output if isinstance(node.data, ToolNodeData) else node.output_text()
    base: dict[str, Any] = {"success": True, "simulated": True, "mockNote": MOCK_NOTE}

    if effect.category == SideEffectCategory.EMAIL:
        return {**base, "messageId": _mock_id("email", node), "originalAction": "email_send"}
    if effect.category == SideEffectCategory.API_CALL:
        return {**base, "data": original, "originalAction": "api_call"}
    if effect.category == SideEffectCategory.DATABASE_WRITE:
        return {**base, "recordId": _mock_id("record", node), "originalAction": "database_write"}
    if effect.category == SideEffectCategory.PAYMENT:
        return {**base, "transactionId": _mock_id("payment", node), "originalAction": "payment"}
    return {**base, "originalAction": effect.category.value}
