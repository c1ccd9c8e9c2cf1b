"""Replay - data models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class SideEffectCategory(StrEnum):
    EMAIL = "email"
    API_CALL = "api_call"
    DATABASE_WRITE = "database_write"
    PAYMENT = "payment"
    EXTERNAL_SERVICE = "external_service"


class SideEffectSeverity(StrEnum):
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"


class ReplayMode(StrEnum):
    """How safely a trace can be replayed from a given node.

    Ordered from least to most restrictive: SAFE, SIMULATION, WARNING,
    BLOCKED.
    """

    SAFE = "safe"
    SIMULATION = "simulation"
    WARNING = "warning"
    BLOCKED = "blocked"


class SideEffect(BaseModel):
    """An externally observable consequence of a node's original run."""

    category: SideEffectCategory
    severity: SideEffectSeverity
    reversible: bool
    external_dependency: bool
    source_node_id: str
    description: str = ""
    declared: bool = Field(
        default=False, description="True when reported in the node's own metadata"
    )

    @property
    def is_blocking(self) -> bool:
        return self.severity == SideEffectSeverity.CRITICAL and not self.reversible


class SafetyAnalysis(BaseModel):
    """Side effects found from a start node onward and the resulting mode."""

    trace_id: str
    start_node_id: str
    mode: ReplayMode
    side_effects: list[SideEffect] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ReplayModifications(BaseModel):
    """Per-node overrides applied during replay, keyed by node id."""

    prompt_changes: dict[str, str] = Field(default_factory=dict)
    tool_response_overrides: dict[str, Any] = Field(default_factory=dict)
    system_instruction_updates: dict[str, str] = Field(default_factory=dict)
    context_variable_changes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    model_changes: dict[str, str] = Field(default_factory=dict)


@dataclass
class ReplayOptions:
    """Options for replay execution."""

    live: bool = False
    mock_external_calls: bool = False
    allow_blocked: bool = False
    temperature: float = 0.7
    max_tokens: int = 512
    max_nodes: int | None = None
    node_timeout_seconds: float | None = None
    expected_checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "live": self.live,
            "mock_external_calls": self.mock_external_calls,
            "allow_blocked": self.allow_blocked,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "max_nodes": self.max_nodes,
            "node_timeout_seconds": self.node_timeout_seconds,
            "expected_checksum": self.expected_checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReplayOptions:
        return cls(
            live=data.get("live", False),
            mock_external_calls=data.get("mock_external_calls", False),
            allow_blocked=data.get("allow_blocked", False),
            temperature=data.get("temperature", 0.7),
            max_tokens=data.get("max_tokens", 512),
            max_nodes=data.get("max_nodes"),
            node_timeout_seconds=data.get("node_timeout_seconds"),
            expected_checksum=data.get("expected_checksum"),
        )


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class StateSnapshot(BaseModel):
    """Conversation, tool and context state just before an anchor node."""

    trace_id: str
    node_id: str
    conversation_history: list[ChatMessage] = Field(default_factory=list)
    tool_outputs: dict[str, Any] = Field(default_factory=dict)
    context_variables: dict[str, Any] = Field(default_factory=dict)
    node_count: int = 0
    checksum: str


class NodeReplayOutput(BaseModel):
    """What one node produced during replay."""

    node_id: str
    node_type: str
    output: Any = None
    source: Literal["live", "synthetic", "override", "mock", "original"]
    changed_fields: list[str] = Field(default_factory=list)
    cost: float = 0.0
    latency: float = 0.0


class ReplayResult(BaseModel):
    """Result of a replay execution."""

    success: bool
    mode: ReplayMode = ReplayMode.SAFE
    original_trace_id: str = ""
    new_trace_id: str = ""
    start_node_id: str = ""
    executed_node_ids: list[str] = Field(default_factory=list)
    skipped_node_ids: list[str] = Field(default_factory=list)
    side_effects: list[SideEffect] = Field(default_factory=list)
    outputs: dict[str, NodeReplayOutput] = Field(default_factory=dict)
    total_cost: float = 0.0
    total_latency: float = 0.0
    cancelled: bool = False
    snapshot_checksum: str = ""
    error: str | None = None
