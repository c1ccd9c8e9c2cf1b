"""Schemas for trace events and the execution graph built from them.

Wire payloads use camelCase keys (``traceId``, ``runId``, ``parentRunId``);
the models accept either camelCase or snake_case on input and serialize with
``by_alias=True`` when talking to the outside world.

Events are a closed union discriminated on ``type``::

    llm_start / llm_end       - a model call
    tool_start / tool_end     - a tool invocation
    chain_start / chain_end   - a sub-process step
    error                     - failure of a pending run
    custom                    - a free-form step, already finished on arrival
"""

from __future__ import annotations

import json
import time
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from agenttrace.errors import InvalidEventError

_ID_NAMESPACE = uuid.UUID("6f1c2a4e-93b7-4d0e-8a55-3c7d0b9e2f41")

NO_PROMPT_PLACEHOLDER = "(no prompt recorded)"
NO_RESPONSE_PLACEHOLDER = "(no response recorded)"


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


def node_id_for(trace_id: str, run_id: str) -> str:
    """Deterministic node id for a run within a trace."""
    return str(uuid.uuid5(_ID_NAMESPACE, f"{trace_id}/{run_id}"))


def edge_id_for(trace_id: str, from_run_id: str, to_run_id: str) -> str:
    """Deterministic edge id for a parent/child pair within a trace."""
    return str(uuid.uuid5(_ID_NAMESPACE, f"{trace_id}/{from_run_id}->{to_run_id}"))


class WireModel(BaseModel):
    """Base model using camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeType(StrEnum):
    """Kind of step a node represents."""

    LLM = "llm"
    TOOL = "tool"
    CHAIN = "chain"
    CUSTOM = "custom"


class NodeStatus(StrEnum):
    """Lifecycle status of a node."""

    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class TraceStatus(StrEnum):
    """Aggregate status of a trace."""

    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class EventType(StrEnum):
    """Types of events accepted by the correlator."""

    LLM_START = "llm_start"
    LLM_END = "llm_end"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    CHAIN_START = "chain_start"
    CHAIN_END = "chain_end"
    ERROR = "error"
    CUSTOM = "custom"


class TokenUsage(WireModel):
    """Token counts for a model or tool call."""

    prompt: int = Field(default=0, ge=0)
    completion: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _fill_total(self) -> TokenUsage:
        if not self.total:
            self.total = self.prompt + self.completion
        return self


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class _EventBase(WireModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="id")
    trace_id: str = Field(min_length=1)
    run_id: str = Field(min_length=1)
    parent_run_id: str | None = None
    timestamp: float = Field(default_factory=now_ms)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LLMStartEvent(_EventBase):
    type: Literal["llm_start"] = "llm_start"
    model: str = ""
    prompts: list[str] = Field(default_factory=list)
    invocation_params: dict[str, Any] = Field(default_factory=dict)


class LLMEndEvent(_EventBase):
    type: Literal["llm_end"] = "llm_end"
    response: str = ""
    tokens: TokenUsage | None = None
    cost: float | None = Field(default=None, ge=0)
    latency: float | None = Field(default=None, ge=0)


class ToolStartEvent(_EventBase):
    type: Literal["tool_start"] = "tool_start"
    tool_name: str = ""
    tool_input: str | dict[str, Any] = Field(default="", alias="input")


class ToolEndEvent(_EventBase):
    type: Literal["tool_end"] = "tool_end"
    tool_name: str = ""
    output: Any = ""
    tokens: TokenUsage | None = None
    cost: float | None = Field(default=None, ge=0)
    latency: float | None = Field(default=None, ge=0)


class ChainStartEvent(_EventBase):
    type: Literal["chain_start"] = "chain_start"
    chain_name: str = ""
    inputs: Any = None


class ChainEndEvent(_EventBase):
    type: Literal["chain_end"] = "chain_end"
    chain_name: str = ""
    outputs: Any = None
    latency: float | None = Field(default=None, ge=0)


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: str = ""
    stack_trace: str | None = None


class CustomEvent(_EventBase):
    type: Literal["custom"] = "custom"
    name: str = "custom"
    data: dict[str, Any] = Field(default_factory=dict)


TraceEvent = Annotated[
    Union[
        LLMStartEvent,
        LLMEndEvent,
        ToolStartEvent,
        ToolEndEvent,
        ChainStartEvent,
        ChainEndEvent,
        ErrorEvent,
        CustomEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[TraceEvent] = TypeAdapter(TraceEvent)

START_EVENTS = frozenset({EventType.LLM_START, EventType.TOOL_START, EventType.CHAIN_START})
END_EVENTS = frozenset({EventType.LLM_END, EventType.TOOL_END, EventType.CHAIN_END})


def parse_event(payload: dict[str, Any]) -> TraceEvent:
    """Validate a raw payload into one of the event variants.

    Raises:
        InvalidEventError: If the payload has an unknown type or missing keys.
    """
    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise InvalidEventError(f"Invalid trace event: {e.error_count()} error(s): {e}") from e


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class LLMNodeData(WireModel):
    kind: Literal["llm"] = "llm"
    model: str = ""
    prompts: list[str] = Field(default_factory=list)
    response: str = ""
    invocation_params: dict[str, Any] = Field(default_factory=dict)


class ToolNodeData(WireModel):
    kind: Literal["tool"] = "tool"
    tool_name: str = ""
    input: Any = ""
    output: Any = ""


class ChainNodeData(WireModel):
    kind: Literal["chain"] = "chain"
    chain_name: str = ""
    inputs: Any = None
    outputs: Any = None


class CustomNodeData(WireModel):
    kind: Literal["custom"] = "custom"
    name: str = "custom"
    prompts: list[str] = Field(default_factory=lambda: [NO_PROMPT_PLACEHOLDER])
    response: str = NO_RESPONSE_PLACEHOLDER
    payload: dict[str, Any] = Field(default_factory=dict)


NodeData = Annotated[
    Union[LLMNodeData, ToolNodeData, ChainNodeData, CustomNodeData],
    Field(discriminator="kind"),
]


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


class Node(WireModel):
    """One step of a trace, keyed by its run id.

    A node is created running by a ``*_start`` event and finalized by the
    matching ``*_end`` or ``error`` event. Once finalized it is not mutated.
    """

    id: str
    trace_id: str
    run_id: str
    parent_run_id: str | None = None
    type: NodeType
    status: NodeStatus = NodeStatus.RUNNING
    sequence: int = 0
    start_time: float
    end_time: float | None = None
    cost: float | None = None
    tokens: TokenUsage | None = None
    latency: float | None = None
    error: str | None = None
    data: NodeData
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.status in (NodeStatus.COMPLETE, NodeStatus.ERROR)

    @property
    def name(self) -> str:
        """Human-readable label: model, tool, chain, or custom step name."""
        data = self.data
        if isinstance(data, LLMNodeData):
            return data.model or "llm"
        if isinstance(data, ToolNodeData):
            return data.tool_name or "tool"
        if isinstance(data, ChainNodeData):
            return data.chain_name or "chain"
        return data.name

    @property
    def total_tokens(self) -> int:
        return self.tokens.total if self.tokens else 0

    def input_text(self) -> str:
        """Flattened input of the step (prompts, tool input, chain inputs)."""
        data = self.data
        if isinstance(data, (LLMNodeData, CustomNodeData)):
            return "\n\n".join(data.prompts)
        if isinstance(data, ToolNodeData):
            return as_text(data.input)
        return as_text(data.inputs)

    def output_text(self) -> str:
        """Flattened output of the step (response, tool output, chain outputs)."""
        data = self.data
        if isinstance(data, (LLMNodeData, CustomNodeData)):
            return data.response
        if isinstance(data, ToolNodeData):
            return as_text(data.output)
        return as_text(data.outputs)


class Edge(WireModel):
    """Directed parent -> child relationship between two runs of a trace."""

    id: str
    trace_id: str
    from_node: str
    to_node: str
    created_at: float = Field(default_factory=now_ms)


class Trace(WireModel):
    """Aggregate record for one end-to-end agent execution."""

    id: str
    project_name: str = "default"
    start_time: float = Field(default_factory=now_ms)
    end_time: float | None = None
    status: TraceStatus = TraceStatus.RUNNING
    total_cost: float = 0.0
    total_nodes: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class TraceListItem(WireModel):
    """Summary row returned by trace listings."""

    id: str
    project_name: str
    start_time: float
    end_time: float | None = None
    status: TraceStatus
    total_cost: float = 0.0
    total_nodes: int = 0

    @classmethod
    def from_trace(cls, trace: Trace) -> TraceListItem:
        return cls(
            id=trace.id,
            project_name=trace.project_name,
            start_time=trace.start_time,
            end_time=trace.end_time,
            status=trace.status,
            total_cost=trace.total_cost,
            total_nodes=trace.total_nodes,
        )


class TraceFilter(WireModel):
    """Filter and pagination for trace listings."""

    project_name: str | None = None
    status: TraceStatus | None = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class GraphSnapshot(WireModel):
    """Deep copy of one trace's graph taken at request time.

    Consumers read it without coordinating with ingestion; changes made to
    the store afterwards are not visible through it.
    """

    trace: Trace
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    _by_id: dict[str, Node] = PrivateAttr(default_factory=dict)
    _by_run: dict[str, Node] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._by_id = {n.id: n for n in self.nodes}
        self._by_run = {n.run_id: n for n in self.nodes}

    @property
    def trace_id(self) -> str:
        return self.trace.id

    def ordered_nodes(self) -> list[Node]:
        """Nodes in creation order."""
        return sorted(self.nodes, key=lambda n: n.sequence)

    def get_node(self, node_id: str) -> Node | None:
        return self._by_id.get(node_id)

    def get_node_by_run(self, run_id: str) -> Node | None:
        return self._by_run.get(run_id)

    def resolve(self, ref: str) -> Node | None:
        """Look up a node by node id, falling back to run id."""
        return self._by_id.get(ref) or self._by_run.get(ref)

    def node_id_for_run(self, run_id: str) -> str:
        """Node id for a run id, or the run id itself when unknown."""
        node = self._by_run.get(run_id)
        return node.id if node else run_id
