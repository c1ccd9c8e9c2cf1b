"""ReplayEngine - re-derive or re-execute a trace from any node onward.

The engine:
1. Classifies side effects from the start node onward and picks a mode
2. Captures the agent's state just before the start node
3. Orders the remaining nodes topologically
4. Replays each node live, synthetically, or from overrides and mocks

The original trace is never modified; each replay gets a fresh trace id.

Usage:
    engine = ReplayEngine(llm_caller=LiteLLMCaller())
    snapshot = store.snapshot("trace_123")

    safety = engine.analyze_safety(snapshot, node_id)
    if safety.mode != ReplayMode.BLOCKED:
        result = await engine.replay(
            snapshot,
            node_id,
            ReplayModifications(prompt_changes={node_id: "Be concise."}),
            ReplayOptions(live=True),
        )

Replays run against a snapshot, so ingestion can continue meanwhile.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from agenttrace.correlation.costs import CostRateTable, estimate_tokens
from agenttrace.errors import ReplayCancelledError
from agenttrace.graph.schemas import (
    GraphSnapshot,
    LLMNodeData,
    Node,
    NodeType,
    TokenUsage,
    ToolNodeData,
)
from agenttrace.replay.live import (
    CancellationToken,
    LiveLLMConfig,
    LLMCaller,
    run_cancellable,
)
from agenttrace.replay.mocks import mock_response, primary_effect
from agenttrace.replay.planner import plan_replay
from agenttrace.replay.safety import analyze_safety
from agenttrace.replay.schemas import (
    NodeReplayOutput,
    ReplayMode,
    ReplayModifications,
    ReplayOptions,
    ReplayResult,
    SafetyAnalysis,
    SideEffect,
    StateSnapshot,
)
from agenttrace.replay.side_effects import SideEffectClassifier
from agenttrace.replay.snapshot import build_state_snapshot

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Replay blocked due to critical side effects"
MOCKED_COST_FACTOR = 0.1


class _ReplayState:
    """Conversation and context carried from node to node during a replay."""

    def __init__(self, state: StateSnapshot) -> None:
        self.messages: list[dict[str, str]] = [
            {"role": m.role, "content": m.content} for m in state.conversation_history
        ]
        self.context: dict[str, Any] = dict(state.context_variables)


class ReplayEngine:
    """Replays a trace snapshot from a chosen node."""

    def __init__(
        self,
        classifier: SideEffectClassifier | None = None,
        llm_caller: LLMCaller | None = None,
        rate_table: CostRateTable | None = None,
        live_config: LiveLLMConfig | None = None,
    ) -> None:
        self._classifier = classifier or SideEffectClassifier()
        self._llm_caller = llm_caller
        self._rates = rate_table or CostRateTable()
        self._live_config = live_config or LiveLLMConfig()

    def analyze_safety(self, snapshot: GraphSnapshot, start_node_id: str) -> SafetyAnalysis:
        return analyze_safety(snapshot, start_node_id, self._classifier)

    def capture_state(self, snapshot: GraphSnapshot, node_id: str) -> StateSnapshot:
        return build_state_snapshot(snapshot, node_id)

    async def replay(
        self,
        snapshot: GraphSnapshot,
        start_node_id: str,
        modifications: ReplayModifications | None = None,
        options: ReplayOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ReplayResult:
        """Replay from ``start_node_id`` (node id or run id).

        Per-node failures skip that node and the replay continues. Only
        failures of the replay as a whole set ``success=False``.
        """
        modifications = modifications or ReplayModifications()
        options = options or ReplayOptions()
        result = ReplayResult(
            success=False,
            original_trace_id=snapshot.trace_id,
            start_node_id=start_node_id,
        )

        start = snapshot.resolve(start_node_id)
        if start is None:
            result.error = f"Node {start_node_id} not found in trace {snapshot.trace_id}"
            logger.warning(f"Replay failed: {result.error}")
            return result

        try:
            result.start_node_id = start.id
            safety = self.analyze_safety(snapshot, start.id)
            result.mode = safety.mode
            result.side_effects = safety.side_effects

            plan = plan_replay(snapshot, start)
            if safety.mode == ReplayMode.BLOCKED and not (
                options.mock_external_calls or options.allow_blocked
            ):
                result.error = BLOCKED_MESSAGE
                result.skipped_node_ids = [n.id for n in plan]
                logger.info(f"Replay of trace {snapshot.trace_id} from {start.id} blocked")
                return result

            state = self.capture_state(snapshot, start.id)
            result.snapshot_checksum = state.checksum
            if options.expected_checksum and options.expected_checksum != state.checksum:
                result.error = "Trace changed since its state snapshot was captured"
                logger.warning(f"Replay failed: {result.error} (trace {snapshot.trace_id})")
                return result

            result.new_trace_id = f"{snapshot.trace_id}-replay-{uuid.uuid4().hex[:8]}"
            result.success = True
            await self._execute_plan(
                plan, safety.side_effects, modifications, options, _ReplayState(state), cancel_token, result
            )

        except Exception as e:
            logger.error(f"Replay failed: {e}")
            result.success = False
            result.error = str(e)

        logger.info(
            f"Replay {result.new_trace_id or '-'} of trace {snapshot.trace_id}: "
            f"{len(result.executed_node_ids)} executed, {len(result.skipped_node_ids)} skipped"
        )
        return result

    async def _execute_plan(
        self,
        plan: list[Node],
        side_effects: list[SideEffect],
        modifications: ReplayModifications,
        options: ReplayOptions,
        state: _ReplayState,
        cancel_token: CancellationToken | None,
        result: ReplayResult,
    ) -> None:
        effects_by_node: dict[str, list[SideEffect]] = {}
        for effect in side_effects:
            effects_by_node.setdefault(effect.source_node_id, []).append(effect)

        for index, node in enumerate(plan):
            if options.max_nodes is not None and index >= options.max_nodes:
                result.skipped_node_ids.append(node.id)
                continue
            if result.cancelled or (cancel_token is not None and cancel_token.cancelled):
                result.cancelled = True
                result.skipped_node_ids.append(node.id)
                continue

            effects = effects_by_node.get(node.id, [])
            if any(e.is_blocking for e in effects) and not options.mock_external_calls:
                logger.info(f"Skipping node {node.id}: critical irreversible side effect")
                result.skipped_node_ids.append(node.id)
                continue

            try:
                output = await self._replay_node(
                    node, effects, modifications, options, state, cancel_token
                )
            except ReplayCancelledError as e:
                logger.warning(f"Replay cancelled at node {node.id}: {e}")
                result.cancelled = True
                result.skipped_node_ids.append(node.id)
                continue
            except Exception as e:
                logger.error(f"Failed to replay node {node.id}: {e}")
                result.skipped_node_ids.append(node.id)
                continue

            result.executed_node_ids.append(node.id)
            result.outputs[node.id] = output
            result.total_cost += output.cost
            result.total_latency += output.latency

            node_context = node.metadata.get("context")
            if isinstance(node_context, dict):
                state.context.update(node_context)

    async def _replay_node(
        self,
        node: Node,
        effects: list[SideEffect],
        modifications: ReplayModifications,
        options: ReplayOptions,
        state: _ReplayState,
        cancel_token: CancellationToken | None,
    ) -> NodeReplayOutput:
        if node.type == NodeType.LLM and isinstance(node.data, LLMNodeData):
            return await self._replay_llm(node, node.data, modifications, options, state, cancel_token)
        if node.type == NodeType.TOOL and isinstance(node.data, ToolNodeData):
            return self._replay_tool(node, node.data, effects, modifications, options)

        return NodeReplayOutput(
            node_id=node.id,
            node_type=node.type,
            output=node.output_text(),
            source="original",
            cost=node.cost or 0.0,
            latency=node.latency or 0.0,
        )

    async def _replay_llm(
        self,
        node: Node,
        data: LLMNodeData,
        modifications: ReplayModifications,
        options: ReplayOptions,
        state: _ReplayState,
        cancel_token: CancellationToken | None,
    ) -> NodeReplayOutput:
        original_prompt = "\n\n".join(data.prompts)
        original_system = data.invocation_params.get("system") or self._live_config.system_prompt

        prompt = modifications.prompt_changes.get(node.id, original_prompt)
        model = modifications.model_changes.get(node.id, data.model)
        system = modifications.system_instruction_updates.get(node.id, original_system)
        context_changes = modifications.context_variable_changes.get(node.id, {})
        context = {**state.context, **context_changes}

        changed = [
            name
            for name, new, old in (
                ("prompt", prompt, original_prompt),
                ("model", model, data.model),
                ("system_instruction", system, original_system),
            )
            if new != old
        ]
        if any(state.context.get(k) != v for k, v in context_changes.items()):
            changed.append("context_variables")

        if options.live and self._llm_caller is not None:
            if context:
                system = system + "\n\nContext:\n" + "\n".join(f"{k}: {v}" for k, v in context.items())
            messages = (
                [{"role": "system", "content": system}]
                + state.messages
                + [{"role": "user", "content": prompt}]
            )
            effective_model = model or self._live_config.default_model

            started = time.perf_counter()
            text = await run_cancellable(
                self._llm_caller(
                    model=effective_model,
                    messages=messages,
                    temperature=options.temperature,
                    max_tokens=options.max_tokens,
                    cancel_token=cancel_token,
                ),
                cancel_token,
                timeout=options.node_timeout_seconds,
            )
            latency = (time.perf_counter() - started) * 1000
            tokens = TokenUsage(
                prompt=estimate_tokens("".join(m["content"] for m in messages)),
                completion=estimate_tokens(text),
            )
            cost = self._rates.price(tokens, effective_model)
            source = "live"
        else:
            if options.live:
                logger.debug(f"No live caller configured, replaying {node.id} synthetically")
            text = (
                f"[replayed with modified {', '.join(changed)}] {data.response}"
                if changed
                else data.response
            )
            if "model" in changed and node.tokens is not None:
                cost = self._rates.price(node.tokens, model)
            else:
                cost = node.cost or 0.0
            latency = node.latency or 0.0
            source = "synthetic"

        state.messages.append({"role": "user", "content": prompt})
        state.messages.append({"role": "assistant", "content": text})

        return NodeReplayOutput(
            node_id=node.id,
            node_type=node.type,
            output=text,
            source=source,
            changed_fields=changed,
            cost=cost,
            latency=latency,
        )

    def _replay_tool(
        self,
        node: Node,
        data: ToolNodeData,
        effects: list[SideEffect],
        modifications: ReplayModifications,
        options: ReplayOptions,
    ) -> NodeReplayOutput:
        if node.id in modifications.tool_response_overrides:
            return NodeReplayOutput(
                node_id=node.id,
                node_type=node.type,
                output=modifications.tool_response_overrides[node.id],
                source="override",
                changed_fields=["output"],
            )

        effect = primary_effect(effects)
        if options.mock_external_calls and effect is not None:
            return NodeReplayOutput(
                node_id=node.id,
                node_type=node.type,
                output=mock_response(node, effect),
                source="mock",
                cost=(node.cost or 0.0) * MOCKED_COST_FACTOR,
                latency=node.latency or 0.0,
            )

        return NodeReplayOutput(
            node_id=node.id,
            node_type=node.type,
            output=data.output,
            source="original",
            cost=node.cost or 0.0,
            latency=node.latency or 0.0,
        )
