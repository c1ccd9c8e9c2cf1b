"""Replay - re-execute or simulate a trace from any node onward.

- ReplayEngine: safety analysis, state capture and per-node replay
- SideEffectClassifier: what a node's original run did to the outside world
- LiteLLMCaller: live model calls for replay through LiteLLM
"""

from agenttrace.replay.engine import ReplayEngine
from agenttrace.replay.live import (
    CancellationToken,
    LiteLLMCaller,
    LiveLLMConfig,
    LLMCaller,
    run_cancellable,
)
from agenttrace.replay.planner import plan_replay, topological_order
from agenttrace.replay.safety import analyze_safety, determine_replay_mode
from agenttrace.replay.schemas import (
    ChatMessage,
    NodeReplayOutput,
    ReplayMode,
    ReplayModifications,
    ReplayOptions,
    ReplayResult,
    SafetyAnalysis,
    SideEffect,
    SideEffectCategory,
    SideEffectSeverity,
    StateSnapshot,
)
from agenttrace.replay.side_effects import SideEffectClassifier, SideEffectConfig, SideEffectRule
from agenttrace.replay.snapshot import build_state_snapshot, compute_checksum, verify_snapshot

__all__ = [
    "ReplayEngine",
    "CancellationToken",
    "LiteLLMCaller",
    "LiveLLMConfig",
    "LLMCaller",
    "run_cancellable",
    "plan_replay",
    "topological_order",
    "analyze_safety",
    "determine_replay_mode",
    "ChatMessage",
    "NodeReplayOutput",
    "ReplayMode",
    "ReplayModifications",
    "ReplayOptions",
    "ReplayResult",
    "SafetyAnalysis",
    "SideEffect",
    "SideEffectCategory",
    "SideEffectSeverity",
    "StateSnapshot",
    "SideEffectClassifier",
    "SideEffectConfig",
    "SideEffectRule",
    "build_state_snapshot",
    "compute_checksum",
    "verify_snapshot",
]
