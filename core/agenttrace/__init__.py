"""agenttrace - observe, analyze and replay LLM agent executions.

Raw agent events are correlated into an execution graph per trace. On top
of that graph:

- AnomalyDetector flags loops, repeated calls, outliers, contradictions,
  timeout risk and error patterns
- ReplayEngine re-executes or simulates a trace from any node, after
  checking what side effects a replay would repeat

TraceService is the entry point that wires these together.
"""

from agenttrace.config import AgentTraceConfig
from agenttrace.service import CostAnalysis, IngestionAck, TraceGraph, TraceService

__all__ = [
    "AgentTraceConfig",
    "CostAnalysis",
    "IngestionAck",
    "TraceGraph",
    "TraceService",
]
