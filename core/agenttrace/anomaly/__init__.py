"""Anomaly detection over trace snapshots.

- AnomalyDetector: runs the detection passes and summarizes findings
- AnomalyConfig: thresholds for every pass
- predict_timeout: projected cost of a run in progress
"""

from agenttrace.anomaly.config import AnomalyConfig, AntonymGroup
from agenttrace.anomaly.detector import AnomalyDetector, predict_timeout
from agenttrace.anomaly.schemas import (
    Anomaly,
    AnomalyDetectionResult,
    AnomalySummary,
    AnomalyType,
    HistoricalBaseline,
    Severity,
    TimeoutPrediction,
    TimeoutRecommendation,
)

__all__ = [
    "AnomalyConfig",
    "AntonymGroup",
    "AnomalyDetector",
    "predict_timeout",
    "Anomaly",
    "AnomalyDetectionResult",
    "AnomalySummary",
    "AnomalyType",
    "HistoricalBaseline",
    "Severity",
    "TimeoutPrediction",
    "TimeoutRecommendation",
]
