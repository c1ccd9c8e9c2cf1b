"""Event correlation: raw events in, execution graph and notifications out."""

from agenttrace.correlation.correlator import (
    CorrelationContext,
    EventCorrelator,
    GraphUpdate,
    GraphUpdateKind,
)
from agenttrace.correlation.costs import CostRateTable, ModelRate, derive_cost, estimate_tokens
from agenttrace.correlation.notifications import (
    AnomalyNotification,
    NotificationChannel,
    NotificationConfig,
    Subscription,
    TraceObserver,
    TraceUpdate,
    WebhookObserver,
)

__all__ = [
    "CorrelationContext",
    "EventCorrelator",
    "GraphUpdate",
    "GraphUpdateKind",
    "CostRateTable",
    "ModelRate",
    "derive_cost",
    "estimate_tokens",
    "AnomalyNotification",
    "NotificationChannel",
    "NotificationConfig",
    "Subscription",
    "TraceObserver",
    "TraceUpdate",
    "WebhookObserver",
]
