"""Exception types raised by agenttrace."""

from __future__ import annotations


class AgentTraceError(Exception):
    """Base class for agenttrace errors."""


class InvalidEventError(AgentTraceError, ValueError):
    """Raised when a raw payload cannot be parsed into a trace event."""


class PersistenceError(AgentTraceError):
    """Raised when the graph store fails to apply a mutation durably.

    ``retryable`` tells the ingestion caller whether resubmitting the same
    events is expected to succeed. Ingestion is idempotent, so a retry of a
    partially applied batch does not duplicate nodes.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ReplayCancelledError(AgentTraceError):
    """Raised when a live replay call is cancelled by its token."""
