"""Notification channel for graph updates and anomaly findings.

Observers receive, per trace, every applied event in application order and,
after a node finishes, any new anomaly findings. Delivery is in-process:

- Subscription: a bounded queue, optionally filtered to one trace id
- TraceObserver: a callback object, e.g. WebhookObserver

A slow subscriber never blocks ingestion: when its queue is full the oldest
queued notification is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TraceUpdate(BaseModel):
    """An event that was applied to a trace."""

    kind: Literal["trace_update"] = "trace_update"
    trace_id: str
    event: dict[str, Any] = Field(description="The applied event in wire form")


class AnomalyNotification(BaseModel):
    """New anomaly findings for a trace."""

    kind: Literal["anomalies"] = "anomalies"
    trace_id: str
    anomalies: list[dict[str, Any]] = Field(default_factory=list)


Notification = TraceUpdate | AnomalyNotification


@dataclass
class NotificationConfig:
    """Settings for the notification channel."""

    queue_size: int = 1000
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_size": self.queue_size,
            "webhook_url": self.webhook_url,
            "webhook_timeout_seconds": self.webhook_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationConfig:
        return cls(
            queue_size=data.get("queue_size", 1000),
            webhook_url=data.get("webhook_url"),
            webhook_timeout_seconds=data.get("webhook_timeout_seconds", 5.0),
        )


@runtime_checkable
class TraceObserver(Protocol):
    """Receives notifications as they are published."""

    async def notify(self, notification: Notification) -> None: ...


class Subscription:
    """A subscriber's view of the channel."""

    def __init__(self, channel: NotificationChannel, trace_id: str | None, maxsize: int) -> None:
        self._channel = channel
        self.trace_id = trace_id
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, notification: Notification) -> bool:
        return self.trace_id is None or notification.trace_id == self.trace_id

    def offer(self, notification: Notification) -> None:
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(notification)
            self.dropped += 1
            logger.warning(
                f"Subscriber queue full (trace={self.trace_id or '*'}), dropped oldest notification"
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Notification:
        return await self._queue.get()

    def get_nowait(self) -> Notification:
        return self._queue.get_nowait()

    def drain(self) -> list[Notification]:
        """Return everything queued so far without waiting."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Notification:
        return await self._queue.get()


class NotificationChannel:
    """Fan-out of notifications to subscriptions and observers."""

    def __init__(
        self,
        config: NotificationConfig | None = None,
        observers: list[TraceObserver] | None = None,
    ) -> None:
        self.config = config or NotificationConfig()
        self._subscriptions: list[Subscription] = []
        self._observers: list[TraceObserver] = list(observers or [])

    def subscribe(self, trace_id: str | None = None) -> Subscription:
        """Subscribe to one trace, or to all traces when trace_id is None."""
        subscription = Subscription(self, trace_id, self.config.queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_observer(self, observer: TraceObserver) -> None:
        self._observers.append(observer)

    async def publish(self, notification: Notification) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(notification):
                subscription.offer(notification)

        for observer in self._observers:
            try:
                await observer.notify(notification)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__} failed: {e}")


class WebhookObserver:
    """Posts each notification as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, notification: Notification) -> None:
        payload = notification.model_dump(mode="json")
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
