"""Tests for the notification channel and webhook observer."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from agenttrace.correlation.notifications import (
    AnomalyNotification,
    NotificationChannel,
    NotificationConfig,
    TraceObserver,
    TraceUpdate,
    WebhookObserver,
)


def _update(trace_id: str, n: int) -> TraceUpdate:
    return TraceUpdate(trace_id=trace_id, event={"n": n})


class TestSubscription:
    @pytest.mark.asyncio
    async def test_filtered_by_trace(self):
        channel = NotificationChannel()
        only_a = channel.subscribe("a")
        everything = channel.subscribe()

        await channel.publish(_update("a", 1))
        await channel.publish(_update("b", 2))

        assert [n.trace_id for n in only_a.drain()] == ["a"]
        assert [n.trace_id for n in everything.drain()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        channel = NotificationChannel(NotificationConfig(queue_size=2))
        subscription = channel.subscribe()

        for n in range(4):
            await channel.publish(_update("a", n))

        assert subscription.dropped == 2
        assert [u.event["n"] for u in subscription.drain()] == [2, 3]

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        channel = NotificationChannel()
        subscription = channel.subscribe()
        await channel.publish(_update("a", 1))

        async for notification in subscription:
            assert notification.event == {"n": 1}
            break

    @pytest.mark.asyncio
    async def test_closed_subscription_receives_nothing(self):
        channel = NotificationChannel()
        subscription = channel.subscribe()
        subscription.close()

        await channel.publish(_update("a", 1))
        assert subscription.pending == 0


class TestObservers:
    @pytest.mark.asyncio
    async def test_observer_notified(self):
        observer = AsyncMock(spec=TraceObserver)
        channel = NotificationChannel(observers=[observer])

        notification = AnomalyNotification(trace_id="a", anomalies=[{"id": "x"}])
        await channel.publish(notification)

        observer.notify.assert_awaited_once_with(notification)

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_publish(self):
        failing = AsyncMock(spec=TraceObserver)
        failing.notify.side_effect = RuntimeError("down")
        channel = NotificationChannel(observers=[failing])
        subscription = channel.subscribe()

        await channel.publish(_update("a", 1))
        assert subscription.pending == 1


class TestWebhookObserver:
    @pytest.mark.asyncio
    async def test_posts_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            observer = WebhookObserver("https://hooks.example.com/t", client=client)
            await observer.notify(AnomalyNotification(trace_id="a", anomalies=[{"id": "x"}]))

        assert received == [{"kind": "anomalies", "trace_id": "a", "anomalies": [{"id": "x"}]}]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as client:
            observer = WebhookObserver("https://hooks.example.com/t", client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await observer.notify(_update("a", 1))
