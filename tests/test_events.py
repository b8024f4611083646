"""Unit tests for event recording and streaming."""

import asyncio
import json

import pytest

from errors import ResourceError
from events import ClusterEvent, EventBus, EventRecorder, EventSubscription, EventType


def make_event(reason="Reconciled", event_type=EventType.NORMAL, name="emqx", namespace="default"):
    return ClusterEvent(
        event_type=event_type,
        kind="EmqxBroker",
        namespace=namespace,
        name=name,
        reason=reason,
        message="Child resources created 4, patched 0, unchanged 0",
        timestamp="2024-01-15T10:30:00Z",
    )


# ==================== EventType tests ====================


class TestEventType:
    def test_values(self):
        assert EventType.NORMAL.value == "Normal"
        assert EventType.WARNING.value == "Warning"

    def test_all_members(self):
        assert len(EventType) == 2


# ==================== ClusterEvent tests ====================


class TestClusterEvent:
    """Tests for the ClusterEvent dataclass."""

    def test_to_sse_format(self):
        sse = make_event().to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: Reconciled"
        assert lines[1].startswith("data: ")
        assert sse.endswith("\n\n")

    def test_to_sse_json_valid(self):
        data_line = make_event().to_sse().split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed["event_type"] == "Normal"
        assert parsed["kind"] == "EmqxBroker"
        assert parsed["namespace"] == "default"
        assert parsed["name"] == "emqx"
        assert parsed["reason"] == "Reconciled"
        assert parsed["timestamp"] == "2024-01-15T10:30:00Z"

    def test_to_kubernetes(self):
        event = make_event(reason="UnloadAbandoned", event_type=EventType.WARNING)
        event.uid = "uid-emqx"

        body = event.to_kubernetes()

        assert body["kind"] == "Event"
        assert body["type"] == "Warning"
        assert body["reason"] == "UnloadAbandoned"
        assert body["metadata"] == {"generateName": "emqx.", "namespace": "default"}
        assert body["involvedObject"]["kind"] == "EmqxBroker"
        assert body["involvedObject"]["uid"] == "uid-emqx"
        assert body["source"]["component"] == "emqx-operator"

    def test_to_kubernetes_without_uid(self):
        assert "uid" not in make_event().to_kubernetes()["involvedObject"]

    def test_default_timestamp(self):
        event = ClusterEvent(EventType.NORMAL, "EmqxBroker", "default", "emqx", "R", "m")
        assert event.timestamp.endswith("Z")


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_async_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        event = make_event()
        await queue.put(event)
        await queue.put(None)

        received = [e async for e in sub]

        assert received == [event]

    async def test_filter_fn_applied(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue, filter_fn=lambda e: e.event_type == EventType.WARNING)
        await queue.put(make_event())
        await queue.put(make_event(reason="ReconcileFailed", event_type=EventType.WARNING))
        await queue.put(None)

        received = [e async for e in sub]

        assert [e.reason for e in received] == ["ReconcileFailed"]

    async def test_sentinel_stops_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        await queue.put(None)

        assert [e async for e in sub] == []


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=16)

    async def test_publish_no_subscribers(self, bus):
        await bus.publish(make_event())

    async def test_multiple_subscribers_all_receive(self, bus):
        event = make_event()
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()

        await bus.publish(event)

        assert await asyncio.wait_for(sub1.__anext__(), timeout=1.0) is event
        assert await asyncio.wait_for(sub2.__anext__(), timeout=1.0) is event

    async def test_unsubscribe_sends_sentinel(self, bus):
        sid, sub = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(sid)

        assert bus.subscriber_count() == 0
        assert [e async for e in sub] == []

    async def test_full_queue_drops_event(self):
        bus = EventBus(queue_size=1)
        _, sub = await bus.subscribe()
        first = make_event(reason="First")

        await bus.publish(first)
        await bus.publish(make_event(reason="Second"))

        assert await asyncio.wait_for(sub.__anext__(), timeout=1.0) is first

    async def test_filtered_subscription(self, bus):
        _, sub = await bus.subscribe(filter_fn=lambda e: e.name == "other")

        await bus.publish(make_event())
        await bus.publish(make_event(name="other"))

        received = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert received.name == "other"

    async def test_unsubscribe_nonexistent_is_noop(self, bus):
        await bus.unsubscribe("nonexistent-id")
        assert bus.subscriber_count() == 0


# ==================== EventRecorder tests ====================


@pytest.mark.asyncio
class TestEventRecorder:
    async def test_writes_platform_event_and_publishes(self, platform):
        bus = EventBus()
        _, sub = await bus.subscribe()
        recorder = EventRecorder(platform, bus)

        await recorder.warning("EmqxPlugin", "default", "auth", "PluginLoadFailed", "unreachable")

        assert platform.events[0]["type"] == "Warning"
        assert platform.events[0]["involvedObject"]["kind"] == "EmqxPlugin"
        published = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert published.reason == "PluginLoadFailed"

    async def test_platform_failure_does_not_raise(self, platform):
        bus = EventBus()
        _, sub = await bus.subscribe()
        recorder = EventRecorder(platform, bus)
        platform.fail_next("create_event", "Event", ResourceError("forbidden", status=403))

        await recorder.normal("EmqxBroker", "default", "emqx", "Reconciled", "ok")

        assert platform.events == []
        published = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert published.reason == "Reconciled"

    async def test_without_bus(self, platform):
        recorder = EventRecorder(platform)

        await recorder.normal("EmqxBroker", "default", "emqx", "ClusterRunning", "ready")

        assert [e["reason"] for e in platform.events] == ["ClusterRunning"]
