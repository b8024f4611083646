"""
Event Streaming - Pass outcome events for clusters and plugins.

Outcomes are written as Kubernetes Events on the involved object and
published to an in-memory pub/sub bus that backs the Server-Sent Events
watch endpoint.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from errors import ReconcileError
from models import API_VERSION, format_time, utcnow

logger = logging.getLogger(__name__)

COMPONENT = "emqx-operator"


class EventType(Enum):
    """Kubernetes event severity."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ClusterEvent:
    """A human-readable outcome of a pass, about one object."""

    event_type: EventType
    kind: str
    namespace: str
    name: str
    reason: str
    message: str
    timestamp: str = field(default_factory=lambda: format_time(utcnow()))
    uid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.reason}\ndata: {json_data}\n\n"

    def to_kubernetes(self) -> Dict[str, Any]:
        """Render as a core/v1 Event body."""
        involved: Dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
        }
        if self.uid:
            involved["uid"] = self.uid
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{self.name}.",
                "namespace": self.namespace,
            },
            "involvedObject": involved,
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "source": {"component": COMPONENT},
            "firstTimestamp": self.timestamp,
            "lastTimestamp": self.timestamp,
            "count": 1,
        }


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ClusterEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ClusterEvent"]:
        return self

    async def __anext__(self) -> "ClusterEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for pass outcome events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking.  Full queues cause events to be dropped to prevent
    back-pressure on the reconcile workers.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ClusterEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ClusterEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventRecorder:
    """Writes pass outcome events to the platform and the event bus."""

    def __init__(self, platform, event_bus: Optional[EventBus] = None):
        self.platform = platform
        self.event_bus = event_bus

    async def record(self, event: ClusterEvent) -> None:
        """
        Record an event. Failing to write the platform Event is logged and
        never fails the pass.
        """
        try:
            await self.platform.create_event(event.to_kubernetes())
        except ReconcileError as e:
            logger.warning(
                f"Could not record event {event.reason} for "
                f"{event.kind} {event.namespace}/{event.name}: {e}"
            )
        if self.event_bus:
            await self.event_bus.publish(event)

    async def normal(self, kind: str, namespace: str, name: str, reason: str, message: str) -> None:
        await self.record(
            ClusterEvent(EventType.NORMAL, kind, namespace, name, reason, message)
        )

    async def warning(self, kind: str, namespace: str, name: str, reason: str, message: str) -> None:
        await self.record(
            ClusterEvent(EventType.WARNING, kind, namespace, name, reason, message)
        )
