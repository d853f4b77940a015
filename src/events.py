"""
Events - diagnostic event recording and in-memory pub/sub.

The EventRecorder is the sink the reconciler reports diagnostics to
(missing dependencies, missing source objects). Recorded events are kept in
a bounded history and published on the EventBus, which backs Server-Sent
Events watch streams similar to the Kubernetes watch API.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from models import Resource

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Severity of a recorded event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """A diagnostic about one object."""

    event_type: EventType
    reason: str
    message: str
    involved_kind: str
    involved_namespace: str
    involved_name: str
    source: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return data

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        return f"event: {self.event_type.value}\ndata: {json.dumps(self.to_dict())}\n\n"


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Event], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped to prevent
    back-pressure on publishers.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish_nowait(self, event: Event) -> None:
        """Publish an event to all current subscribers without awaiting."""
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def publish(self, event: Event) -> None:
        self.publish_nowait(event)

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[Event], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and send it the ``None`` sentinel so its
        iterator terminates.
        """
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
    """
    Fire-and-forget sink for diagnostic events.

    Passed to the reconciler through its context. Recent events are kept
    in memory and published to the event bus when one is attached.
    """

    def __init__(
        self,
        source: str = "bindinfo-controller",
        event_bus: Optional[EventBus] = None,
        history_size: int = 500,
    ):
        self.source = source
        self._event_bus = event_bus
        self._history: Deque[Event] = deque(maxlen=history_size)

    def emit(
        self,
        subject: Resource,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        """Record an event about ``subject``. Never raises on delivery."""
        event = Event(
            event_type=event_type,
            reason=reason,
            message=message,
            involved_kind=subject.kind,
            involved_namespace=subject.metadata.namespace,
            involved_name=subject.metadata.name,
            source=self.source,
            timestamp=datetime.utcnow().isoformat() + "Z",
        )
        self._history.append(event)

        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(
            f"{reason} event on {subject.kind} "
            f"{subject.metadata.namespace}/{subject.metadata.name}: {message}"
        )

        if self._event_bus is not None:
            self._event_bus.publish_nowait(event)

    @property
    def events(self) -> List[Event]:
        return list(self._history)

    def recent(
        self,
        limit: int = 100,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> List[Event]:
        """Most recent events first, optionally for one object or namespace."""
        selected = [
            e
            for e in reversed(self._history)
            if (namespace is None or e.involved_namespace == namespace)
            and (name is None or e.involved_name == name)
        ]
        return selected[:limit]
