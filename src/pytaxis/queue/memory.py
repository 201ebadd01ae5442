"""In-memory queue implementation.

Design Pattern: Adapter Pattern
InMemoryQueue adapts per-topic logs to the Queue interface, with consumer
groups tracked as offsets into the log. Records every group has read past
are compacted away. Used by tests and single-process deployments; it
implements QueueNotificationSource so consumers wake up as soon as a message
is published.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field

from pytaxis.errors import QueueError
from pytaxis.models import Message, new_id
from pytaxis.queue.base import DeadLetter, Delivery, Queue

# Consumed records are dropped in batches of at least this size
_COMPACT_BATCH = 256


@dataclass
class _Record:
    id: str
    message: Message
    key: str | None
    available_at: float


@dataclass
class _Group:
    offset: int = 0
    ready: list[tuple[float, int, _Record]] = field(default_factory=list)
    in_flight: dict[str, tuple[_Record, float]] = field(default_factory=dict)
    deliveries: dict[str, int] = field(default_factory=dict)


@dataclass
class _Topic:
    log: list[_Record] = field(default_factory=list)
    base: int = 0
    """Absolute offset of log[0]; group offsets are absolute."""

    groups: dict[str, _Group] = field(default_factory=dict)
    dead: list[DeadLetter] = field(default_factory=list)
    notify: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryQueue(Queue):
    """In-memory event bus.

    Args:
        visibility_timeout: Seconds before an unacknowledged delivery
            becomes visible again
        clock: Monotonic clock, replaceable in tests

    Usage:
        queue = InMemoryQueue()
        await queue.publish("worker", start)
        delivery = await queue.receive("worker", "workers", "worker-1")
    """

    def __init__(self, visibility_timeout: float = 60.0, clock=time.monotonic):
        self._topics: dict[str, _Topic] = {}
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"InMemoryQueue(topics={sorted(self._topics)})"

    def _topic(self, name: str) -> _Topic:
        topic = self._topics.get(name)
        if topic is None:
            topic = self._topics[name] = _Topic()
        return topic

    def notify(self, topic: str) -> asyncio.Event:
        return self._topic(topic).notify

    def _check_open(self) -> None:
        if self._closed:
            raise QueueError("Queue is closed")

    async def publish(
        self,
        topic: str,
        message: Message,
        key: str | None = None,
        delay: float | None = None,
    ) -> str:
        self._check_open()
        record = _Record(
            id=new_id(),
            message=message,
            key=key if key is not None else message.partition_key,
            available_at=self._clock() + (delay or 0.0),
        )
        async with self._lock:
            state = self._topic(topic)
            state.log.append(record)
            state.notify.set()
        if delay:
            asyncio.get_running_loop().call_later(delay, state.notify.set)
        return record.id

    async def subscribe(self, topic: str, group: str, latest: bool = False) -> None:
        async with self._lock:
            state = self._topic(topic)
            if group not in state.groups:
                state.groups[group] = _Group(
                    offset=state.base + len(state.log) if latest else state.base
                )

    async def receive(self, topic: str, group: str, consumer: str) -> Delivery | None:
        self._check_open()
        async with self._lock:
            state = self._topic(topic)
            consumer_group = state.groups.get(group)
            if consumer_group is None:
                consumer_group = state.groups[group] = _Group(offset=state.base)

            now = self._clock()

            # Expired in-flight deliveries become visible again
            for record_id, (record, deadline) in list(consumer_group.in_flight.items()):
                if deadline <= now:
                    del consumer_group.in_flight[record_id]
                    heapq.heappush(consumer_group.ready, (now, next(self._sequence), record))

            while consumer_group.offset < state.base + len(state.log):
                record = state.log[consumer_group.offset - state.base]
                consumer_group.offset += 1
                heapq.heappush(
                    consumer_group.ready, (record.available_at, next(self._sequence), record)
                )
            self._compact(state)

            if not consumer_group.ready or consumer_group.ready[0][0] > now:
                return None

            _, _, record = heapq.heappop(consumer_group.ready)
            count = consumer_group.deliveries.get(record.id, 0) + 1
            consumer_group.deliveries[record.id] = count
            consumer_group.in_flight[record.id] = (record, now + self._visibility_timeout)

        return Delivery(
            id=record.id,
            topic=topic,
            group=group,
            consumer=consumer,
            message=record.message,
            deliveries=count,
            key=record.key,
        )

    @staticmethod
    def _compact(state: _Topic) -> None:
        """Drop log records every group has moved into its own ready heap."""
        if not state.groups:
            return
        consumed = min(g.offset for g in state.groups.values()) - state.base
        if consumed >= _COMPACT_BATCH:
            del state.log[:consumed]
            state.base += consumed

    def _settle(self, delivery: Delivery) -> tuple[_Topic, _Group, _Record | None]:
        state = self._topic(delivery.topic)
        consumer_group = state.groups.get(delivery.group)
        if consumer_group is None:
            raise QueueError(f"Unknown group '{delivery.group}' on topic '{delivery.topic}'")
        entry = consumer_group.in_flight.pop(delivery.id, None)
        return state, consumer_group, entry[0] if entry else None

    async def ack(self, delivery: Delivery) -> None:
        async with self._lock:
            _, consumer_group, record = self._settle(delivery)
            if record is not None:
                consumer_group.deliveries.pop(delivery.id, None)

    async def nack(self, delivery: Delivery, delay: float = 0.0, penalize: bool = True) -> None:
        async with self._lock:
            state, consumer_group, record = self._settle(delivery)
            if record is None:
                # Visibility timeout already made it visible again
                return
            if not penalize:
                consumer_group.deliveries[delivery.id] -= 1
            heapq.heappush(
                consumer_group.ready,
                (self._clock() + delay, next(self._sequence), record),
            )
            state.notify.set()
        if delay:
            asyncio.get_running_loop().call_later(delay, state.notify.set)

    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        async with self._lock:
            state, consumer_group, _ = self._settle(delivery)
            consumer_group.deliveries.pop(delivery.id, None)
            state.dead.append(
                DeadLetter(
                    topic=delivery.topic,
                    group=delivery.group,
                    message=delivery.message,
                    deliveries=delivery.deliveries,
                    error=error,
                )
            )

    async def dead_letters(self, topic: str) -> list[DeadLetter]:
        async with self._lock:
            return list(self._topic(topic).dead)

    async def pending(self, topic: str, group: str) -> int:
        """Messages not yet acknowledged by a group (visible, delayed or in flight)."""
        async with self._lock:
            state = self._topic(topic)
            consumer_group = state.groups.get(group)
            if consumer_group is None:
                return len(state.log)
            return (
                state.base
                + len(state.log)
                - consumer_group.offset
                + len(consumer_group.ready)
                + len(consumer_group.in_flight)
            )

    async def close(self) -> None:
        self._closed = True
        for state in self._topics.values():
            state.notify.set()
