"""
Queue - abstract interface for the event bus between control loops.

Design Pattern: Adapter Pattern
Queue defines the transport contract; InMemoryQueue and RedisQueue adapt
an in-process log and Redis Streams to it.

Semantics:
- at-least-once delivery: a message is redelivered until acknowledged,
  either after `nack()` or when its visibility timeout expires
- consumer groups: each group sees every message of a topic once; the
  consumers of one group share the load. Broadcast is one group per
  consumer (see the `worker.control` topic)
- bounded redelivery: QueueConsumer dead-letters a message whose delivery
  count exceeds `max_deliveries`
- no ordering guarantee across redeliveries; consumers key their decisions
  on attempt numbers and versions carried by the messages
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from pytaxis.errors import DeliveryError
from pytaxis.models import Message, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    """One delivery of a message to one consumer of a group."""

    id: str
    topic: str
    group: str
    consumer: str
    message: Message
    deliveries: int
    """How many times the message has been handed to this group, including this one."""

    key: str | None = None


@dataclass(frozen=True)
class DeadLetter:
    topic: str
    group: str
    message: Message
    deliveries: int
    error: str
    at: datetime = field(default_factory=utcnow)


class Redeliver(Exception):
    """
    Raised by a message handler to have the message delivered again later.

    Args:
        delay: Seconds before the message becomes visible again
        penalize: Whether this delivery counts towards `max_deliveries`
    """

    def __init__(self, delay: float = 0.0, penalize: bool = False, reason: str = ""):
        super().__init__(reason or f"redeliver in {delay:g}s")
        self.delay = delay
        self.penalize = penalize


class Queue(ABC):
    """
    Abstract event bus.

    Usage:
        queue = InMemoryQueue()
        await queue.publish("executor", ExecutionEvent(execution))

        delivery = await queue.receive("executor", "executors", "executor-1")
        if delivery is not None:
            ...
            await queue.ack(delivery)
    """

    @abstractmethod
    async def publish(
        self,
        topic: str,
        message: Message,
        key: str | None = None,
        delay: float | None = None,
    ) -> str:
        """
        Append a message to a topic.

        Args:
            topic: Topic name
            message: Message to publish
            key: Partition key, defaults to `message.partition_key`
            delay: Seconds before the message becomes visible

        Returns:
            Message id
        """
        pass

    @abstractmethod
    async def subscribe(self, topic: str, group: str, latest: bool = False) -> None:
        """
        Create a consumer group if it does not exist.

        A group created with `latest=True` only sees messages published
        after its creation; otherwise it starts from the oldest retained
        message. `receive()` subscribes implicitly from the oldest message.
        """
        pass

    @abstractmethod
    async def receive(self, topic: str, group: str, consumer: str) -> Delivery | None:
        """Take the next visible message for a group, or None without blocking."""
        pass

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        pass

    @abstractmethod
    async def nack(self, delivery: Delivery, delay: float = 0.0, penalize: bool = True) -> None:
        """Make a delivered message visible again after `delay` seconds."""
        pass

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        """Remove a message from its group and record it as a dead letter."""
        pass

    @abstractmethod
    async def dead_letters(self, topic: str) -> list[DeadLetter]:
        pass

    async def close(self) -> None:
        pass


@runtime_checkable
class QueueNotificationSource(Protocol):
    """
    Queues that can wake consumers when a message is published.

    Consumers wait on the event instead of sleeping for the poll interval;
    queues without notifications are polled.
    """

    def notify(self, topic: str) -> asyncio.Event: ...


MessageHandler = Callable[[Message], Awaitable[None]]
DeadLetterHandler = Callable[[Delivery, DeliveryError], Awaitable[None]]


class QueueConsumer:
    """
    Background consumer loop for one (topic, group, consumer).

    Backpressure strategy:
    1. Acquire a semaphore permit BEFORE receiving
    2. Receive a delivery
    3. Handle it in a tracked background task holding the permit
    4. ack on success, nack with `redelivery_delay` on failure

    A delivery whose count exceeds `max_deliveries` is dead-lettered
    without being handled and `on_dead_letter` is called.

    Usage:
        consumer = QueueConsumer(queue, "executor", "executors", "executor-1", handle)
        task = asyncio.create_task(consumer.run())
        ...
        await consumer.stop()
    """

    def __init__(
        self,
        queue: Queue,
        topic: str,
        group: str,
        consumer: str,
        handler: MessageHandler,
        *,
        parallelism: int = 1,
        max_deliveries: int = 5,
        poll_interval: float = 1.0,
        redelivery_delay: float = 0.5,
        latest: bool = False,
        on_dead_letter: DeadLetterHandler | None = None,
    ):
        self.queue = queue
        self.topic = topic
        self.group = group
        self.consumer = consumer
        self._handler = handler
        self._max_deliveries = max_deliveries
        self._poll_interval = poll_interval
        self._redelivery_delay = redelivery_delay
        self._latest = latest
        self._on_dead_letter = on_dead_letter

        self._permits = asyncio.Semaphore(parallelism)
        self._shutdown_event = asyncio.Event()

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        if isinstance(queue, QueueNotificationSource):
            self._notify: asyncio.Event | None = queue.notify(topic)
        else:
            self._notify = None

    @property
    def in_flight(self) -> int:
        return len(self._background_tasks)

    async def run(self) -> None:
        """Consume until stop() is called."""
        await self.queue.subscribe(self.topic, self.group, latest=self._latest)
        logger.debug(f"Consumer {self.consumer} subscribed to {self.topic} as {self.group}")

        while not self._shutdown_event.is_set():
            permit_held = False
            try:
                await self._permits.acquire()
                permit_held = True

                delivery = await self.queue.receive(self.topic, self.group, self.consumer)
                if delivery is None:
                    self._permits.release()
                    permit_held = False
                    await self._wait_for_work()
                    continue

                task = asyncio.create_task(self._process(delivery))
                permit_held = False  # Transferred ownership to the task
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)

            except asyncio.CancelledError:
                if permit_held:
                    self._permits.release()
                raise
            except Exception as e:
                if permit_held:
                    self._permits.release()
                logger.error(f"Consumer {self.consumer} receive error on {self.topic}: {e}")
                await asyncio.sleep(min(self._poll_interval, 0.1))

    async def _wait_for_work(self) -> None:
        if self._notify is None:
            await asyncio.sleep(self._poll_interval)
            return
        try:
            await asyncio.wait_for(self._notify.wait(), timeout=self._poll_interval)
            self._notify.clear()
        except TimeoutError:
            pass

    async def _process(self, delivery: Delivery) -> None:
        try:
            if delivery.deliveries > self._max_deliveries:
                await self._dead_letter(delivery)
                return

            try:
                await self._handler(delivery.message)
            except Redeliver as r:
                logger.debug(
                    f"Consumer {self.consumer}: redelivering {type(delivery.message).__name__} "
                    f"in {r.delay:g}s ({r})"
                )
                await self.queue.nack(delivery, delay=r.delay, penalize=r.penalize)
                return
            except Exception as e:
                logger.error(
                    f"Consumer {self.consumer}: handler failed for "
                    f"{type(delivery.message).__name__} (delivery {delivery.deliveries}): {e}",
                    exc_info=True,
                )
                await self.queue.nack(delivery, delay=self._redelivery_delay)
                return

            await self.queue.ack(delivery)
        except Exception as e:
            logger.error(f"Consumer {self.consumer}: failed to settle delivery {delivery.id}: {e}")
        finally:
            self._permits.release()

    async def _dead_letter(self, delivery: Delivery) -> None:
        error = DeliveryError(
            f"{type(delivery.message).__name__} on topic '{delivery.topic}' exceeded "
            f"{self._max_deliveries} deliveries"
        )
        logger.error(f"Consumer {self.consumer}: dead-lettering message {delivery.id}: {error}")
        await self.queue.dead_letter(delivery, str(error))
        if self._on_dead_letter is not None:
            try:
                await self._on_dead_letter(delivery, error)
            except Exception as e:
                logger.error(f"Consumer {self.consumer}: dead letter handler failed: {e}")

    async def stop(self, wait: bool = True) -> None:
        """Stop receiving; optionally wait for in-flight handlers."""
        self._shutdown_event.set()
        if self._notify is not None:
            self._notify.set()
        if wait and self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
