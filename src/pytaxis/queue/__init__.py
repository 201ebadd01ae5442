"""Event bus between the Scheduler, the Executor and the Workers.

    - Queue: Abstract interface (publish / receive / ack / nack / dead letters)
    - QueueConsumer: Background consumer loop with bounded redelivery
    - InMemoryQueue: In-process implementation for tests and embedded use
    - RedisQueue: Redis Streams implementation (imported lazily)
"""

from pytaxis.queue.base import (
    DeadLetter,
    Delivery,
    Queue,
    QueueConsumer,
    QueueNotificationSource,
    Redeliver,
)
from pytaxis.queue.memory import InMemoryQueue


def __getattr__(name: str):
    """Lazy import the Redis transport."""
    if name == "RedisQueue":
        from pytaxis.queue.redis import RedisQueue

        return RedisQueue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "DeadLetter",
    "Delivery",
    "Queue",
    "QueueConsumer",
    "QueueNotificationSource",
    "Redeliver",
    "InMemoryQueue",
    "RedisQueue",
]
