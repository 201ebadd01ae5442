"""Redis Streams queue implementation.

Data Structures:
- pytaxis:queue:{topic} (STREAM): messages, fields `payload` (pickled
  Message), `key` (partition key) and `prior` (deliveries before a nack)
- pytaxis:queue:{topic}:delayed (ZSET): pickled entries, score = visible at (ms)
- pytaxis:queue:{topic}:deliveries:{group} (HASH): stream id -> delivery count
- pytaxis:queue:{topic}:dead (LIST): pickled DeadLetter records

Key Features:
- Consumer groups (XGROUP / XREADGROUP / XACK)
- Visibility timeout via XAUTOCLAIM of idle pending entries
- Delayed publish and nack through a ZSET promoted atomically by a Lua script

Design: Adapter Pattern
Implements the Queue interface for Redis Streams.
"""

from __future__ import annotations

import pickle
import time

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisQueue. Install with: pip install redis")

from pytaxis.errors import QueueError
from pytaxis.models import Message, new_id
from pytaxis.queue.base import DeadLetter, Delivery, Queue

PREFIX = "pytaxis:queue"

# KEYS[1] delayed zset, KEYS[2] stream; ARGV[1] now (ms), ARGV[2] batch size
_PROMOTE_DELAYED = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, entry in ipairs(due) do
    redis.call('ZREM', KEYS[1], entry)
    redis.call('XADD', KEYS[2], '*', 'entry', entry)
end
return #due
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisQueue(Queue):
    """Queue backed by Redis Streams.

    Usage:
        queue = RedisQueue("redis://localhost:6379")
        await queue.connect()
        await queue.publish("executor", ExecutionEvent(execution))
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        visibility_timeout: float = 60.0,
        max_connections: int = 16,
        maxlen: int | None = None,
    ):
        """
        Args:
            maxlen: Approximate cap on stream length. Trimming drops entries
                whether or not every group acknowledged them, so leave it
                unset unless all consumers keep up with the topic.
        """
        self._redis_url = redis_url
        self._visibility_timeout_ms = int(visibility_timeout * 1000)
        self._max_connections = max_connections
        self._maxlen = maxlen
        self._redis: redis.Redis | None = None
        self._groups: set[tuple[str, str]] = set()

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise QueueError("Not connected. Call connect() first.")

    def __repr__(self) -> str:
        return f"RedisQueue({self._redis_url})"

    @staticmethod
    def _stream(topic: str) -> str:
        return f"{PREFIX}:{topic}"

    @staticmethod
    def _encode(message: Message, key: str | None, prior: int) -> bytes:
        return pickle.dumps((message, key, prior))

    async def publish(
        self,
        topic: str,
        message: Message,
        key: str | None = None,
        delay: float | None = None,
    ) -> str:
        return await self._append(
            topic, message, key if key is not None else message.partition_key, 0, delay
        )

    async def _append(
        self, topic: str, message: Message, key: str | None, prior: int, delay: float | None
    ) -> str:
        self._check_connected()
        entry = self._encode(message, key, prior)
        try:
            if delay:
                # Unique member so identical messages are not merged by the ZSET
                member = pickle.dumps((new_id(), entry))
                await self._redis.zadd(
                    f"{self._stream(topic)}:delayed", {member: _now_ms() + int(delay * 1000)}
                )
                return "delayed"
            message_id = await self._redis.xadd(
                self._stream(topic),
                {"entry": pickle.dumps((None, entry))},
                maxlen=self._maxlen,
                approximate=True,
            )
        except redis.RedisError as e:
            raise QueueError(f"Failed to publish to {topic}: {e}") from e
        return _text(message_id)

    async def subscribe(self, topic: str, group: str, latest: bool = False) -> None:
        self._check_connected()
        if (topic, group) in self._groups:
            return
        try:
            await self._redis.xgroup_create(
                self._stream(topic), group, id="$" if latest else "0", mkstream=True
            )
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise QueueError(f"Failed to create group {group} on {topic}: {e}") from e
        self._groups.add((topic, group))

    async def receive(self, topic: str, group: str, consumer: str) -> Delivery | None:
        self._check_connected()
        await self.subscribe(topic, group)
        stream = self._stream(topic)

        while True:
            entries = await self._next_entries(topic, group, consumer)
            if not entries:
                return None
            raw_id, fields = entries[0]
            if fields:
                break
            if raw_id is None:
                return None
            # Trimmed or deleted while pending: nothing left to deliver
            await self._settle_id(stream, group, _text(raw_id))

        message_id = _text(raw_id)
        _, entry = pickle.loads(fields[b"entry"])
        message, key, prior = pickle.loads(entry)
        count = await self._redis.hincrby(f"{stream}:deliveries:{group}", message_id, 1)

        return Delivery(
            id=message_id,
            topic=topic,
            group=group,
            consumer=consumer,
            message=message,
            deliveries=prior + count,
            key=key,
        )

    async def _next_entries(self, topic: str, group: str, consumer: str) -> list:
        stream = self._stream(topic)
        try:
            await self._redis.eval(_PROMOTE_DELAYED, 2, f"{stream}:delayed", stream, _now_ms(), 100)

            # Entries idle past the visibility timeout are taken over first
            claimed = await self._redis.xautoclaim(
                stream, group, consumer, min_idle_time=self._visibility_timeout_ms, count=1
            )
            entries = claimed[1] if claimed else []
            if not entries:
                response = await self._redis.xreadgroup(group, consumer, {stream: ">"}, count=1)
                entries = response[0][1] if response else []
        except redis.RedisError as e:
            raise QueueError(f"Failed to receive from {topic}: {e}") from e
        return entries

    async def _settle_id(self, stream: str, group: str, message_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.xack(stream, group, message_id)
            pipe.hdel(f"{stream}:deliveries:{group}", message_id)
            await pipe.execute()

    async def _settle(self, delivery: Delivery) -> None:
        await self._settle_id(self._stream(delivery.topic), delivery.group, delivery.id)

    async def ack(self, delivery: Delivery) -> None:
        self._check_connected()
        await self._settle(delivery)

    async def nack(self, delivery: Delivery, delay: float = 0.0, penalize: bool = True) -> None:
        """Acknowledge and re-append the message, carrying its delivery count.

        Other groups of the topic receive the re-appended entry too; consumers
        are idempotent on attempt numbers so the duplicate is a no-op there.
        """
        self._check_connected()
        prior = delivery.deliveries if penalize else delivery.deliveries - 1
        await self._settle(delivery)
        await self._append(delivery.topic, delivery.message, delivery.key, prior, delay)

    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        self._check_connected()
        await self._settle(delivery)
        record = DeadLetter(
            topic=delivery.topic,
            group=delivery.group,
            message=delivery.message,
            deliveries=delivery.deliveries,
            error=error,
        )
        await self._redis.rpush(f"{self._stream(delivery.topic)}:dead", pickle.dumps(record))

    async def dead_letters(self, topic: str) -> list[DeadLetter]:
        self._check_connected()
        entries = await self._redis.lrange(f"{self._stream(topic)}:dead", 0, -1)
        return [pickle.loads(entry) for entry in entries]
