"""Tests for InMemoryQueue semantics, the QueueConsumer loop and RedisQueue."""

import asyncio
import os

import pytest

from pytaxis.errors import DeliveryError, QueueError
from pytaxis.models import KillRequest
from pytaxis.queue import InMemoryQueue, QueueConsumer, Redeliver


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def bus(clock):
    event_bus = InMemoryQueue(visibility_timeout=5.0, clock=clock)
    yield event_bus
    await event_bus.close()


# ==============================================================================
# Groups
# ==============================================================================


@pytest.mark.asyncio
async def test_every_group_sees_every_message(bus):
    await bus.publish("executor", KillRequest("exec-1"))

    first = await bus.receive("executor", "executors", "e1")
    second = await bus.receive("executor", "auditors", "a1")

    assert first.message == second.message == KillRequest("exec-1")
    assert first.key == "exec-1"


@pytest.mark.asyncio
async def test_consumers_of_one_group_share_messages(bus):
    await bus.publish("executor", KillRequest("exec-1"))

    assert await bus.receive("executor", "executors", "e1") is not None
    assert await bus.receive("executor", "executors", "e2") is None


@pytest.mark.asyncio
async def test_latest_group_skips_older_messages(bus):
    await bus.publish("worker.control", KillRequest("old"))
    await bus.subscribe("worker.control", "worker.w1", latest=True)
    await bus.publish("worker.control", KillRequest("new"))

    delivery = await bus.receive("worker.control", "worker.w1", "w1")

    assert delivery.message.execution_id == "new"
    assert await bus.receive("worker.control", "worker.w1", "w1") is None


@pytest.mark.asyncio
async def test_log_is_compacted_once_every_group_has_read_it(bus):
    await bus.subscribe("executor", "executors")
    await bus.subscribe("executor", "auditors")
    for i in range(300):
        await bus.publish("executor", KillRequest(f"exec-{i}"))

    first = await bus.receive("executor", "executors", "e1")
    assert len(bus._topics["executor"].log) == 300

    await bus.receive("executor", "auditors", "a1")
    assert bus._topics["executor"].log == []
    assert await bus.pending("executor", "executors") == 300

    await bus.ack(first)
    await bus.publish("executor", KillRequest("late"))
    second = await bus.receive("executor", "executors", "e1")
    assert second.message == KillRequest("exec-1")
    assert await bus.pending("executor", "executors") == 300


# ==============================================================================
# Visibility
# ==============================================================================


@pytest.mark.asyncio
async def test_delayed_message_becomes_visible_later(bus, clock):
    await bus.publish("executor", KillRequest("exec-1"), delay=10.0)

    assert await bus.receive("executor", "executors", "e1") is None
    clock.advance(10.0)
    assert await bus.receive("executor", "executors", "e1") is not None


@pytest.mark.asyncio
async def test_unacked_delivery_is_redelivered_after_visibility_timeout(bus, clock):
    await bus.publish("executor", KillRequest("exec-1"))
    first = await bus.receive("executor", "executors", "e1")

    assert await bus.receive("executor", "executors", "e2") is None
    clock.advance(5.0)
    second = await bus.receive("executor", "executors", "e2")

    assert second.id == first.id
    assert second.deliveries == 2


@pytest.mark.asyncio
async def test_ack_removes_message(bus, clock):
    await bus.publish("executor", KillRequest("exec-1"))
    delivery = await bus.receive("executor", "executors", "e1")
    assert await bus.pending("executor", "executors") == 1

    await bus.ack(delivery)
    clock.advance(60.0)

    assert await bus.receive("executor", "executors", "e1") is None
    assert await bus.pending("executor", "executors") == 0


@pytest.mark.asyncio
async def test_nack_counts_deliveries_unless_not_penalized(bus):
    await bus.publish("executor", KillRequest("exec-1"))

    delivery = await bus.receive("executor", "executors", "e1")
    await bus.nack(delivery)
    delivery = await bus.receive("executor", "executors", "e1")
    assert delivery.deliveries == 2

    await bus.nack(delivery, penalize=False)
    delivery = await bus.receive("executor", "executors", "e1")
    assert delivery.deliveries == 2


@pytest.mark.asyncio
async def test_nack_with_delay(bus, clock):
    await bus.publish("executor", KillRequest("exec-1"))
    delivery = await bus.receive("executor", "executors", "e1")

    await bus.nack(delivery, delay=3.0)

    assert await bus.receive("executor", "executors", "e1") is None
    clock.advance(3.0)
    assert await bus.receive("executor", "executors", "e1") is not None


@pytest.mark.asyncio
async def test_dead_letter_removes_and_records(bus, clock):
    await bus.publish("executor", KillRequest("exec-1"))
    delivery = await bus.receive("executor", "executors", "e1")

    await bus.dead_letter(delivery, "poison")
    clock.advance(60.0)

    assert await bus.receive("executor", "executors", "e1") is None
    [dead] = await bus.dead_letters("executor")
    assert dead.message == KillRequest("exec-1")
    assert dead.error == "poison"
    assert dead.group == "executors"


@pytest.mark.asyncio
async def test_closed_queue_rejects_operations(bus):
    await bus.close()

    with pytest.raises(QueueError):
        await bus.publish("executor", KillRequest("exec-1"))
    with pytest.raises(QueueError):
        await bus.receive("executor", "executors", "e1")


# ==============================================================================
# QueueConsumer
# ==============================================================================


async def _eventually(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_consumer_handles_and_acks(queue):
    handled = []

    async def handle(message):
        handled.append(message)

    consumer = QueueConsumer(queue, "executor", "executors", "e1", handle, poll_interval=0.05)
    task = asyncio.create_task(consumer.run())
    await queue.publish("executor", KillRequest("exec-1"))
    await queue.publish("executor", KillRequest("exec-2"))

    await _eventually(lambda: len(handled) == 2)
    await consumer.stop()
    task.cancel()

    assert {m.execution_id for m in handled} == {"exec-1", "exec-2"}
    assert await queue.pending("executor", "executors") == 0


@pytest.mark.asyncio
async def test_consumer_dead_letters_poison_message(queue):
    calls = []
    dead = []

    async def handle(message):
        calls.append(message)
        raise RuntimeError("cannot process")

    async def on_dead_letter(delivery, error):
        dead.append((delivery.message, error))

    consumer = QueueConsumer(
        queue,
        "executor",
        "executors",
        "e1",
        handle,
        max_deliveries=3,
        poll_interval=0.05,
        redelivery_delay=0.0,
        on_dead_letter=on_dead_letter,
    )
    task = asyncio.create_task(consumer.run())
    await queue.publish("executor", KillRequest("exec-1"))

    await _eventually(lambda: dead)
    await consumer.stop()
    task.cancel()

    assert len(calls) == 3
    message, error = dead[0]
    assert message == KillRequest("exec-1")
    assert isinstance(error, DeliveryError)
    assert len(await queue.dead_letters("executor")) == 1


@pytest.mark.asyncio
async def test_redeliver_without_penalty_does_not_exhaust_budget(queue):
    attempts = []

    async def handle(message):
        attempts.append(message)
        if len(attempts) < 4:
            raise Redeliver(delay=0.0)

    consumer = QueueConsumer(
        queue, "executor", "executors", "e1", handle, max_deliveries=1, poll_interval=0.05
    )
    task = asyncio.create_task(consumer.run())
    await queue.publish("executor", KillRequest("exec-1"))

    await _eventually(lambda: len(attempts) == 4)
    await consumer.stop()
    task.cancel()

    assert await queue.dead_letters("executor") == []
    assert await queue.pending("executor", "executors") == 0


# ==============================================================================
# Redis Streams
# ==============================================================================

REDIS_URL = os.getenv("PYTAXIS_TEST_REDIS_URL")


@pytest.fixture
async def redis_bus():
    from pytaxis.queue.redis import RedisQueue

    event_bus = RedisQueue(REDIS_URL, visibility_timeout=0.0)
    await event_bus.connect()
    await event_bus._redis.flushdb()
    yield event_bus
    await event_bus._redis.flushdb()
    await event_bus.close()


def test_redis_stream_is_not_trimmed_by_default():
    from pytaxis.queue.redis import RedisQueue

    assert RedisQueue()._maxlen is None


@pytest.mark.redis
@pytest.mark.skipif(REDIS_URL is None, reason="PYTAXIS_TEST_REDIS_URL not set")
@pytest.mark.asyncio
async def test_redis_skips_entries_deleted_while_pending(redis_bus):
    await redis_bus.publish("executor", KillRequest("exec-1"))
    await redis_bus.publish("executor", KillRequest("exec-2"))
    lost = await redis_bus.receive("executor", "executors", "e1")
    await redis_bus._redis.xdel("pytaxis:queue:executor", lost.id)

    delivery = await redis_bus.receive("executor", "executors", "e2")

    assert delivery.message == KillRequest("exec-2")
    await redis_bus.ack(delivery)
    assert await redis_bus.receive("executor", "executors", "e2") is None
