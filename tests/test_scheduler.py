"""Tests for Scheduler: manual submission, cron cycles, fire dedup,
trigger ownership and polling triggers evaluated by Workers."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FAST, stop

from pytaxis.errors import ConfigValidationError, SchedulerError
from pytaxis.executor import HashRing, Scheduler, trigger_key
from pytaxis.models import (
    EXECUTOR_TOPIC,
    ErrorDetail,
    ExecutionEvent,
    ExecutionState,
    TriggerEvaluated,
)

T0 = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

HOURLY = """
id: hourly
namespace: demo
inputs:
  - id: day
    type: STRING
tasks:
  - id: report
    type: pytaxis.core.Log
    message: "report for {{ inputs.day }}"
triggers:
  - id: every-hour
    type: pytaxis.core.Schedule
    cron: "0 * * * *"
    inputs:
      day: from-trigger
"""


@pytest.fixture
def scheduler(store, queue, registry):
    return Scheduler(store, queue, registry, scheduler_id="scheduler-1", settings=FAST)


async def published(queue) -> list[ExecutionEvent]:
    events = []
    while True:
        delivery = await queue.receive(EXECUTOR_TOPIC, "observer", "observer")
        if delivery is None:
            return events
        await queue.ack(delivery)
        events.append(delivery.message)


# ==============================================================================
# Manual submission
# ==============================================================================


@pytest.mark.asyncio
async def test_submit_publishes_created_execution(scheduler, store, queue, make_flow):
    flow = make_flow(HOURLY)

    execution = await scheduler.submit(flow, {"day": "monday"}, labels={"run": "manual"})

    assert execution.state is ExecutionState.CREATED
    assert execution.trigger == {"type": "manual"}
    assert execution.inputs == {"day": "monday"}
    assert execution.labels == {"run": "manual"}
    assert await store.get_flow("demo", "hourly", 1) == flow
    [event] = await published(queue)
    assert event.execution.id == execution.id


@pytest.mark.asyncio
async def test_submit_rejects_invalid_inputs(scheduler, queue, make_flow):
    flow = make_flow(HOURLY)

    with pytest.raises(ConfigValidationError):
        await scheduler.submit(flow, {"day": "monday", "extra": 1})
    assert await published(queue) == []


# ==============================================================================
# Schedule triggers
# ==============================================================================


@pytest.mark.asyncio
async def test_first_cycle_only_initializes_watermark(scheduler, store, queue, make_flow):
    flow = make_flow(HOURLY)
    await store.save_flow(flow)

    await scheduler.tick(T0)

    assert await published(queue) == []
    assert await store.get_watermark(trigger_key(flow, flow.triggers[0])) == T0


@pytest.mark.asyncio
async def test_cron_fires_once_per_instant(scheduler, store, queue, make_flow):
    flow = make_flow(HOURLY)
    await store.save_flow(flow)
    await scheduler.tick(T0)

    eleven = T0 + timedelta(minutes=30)
    await scheduler.tick(eleven)
    await scheduler.tick(eleven + timedelta(minutes=59))

    [event] = await published(queue)
    execution = event.execution
    assert execution.trigger["type"] == "pytaxis.core.Schedule"
    assert execution.trigger["id"] == "every-hour"
    assert execution.trigger["fireKey"] == "2024-01-15T11:00:00+00:00"
    assert execution.trigger["date"] == "2024-01-15T11:00:00+00:00"
    assert execution.inputs == {"day": "from-trigger"}
    assert await store.get_watermark(trigger_key(flow, flow.triggers[0])) == eleven


@pytest.mark.asyncio
async def test_missed_fires_collapse_into_the_latest(scheduler, store, queue, make_flow):
    flow = make_flow(HOURLY)
    await store.save_flow(flow)
    await scheduler.tick(T0)

    await scheduler.tick(T0 + timedelta(hours=3, minutes=40))

    [event] = await published(queue)
    assert event.execution.trigger["fireKey"] == "2024-01-15T14:00:00+00:00"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "patch",
    [{"disabled": True}, {"triggers": [{"id": "off", "type": "pytaxis.core.Schedule", "cron": "* * * * *", "disabled": True}]}],
)
async def test_disabled_triggers_are_not_evaluated(scheduler, store, queue, make_flow, patch):
    document = {
        "id": "quiet",
        "namespace": "demo",
        "tasks": [{"id": "t", "type": "pytaxis.core.Log", "message": "x"}],
        "triggers": [{"id": "off", "type": "pytaxis.core.Schedule", "cron": "* * * * *"}],
        **patch,
    }
    flow = make_flow(document)
    await store.save_flow(flow)

    await scheduler.tick(T0)
    await scheduler.tick(T0 + timedelta(hours=1))

    assert await published(queue) == []
    assert await store.get_watermark("demo.quiet.off") is None


# ==============================================================================
# Fire dedup
# ==============================================================================


@pytest.mark.asyncio
async def test_duplicate_fire_creates_one_execution(scheduler, store, queue, make_flow):
    flow = make_flow(HOURLY)
    await store.save_flow(flow)
    trigger = flow.triggers[0]

    first = await scheduler.fire(flow, trigger, "k1")
    # Claimed but not stored yet: republished with the same id
    again = await scheduler.fire(flow, trigger, "k1")
    assert again.id == first.id

    await store.save_execution(first)
    assert await scheduler.fire(flow, trigger, "k1") is None

    other = await scheduler.fire(flow, trigger, "k2")
    assert other.id != first.id
    assert [e.execution.id for e in await published(queue)] == [first.id, first.id, other.id]


@pytest.mark.asyncio
async def test_fire_with_invalid_trigger_inputs(scheduler, store, make_flow):
    flow = make_flow(
        {
            "id": "needs-input",
            "namespace": "demo",
            "inputs": [{"id": "day", "type": "STRING"}],
            "tasks": [{"id": "t", "type": "pytaxis.core.Log", "message": "x"}],
            "triggers": [{"id": "c", "type": "pytaxis.core.Schedule", "cron": "* * * * *"}],
        }
    )

    with pytest.raises(SchedulerError, match="inputs are invalid"):
        await scheduler.fire(flow, flow.triggers[0], "k")


# ==============================================================================
# Ownership
# ==============================================================================


@pytest.mark.asyncio
async def test_triggers_are_split_between_schedulers(store, queue, registry, make_flow):
    flows = [
        make_flow(
            {
                "id": f"flow-{i}",
                "namespace": "demo",
                "tasks": [{"id": "t", "type": "pytaxis.core.Log", "message": "x"}],
                "triggers": [{"id": "cron", "type": "pytaxis.core.Schedule", "cron": "0 * * * *"}],
            }
        )
        for i in range(12)
    ]
    for flow in flows:
        await store.save_flow(flow)
    a = Scheduler(store, queue, registry, scheduler_id="scheduler-a", settings=FAST)
    b = Scheduler(store, queue, registry, scheduler_id="scheduler-b", settings=FAST)

    # a owns everything until b joins; a then hands over b's share
    await a.tick(T0)
    await b.tick(T0)
    await a.tick(T0)
    await b.tick(T0)

    ring = HashRing(["scheduler-a", "scheduler-b"])
    for flow in flows:
        key = trigger_key(flow, flow.triggers[0])
        assert await store.lease_owner(f"trigger:{key}") == ring.owner(key)
        assert await store.get_watermark(key) == T0


@pytest.mark.asyncio
async def test_shutdown_leaves_membership(scheduler, store, make_flow):
    flow = make_flow(HOURLY)
    await store.save_flow(flow)
    handle = await scheduler.start()

    async def joined():
        while await store.lease_owner(f"trigger:{trigger_key(flow, flow.triggers[0])}") is None:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(joined(), 5)
    assert await store.live_members("scheduler") == ["scheduler-1"]

    await handle.shutdown()

    assert await store.live_members("scheduler") == []
    assert await store.lease_owner(f"trigger:{trigger_key(flow, flow.triggers[0])}") is None


# ==============================================================================
# Polling triggers
# ==============================================================================

POLLED = """
id: polled
namespace: demo
tasks:
  - id: note
    type: pytaxis.core.Log
    message: "fired {{ trigger.n }}"
triggers:
  - id: counter
    type: test.Counter
    upto: 2
    interval: 10ms
"""


@pytest.mark.asyncio
async def test_polling_trigger_fires_through_worker(cluster, make_flow):
    flow = make_flow(POLLED)
    await cluster.store.save_flow(flow)
    handle = await cluster.scheduler.start()

    async def two_finished():
        while True:
            executions = await cluster.store.find_executions(namespace="demo", flow_id="polled")
            if len(executions) == 2 and all(e.is_terminal for e in executions):
                return executions
            await asyncio.sleep(0.01)

    try:
        executions = await asyncio.wait_for(two_finished(), 10)
        await asyncio.sleep(0.2)
        assert len(await cluster.store.find_executions(namespace="demo", flow_id="polled")) == 2
    finally:
        await stop(handle)

    assert sorted(e.trigger["fireKey"] for e in executions) == ["1", "2"]
    assert all(e.state is ExecutionState.SUCCESS for e in executions)
    assert await cluster.store.get_watermark("demo.polled.counter") == 2


@pytest.mark.asyncio
async def test_failed_or_idle_evaluation_does_not_fire(scheduler, store, queue, make_flow):
    flow = make_flow(POLLED)
    await store.save_flow(flow)

    await scheduler.handle(
        TriggerEvaluated(
            flow_ref=flow.ref,
            trigger_id="counter",
            request_id="r-1",
            fired=False,
            error=ErrorDetail(type="IOError", message="unreachable"),
        )
    )
    assert await store.get_watermark("demo.polled.counter") is None

    await scheduler.handle(
        TriggerEvaluated(flow_ref=flow.ref, trigger_id="counter", request_id="r-2", fired=False, watermark=5)
    )
    assert await store.get_watermark("demo.polled.counter") == 5
    assert await published(queue) == []
