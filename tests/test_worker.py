"""Tests for Worker: attempt fencing, outcomes, timeouts, kills, subflow
requests and polling trigger evaluation.

The Worker is driven through `handle()` directly; messages it publishes are
read back from the queue with an observer consumer group.
"""

import asyncio
import dataclasses

import pytest
from conftest import FAST, TALLIES

from pytaxis.executor import ExecutionMachine, Worker
from pytaxis.models import (
    EXECUTOR_TOPIC,
    SCHEDULER_TOPIC,
    Execution,
    SubflowSpawn,
    TaskRunEnded,
    TaskRunHeartbeat,
    TaskRunStart,
    TaskRunState,
    TriggerEvaluate,
    TriggerEvaluated,
)


@pytest.fixture
def worker(queue, store, registry, blob_store):
    return Worker(queue, store, registry, worker_id="worker-1", settings=FAST).with_blob_store(
        blob_store
    )


def single_task(task: dict, **extra) -> dict:
    return {"id": "work", "namespace": "demo", "tasks": [task], **extra}


async def dispatch(store, flow, inputs=None) -> TaskRunStart:
    """Persist a started Execution and return the TaskRunStart of its first task."""
    await store.save_flow(flow)
    execution = Execution.create(flow, inputs=inputs)
    machine = ExecutionMachine(flow, execution)
    machine.start()
    await store.save_execution(execution)
    return machine.outbox[0].message


async def published(queue, topic: str) -> list:
    messages = []
    while True:
        delivery = await queue.receive(topic, "observer", "observer")
        if delivery is None:
            return messages
        await queue.ack(delivery)
        messages.append(delivery.message)


async def outcome(queue) -> TaskRunEnded:
    [ended] = [m for m in await published(queue, EXECUTOR_TOPIC) if isinstance(m, TaskRunEnded)]
    return ended


async def kill_when_running(worker: Worker, start: TaskRunStart) -> None:
    while not worker.kill(start.task_run_id, start.attempt):
        await asyncio.sleep(0.01)


# ==============================================================================
# Outcomes
# ==============================================================================


@pytest.mark.asyncio
async def test_successful_attempt_reports_outputs(worker, queue, store, make_flow):
    flow = make_flow(single_task({"id": "t", "type": "pytaxis.core.Return", "format": "{{ inputs.x * 2 }}"}))
    start = await dispatch(store, flow, inputs={"x": 21})

    await worker.handle(start)

    ended = await outcome(queue)
    assert ended.state is TaskRunState.SUCCESS
    assert ended.outputs == {"value": 42}
    assert ended.worker_id == "worker-1"
    assert (ended.task_run_id, ended.attempt) == (start.task_run_id, 1)
    assert await store.lease_owner(f"taskrun:{start.task_run_id}:1") is None


@pytest.mark.asyncio
async def test_failure_is_reported_with_logs(worker, queue, store, make_flow):
    flow = make_flow(single_task({"id": "t", "type": "pytaxis.core.Fail", "message": "nope", "retryable": False}))
    start = await dispatch(store, flow)

    await worker.handle(start)

    ended = await outcome(queue)
    assert ended.state is TaskRunState.FAILED
    assert ended.error.type == "TaskExecutionError"
    assert ended.error.message == "nope"
    assert not ended.error.retryable
    assert [(log.level, log.message) for log in ended.logs] == [("ERROR", "Task failed: nope")]


@pytest.mark.asyncio
async def test_non_mapping_result_fails(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Scalar"})))

    await worker.handle(start)

    ended = await outcome(queue)
    assert ended.state is TaskRunState.FAILED
    assert "expected a mapping" in ended.error.message


@pytest.mark.asyncio
async def test_timeout_fails_attempt(worker, queue, store, make_flow):
    flow = make_flow(single_task({"id": "t", "type": "test.Block", "timeout": "50ms"}))
    start = await dispatch(store, flow)

    await asyncio.wait_for(worker.handle(start), 5)

    ended = await outcome(queue)
    assert ended.state is TaskRunState.FAILED
    assert ended.error.type == "TaskTimeoutError"
    assert ended.error.retryable


@pytest.mark.asyncio
async def test_invalid_configuration_fails_without_retry(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "pytaxis.core.Log", "message": "x"})))

    await worker.handle(dataclasses.replace(start, config={"bogus": 1}))

    ended = await outcome(queue)
    assert ended.state is TaskRunState.FAILED
    assert ended.error.type == "ConfigValidationError"
    assert not ended.error.retryable


@pytest.mark.asyncio
async def test_large_outputs_are_externalized(queue, store, registry, blob_store, make_flow):
    worker = Worker(
        queue, store, registry, settings=FAST.with_overrides(blob_inline_limit=16)
    ).with_blob_store(blob_store)
    flow = make_flow(single_task({"id": "t", "type": "pytaxis.core.Return", "format": "{{ inputs.text }}"}))
    start = await dispatch(store, flow, inputs={"text": "x" * 100})

    await worker.handle(start)

    ended = await outcome(queue)
    assert blob_store.owns(ended.outputs["value"])
    assert (await blob_store.get(ended.outputs["value"])).read() == b"x" * 100


# ==============================================================================
# Fencing
# ==============================================================================


@pytest.mark.asyncio
async def test_attempt_leased_elsewhere_is_skipped(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "pytaxis.core.Log", "message": "x"})))
    await store.acquire_lease(f"taskrun:{start.task_run_id}:1", "worker-2", ttl=30)

    await worker.handle(start)

    assert await published(queue, EXECUTOR_TOPIC) == []
    assert await store.lease_owner(f"taskrun:{start.task_run_id}:1") == "worker-2"


@pytest.mark.asyncio
async def test_stale_attempt_is_dropped(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "pytaxis.core.Log", "message": "x"})))

    await worker.handle(dataclasses.replace(start, attempt=2))
    await worker.handle(dataclasses.replace(start, execution_id="unknown"))

    assert await published(queue, EXECUTOR_TOPIC) == []


@pytest.mark.asyncio
async def test_finished_attempt_is_not_run_again(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Tally", "key": "sequential"})))

    await worker.handle(start)
    # The Executor has not applied the outcome yet: the run is still CREATED
    await worker.handle(start)

    assert TALLIES["sequential"] == 1
    assert len([m for m in await published(queue, EXECUTOR_TOPIC) if isinstance(m, TaskRunEnded)]) == 1
    assert await store.lease_owner(f"taskrun:{start.task_run_id}:1:done") == "worker-1"


@pytest.mark.asyncio
async def test_concurrent_duplicates_run_once(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Tally", "key": "concurrent"})))

    await asyncio.gather(worker.handle(start), worker.handle(start))

    assert TALLIES["concurrent"] == 1
    await outcome(queue)


@pytest.mark.asyncio
async def test_finished_attempt_is_fenced_on_other_workers(worker, queue, store, registry, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Tally", "key": "elsewhere"})))
    other = Worker(queue, store, registry, worker_id="worker-2", settings=FAST)

    await worker.handle(start)
    await other.handle(start)

    assert TALLIES["elsewhere"] == 1
    assert (await outcome(queue)).worker_id == "worker-1"


# ==============================================================================
# Kill
# ==============================================================================


@pytest.mark.asyncio
async def test_kill_cooperative_task(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Block"})))

    running = asyncio.create_task(worker.handle(start))
    await asyncio.wait_for(kill_when_running(worker, start), 5)
    await asyncio.wait_for(running, 5)

    messages = await published(queue, EXECUTOR_TOPIC)
    assert any(isinstance(m, TaskRunHeartbeat) for m in messages)
    [ended] = [m for m in messages if isinstance(m, TaskRunEnded)]
    assert ended.state is TaskRunState.KILLED
    assert not ended.error.retryable


@pytest.mark.asyncio
async def test_kill_uncooperative_task_after_grace(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "test.Stubborn"})))

    running = asyncio.create_task(worker.handle(start))
    await asyncio.wait_for(kill_when_running(worker, start), 5)
    await asyncio.wait_for(running, 5)

    ended = await outcome(queue)
    assert ended.state is TaskRunState.KILLED


def test_kill_unknown_attempt(worker):
    assert worker.kill("nope", 1) is False


# ==============================================================================
# Subflows and triggers
# ==============================================================================


@pytest.mark.asyncio
async def test_flowable_task_requests_subflow(worker, queue, store, make_flow):
    flow = make_flow(
        single_task(
            {
                "id": "child",
                "type": "pytaxis.core.Subflow",
                "namespace": "demo",
                "flowId": "report",
                "revision": 3,
                "inputs": {"day": "{{ inputs.day }}"},
                "wait": False,
            }
        )
    )
    start = await dispatch(store, flow, inputs={"day": "monday"})

    await worker.handle(start)

    [spawn] = await published(queue, EXECUTOR_TOPIC)
    assert isinstance(spawn, SubflowSpawn)
    assert (spawn.flow_ref.namespace, spawn.flow_ref.id, spawn.flow_ref.revision) == ("demo", "report", 3)
    assert spawn.inputs == {"day": "monday"}
    assert spawn.wait is False
    assert (spawn.task_run_id, spawn.attempt) == (start.task_run_id, 1)


@pytest.mark.asyncio
async def test_polling_trigger_evaluation(worker, queue, store, make_flow):
    flow = make_flow(
        single_task(
            {"id": "t", "type": "pytaxis.core.Log", "message": "x"},
            triggers=[{"id": "counter", "type": "test.Counter", "upto": 1, "interval": "1s"}],
        )
    )
    await store.save_flow(flow)

    await worker.handle(TriggerEvaluate(flow.ref, "counter", watermark=None, request_id="r1"))
    await worker.handle(TriggerEvaluate(flow.ref, "counter", watermark=1, request_id="r2"))

    fired, idle = await published(queue, SCHEDULER_TOPIC)
    assert isinstance(fired, TriggerEvaluated)
    assert fired.fired
    assert (fired.fire_key, fired.watermark, fired.payload) == ("1", 1, {"n": 1})
    assert fired.request_id == "r1"
    assert not idle.fired
    assert idle.watermark == 1


@pytest.mark.asyncio
async def test_worker_lifecycle_consumes_queue(worker, queue, store, make_flow):
    start = await dispatch(store, make_flow(single_task({"id": "t", "type": "pytaxis.core.Log", "message": "x"})))
    await queue.subscribe(EXECUTOR_TOPIC, "observer")

    handle = await worker.start()
    assert handle.is_running()
    await queue.publish("worker", start)

    async def wait_for_outcome():
        while True:
            messages = await published(queue, EXECUTOR_TOPIC)
            ended = [m for m in messages if isinstance(m, TaskRunEnded)]
            if ended:
                return ended[0]
            await asyncio.sleep(0.01)

    ended = await asyncio.wait_for(wait_for_outcome(), 5)
    await asyncio.wait_for(handle.shutdown(), 5)

    assert ended.state is TaskRunState.SUCCESS
    assert not handle.is_running()
