"""Tests for StateStore backends: versioned executions, flow revisions,
trigger state and coordination records.

Every test runs against the in-memory and SQLite backends, and against Redis
when PYTAXIS_TEST_REDIS_URL points to a server.
"""

import asyncio
import os
from datetime import timedelta

import pytest

from pytaxis.errors import StaleWriteError, StorageError
from pytaxis.models import Capability, Execution, ExecutionState, Flow, TaskDef
from pytaxis.storage import InMemoryStateStore, SqliteStateStore

REDIS_URL = os.getenv("PYTAXIS_TEST_REDIS_URL")

BACKENDS = [
    "memory",
    "sqlite",
    pytest.param(
        "redis",
        marks=[
            pytest.mark.redis,
            pytest.mark.skipif(REDIS_URL is None, reason="PYTAXIS_TEST_REDIS_URL not set"),
        ],
    ),
]


@pytest.fixture(params=BACKENDS)
async def backend(request):
    if request.param == "memory":
        state_store = InMemoryStateStore()
    elif request.param == "sqlite":
        state_store = await SqliteStateStore.in_memory()
    else:
        from pytaxis.storage.redis import RedisStateStore

        state_store = RedisStateStore(REDIS_URL)
        await state_store.connect()
        await state_store.reset()
    yield state_store
    await state_store.reset()
    await state_store.close()


def make_flow(flow_id: str = "etl", revision: int = 1, message: str = "hi") -> Flow:
    return Flow(
        namespace="demo",
        id=flow_id,
        revision=revision,
        tasks=(
            TaskDef(
                id="greet",
                type="pytaxis.core.Log",
                capability=Capability.RUNNABLE,
                config={"message": message},
            ),
        ),
    )


# ==============================================================================
# Execution repository
# ==============================================================================


@pytest.mark.asyncio
async def test_save_and_find_execution(backend):
    execution = Execution.create(make_flow(), inputs={"day": "monday"})

    saved = await backend.save_execution(execution)

    assert saved is execution
    assert execution.version == 1
    found = await backend.find_execution(execution.id)
    assert found.id == execution.id
    assert found.inputs == {"day": "monday"}
    assert found.version == 1
    assert await backend.find_execution("unknown") is None


@pytest.mark.asyncio
async def test_stale_write_is_rejected(backend):
    execution = Execution.create(make_flow())
    await backend.save_execution(execution)
    first = await backend.find_execution(execution.id)
    second = await backend.find_execution(execution.id)

    first.transition(ExecutionState.RUNNING)
    await backend.save_execution(first)
    second.transition(ExecutionState.CANCELLED)

    with pytest.raises(StaleWriteError):
        await backend.save_execution(second)
    assert second.version == 1
    assert (await backend.find_execution(execution.id)).state is ExecutionState.RUNNING


@pytest.mark.asyncio
async def test_creating_an_existing_execution_is_stale(backend):
    execution = Execution.create(make_flow())
    await backend.save_execution(execution)

    duplicate = Execution.create(make_flow(), execution_id=execution.id)

    with pytest.raises(StaleWriteError):
        await backend.save_execution(duplicate)


@pytest.mark.asyncio
async def test_snapshots_are_isolated(backend):
    execution = Execution.create(make_flow())
    await backend.save_execution(execution)

    execution.labels["mutated"] = "yes"
    found = await backend.find_execution(execution.id)

    assert "mutated" not in found.labels


@pytest.mark.asyncio
async def test_find_executions_filters(backend):
    etl, report = make_flow("etl"), make_flow("report")
    old = Execution.create(etl)
    old.created_at -= timedelta(seconds=10)
    running = Execution.create(etl)
    running.transition(ExecutionState.RUNNING)
    other = Execution.create(report)
    for execution in (running, old, other):
        await backend.save_execution(execution)

    by_flow = await backend.find_executions(namespace="demo", flow_id="etl")
    assert [e.id for e in by_flow] == [old.id, running.id]

    by_state = await backend.find_executions(state=ExecutionState.RUNNING)
    assert [e.id for e in by_state] == [running.id]

    assert len(await backend.find_executions()) == 3
    assert await backend.count_active("demo", "etl") == 1
    assert await backend.count_active("demo", "report") == 0


@pytest.mark.asyncio
async def test_next_queued_is_oldest(backend):
    flow = make_flow()
    first = Execution.create(flow)
    first.created_at -= timedelta(seconds=5)
    second = Execution.create(flow)
    for execution in (second, first):
        execution.transition(ExecutionState.QUEUED)
        await backend.save_execution(execution)

    assert (await backend.next_queued("demo", "etl")).id == first.id
    assert await backend.next_queued("demo", "other") is None


@pytest.mark.asyncio
async def test_wait_for_terminal(backend):
    execution = Execution.create(make_flow())
    await backend.save_execution(execution)

    async def finish():
        await asyncio.sleep(0.05)
        current = await backend.find_execution(execution.id)
        current.transition(ExecutionState.RUNNING)
        current.transition(ExecutionState.SUCCESS)
        await backend.save_execution(current)

    finisher = asyncio.create_task(finish())
    final = await asyncio.wait_for(backend.wait_for_terminal(execution.id), 5)
    await finisher

    assert final.state is ExecutionState.SUCCESS


# ==============================================================================
# Flow repository
# ==============================================================================


@pytest.mark.asyncio
async def test_flow_revisions(backend):
    await backend.save_flow(make_flow(revision=1))
    await backend.save_flow(make_flow(revision=2, message="v2"))

    latest = await backend.get_flow("demo", "etl")
    assert latest.revision == 2
    assert latest.tasks[0].config == {"message": "v2"}
    assert (await backend.get_flow("demo", "etl", 1)).tasks[0].config == {"message": "hi"}
    assert await backend.get_flow("demo", "etl", 3) is None
    assert await backend.get_flow("demo", "missing") is None


@pytest.mark.asyncio
async def test_flow_revision_is_immutable(backend):
    await backend.save_flow(make_flow(revision=1))

    # Saving the identical definition again is a no-op
    await backend.save_flow(make_flow(revision=1))

    with pytest.raises(StorageError, match="different definition"):
        await backend.save_flow(make_flow(revision=1, message="changed"))


@pytest.mark.asyncio
async def test_list_flows_returns_latest_revisions(backend):
    await backend.save_flow(make_flow("etl", 1))
    await backend.save_flow(make_flow("etl", 2))
    await backend.save_flow(make_flow("report", 1))

    flows = await backend.list_flows()

    assert sorted((f.id, f.revision) for f in flows) == [("etl", 2), ("report", 1)]


# ==============================================================================
# Trigger state
# ==============================================================================


@pytest.mark.asyncio
async def test_watermarks(backend):
    assert await backend.get_watermark("demo.etl.nightly") is None

    await backend.set_watermark("demo.etl.nightly", {"last": "2024-01-01T02:00:00Z"})
    await backend.set_watermark("demo.etl.nightly", {"last": "2024-01-02T02:00:00Z"})

    assert await backend.get_watermark("demo.etl.nightly") == {"last": "2024-01-02T02:00:00Z"}


@pytest.mark.asyncio
async def test_claim_dedup(backend):
    assert await backend.claim_dedup("demo.etl.nightly:k1", "exec-1", window=60) is None
    assert await backend.claim_dedup("demo.etl.nightly:k1", "exec-2", window=60) == "exec-1"
    assert await backend.claim_dedup("demo.etl.nightly:k2", "exec-3", window=60) is None


@pytest.mark.asyncio
async def test_claim_dedup_expires(backend):
    assert await backend.claim_dedup("key", "exec-1", window=0.05) is None
    await asyncio.sleep(0.1)

    assert await backend.claim_dedup("key", "exec-2", window=60) is None
    assert await backend.claim_dedup("key", "exec-3", window=60) == "exec-2"


# ==============================================================================
# Coordination
# ==============================================================================


@pytest.mark.asyncio
async def test_lease_exclusive_until_released(backend):
    assert await backend.acquire_lease("execution:e1", "executor-a", ttl=30)
    assert not await backend.acquire_lease("execution:e1", "executor-b", ttl=30)
    # Renewal by the holder
    assert await backend.acquire_lease("execution:e1", "executor-a", ttl=30)
    assert await backend.lease_owner("execution:e1") == "executor-a"

    assert not await backend.release_lease("execution:e1", "executor-b")
    assert await backend.release_lease("execution:e1", "executor-a")
    assert await backend.lease_owner("execution:e1") is None
    assert await backend.acquire_lease("execution:e1", "executor-b", ttl=30)


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(backend):
    assert await backend.acquire_lease("trigger:demo.etl.nightly", "scheduler-a", ttl=0.05)
    await asyncio.sleep(0.1)

    assert await backend.lease_owner("trigger:demo.etl.nightly") is None
    assert await backend.acquire_lease("trigger:demo.etl.nightly", "scheduler-b", ttl=30)
    assert await backend.lease_owner("trigger:demo.etl.nightly") == "scheduler-b"


@pytest.mark.asyncio
async def test_members(backend):
    await backend.register_member("scheduler", "scheduler-b", ttl=30)
    await backend.register_member("scheduler", "scheduler-a", ttl=30)
    await backend.register_member("scheduler", "scheduler-c", ttl=0.05)
    await backend.register_member("workers", "worker-1", ttl=30)
    await asyncio.sleep(0.1)

    assert await backend.live_members("scheduler") == ["scheduler-a", "scheduler-b"]

    await backend.remove_member("scheduler", "scheduler-a")
    assert await backend.live_members("scheduler") == ["scheduler-b"]
    assert await backend.live_members("workers") == ["worker-1"]


@pytest.mark.asyncio
async def test_reset_clears_everything(backend):
    execution = Execution.create(make_flow())
    await backend.save_execution(execution)
    await backend.save_flow(make_flow())
    await backend.set_watermark("t", 1)
    await backend.acquire_lease("l", "o", ttl=30)

    await backend.reset()

    assert await backend.find_execution(execution.id) is None
    assert await backend.list_flows() == []
    assert await backend.get_watermark("t") is None
    assert await backend.lease_owner("l") is None


# ==============================================================================
# Backend specifics
# ==============================================================================


@pytest.mark.asyncio
async def test_memory_store_uses_injected_clock():
    now = [100.0]
    state_store = InMemoryStateStore(clock=lambda: now[0])

    assert await state_store.acquire_lease("l", "a", ttl=10)
    now[0] = 109.0
    assert not await state_store.acquire_lease("l", "b", ttl=10)
    now[0] = 110.0
    assert await state_store.acquire_lease("l", "b", ttl=10)

    assert await state_store.claim_dedup("k", "exec-1", window=5) is None
    now[0] = 115.0
    assert await state_store.claim_dedup("k", "exec-2", window=5) is None


@pytest.mark.asyncio
async def test_memory_store_evicts_expired_records():
    now = [100.0]
    state_store = InMemoryStateStore(clock=lambda: now[0])
    for i in range(10):
        await state_store.claim_dedup(f"demo.etl.nightly:{i}", f"exec-{i}", window=5)
        await state_store.acquire_lease(f"taskrun:{i}:1", "worker-1", ttl=5)
    await state_store.register_member("scheduler", "scheduler-a", ttl=5)
    # Renewed past the first expiry
    now[0] = 103.0
    await state_store.acquire_lease("taskrun:0:1", "worker-1", ttl=5)

    now[0] = 106.0
    assert await state_store.claim_dedup("demo.etl.nightly:new", "exec-new", window=5) is None

    assert list(state_store._dedup) == ["demo.etl.nightly:new"]
    assert list(state_store._leases) == ["taskrun:0:1"]
    assert state_store._members == {}
    assert await state_store.lease_owner("taskrun:0:1") == "worker-1"


@pytest.mark.asyncio
async def test_sqlite_requires_connect():
    state_store = SqliteStateStore(":memory:")

    with pytest.raises(StorageError, match="connect"):
        await state_store.find_execution("x")


@pytest.mark.durability
@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(temp_db_path):
    flow = make_flow()
    execution = Execution.create(flow)
    execution.transition(ExecutionState.RUNNING)

    state_store = SqliteStateStore(str(temp_db_path))
    await state_store.connect()
    await state_store.save_flow(flow)
    await state_store.save_execution(execution)
    await state_store.set_watermark("demo.etl.nightly", 7)
    await state_store.close()

    reopened = SqliteStateStore(str(temp_db_path))
    await reopened.connect()
    try:
        found = await reopened.find_execution(execution.id)
        assert found.state is ExecutionState.RUNNING
        assert found.version == 1
        assert (await reopened.get_flow("demo", "etl")) == flow
        assert await reopened.get_watermark("demo.etl.nightly") == 7
    finally:
        await reopened.close()
