"""
Pytest configuration and fixtures for pytaxis tests.

Provides storage backends, queues, a plugin registry with test plugins,
a flow loader helper and an in-process cluster (Executor + Worker).
"""

import asyncio
import collections
import shutil
import tempfile
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from pytaxis.config import Settings
from pytaxis.core import PluginRegistry, RunContext, TriggerFire, load_flow, plugin
from pytaxis.errors import TaskExecutionError
from pytaxis.executor import Executor, ExecutorHandle, Scheduler, Worker, WorkerHandle
from pytaxis.models import Execution, Flow
from pytaxis.queue import InMemoryQueue
from pytaxis.storage import InMemoryBlobStore, InMemoryStateStore, SqliteStateStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    # In CI environments only, force exit to prevent hanging
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# Settings with intervals small enough for tests to finish in milliseconds
FAST = Settings(
    poll_interval=0.05,
    heartbeat_interval=0.05,
    heartbeat_grace=2.0,
    kill_grace=2.0,
    worker_kill_grace=0.1,
    lease_ttl=5.0,
    scheduler_interval=0.05,
    maintenance_interval=0.1,
    redelivery_delay=0.02,
    max_deliveries=5,
)


# Test plugins


@plugin("test.Flaky")
@dataclass
class Flaky:
    """Fail the first `failures` attempts, then succeed."""

    failures: int = 1
    retryable: bool = True

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        if run_context.attempt <= self.failures:
            raise TaskExecutionError(
                f"attempt {run_context.attempt} failed", retryable=self.retryable
            )
        return {"attempt": run_context.attempt}


# Body executions of test.Tally, per `key`
TALLIES: collections.Counter[str] = collections.Counter()


@plugin("test.Tally")
@dataclass
class Tally:
    """Count how often its body runs."""

    key: str = "default"

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        TALLIES[self.key] += 1
        await asyncio.sleep(0)
        return {"count": TALLIES[self.key]}


@plugin("test.Block")
@dataclass
class Block:
    """Wait until killed, observing the cancellation flag."""

    seconds: float = 3600.0

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        await run_context.sleep(self.seconds)
        return {"slept": self.seconds}


@plugin("test.Stubborn")
@dataclass
class Stubborn:
    """Ignore the cancellation flag; only task cancellation stops it."""

    seconds: float = 3600.0

    async def run(self, run_context: RunContext) -> None:
        await asyncio.sleep(self.seconds)


@plugin("test.Scalar")
@dataclass
class Scalar:
    """Return a value that is not a mapping of outputs."""

    async def run(self, run_context: RunContext) -> Any:
        return 42


@plugin("test.Counter")
@dataclass
class Counter:
    """Polling trigger firing once per integer up to `upto`."""

    upto: int = 1

    async def evaluate(self, run_context: RunContext, watermark: Any) -> TriggerFire | None:
        current = watermark or 0
        if current >= self.upto:
            return None
        return TriggerFire(fire_key=str(current + 1), watermark=current + 1, payload={"n": current + 1})


TEST_PLUGINS = (Flaky, Tally, Block, Stubborn, Scalar, Counter)


@pytest.fixture
def registry() -> PluginRegistry:
    """Built-in plugins plus the test plugins above."""
    reg = PluginRegistry.with_builtins()
    for plugin_cls in TEST_PLUGINS:
        reg.register(plugin_cls)
    return reg


@pytest.fixture
def make_flow(registry):
    """Load a Flow document against the test registry."""

    def make(document: str | dict) -> Flow:
        return load_flow(document, registry)

    return make


# Storage and transport


@pytest.fixture
async def store() -> AsyncGenerator[InMemoryStateStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    state_store = InMemoryStateStore()
    yield state_store
    await state_store.reset()


@pytest.fixture
async def sqlite_store() -> AsyncGenerator[SqliteStateStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    state_store = await SqliteStateStore.in_memory()
    yield state_store
    await state_store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "pytaxis.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def queue() -> AsyncGenerator[InMemoryQueue, None]:
    event_bus = InMemoryQueue(visibility_timeout=30.0)
    yield event_bus
    await event_bus.close()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


# In-process cluster


async def stop(handle: ExecutorHandle | WorkerHandle, timeout: float = 5.0) -> None:
    """Shut a loop down, aborting it if in-flight work does not finish in time."""
    try:
        await asyncio.wait_for(handle.shutdown(), timeout)
    except TimeoutError:
        handle.abort()


@dataclass
class Cluster:
    store: InMemoryStateStore
    queue: InMemoryQueue
    registry: PluginRegistry
    executor: Executor
    worker: Worker
    scheduler: Scheduler

    async def submit(self, flow: Flow, inputs: dict | None = None) -> Execution:
        await self.store.save_flow(flow)
        return await self.scheduler.submit(flow, inputs)

    async def run(self, flow: Flow, inputs: dict | None = None, timeout: float = 10.0) -> Execution:
        """Submit a Flow and wait for its Execution to finish."""
        execution = await self.submit(flow, inputs)
        return await self.wait(execution.id, timeout)

    async def wait(self, execution_id: str, timeout: float = 10.0) -> Execution:
        return await asyncio.wait_for(self.store.wait_for_terminal(execution_id), timeout)

    async def wait_for(self, execution_id: str, predicate, timeout: float = 10.0) -> Execution:
        """Poll the store until `predicate(execution)` holds."""

        async def poll() -> Execution:
            while True:
                execution = await self.store.find_execution(execution_id)
                if execution is not None and predicate(execution):
                    return execution
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout)


@pytest.fixture
async def cluster(store, queue, registry, blob_store) -> AsyncGenerator[Cluster, None]:
    """One Executor and one Worker sharing an in-memory store and queue."""
    executor = Executor(store, queue, registry, executor_id="executor-1", settings=FAST)
    worker = Worker(queue, store, registry, worker_id="worker-1", settings=FAST).with_blob_store(
        blob_store
    )
    scheduler = Scheduler(store, queue, registry, scheduler_id="scheduler-1", settings=FAST)
    executor_handle = await executor.start()
    worker_handle = await worker.start()
    yield Cluster(store, queue, registry, executor, worker, scheduler)
    await stop(worker_handle)
    await stop(executor_handle)
