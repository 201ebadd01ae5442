"""Executor control loop.

The Executor is the single writer of Execution state. It consumes the
`executor` topic, and for every message:

1. takes ownership of the Execution (in-process lock + `execution:<id>` lease)
2. loads the Execution and its Flow revision
3. feeds the event to an ExecutionMachine
4. saves the Execution (the store rejects stale versions)
5. publishes the messages the machine produced

A crash between 4 and 5 is covered by redelivery: the message was not
acknowledged, its second processing is a no-op for the machine, and the
Executor republishes TaskRunStart for every TaskRun no Worker picked up.

Features:
- Flow concurrency limits (QUEUE / CANCEL / FAIL), FIFO release
- Subflow creation with deterministic child ids
- Maintenance pass: orphaned TaskRuns, kill grace, lost queue releases
- Dead-lettered messages fail the Execution they concern
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from pytaxis.config import Settings
from pytaxis.core.context import SecretProvider
from pytaxis.core.graph import FlowGraph
from pytaxis.core.loader import coerce_inputs
from pytaxis.core.plugin import FlowableTask, PluginRegistry
from pytaxis.errors import ConfigValidationError, DeliveryError, ExecutorError
from pytaxis.executor.state import ExecutionMachine
from pytaxis.models import (
    EXECUTOR_TOPIC,
    Branch,
    ConcurrencyBehavior,
    ErrorDetail,
    Execution,
    ExecutionEvent,
    ExecutionState,
    Flow,
    FlowRef,
    KillRequest,
    Message,
    ParentRef,
    PauseRequest,
    ResumeRequest,
    SubflowExecutionEnd,
    SubflowSpawn,
    TaskRunEnded,
    TaskRunHeartbeat,
    TaskRunState,
    new_id,
    utcnow,
)
from pytaxis.queue import Delivery, Queue, QueueConsumer, Redeliver
from pytaxis.storage import StateStore

logger = logging.getLogger(__name__)

EXECUTOR_GROUP = "executors"


def subflow_execution_id(parent_execution_id: str, task_run_id: str, attempt: int) -> str:
    """Deterministic child id: a redelivered SubflowSpawn finds the same child."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"pytaxis:{parent_execution_id}:{task_run_id}:{attempt}"))


@dataclass
class _LocalLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _execution_id_of(message: Message) -> str | None:
    if isinstance(message, ExecutionEvent):
        return message.execution.id
    if isinstance(message, SubflowExecutionEnd):
        return message.parent_execution_id
    return getattr(message, "execution_id", None)


class Executor:
    """Executor that owns Execution state and drives it to completion.

    Design Patterns:
    - Single writer: every state change goes through one ExecutionMachine
      while the Execution lease is held
    - Builder: with_parallelism(), with_heartbeat_grace(), ... for configuration

    Usage:
        store = SqliteStateStore("pytaxis.db")
        await store.connect()
        queue = RedisQueue("redis://localhost:6379")
        await queue.connect()

        executor = Executor(store, queue).with_parallelism(32)
        handle = await executor.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(
        self,
        store: StateStore,
        queue: Queue,
        registry: PluginRegistry | None = None,
        executor_id: str | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._queue = queue
        if registry is None:
            from pytaxis.plugins import default_registry

            registry = default_registry
        self._registry = registry
        self._executor_id = executor_id or f"executor-{new_id()}"
        settings = settings or Settings()
        self._parallelism = settings.executor_parallelism
        self._poll_interval = settings.poll_interval
        self._heartbeat_grace = settings.heartbeat_grace
        self._kill_grace = settings.kill_grace
        self._lease_ttl = settings.lease_ttl
        self._maintenance_interval = settings.maintenance_interval
        self._max_deliveries = settings.max_deliveries
        self._redelivery_delay = settings.redelivery_delay
        self._secrets: SecretProvider | None = None

        self._locks: dict[str, _LocalLock] = {}
        self._flows: dict[tuple[str, str, int], tuple[Flow, dict[Branch, FlowGraph]]] = {}

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._consumer: QueueConsumer | None = None

    @property
    def executor_id(self) -> str:
        return self._executor_id

    # ========================================================================
    # Builder
    # ========================================================================

    def with_parallelism(self, parallelism: int) -> Executor:
        """Maximum number of messages handled concurrently (builder pattern)."""
        self._parallelism = parallelism
        return self

    def with_poll_interval(self, interval: float) -> Executor:
        self._poll_interval = interval
        return self

    def with_heartbeat_grace(self, grace: float) -> Executor:
        """Seconds without heartbeat before a RUNNING TaskRun is failed as orphaned."""
        self._heartbeat_grace = grace
        return self

    def with_kill_grace(self, grace: float) -> Executor:
        self._kill_grace = grace
        return self

    def with_lease_ttl(self, ttl: float) -> Executor:
        self._lease_ttl = ttl
        return self

    def with_maintenance_interval(self, interval: float) -> Executor:
        self._maintenance_interval = interval
        return self

    def with_secrets(self, secrets: SecretProvider) -> Executor:
        """Secret provider for conditions, forEach and flow outputs."""
        self._secrets = secrets
        return self

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> ExecutorHandle:
        """Start consuming the executor topic.

        Returns:
            ExecutorHandle for shutdown control
        """
        self._running = True
        self._shutdown_event.clear()
        self._consumer = QueueConsumer(
            self._queue,
            EXECUTOR_TOPIC,
            EXECUTOR_GROUP,
            self._executor_id,
            self.handle,
            parallelism=self._parallelism,
            max_deliveries=self._max_deliveries,
            poll_interval=self._poll_interval,
            redelivery_delay=self._redelivery_delay,
            on_dead_letter=self._on_dead_letter,
        )
        task = asyncio.create_task(self._run())
        return ExecutorHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Executor {self._executor_id} started")
        consumer_task = asyncio.create_task(self._consumer.run())
        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=self._maintenance_interval
                    )
                except TimeoutError:
                    pass
                if self._shutdown_event.is_set():
                    break
                try:
                    await self.maintain()
                except Exception as e:
                    logger.error(f"Executor {self._executor_id} maintenance error: {e}")
                if consumer_task.done():
                    break
        finally:
            if not consumer_task.done():
                consumer_task.cancel()
                try:
                    await consumer_task
                except asyncio.CancelledError:
                    pass
            logger.info(f"Executor {self._executor_id} stopped")

    async def shutdown(self) -> None:
        """Stop consuming and wait for in-flight messages."""
        logger.info(f"Executor {self._executor_id} shutting down...")
        self._running = False
        if self._consumer is not None:
            await self._consumer.stop(wait=True)
        self._shutdown_event.set()

    # ========================================================================
    # Client operations
    # ========================================================================

    async def kill(self, execution_id: str) -> None:
        await self._queue.publish(EXECUTOR_TOPIC, KillRequest(execution_id))

    async def pause(self, execution_id: str) -> None:
        await self._queue.publish(EXECUTOR_TOPIC, PauseRequest(execution_id))

    async def resume(self, execution_id: str) -> None:
        await self._queue.publish(EXECUTOR_TOPIC, ResumeRequest(execution_id))

    # ========================================================================
    # Ownership
    # ========================================================================

    @asynccontextmanager
    async def _owned(self, name: str) -> AsyncIterator[None]:
        """Hold the in-process lock and the store lease for `name`.

        Raises:
            Redeliver: If another Executor instance holds the lease
        """
        entry = self._locks.get(name)
        if entry is None:
            entry = self._locks[name] = _LocalLock()
        entry.users += 1
        try:
            async with entry.lock:
                if not await self._store.acquire_lease(name, self._executor_id, self._lease_ttl):
                    owner = await self._store.lease_owner(name)
                    raise Redeliver(
                        delay=self._redelivery_delay, reason=f"{name} is owned by {owner}"
                    )
                try:
                    yield
                finally:
                    await self._store.release_lease(name, self._executor_id)
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[name]

    async def _flow(self, ref: FlowRef) -> tuple[Flow, dict[Branch, FlowGraph]] | None:
        """Flow revision plus its branch graphs, cached (revisions are immutable)."""
        key = (ref.namespace, ref.id, ref.revision)
        cached = self._flows.get(key)
        if cached is not None:
            return cached
        flow = await self._store.get_flow(ref.namespace, ref.id, ref.revision)
        if flow is None:
            return None
        entry = (flow, {branch: FlowGraph.of(flow, branch) for branch in Branch})
        self._flows[(flow.namespace, flow.id, flow.revision)] = entry
        return entry

    def _machine(self, flow: Flow, graphs: dict[Branch, FlowGraph], execution: Execution) -> ExecutionMachine:
        return ExecutionMachine(flow, execution, graphs=graphs, secrets=self._secrets)

    async def _commit(self, machine: ExecutionMachine, changed: bool) -> None:
        """Save, then publish. Never publish what was not saved."""
        execution = machine.execution
        if changed:
            await self._store.save_execution(execution)
        for outgoing in machine.outbox:
            await self._queue.publish(outgoing.topic, outgoing.message, delay=outgoing.delay)
        machine.outbox.clear()
        if changed and execution.is_terminal:
            await self._release_queued(machine.flow)

    async def _fail_missing_flow(self, execution: Execution) -> None:
        error = ExecutorError(f"Flow {execution.flow_ref} not found")
        logger.error(f"Execution {execution.id}: {error}")
        execution.error = ErrorDetail(type=type(error).__name__, message=str(error), retryable=False)
        if execution.state is ExecutionState.KILLING:
            execution.transition(ExecutionState.KILLED)
        else:
            execution.transition(ExecutionState.FAILED)
        await self._store.save_execution(execution)

    async def _apply(
        self,
        execution_id: str,
        event: Callable[[ExecutionMachine], bool],
        redispatch: bool = False,
    ) -> None:
        """Apply one event to an Execution under ownership."""
        async with self._owned(f"execution:{execution_id}"):
            execution = await self._store.find_execution(execution_id)
            if execution is None:
                logger.warning(f"Executor {self._executor_id}: unknown execution {execution_id}")
                return
            if execution.is_terminal:
                logger.debug(f"Execution {execution_id} is {execution.state}, ignoring event")
                return
            loaded = await self._flow(execution.flow_ref)
            if loaded is None:
                await self._fail_missing_flow(execution)
                return
            machine = self._machine(*loaded, execution)
            changed = event(machine)
            if not changed and redispatch:
                machine.redispatch_pending()
            await self._commit(machine, changed)

    # ========================================================================
    # Message handling
    # ========================================================================

    async def handle(self, message: Message) -> None:
        """Process one message of the executor topic."""
        if isinstance(message, ExecutionEvent):
            await self._on_execution_event(message)
        elif isinstance(message, TaskRunEnded):
            await self._apply(
                message.execution_id,
                lambda machine: machine.on_task_run_ended(message),
                redispatch=True,
            )
        elif isinstance(message, TaskRunHeartbeat):
            await self._apply(
                message.execution_id,
                lambda machine: machine.on_heartbeat(
                    message.task_run_id, message.attempt, message.worker_id, message.at
                ),
            )
        elif isinstance(message, KillRequest):
            await self._apply(message.execution_id, lambda machine: machine.on_kill())
        elif isinstance(message, PauseRequest):
            await self._apply(message.execution_id, lambda machine: machine.on_pause())
        elif isinstance(message, ResumeRequest):
            await self._apply(message.execution_id, lambda machine: machine.on_resume())
        elif isinstance(message, SubflowSpawn):
            await self._on_subflow_spawn(message)
        elif isinstance(message, SubflowExecutionEnd):
            await self._on_subflow_end(message)
        else:
            logger.warning(
                f"Executor {self._executor_id}: unexpected message {type(message).__name__}"
            )

    async def _on_execution_event(self, message: ExecutionEvent) -> None:
        execution_id = message.execution.id
        async with self._owned(f"execution:{execution_id}"):
            stored = await self._store.find_execution(execution_id)
            is_new = stored is None
            execution = message.execution.snapshot() if is_new else stored

            loaded = await self._flow(execution.flow_ref)
            if loaded is None:
                if not execution.is_terminal:
                    await self._fail_missing_flow(execution)
                return
            flow, graphs = loaded
            machine = self._machine(flow, graphs, execution)

            if execution.state not in (ExecutionState.CREATED, ExecutionState.QUEUED):
                logger.debug(f"Execution {execution_id}: duplicate ExecutionEvent")
                if not execution.is_terminal:
                    machine.redispatch_pending()
                await self._commit(machine, False)
                return

            if flow.concurrency is None:
                changed = machine.start()
                await self._commit(machine, changed or is_new)
                return

            async with self._owned(f"concurrency:{flow.uid}"):
                changed = await self._admit(machine) or is_new
                await self._commit(machine, changed)

    async def _admit(self, machine: ExecutionMachine) -> bool:
        """Start, queue, cancel or fail an Execution according to the flow concurrency."""
        flow = machine.flow
        execution = machine.execution
        concurrency = flow.concurrency
        active = await self._store.count_active(flow.namespace, flow.id)
        first_queued = await self._store.next_queued(flow.namespace, flow.id)
        if active < concurrency.limit and (first_queued is None or first_queued.id == execution.id):
            return machine.start()

        if concurrency.behavior is ConcurrencyBehavior.QUEUE:
            if machine.queue():
                logger.info(
                    f"Execution {execution.id} queued: {active}/{concurrency.limit} "
                    f"running for {flow.uid}"
                )
                return True
            return False
        if concurrency.behavior is ConcurrencyBehavior.CANCEL:
            logger.info(f"Execution {execution.id} cancelled: concurrency limit of {flow.uid}")
            return machine.cancel()
        error = ExecutorError(f"Concurrency limit of {concurrency.limit} reached for {flow.uid}")
        return machine.fail(
            ErrorDetail(type=type(error).__name__, message=str(error), retryable=False)
        )

    async def _release_queued(self, flow: Flow) -> None:
        if flow.concurrency is None:
            return
        queued = await self._store.next_queued(flow.namespace, flow.id)
        if queued is not None:
            logger.debug(f"Releasing queued execution {queued.id} of {flow.uid}")
            await self._queue.publish(EXECUTOR_TOPIC, ExecutionEvent(queued))

    async def _on_subflow_spawn(self, message: SubflowSpawn) -> None:
        async with self._owned(f"execution:{message.execution_id}"):
            execution = await self._store.find_execution(message.execution_id)
            if execution is None or execution.is_terminal:
                return
            loaded = await self._flow(execution.flow_ref)
            if loaded is None:
                await self._fail_missing_flow(execution)
                return
            machine = self._machine(*loaded, execution)

            run = execution.find_task_run(message.task_run_id)
            if run is None or run.attempt != message.attempt or run.is_terminal:
                logger.debug(f"Execution {execution.id}: stale SubflowSpawn for {message.task_run_id}")
                return

            child_id = subflow_execution_id(execution.id, run.id, run.attempt)
            child = await self._store.find_execution(child_id)
            if child is None:
                try:
                    child = await self._create_child(execution, message, child_id)
                except (ExecutorError, ConfigValidationError) as e:
                    logger.warning(f"Execution {execution.id}: subflow of {run.task_id} failed: {e}")
                    changed = machine.on_task_run_ended(
                        TaskRunEnded(
                            execution_id=execution.id,
                            task_run_id=run.id,
                            task_id=run.task_id,
                            iteration=run.iteration,
                            attempt=run.attempt,
                            state=TaskRunState.FAILED,
                            error=ErrorDetail(type=type(e).__name__, message=str(e), retryable=False),
                        )
                    )
                    await self._commit(machine, changed)
                    return
            if child.state is ExecutionState.CREATED:
                await self._queue.publish(EXECUTOR_TOPIC, ExecutionEvent(child))

            changed = machine.attach_child(run.id, run.attempt, child_id, message.wait)
            await self._commit(machine, changed)

    async def _create_child(
        self, parent: Execution, message: SubflowSpawn, child_id: str
    ) -> Execution:
        ref = message.flow_ref
        child_flow = await self._store.get_flow(ref.namespace, ref.id, ref.revision)
        if child_flow is None:
            raise ExecutorError(f"Subflow {ref} not found")
        inputs = coerce_inputs(child_flow, message.inputs)
        child = Execution.create(
            child_flow,
            execution_id=child_id,
            trigger={
                "type": "subflow",
                "executionId": parent.id,
                "namespace": parent.namespace,
                "flowId": parent.flow_id,
                "taskRunId": message.task_run_id,
            },
            inputs=inputs,
            labels=message.labels,
            parent=ParentRef(
                execution_id=parent.id,
                task_run_id=message.task_run_id,
                attempt=message.attempt,
                transmit_failed=message.transmit_failed,
            )
            if message.wait
            else None,
        )
        await self._store.save_execution(child)
        logger.info(f"Execution {parent.id}: created subflow execution {child_id} ({child_flow.uid})")
        return child

    async def _on_subflow_end(self, message: SubflowExecutionEnd) -> None:
        child = await self._store.find_execution(message.child_execution_id)

        def apply(machine: ExecutionMachine) -> bool:
            outputs = self._subflow_outputs(machine, message, child)
            return machine.on_subflow_end(message, outputs)

        await self._apply(message.parent_execution_id, apply)

    def _subflow_outputs(
        self, machine: ExecutionMachine, message: SubflowExecutionEnd, child: Execution | None
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {
            "executionId": message.child_execution_id,
            "state": str(message.child_state),
            "outputs": dict(message.child_outputs),
        }
        run = machine.execution.find_task_run(message.parent_task_run_id)
        if run is None or child is None:
            return outputs
        task = machine.flow.find_task(run.task_id)
        try:
            task_plugin = self._registry.create(task.type, dict(task.config))
        except ConfigValidationError as e:
            logger.warning(f"Execution {machine.execution.id}: cannot map subflow outputs: {e}")
            return outputs
        if isinstance(task_plugin, FlowableTask):
            return task_plugin.outputs_from_child(child)
        return outputs

    # ========================================================================
    # Dead letters
    # ========================================================================

    async def _on_dead_letter(self, delivery: Delivery, error: DeliveryError) -> None:
        message = delivery.message
        execution_id = _execution_id_of(message)
        if execution_id is None:
            return
        detail = ErrorDetail(type=type(error).__name__, message=str(error), retryable=False)
        try:
            if isinstance(message, ExecutionEvent) and await self._fail_unsaved(
                message.execution, detail
            ):
                return
            await self._apply(execution_id, lambda machine: machine.fail(detail))
        except Redeliver as r:
            logger.error(f"Executor {self._executor_id}: cannot fail execution {execution_id}: {r}")

    async def _fail_unsaved(self, execution: Execution, detail: ErrorDetail) -> bool:
        """
        Store an Execution whose ExecutionEvent was never applied as FAILED.

        Returns False when the Execution is already stored, leaving it to
        the regular event path.
        """
        async with self._owned(f"execution:{execution.id}"):
            if await self._store.find_execution(execution.id) is not None:
                return False
            execution = execution.snapshot()
            logger.error(f"Execution {execution.id}: never started, failing it: {detail.message}")
            loaded = await self._flow(execution.flow_ref)
            if loaded is None:
                execution.error = detail
                execution.transition(ExecutionState.FAILED)
                await self._store.save_execution(execution)
                return True
            machine = self._machine(*loaded, execution)
            machine.fail(detail)
            await self._commit(machine, True)
            return True

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def maintain(self) -> None:
        """
        One maintenance pass.

        - RUNNING TaskRuns without heartbeat for `heartbeat_grace` fail as orphaned
        - KILLING Executions past `kill_grace` are forced to KILLED
        - QUEUED Executions are released when their flow has a free slot
        """
        for state in (ExecutionState.RUNNING, ExecutionState.PAUSED):
            for execution in await self._store.find_executions(state=state):
                if not self._has_stale_runs(execution):
                    continue
                await self._maintain_one(
                    execution.id, lambda machine: machine.check_orphans(self._heartbeat_grace)
                )

        for execution in await self._store.find_executions(state=ExecutionState.KILLING):
            await self._maintain_one(
                execution.id, lambda machine: machine.enforce_kill_grace(self._kill_grace)
            )

        released: set[tuple[str, str]] = set()
        for execution in await self._store.find_executions(state=ExecutionState.QUEUED):
            key = (execution.namespace, execution.flow_id)
            if key in released:
                continue
            released.add(key)
            loaded = await self._flow(execution.flow_ref)
            if loaded is None or loaded[0].concurrency is None:
                continue
            flow = loaded[0]
            if await self._store.count_active(flow.namespace, flow.id) < flow.concurrency.limit:
                await self._release_queued(flow)

    def _has_stale_runs(self, execution: Execution) -> bool:
        now = utcnow()
        for run in execution.in_flight():
            if run.state is not TaskRunState.RUNNING or run.child_execution_id is not None:
                continue
            last_seen = run.last_heartbeat or run.updated_at
            if (now - last_seen).total_seconds() > self._heartbeat_grace:
                return True
        return False

    async def _maintain_one(
        self, execution_id: str, event: Callable[[ExecutionMachine], bool]
    ) -> None:
        try:
            await self._apply(execution_id, event)
        except Redeliver as r:
            logger.debug(f"Executor {self._executor_id}: skipping maintenance of {execution_id}: {r}")


class ExecutorHandle:
    """Handle for controlling a running Executor.

    Usage:
        handle = await executor.start()
        await handle.shutdown()
    """

    def __init__(self, executor: Executor, task: asyncio.Task):
        self._executor = executor
        self._task = task

    def executor_id(self) -> str:
        return self._executor.executor_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Gracefully stop the Executor and wait for its loop to exit."""
        await self._executor.shutdown()
        await self._task

    def abort(self) -> None:
        self._task.cancel()
