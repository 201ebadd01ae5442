"""Distributed worker for running task attempts.

Workers consume the `worker` topic, run one TaskRun attempt per
TaskRunStart message and report the outcome to the Executor. They also
evaluate polling triggers on behalf of the Scheduler and observe kill
broadcasts on the `worker.control` topic.

Features:
- Event-driven consumption with polling fallback (QueueConsumer)
- Bounded parallelism, background tasks tracked until completion
- Attempt fencing: at most one Worker runs a given (TaskRun, attempt)
- Heartbeats while a task runs, timeout enforcement
- Cooperative kill with a grace period before cancellation
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from pytaxis.config import Settings
from pytaxis.core.context import RunContext, SecretProvider, trigger_variables
from pytaxis.core.plugin import FlowableTask, PluginRegistry, PollingTrigger, RunnableTask
from pytaxis.errors import (
    DeliveryError,
    FlowLoadError,
    TaskExecutionError,
    TaskKilledError,
    TaskTimeoutError,
    WorkerError,
)
from pytaxis.models import (
    EXECUTOR_TOPIC,
    SCHEDULER_TOPIC,
    WORKER_CONTROL_TOPIC,
    WORKER_TOPIC,
    ErrorDetail,
    ExecutionState,
    FlowRef,
    KillTaskRun,
    Message,
    SubflowSpawn,
    TaskRunEnded,
    TaskRunHeartbeat,
    TaskRunStart,
    TaskRunState,
    TriggerEvaluate,
    TriggerEvaluated,
    new_id,
    utcnow,
)
from pytaxis.queue import Delivery, Queue, QueueConsumer
from pytaxis.storage import BlobStore, StateStore

logger = logging.getLogger(__name__)

WORKER_GROUP = "workers"


@dataclass
class _RunningAttempt:
    """Bookkeeping for one attempt running on this Worker."""

    run_context: RunContext
    task: asyncio.Task | None = None
    kill_timer: asyncio.TimerHandle | None = None
    killed: bool = False


def _done_marker(task_run_id: str, attempt: int) -> str:
    return f"taskrun:{task_run_id}:{attempt}:done"


class Worker:
    """Worker that runs task attempts dispatched by the Executor.

    Design Patterns:
    - Template Method: _execute() defines the fixed attempt skeleton
      (fence, context, run, report)
    - Strategy: plugins are interchangeable run strategies
    - Builder: with_parallelism(), with_heartbeat_interval(), ... for configuration

    Default configuration works out of the box, but customizable.

    Usage:
        worker = Worker(queue, store, worker_id="worker-1") \\
            .with_parallelism(16) \\
            .with_blob_store(LocalBlobStore("/var/lib/pytaxis/blobs"))

        handle = await worker.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(
        self,
        queue: Queue,
        store: StateStore,
        registry: PluginRegistry | None = None,
        worker_id: str | None = None,
        settings: Settings | None = None,
    ):
        """Initialize worker.

        All dependencies passed explicitly, no globals (the built-in plugin
        registry is used when none is given).

        Args:
            queue: Event bus shared with the Executor and Scheduler
            store: State store used for attempt fencing leases
            registry: Plugin registry resolving task and trigger types
            worker_id: Unique worker identifier, generated if omitted
            settings: Runtime settings, overridden by builder methods
        """
        self._queue = queue
        self._store = store
        if registry is None:
            from pytaxis.plugins import default_registry

            registry = default_registry
        self._registry = registry
        self._worker_id = worker_id or f"worker-{new_id()}"
        settings = settings or Settings()
        self._parallelism = settings.worker_parallelism
        self._poll_interval = settings.poll_interval
        self._heartbeat_interval = settings.heartbeat_interval
        self._kill_grace = settings.worker_kill_grace
        self._lease_ttl = settings.lease_ttl
        self._marker_ttl = settings.attempt_marker_ttl
        self._max_deliveries = settings.max_deliveries
        self._redelivery_delay = settings.redelivery_delay
        self._blob_inline_limit = settings.blob_inline_limit
        self._blob_store: BlobStore | None = None
        self._secrets: SecretProvider | None = None

        # Add jitter to poll interval to avoid thundering herd
        worker_hash = sum(ord(c) for c in self._worker_id)
        self._jitter = (1 + (worker_hash % 5)) / 1000.0

        self._running_attempts: dict[tuple[str, int], _RunningAttempt] = {}
        self._claimed_attempts: set[tuple[str, int]] = set()
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._consumers: list[QueueConsumer] = []

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ========================================================================
    # Builder
    # ========================================================================

    def with_parallelism(self, parallelism: int) -> Worker:
        """Limit concurrent task attempts (builder pattern).

        The permit is acquired BEFORE a message is received, so a Worker at
        capacity leaves messages to other Workers.

        Returns:
            self for method chaining
        """
        self._parallelism = parallelism
        return self

    def with_poll_interval(self, interval: float) -> Worker:
        """Configure polling interval used when the queue offers no notifications.

        Args:
            interval: Seconds between queue polls

        Returns:
            self for method chaining
        """
        self._poll_interval = interval
        return self

    def with_heartbeat_interval(self, interval: float) -> Worker:
        self._heartbeat_interval = interval
        return self

    def with_kill_grace(self, grace: float) -> Worker:
        """Seconds a killed task may run after its cancellation flag is set."""
        self._kill_grace = grace
        return self

    def with_blob_store(self, blob_store: BlobStore) -> Worker:
        self._blob_store = blob_store
        return self

    def with_secrets(self, secrets: SecretProvider) -> Worker:
        self._secrets = secrets
        return self

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> WorkerHandle:
        """Start the worker loops.

        Returns WorkerHandle immediately, letting caller decide
        whether to await or run concurrently.
        """
        self._running = True
        self._shutdown_event.clear()
        poll_interval = self._poll_interval + self._jitter
        self._consumers = [
            QueueConsumer(
                self._queue,
                WORKER_TOPIC,
                WORKER_GROUP,
                self._worker_id,
                self.handle,
                parallelism=self._parallelism,
                max_deliveries=self._max_deliveries,
                poll_interval=poll_interval,
                redelivery_delay=self._redelivery_delay,
                on_dead_letter=self._on_dead_letter,
            ),
            # Broadcast: one group per worker, only signals sent after start
            QueueConsumer(
                self._queue,
                WORKER_CONTROL_TOPIC,
                f"worker.{self._worker_id}",
                self._worker_id,
                self.handle_control,
                parallelism=1,
                max_deliveries=1,
                poll_interval=poll_interval,
                latest=True,
            ),
        ]
        # Subscribe before returning so no kill signal sent after start() is missed
        await self._queue.subscribe(WORKER_CONTROL_TOPIC, f"worker.{self._worker_id}", latest=True)
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started")
        tasks = [asyncio.create_task(consumer.run()) for consumer in self._consumers]
        try:
            await self._shutdown_event.wait()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Worker {self._worker_id} stopped")

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker.

        Stops receiving and waits for running attempts to report.
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        for consumer in self._consumers:
            await consumer.stop(wait=True)
        self._shutdown_event.set()

    # ========================================================================
    # Message handling
    # ========================================================================

    async def handle(self, message: Message) -> None:
        """Process one message of the worker topic."""
        if isinstance(message, TaskRunStart):
            await self._execute(message)
        elif isinstance(message, TriggerEvaluate):
            await self._evaluate_trigger(message)
        else:
            logger.warning(f"Worker {self._worker_id}: unexpected message {type(message).__name__}")

    async def handle_control(self, message: Message) -> None:
        if isinstance(message, KillTaskRun):
            self.kill(message.task_run_id, message.attempt)

    def kill(self, task_run_id: str, attempt: int) -> bool:
        """
        Kill an attempt running on this Worker.

        Sets the cancellation flag immediately; the coroutine is cancelled
        once the kill grace elapses.

        Returns:
            True if the attempt runs here
        """
        running = self._running_attempts.get((task_run_id, attempt))
        if running is None:
            return False
        if running.killed:
            return True
        running.killed = True
        running.run_context.kill()
        logger.info(f"Worker {self._worker_id}: kill requested for {task_run_id} attempt {attempt}")
        if running.task is not None and not running.task.done():
            running.kill_timer = asyncio.get_running_loop().call_later(
                self._kill_grace, running.task.cancel
            )
        return True

    async def _on_dead_letter(self, delivery: Delivery, error: DeliveryError) -> None:
        message = delivery.message
        if isinstance(message, TaskRunStart):
            await self._report(
                message,
                TaskRunState.FAILED,
                error=ErrorDetail(type=type(error).__name__, message=str(error), retryable=False),
            )

    # ========================================================================
    # Task attempts
    # ========================================================================

    async def _execute(self, start: TaskRunStart) -> None:
        """
        Run one attempt.

        1. Acquire the fencing lease `taskrun:<id>:<attempt>`
        2. Skip if the attempt already reported or the Executor moved past it
        3. Resolve the plugin and build the RunContext
        4. Run (or spawn a subflow) under the timeout, heartbeating
        5. Mark the attempt done, then publish TaskRunEnded with outputs,
           logs and metrics

        The fencing lease is re-entrant for its owner, so duplicates of an
        attempt already claimed on this Worker are dropped locally.
        """
        key = (start.task_run_id, start.attempt)
        if key in self._claimed_attempts:
            logger.debug(
                f"Worker {self._worker_id}: duplicate TaskRunStart for {start.task_id} "
                f"attempt {start.attempt} dropped"
            )
            return
        lease = f"taskrun:{start.task_run_id}:{start.attempt}"
        self._claimed_attempts.add(key)
        try:
            await self._fenced_execute(start, lease)
        finally:
            self._claimed_attempts.discard(key)

    async def _fenced_execute(self, start: TaskRunStart, lease: str) -> None:
        if not await self._store.acquire_lease(lease, self._worker_id, self._lease_ttl):
            logger.debug(
                f"Worker {self._worker_id}: {start.task_id} attempt {start.attempt} "
                f"is running elsewhere"
            )
            return
        try:
            if not await self._is_current(start):
                logger.debug(
                    f"Worker {self._worker_id}: dropping stale TaskRunStart for "
                    f"{start.task_id} attempt {start.attempt}"
                )
                return

            try:
                task_plugin = self._registry.create(start.task_type, dict(start.config))
            except FlowLoadError as e:
                await self._report(
                    start,
                    TaskRunState.FAILED,
                    error=ErrorDetail(type=type(e).__name__, message=str(e), retryable=False),
                )
                return

            run_context = RunContext(
                start.variables,
                blob_store=self._blob_store,
                secrets=self._secrets,
                blob_inline_limit=self._blob_inline_limit,
            )
            if isinstance(task_plugin, FlowableTask):
                await self._spawn_subflow(start, task_plugin, run_context)
                return
            await self._run_task(start, task_plugin, run_context, lease)
        finally:
            await self._store.release_lease(lease, self._worker_id)

    async def _is_current(self, start: TaskRunStart) -> bool:
        if await self._store.lease_owner(_done_marker(start.task_run_id, start.attempt)) is not None:
            return False
        execution = await self._store.find_execution(start.execution_id)
        if execution is None:
            # Not saved yet is impossible: the Executor saves before dispatching
            return False
        if execution.is_terminal or execution.state is ExecutionState.KILLING:
            return False
        run = execution.find_task_run(start.task_run_id)
        return run is not None and run.attempt == start.attempt and not run.is_terminal

    async def _run_task(
        self, start: TaskRunStart, task_plugin: Any, run_context: RunContext, lease: str
    ) -> None:
        key = (start.task_run_id, start.attempt)
        running = _RunningAttempt(run_context)
        self._running_attempts[key] = running
        heartbeat = asyncio.create_task(self._heartbeat_loop(start, lease))
        state = TaskRunState.SUCCESS
        outputs: dict[str, Any] = {}
        error: ErrorDetail | None = None
        try:
            async with run_context:
                try:
                    if not isinstance(task_plugin, RunnableTask):
                        raise WorkerError(f"Plugin type '{start.task_type}' cannot run inline")
                    outputs = await self._invoke(task_plugin, run_context, start.timeout, running)
                    outputs = await run_context.externalize(outputs)
                except TaskKilledError as e:
                    state = TaskRunState.KILLED
                    error = ErrorDetail.from_exception(e)
                except TaskTimeoutError as e:
                    run_context.logger.error(str(e))
                    state = TaskRunState.FAILED
                    error = ErrorDetail.from_exception(e)
                except Exception as e:
                    run_context.logger.error(f"Task failed: {e}")
                    state = TaskRunState.FAILED
                    error = ErrorDetail.from_exception(e)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            if running.kill_timer is not None:
                running.kill_timer.cancel()
            self._running_attempts.pop(key, None)

        await self._report(
            start,
            state,
            outputs=outputs,
            error=error,
            logs=tuple(run_context.logs),
            metrics=run_context.metrics,
        )

    async def _invoke(
        self,
        task_plugin: RunnableTask,
        run_context: RunContext,
        timeout: float | None,
        running: _RunningAttempt,
    ) -> dict[str, Any]:
        """Run the plugin in its own task so a kill can cancel it alone."""
        running.task = asyncio.create_task(task_plugin.run(run_context))
        if running.killed:
            running.kill_timer = asyncio.get_running_loop().call_later(
                self._kill_grace, running.task.cancel
            )
        try:
            result = await asyncio.wait_for(running.task, timeout)
        except TimeoutError:
            raise TaskTimeoutError(timeout) from None
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if running.killed and running.task.cancelled() and not (current and current.cancelling()):
                raise TaskKilledError() from None
            raise
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise TaskExecutionError(
                f"Task returned {type(result).__name__}, expected a mapping of outputs",
                retryable=False,
            )
        return result

    async def _heartbeat_loop(self, start: TaskRunStart, lease: str) -> None:
        """Heartbeat immediately, then every heartbeat_interval; renews the fencing lease."""
        while True:
            try:
                await self._queue.publish(
                    EXECUTOR_TOPIC,
                    TaskRunHeartbeat(
                        execution_id=start.execution_id,
                        task_run_id=start.task_run_id,
                        attempt=start.attempt,
                        worker_id=self._worker_id,
                        at=utcnow(),
                    ),
                )
                if not await self._store.acquire_lease(lease, self._worker_id, self._lease_ttl):
                    logger.warning(
                        f"Worker {self._worker_id}: lost lease {lease} while {start.task_id} runs"
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Worker {self._worker_id}: heartbeat failed for {start.task_id}: {e}")
            await asyncio.sleep(self._heartbeat_interval)

    async def _spawn_subflow(
        self, start: TaskRunStart, task_plugin: FlowableTask, run_context: RunContext
    ) -> None:
        async with run_context:
            try:
                request = task_plugin.create_subflow(run_context)
            except Exception as e:
                run_context.logger.error(f"Subflow request failed: {e}")
                error = ErrorDetail.from_exception(e)
            else:
                await self._queue.publish(
                    EXECUTOR_TOPIC,
                    SubflowSpawn(
                        execution_id=start.execution_id,
                        task_run_id=start.task_run_id,
                        attempt=start.attempt,
                        flow_ref=FlowRef(request.namespace, request.flow_id, request.revision),
                        inputs=dict(request.inputs),
                        labels=dict(request.labels),
                        wait=request.wait,
                        transmit_failed=request.transmit_failed,
                    ),
                )
                logger.debug(
                    f"Worker {self._worker_id}: {start.task_id} requested subflow "
                    f"{request.namespace}.{request.flow_id}"
                )
                return
        await self._report(
            start, TaskRunState.FAILED, error=error, logs=tuple(run_context.logs)
        )

    async def _report(
        self,
        start: TaskRunStart,
        state: TaskRunState,
        outputs: dict[str, Any] | None = None,
        error: ErrorDetail | None = None,
        logs: tuple = (),
        metrics: dict[str, float] | None = None,
    ) -> None:
        # The marker outlives the fencing lease: duplicates arriving before the
        # Executor applies this outcome must not run the attempt again
        await self._store.acquire_lease(
            _done_marker(start.task_run_id, start.attempt), self._worker_id, self._marker_ttl
        )
        await self._queue.publish(
            EXECUTOR_TOPIC,
            TaskRunEnded(
                execution_id=start.execution_id,
                task_run_id=start.task_run_id,
                task_id=start.task_id,
                iteration=start.iteration,
                attempt=start.attempt,
                state=state,
                outputs=outputs or {},
                error=error,
                logs=logs,
                metrics=metrics or {},
                worker_id=self._worker_id,
            ),
        )
        logger.debug(
            f"Worker {self._worker_id}: {start.task_id}[{start.iteration}] "
            f"attempt {start.attempt} ended {state}"
        )

    # ========================================================================
    # Polling triggers
    # ========================================================================

    async def _evaluate_trigger(self, request: TriggerEvaluate) -> None:
        flow = await self._store.get_flow(
            request.flow_ref.namespace, request.flow_ref.id, request.flow_ref.revision
        )
        if flow is None:
            logger.warning(f"Worker {self._worker_id}: flow {request.flow_ref} not found")
            return
        trigger = flow.find_trigger(request.trigger_id)

        fire = None
        error = None
        run_context = RunContext(
            trigger_variables(flow, trigger.id),
            blob_store=self._blob_store,
            secrets=self._secrets,
            blob_inline_limit=self._blob_inline_limit,
        )
        async with run_context:
            try:
                trigger_plugin = self._registry.create(trigger.type, dict(trigger.config))
                if not isinstance(trigger_plugin, PollingTrigger):
                    raise WorkerError(f"Trigger type '{trigger.type}' is not a polling trigger")
                fire = await trigger_plugin.evaluate(run_context, request.watermark)
            except Exception as e:
                logger.warning(
                    f"Worker {self._worker_id}: trigger {flow.uid}.{trigger.id} evaluation failed: {e}"
                )
                error = ErrorDetail.from_exception(e)

        await self._queue.publish(
            SCHEDULER_TOPIC,
            TriggerEvaluated(
                flow_ref=request.flow_ref,
                trigger_id=request.trigger_id,
                request_id=request.request_id,
                fired=fire is not None,
                fire_key=fire.fire_key if fire is not None else None,
                watermark=fire.watermark if fire is not None else request.watermark,
                payload=dict(fire.payload) if fire is not None else {},
                error=error,
            ),
        )


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker and wait for it to stop."""
        await self._worker.shutdown()
        await self._task

    def abort(self) -> None:
        """Cancel the worker loop without waiting for running attempts."""
        self._task.cancel()
