"""
Scheduler - turns Trigger fires and manual submissions into Executions.

Design Principle: Single Responsibility
The Scheduler decides WHEN an Execution starts. It does NOT run anything
(that's the Worker's job) and does NOT own Execution state (that's the
Executor's job): it publishes ExecutionEvent messages.

Each cycle walks the triggers of the latest revision of every Flow:

- Schedule triggers are evaluated in-process from the persisted watermark.
  The first observation only initializes the watermark; afterwards the
  most recent missed instant fires and older missed instants are skipped.
- Polling triggers may do external I/O, so a TriggerEvaluate request is
  sent to the Workers, who answer with TriggerEvaluated on the scheduler
  topic.

Fire sequence (safe under crash and redelivery):
    1. claim dedup key `namespace:flow:trigger:fire_key` for the window
    2. persist the watermark
    3. publish ExecutionEvent
A claim that already exists returns the Execution id it recorded; if that
Execution is not stored yet, the event is published again with the same
id, and the Executor drops duplicates by id.

Ownership: a consistent-hash ring over live scheduler members assigns each
trigger to one instance, confirmed by a per-trigger lease.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from pytaxis.config import Settings
from pytaxis.core.loader import coerce_inputs
from pytaxis.core.plugin import PluginRegistry, ScheduleTrigger
from pytaxis.errors import ConfigValidationError, SchedulerError
from pytaxis.executor.lease import HashRing
from pytaxis.models import (
    EXECUTOR_TOPIC,
    SCHEDULER_TOPIC,
    WORKER_TOPIC,
    Capability,
    Execution,
    ExecutionEvent,
    Flow,
    Message,
    TriggerDef,
    TriggerEvaluate,
    TriggerEvaluated,
    new_id,
    utcnow,
)
from pytaxis.queue import Queue, QueueConsumer
from pytaxis.storage import StateStore

logger = logging.getLogger(__name__)

SCHEDULER_GROUP = "schedulers"
MEMBER_GROUP = "scheduler"

# Upper bound when walking missed instants of a trigger without previous_fire()
MAX_MISSED_FIRES = 10_000


def trigger_key(flow: Flow, trigger: TriggerDef) -> str:
    return f"{flow.namespace}.{flow.id}.{trigger.id}"


def dedup_key(flow: Flow, trigger: TriggerDef, fire_key: str) -> str:
    return f"{flow.namespace}:{flow.id}:{trigger.id}:{fire_key}"


class Scheduler:
    """
    Scheduler for Trigger evaluation and manual submission.

    Design Pattern: Façade Pattern
    Simplifies input validation, Execution creation, dedup and publication
    into `submit()` and one `tick()` per cycle.

    Usage:
        scheduler = Scheduler(store, queue).with_interval(1.0)
        handle = await scheduler.start()

        # Manual run
        execution = await scheduler.submit(flow, inputs={"day": "2024-01-15"})

        await handle.shutdown()
    """

    def __init__(
        self,
        store: StateStore,
        queue: Queue,
        registry: PluginRegistry | None = None,
        scheduler_id: str | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize scheduler with its collaborators.

        Args:
            store: Flow repository, watermarks, dedup claims, leases, membership
            queue: Event bus to publish ExecutionEvent and TriggerEvaluate on
            registry: Plugin registry resolving trigger types
            scheduler_id: Unique member id, generated if omitted
            settings: Runtime settings, overridden by builder methods
        """
        self._store = store
        self._queue = queue
        if registry is None:
            from pytaxis.plugins import default_registry

            registry = default_registry
        self._registry = registry
        self._scheduler_id = scheduler_id or f"scheduler-{new_id()}"
        settings = settings or Settings()
        self._interval = settings.scheduler_interval
        self._lease_ttl = settings.lease_ttl
        self._poll_interval = settings.poll_interval
        self._max_deliveries = settings.max_deliveries
        self._redelivery_delay = settings.redelivery_delay
        self._visibility_timeout = settings.visibility_timeout

        self._ring = HashRing([self._scheduler_id])
        self._owned_triggers: set[str] = set()
        self._next_poll: dict[str, datetime] = {}
        self._pending_polls: dict[str, tuple[str, datetime]] = {}
        self._triggers: dict[tuple[str, str, int, str], Any] = {}

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._consumer: QueueConsumer | None = None

    @property
    def scheduler_id(self) -> str:
        return self._scheduler_id

    # ========================================================================
    # Builder
    # ========================================================================

    def with_interval(self, interval: float) -> Scheduler:
        """Seconds between two scheduling cycles (builder pattern)."""
        self._interval = interval
        return self

    def with_lease_ttl(self, ttl: float) -> Scheduler:
        """Trigger lease and membership TTL; must exceed the cycle interval."""
        self._lease_ttl = ttl
        return self

    def with_poll_interval(self, interval: float) -> Scheduler:
        self._poll_interval = interval
        return self

    # ========================================================================
    # Manual submission
    # ========================================================================

    async def submit(
        self,
        flow: Flow,
        inputs: dict[str, Any] | None = None,
        labels: dict[str, str] | None = None,
        execution_id: str | None = None,
    ) -> Execution:
        """
        Create a manual Execution of a Flow.

        Declared inputs are validated and coerced; the Flow revision is saved
        if the store does not know it yet.

        Args:
            flow: Flow to run
            inputs: Input values by id
            labels: Extra labels merged over the Flow labels
            execution_id: Optional id (generated if not provided)

        Returns:
            The CREATED Execution, as published

        Raises:
            ConfigValidationError: If inputs do not match the declaration
            SchedulerError: If the Flow cannot be stored or the event published
        """
        coerced = coerce_inputs(flow, inputs or {})
        try:
            if await self._store.get_flow(flow.namespace, flow.id, flow.revision) is None:
                await self._store.save_flow(flow)
        except Exception as e:
            raise SchedulerError(f"Failed to store flow {flow.uid}: {e}") from e

        execution = Execution.create(
            flow,
            execution_id=execution_id,
            trigger={"type": "manual"},
            inputs=coerced,
            labels=labels,
        )
        await self._publish(execution)
        logger.info(f"Submitted execution {execution.id} of {flow.uid}")
        return execution

    async def _publish(self, execution: Execution) -> None:
        try:
            await self._queue.publish(EXECUTOR_TOPIC, ExecutionEvent(execution.snapshot()))
        except Exception as e:
            raise SchedulerError(f"Failed to publish execution {execution.id}: {e}") from e

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> SchedulerHandle:
        self._running = True
        self._shutdown_event.clear()
        self._consumer = QueueConsumer(
            self._queue,
            SCHEDULER_TOPIC,
            SCHEDULER_GROUP,
            self._scheduler_id,
            self.handle,
            parallelism=1,
            max_deliveries=self._max_deliveries,
            poll_interval=self._poll_interval,
            redelivery_delay=self._redelivery_delay,
        )
        task = asyncio.create_task(self._run())
        return SchedulerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Scheduler {self._scheduler_id} started")
        consumer_task = asyncio.create_task(self._consumer.run())
        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Scheduler {self._scheduler_id} cycle error: {e}")
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
                except TimeoutError:
                    pass
        finally:
            if not consumer_task.done():
                consumer_task.cancel()
                try:
                    await consumer_task
                except asyncio.CancelledError:
                    pass
            await self._leave()
            logger.info(f"Scheduler {self._scheduler_id} stopped")

    async def _leave(self) -> None:
        """Give up membership and trigger leases so other members take over quickly."""
        try:
            for key in self._owned_triggers:
                await self._store.release_lease(f"trigger:{key}", self._scheduler_id)
            self._owned_triggers.clear()
            await self._store.remove_member(MEMBER_GROUP, self._scheduler_id)
        except Exception as e:
            logger.warning(f"Scheduler {self._scheduler_id} failed to leave cleanly: {e}")

    async def shutdown(self) -> None:
        logger.info(f"Scheduler {self._scheduler_id} shutting down...")
        self._running = False
        if self._consumer is not None:
            await self._consumer.stop(wait=True)
        self._shutdown_event.set()

    # ========================================================================
    # Cycle
    # ========================================================================

    async def tick(self, now: datetime | None = None) -> None:
        """
        Run one scheduling cycle.

        Args:
            now: Cycle time, defaults to the current UTC time
        """
        now = now or utcnow()
        await self._store.register_member(MEMBER_GROUP, self._scheduler_id, self._lease_ttl)
        members = await self._store.live_members(MEMBER_GROUP)
        if self._ring.update(members or [self._scheduler_id]):
            logger.info(f"Scheduler {self._scheduler_id}: ring members {sorted(self._ring.members)}")

        for flow in await self._store.list_flows():
            if flow.disabled:
                continue
            for trigger in flow.triggers:
                if trigger.disabled:
                    continue
                key = trigger_key(flow, trigger)
                if not await self._owns(key):
                    continue
                try:
                    if trigger.capability is Capability.SCHEDULE:
                        await self._evaluate_schedule(flow, trigger, now)
                    elif trigger.capability is Capability.POLLING:
                        await self._request_poll(flow, trigger, now)
                except Exception as e:
                    logger.error(f"Scheduler {self._scheduler_id}: trigger {key} failed: {e}")

    async def _owns(self, key: str) -> bool:
        lease = f"trigger:{key}"
        if self._ring.owner(key) != self._scheduler_id:
            if key in self._owned_triggers:
                self._owned_triggers.discard(key)
                await self._store.release_lease(lease, self._scheduler_id)
            return False
        if not await self._store.acquire_lease(lease, self._scheduler_id, self._lease_ttl):
            if key in self._owned_triggers:
                logger.warning(f"Scheduler {self._scheduler_id}: lost lease on trigger {key}")
                self._owned_triggers.discard(key)
            return False
        self._owned_triggers.add(key)
        return True

    def _plugin(self, flow: Flow, trigger: TriggerDef) -> Any:
        cache_key = (flow.namespace, flow.id, flow.revision, trigger.id)
        instance = self._triggers.get(cache_key)
        if instance is None:
            instance = self._registry.create(trigger.type, dict(trigger.config))
            self._triggers[cache_key] = instance
        return instance

    async def _evaluate_schedule(self, flow: Flow, trigger: TriggerDef, now: datetime) -> None:
        schedule = self._plugin(flow, trigger)
        if not isinstance(schedule, ScheduleTrigger):
            raise SchedulerError(f"Trigger type '{trigger.type}' is not a schedule")

        key = trigger_key(flow, trigger)
        watermark = await self._store.get_watermark(key)
        if watermark is None:
            await self._store.set_watermark(key, now)
            logger.info(f"Trigger {key}: watermark initialized at {now.isoformat()}")
            return

        first = schedule.next_fire(watermark)
        if first > now:
            return
        latest = self._latest_fire(schedule, first, now)
        skipped = latest != first
        if skipped:
            logger.warning(f"Trigger {key}: skipping missed fires before {latest.isoformat()}")

        payload = {"date": latest.isoformat()}
        await self.fire(flow, trigger, latest.isoformat(), latest, payload)

    @staticmethod
    def _latest_fire(schedule: ScheduleTrigger, first: datetime, now: datetime) -> datetime:
        """Most recent fire instant in [first, now]."""
        previous_fire = getattr(schedule, "previous_fire", None)
        if callable(previous_fire):
            latest = max(previous_fire(now), first)
            following = schedule.next_fire(latest)
            return following if following <= now else latest
        latest = first
        for _ in range(MAX_MISSED_FIRES):
            candidate = schedule.next_fire(latest)
            if candidate > now:
                break
            latest = candidate
        return latest

    async def _request_poll(self, flow: Flow, trigger: TriggerDef, now: datetime) -> None:
        key = trigger_key(flow, trigger)
        due = self._next_poll.get(key)
        if due is not None and now < due:
            return
        pending = self._pending_polls.get(key)
        if pending is not None and now < pending[1]:
            return

        watermark = await self._store.get_watermark(key)
        request_id = new_id()
        await self._queue.publish(
            WORKER_TOPIC,
            TriggerEvaluate(
                flow_ref=flow.ref,
                trigger_id=trigger.id,
                watermark=watermark,
                request_id=request_id,
            ),
        )
        # An unanswered request is reissued once the queue would have redelivered it
        self._pending_polls[key] = (request_id, now + timedelta(seconds=self._visibility_timeout))
        self._next_poll[key] = now + timedelta(seconds=trigger.interval)
        logger.debug(f"Trigger {key}: evaluation requested ({request_id})")

    # ========================================================================
    # Evaluation results
    # ========================================================================

    async def handle(self, message: Message) -> None:
        """Process one message of the scheduler topic."""
        if not isinstance(message, TriggerEvaluated):
            logger.warning(
                f"Scheduler {self._scheduler_id}: unexpected message {type(message).__name__}"
            )
            return

        ref = message.flow_ref
        flow = await self._store.get_flow(ref.namespace, ref.id, ref.revision)
        if flow is None:
            logger.warning(f"Scheduler {self._scheduler_id}: flow {ref} not found")
            return
        trigger = flow.find_trigger(message.trigger_id)
        key = trigger_key(flow, trigger)

        pending = self._pending_polls.get(key)
        if pending is not None and pending[0] == message.request_id:
            del self._pending_polls[key]

        if message.error is not None:
            logger.warning(f"Trigger {key}: evaluation failed: {message.error}")
            return
        if not message.fired:
            if message.watermark is not None:
                await self._store.set_watermark(key, message.watermark)
            return
        await self.fire(flow, trigger, message.fire_key, message.watermark, message.payload)

    async def fire(
        self,
        flow: Flow,
        trigger: TriggerDef,
        fire_key: str,
        watermark: Any = None,
        payload: dict[str, Any] | None = None,
    ) -> Execution | None:
        """
        Create the Execution of one trigger fire, at most once per dedup window.

        Returns:
            The published Execution, or None if the fire was a duplicate
        """
        key = trigger_key(flow, trigger)
        claim = dedup_key(flow, trigger, fire_key)
        candidate = new_id()
        existing = await self._store.claim_dedup(claim, candidate, trigger.dedup_window)
        execution_id = existing or candidate

        if existing is not None and await self._store.find_execution(existing) is not None:
            logger.debug(f"Trigger {key}: duplicate fire {fire_key} (execution {existing})")
            if watermark is not None:
                await self._store.set_watermark(key, watermark)
            return None

        try:
            inputs = coerce_inputs(flow, trigger.inputs)
        except ConfigValidationError as e:
            raise SchedulerError(f"Trigger {key} inputs are invalid: {e}") from e

        execution = Execution.create(
            flow,
            execution_id=execution_id,
            trigger={"type": trigger.type, "id": trigger.id, "fireKey": fire_key, **(payload or {})},
            inputs=inputs,
        )
        if watermark is not None:
            await self._store.set_watermark(key, watermark)
        await self._publish(execution)
        logger.info(f"Trigger {key} fired ({fire_key}): execution {execution.id}")
        return execution


class SchedulerHandle:
    """Handle for controlling a running Scheduler.

    Usage:
        handle = await scheduler.start()
        await handle.shutdown()
    """

    def __init__(self, scheduler: Scheduler, task: asyncio.Task):
        self._scheduler = scheduler
        self._task = task

    def scheduler_id(self) -> str:
        return self._scheduler.scheduler_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        await self._scheduler.shutdown()
        await self._task

    def abort(self) -> None:
        self._task.cancel()
