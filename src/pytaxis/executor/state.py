"""
Execution state machine.

ExecutionMachine applies one event at a time to one Execution and records
the messages the event produces in an outbox. It performs no I/O: the
Executor loads the Execution, feeds the event, saves the result (rejecting
stale writes) and only then publishes the outbox.

Transitions:
    start()                 CREATED/QUEUED -> RUNNING, dispatch roots
    on_task_run_ended()     record outcome, retry or finalize the TaskRun, advance
    on_heartbeat()          CREATED/RETRYING TaskRun -> RUNNING
    on_kill()               -> KILLING (or KILLED when nothing runs)
    on_pause/on_resume()    RUNNING <-> PAUSED
    attach_child()          flowable TaskRun waits for (or detaches from) a child
    on_subflow_end()        child terminal state mapped to a TaskRun outcome
    check_orphans()         RUNNING TaskRuns without heartbeat fail (and retry)
    enforce_kill_grace()    KILLING -> KILLED after the grace period

Idempotence: every TaskRun event carries (task run id, attempt). An event
for another attempt, or for a TaskRun already terminal, is a no-op, so
duplicated and reordered deliveries never change the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pytaxis.core.context import (
    SecretProvider,
    evaluate_condition,
    execution_variables,
    render,
    task_variables,
)
from pytaxis.core.graph import Decision, FlowGraph
from pytaxis.errors import OrphanedRunError, TaskKilledError, TemplateRenderError
from pytaxis.models import (
    EXECUTOR_TOPIC,
    WORKER_CONTROL_TOPIC,
    WORKER_TOPIC,
    Branch,
    ErrorDetail,
    Execution,
    ExecutionState,
    Flow,
    KillRequest,
    KillTaskRun,
    Message,
    SubflowExecutionEnd,
    TaskDef,
    TaskRun,
    TaskRunEnded,
    TaskRunStart,
    TaskRunState,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outgoing:
    topic: str
    message: Message
    delay: float | None = None


def fold_outcome(flow: Flow, execution: Execution) -> ExecutionState:
    """
    Fold terminal task states into the Execution outcome.

    Precedence FAILED > WARNING > SUCCESS. A FAILED or KILLED task with
    allowFailure counts as WARNING; SKIPPED tasks are ignored. Error
    handlers count like main tasks, listeners never do.
    """
    failed = False
    warning = False
    for task in (*flow.tasks, *flow.errors):
        state = execution.task_state(task.id)
        if state is None or state is TaskRunState.SKIPPED:
            continue
        if state.is_failure:
            if task.allow_failure:
                warning = True
            else:
                failed = True
        elif state is TaskRunState.WARNING:
            warning = True
    if failed:
        return ExecutionState.FAILED
    if warning:
        return ExecutionState.WARNING
    return ExecutionState.SUCCESS


def map_child_state(child_state: ExecutionState, transmit_failed: bool) -> TaskRunState:
    """Map a subflow's terminal state to the state of the parent TaskRun."""
    if child_state is ExecutionState.SUCCESS:
        return TaskRunState.SUCCESS
    if child_state is ExecutionState.WARNING:
        return TaskRunState.WARNING
    return TaskRunState.FAILED if transmit_failed else TaskRunState.WARNING


class ExecutionMachine:
    """
    Pure state machine for one Execution.

    Args:
        flow: The Flow revision the Execution runs
        execution: Mutable Execution record (owned by the caller)
        graphs: Prebuilt graphs per branch, built from `flow` when omitted
        secrets: Secret provider for conditions, forEach and flow outputs
        now: Clock, replaceable in tests

    Usage:
        machine = ExecutionMachine(flow, execution)
        machine.on_task_run_ended(message)
        await store.save_execution(execution)
        for outgoing in machine.outbox:
            await queue.publish(outgoing.topic, outgoing.message, delay=outgoing.delay)
    """

    def __init__(
        self,
        flow: Flow,
        execution: Execution,
        graphs: dict[Branch, FlowGraph] | None = None,
        secrets: SecretProvider | None = None,
        now=utcnow,
    ):
        self.flow = flow
        self.execution = execution
        self.graphs = graphs or {branch: FlowGraph.of(flow, branch) for branch in Branch}
        self.secrets = secrets
        self._now = now
        self.outbox: list[Outgoing] = []
        self._condition_errors: dict[str, ErrorDetail] = {}

    def _publish(self, topic: str, message: Message, delay: float | None = None) -> None:
        self.outbox.append(Outgoing(topic, message, delay))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> bool:
        """Move a CREATED or QUEUED Execution to RUNNING and dispatch its roots."""
        if self.execution.state not in (ExecutionState.CREATED, ExecutionState.QUEUED):
            return False
        self.execution.transition(ExecutionState.RUNNING)
        logger.debug(f"Execution {self.execution.id} started ({self.flow.uid})")
        self.advance()
        return True

    def queue(self) -> bool:
        if self.execution.state is not ExecutionState.CREATED:
            return False
        self.execution.transition(ExecutionState.QUEUED)
        return True

    def cancel(self) -> bool:
        if self.execution.state not in (ExecutionState.CREATED, ExecutionState.QUEUED):
            return False
        self.execution.transition(ExecutionState.CANCELLED)
        self._finalize()
        return True

    def fail(self, error: ErrorDetail) -> bool:
        """
        Fail the Execution with an operator-visible diagnostic.

        In-flight TaskRuns are closed (FAILED, or KILLED while KILLING) and
        running ones receive a kill signal.
        """
        if self.execution.is_terminal:
            return False
        self.execution.error = error
        for run in self.execution.in_flight():
            if run.state is TaskRunState.RUNNING:
                self._publish(
                    WORKER_CONTROL_TOPIC,
                    KillTaskRun(self.execution.id, run.id, run.attempt),
                )
            if run.child_execution_id is not None:
                self._publish(EXECUTOR_TOPIC, KillRequest(run.child_execution_id))
            run.error = error
            run.current_attempt.error = error
            run.transition(
                TaskRunState.KILLED
                if self.execution.state is ExecutionState.KILLING
                else TaskRunState.FAILED
            )
        if self.execution.state is ExecutionState.KILLING:
            self.execution.transition(ExecutionState.KILLED)
        else:
            self.execution.transition(ExecutionState.FAILED)
        self.execution.pending_state = None
        self._finalize()
        return True

    # ========================================================================
    # TaskRun events
    # ========================================================================

    def _current_run(self, task_run_id: str, attempt: int) -> TaskRun | None:
        """The TaskRun an event targets, or None if the event is stale."""
        run = self.execution.find_task_run(task_run_id)
        if run is None:
            logger.debug(f"Execution {self.execution.id}: unknown task run {task_run_id}")
            return None
        if run.attempt != attempt or run.is_terminal:
            logger.debug(
                f"Execution {self.execution.id}: ignoring event for {run!r} (attempt {attempt})"
            )
            return None
        return run

    def on_task_run_ended(self, message: TaskRunEnded) -> bool:
        """Record the outcome of one attempt.

        Returns:
            True if the Execution changed
        """
        if self.execution.is_terminal:
            return False
        run = self._current_run(message.task_run_id, message.attempt)
        if run is None:
            return False

        state = message.state
        if self.execution.state is ExecutionState.KILLING and not state.is_failure:
            # A kill was requested: late successes are not recorded as such
            state = TaskRunState.KILLED

        run.logs.extend(message.logs)
        if message.worker_id is not None:
            run.current_attempt.worker_id = message.worker_id

        if state is TaskRunState.FAILED and self._should_retry(run, message.error):
            task = self.flow.find_task(run.task_id)
            delay = task.retry.delay_for_attempt(run.attempt) / 1000.0
            run.next_attempt(message.error, self._now() + timedelta(seconds=delay))
            logger.info(
                f"Execution {self.execution.id}: retrying {run.task_id}[{run.iteration}] "
                f"as attempt {run.attempt} in {delay:g}s"
            )
            self._dispatch(task, run, delay=delay)
            return True

        run.outputs = dict(message.outputs)
        run.error = message.error
        run.current_attempt.error = message.error
        run.transition(state)
        logger.debug(f"Execution {self.execution.id}: {run!r}")
        self.advance()
        return True

    def _should_retry(self, run: TaskRun, error: ErrorDetail | None) -> bool:
        if self.execution.state is ExecutionState.KILLING:
            return False
        task = self.flow.find_task(run.task_id)
        if task.retry is None or not task.retry.has_remaining(run.attempt):
            return False
        return error is None or error.retryable

    def on_heartbeat(self, task_run_id: str, attempt: int, worker_id: str, at: datetime) -> bool:
        if self.execution.is_terminal:
            return False
        run = self._current_run(task_run_id, attempt)
        if run is None:
            return False
        if run.state in (TaskRunState.CREATED, TaskRunState.RETRYING):
            run.transition(TaskRunState.RUNNING)
            run.not_before = None
        run.current_attempt.worker_id = worker_id
        if run.last_heartbeat is None or at > run.last_heartbeat:
            run.last_heartbeat = at
        return True

    def attach_child(
        self, task_run_id: str, attempt: int, child_execution_id: str, wait: bool
    ) -> bool:
        """Link a flowable TaskRun to the child Execution created for it."""
        if self.execution.is_terminal:
            return False
        run = self._current_run(task_run_id, attempt)
        if run is None:
            return False
        run.child_execution_id = child_execution_id
        if run.state in (TaskRunState.CREATED, TaskRunState.RETRYING):
            run.transition(TaskRunState.RUNNING)
        run.last_heartbeat = self._now()
        if self.execution.state is ExecutionState.KILLING:
            self._publish(EXECUTOR_TOPIC, KillRequest(child_execution_id))
            return True
        if not wait:
            return self.on_task_run_ended(
                TaskRunEnded(
                    execution_id=self.execution.id,
                    task_run_id=run.id,
                    task_id=run.task_id,
                    iteration=run.iteration,
                    attempt=run.attempt,
                    state=TaskRunState.SUCCESS,
                    outputs={"executionId": child_execution_id},
                )
            )
        return True

    def on_subflow_end(self, message: SubflowExecutionEnd, outputs: dict[str, Any]) -> bool:
        run = self.execution.find_task_run(message.parent_task_run_id)
        if run is None:
            return False
        child_state = ExecutionState(str(message.child_state))
        state = map_child_state(child_state, message.transmit_failed)
        error = None
        if child_state is not ExecutionState.SUCCESS and child_state is not ExecutionState.WARNING:
            error = ErrorDetail(
                type="SubflowFailedError",
                message=f"Subflow execution {message.child_execution_id} ended {child_state}",
                retryable=child_state is not ExecutionState.KILLED,
            )
        return self.on_task_run_ended(
            TaskRunEnded(
                execution_id=self.execution.id,
                task_run_id=run.id,
                task_id=run.task_id,
                iteration=run.iteration,
                attempt=message.parent_attempt,
                state=state,
                outputs=outputs,
                error=error,
            )
        )

    def check_orphans(self, grace: float) -> bool:
        """
        Fail RUNNING TaskRuns whose Worker stopped sending heartbeats.

        The failure is retryable, so a TaskRun with attempts left is
        redispatched. TaskRuns waiting on a child Execution are skipped.
        """
        if self.execution.state not in (ExecutionState.RUNNING, ExecutionState.PAUSED):
            return False
        now = self._now()
        changed = False
        for run in list(self.execution.in_flight()):
            if run.state is not TaskRunState.RUNNING or run.child_execution_id is not None:
                continue
            last_seen = run.last_heartbeat or run.updated_at
            if (now - last_seen).total_seconds() <= grace:
                continue
            error = OrphanedRunError(
                f"No heartbeat from worker {run.current_attempt.worker_id} for "
                f"{(now - last_seen).total_seconds():.0f}s"
            )
            logger.warning(f"Execution {self.execution.id}: {run!r} orphaned: {error}")
            changed |= self.on_task_run_ended(
                TaskRunEnded(
                    execution_id=self.execution.id,
                    task_run_id=run.id,
                    task_id=run.task_id,
                    iteration=run.iteration,
                    attempt=run.attempt,
                    state=TaskRunState.FAILED,
                    error=ErrorDetail(type=type(error).__name__, message=str(error)),
                )
            )
            if self.execution.is_terminal:
                break
        return changed

    def redispatch_pending(self) -> bool:
        """
        Publish TaskRunStart again for TaskRuns no Worker has picked up yet.

        Used when an event turns out to be a redelivery: the previous
        processing may have saved the Execution and crashed before its
        outbox was published.
        """
        if self.execution.state is not ExecutionState.RUNNING:
            return False
        now = self._now()
        for run in self.execution.in_flight():
            if run.state not in (TaskRunState.CREATED, TaskRunState.RETRYING):
                continue
            if run.child_execution_id is not None:
                continue
            delay = None
            if run.not_before is not None and run.not_before > now:
                delay = (run.not_before - now).total_seconds()
            self._dispatch(self.flow.find_task(run.task_id), run, delay=delay)
        return bool(self.outbox)

    # ========================================================================
    # Kill, pause, resume
    # ========================================================================

    def on_kill(self) -> bool:
        execution = self.execution
        if execution.is_terminal or execution.state is ExecutionState.KILLING:
            return False

        if execution.state in (ExecutionState.CREATED, ExecutionState.QUEUED):
            execution.transition(ExecutionState.KILLED)
            self._finalize()
            return True

        execution.transition(ExecutionState.KILLING)
        execution.kill_requested_at = self._now()
        execution.pending_state = None
        logger.info(f"Execution {execution.id}: kill requested")

        killed = TaskKilledError("Execution was killed")
        for run in execution.in_flight():
            if run.state in (TaskRunState.CREATED, TaskRunState.RETRYING) and run.child_execution_id is None:
                run.error = ErrorDetail.from_exception(killed)
                run.transition(TaskRunState.KILLED)
                continue
            if run.child_execution_id is not None:
                self._publish(EXECUTOR_TOPIC, KillRequest(run.child_execution_id))
            else:
                self._publish(WORKER_CONTROL_TOPIC, KillTaskRun(execution.id, run.id, run.attempt))

        self._maybe_finish_kill()
        return True

    def enforce_kill_grace(self, grace: float) -> bool:
        """Force KILLED when Workers did not acknowledge a kill in time."""
        execution = self.execution
        if execution.state is not ExecutionState.KILLING or execution.kill_requested_at is None:
            return False
        if (self._now() - execution.kill_requested_at).total_seconds() < grace:
            return False
        logger.warning(f"Execution {execution.id}: kill grace elapsed, forcing KILLED")
        return self._maybe_finish_kill(force=True)

    def _maybe_finish_kill(self, force: bool = False) -> bool:
        execution = self.execution
        if execution.state is not ExecutionState.KILLING:
            return False
        in_flight = execution.in_flight()
        if in_flight and not force:
            return False
        for run in in_flight:
            run.error = ErrorDetail(
                type="TaskKilledError", message="Killed after grace period", retryable=False
            )
            run.transition(TaskRunState.KILLED)
        execution.transition(ExecutionState.KILLED)
        logger.info(f"Execution {execution.id} completed: {execution.state}")
        self._finalize()
        return True

    def on_pause(self) -> bool:
        if self.execution.state is not ExecutionState.RUNNING:
            return False
        self.execution.transition(ExecutionState.PAUSED)
        return True

    def on_resume(self) -> bool:
        if self.execution.state is not ExecutionState.PAUSED:
            return False
        self.execution.transition(ExecutionState.RUNNING)
        self.advance()
        return True

    # ========================================================================
    # Readiness
    # ========================================================================

    def advance(self) -> None:
        """
        One readiness and completion pass.

        Dispatches every eligible task, records skipped ones, activates the
        error branch on the first main-branch failure, runs listeners once
        the outcome is known and finalizes the Execution when nothing is
        left in flight.
        """
        execution = self.execution
        if execution.state is ExecutionState.KILLING:
            self._maybe_finish_kill()
            return
        if execution.state is not ExecutionState.RUNNING:
            return

        main = self.graphs[Branch.MAIN]
        errors = self.graphs[Branch.ERRORS]

        if execution.pending_state is None:
            while True:
                progressed = self._apply(Branch.MAIN, main.next_eligible(execution, self._condition))
                if len(errors) and main.has_failure(execution):
                    progressed |= self._apply(
                        Branch.ERRORS, errors.next_eligible(execution, self._condition)
                    )
                if not progressed:
                    break

            if execution.in_flight(Branch.MAIN) or execution.in_flight(Branch.ERRORS):
                return
            if not main.is_complete(execution):
                return
            if len(errors) and main.has_failure(execution) and not errors.is_complete(execution):
                return

            execution.pending_state = fold_outcome(self.flow, execution)

        listeners = self.graphs[Branch.LISTENERS]
        if len(listeners):
            while self._apply(Branch.LISTENERS, listeners.next_eligible(execution, self._condition)):
                pass
            if execution.in_flight(Branch.LISTENERS) or not listeners.is_complete(execution):
                return

        self._finish(execution.pending_state)

    def _condition(self, task: TaskDef) -> bool:
        variables = task_variables(self.flow, self.execution, task)
        try:
            return evaluate_condition(task.condition, variables, self.secrets)
        except TemplateRenderError as e:
            # Dispatch the task so it records the failure
            self._condition_errors[task.id] = ErrorDetail.from_exception(e)
            return True

    def _apply(self, branch: Branch, decision: Decision) -> bool:
        if decision.is_empty:
            return False
        execution = self.execution
        graph = self.graphs[branch]

        for task_id, pass_through in decision.skipped.items():
            run = TaskRun.create(execution.id, task_id, branch)
            run.pass_through = pass_through
            run.transition(TaskRunState.SKIPPED)
            execution.task_runs.append(run)

        for task_id in decision.eligible:
            task = graph.task(task_id)
            error = self._condition_errors.pop(task_id, None)
            values: list[Any] | None = None
            if error is None and task.for_each is not None:
                try:
                    values = self._for_each_values(task)
                except TemplateRenderError as e:
                    error = ErrorDetail.from_exception(e)

            if error is not None:
                run = TaskRun.create(execution.id, task_id, branch)
                run.error = error
                run.current_attempt.error = error
                run.transition(TaskRunState.FAILED)
                execution.task_runs.append(run)
                continue

            if values is None:
                run = TaskRun.create(execution.id, task_id, branch)
                execution.task_runs.append(run)
                self._dispatch(task, run)
                continue

            if not values:
                run = TaskRun.create(execution.id, task_id, branch)
                run.pass_through = True
                run.transition(TaskRunState.SKIPPED)
                execution.task_runs.append(run)
                continue

            for iteration, value in enumerate(values):
                run = TaskRun.create(execution.id, task_id, branch, iteration=iteration, value=value)
                execution.task_runs.append(run)
                self._dispatch(task, run)
        return True

    def _for_each_values(self, task: TaskDef) -> list[Any]:
        variables = task_variables(self.flow, self.execution, task)
        values = render(task.for_each, variables, self.secrets)
        if isinstance(values, str):
            raise TemplateRenderError(f"forEach of '{task.id}' rendered to a string, expected a list")
        if isinstance(values, dict) or not hasattr(values, "__iter__"):
            raise TemplateRenderError(f"forEach of '{task.id}' did not render to a list")
        return list(values)

    def _dispatch(self, task: TaskDef, run: TaskRun, delay: float | None = None) -> None:
        self._publish(
            WORKER_TOPIC,
            TaskRunStart(
                execution_id=self.execution.id,
                task_run_id=run.id,
                task_id=task.id,
                iteration=run.iteration,
                attempt=run.attempt,
                flow_ref=self.flow.ref,
                task_type=task.type,
                config=dict(task.config),
                variables=task_variables(self.flow, self.execution, task, run),
                timeout=task.timeout,
            ),
            delay=delay if delay else None,
        )

    # ========================================================================
    # Completion
    # ========================================================================

    def _finish(self, state: ExecutionState) -> None:
        execution = self.execution
        if self.flow.outputs:
            try:
                execution.outputs = render(
                    self.flow.outputs, execution_variables(self.flow, execution), self.secrets
                )
            except TemplateRenderError as e:
                execution.error = ErrorDetail.from_exception(e)
                state = ExecutionState.FAILED
        execution.pending_state = None
        execution.transition(state)
        logger.info(f"Execution {execution.id} completed: {execution.state}")
        self._finalize()

    def _finalize(self) -> None:
        parent = self.execution.parent
        if parent is None:
            return
        self._publish(
            EXECUTOR_TOPIC,
            SubflowExecutionEnd(
                parent_execution_id=parent.execution_id,
                parent_task_run_id=parent.task_run_id,
                parent_attempt=parent.attempt,
                child_execution_id=self.execution.id,
                child_state=self.execution.state,
                child_outputs=dict(self.execution.outputs),
                transmit_failed=parent.transmit_failed,
            ),
        )
