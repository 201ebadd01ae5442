"""Execution and TaskRun records.

Execution and TaskRun state is the only mutable shared resource of the
system. It is mutated exclusively by the Executor that currently owns the
Execution; every other component works on snapshots obtained from the
repository.
"""

from __future__ import annotations

import copy
import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from uuid_extensions import uuid7

from pytaxis.errors import InvalidTransitionError
from pytaxis.models.flow import Branch, Flow, FlowRef
from pytaxis.models.status import ExecutionState, TaskRunState


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """Time-ordered identifier for Executions and TaskRuns."""
    return str(uuid7())


@dataclass(frozen=True)
class ErrorDetail:
    """Serializable description of a failure."""

    type: str
    message: str
    stacktrace: str | None = None
    retryable: bool = True

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorDetail:
        retryable = True
        is_retryable = getattr(error, "is_retryable", None)
        if callable(is_retryable):
            retryable = bool(is_retryable())
        return cls(
            type=type(error).__name__,
            message=str(error) or type(error).__name__,
            stacktrace="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            retryable=retryable,
        )

    def __str__(self) -> str:
        return f"{self.type}: {self.message}"


@dataclass(frozen=True)
class LogEntry:
    """One log line emitted by a task while it ran."""

    timestamp: datetime
    level: str
    message: str
    task_id: str | None = None
    attempt: int | None = None


@dataclass
class Attempt:
    """History record of one attempt of a TaskRun."""

    number: int
    state: TaskRunState = TaskRunState.CREATED
    worker_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: ErrorDetail | None = None


@dataclass
class TaskRun:
    """One Task (and iteration) inside an Execution, with its attempt history."""

    id: str
    execution_id: str
    task_id: str
    iteration: int = 0
    value: Any = None
    branch: Branch = Branch.MAIN
    attempt: int = 1
    state: TaskRunState = TaskRunState.CREATED
    attempts: list[Attempt] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: ErrorDetail | None = None
    pass_through: bool = False
    """SKIPPED because its condition was false; successors still run."""

    logs: list[LogEntry] = field(default_factory=list)
    child_execution_id: str | None = None
    last_heartbeat: datetime | None = None
    not_before: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        execution_id: str,
        task_id: str,
        branch: Branch = Branch.MAIN,
        iteration: int = 0,
        value: Any = None,
    ) -> TaskRun:
        return cls(
            id=new_id(),
            execution_id=execution_id,
            task_id=task_id,
            iteration=iteration,
            value=value,
            branch=branch,
            attempts=[Attempt(number=1)],
        )

    @property
    def current_attempt(self) -> Attempt:
        return self.attempts[-1]

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, target: TaskRunState) -> None:
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(
                f"TaskRun {self.task_id}[{self.iteration}] cannot go from {self.state} to {target}"
            )
        self.state = target
        self.updated_at = utcnow()
        if target is TaskRunState.RETRYING:
            return
        attempt = self.current_attempt
        attempt.state = target
        if target is TaskRunState.RUNNING and attempt.started_at is None:
            attempt.started_at = self.updated_at
        if target.is_terminal:
            attempt.ended_at = self.updated_at

    def next_attempt(self, error: ErrorDetail | None, not_before: datetime | None = None) -> int:
        """Close the current attempt as FAILED and open the next one.

        Returns the new attempt number.
        """
        failed = self.current_attempt
        failed.state = TaskRunState.FAILED
        failed.error = error
        failed.ended_at = utcnow()
        self.transition(TaskRunState.RETRYING)
        self.attempt += 1
        self.attempts.append(Attempt(number=self.attempt))
        self.not_before = not_before
        self.last_heartbeat = None
        self.error = None
        return self.attempt

    def __repr__(self) -> str:
        return (
            f"TaskRun(task_id={self.task_id!r}, iteration={self.iteration}, "
            f"attempt={self.attempt}, state={self.state})"
        )


@dataclass(frozen=True)
class ParentRef:
    """Link from a subflow Execution to the TaskRun that spawned it."""

    execution_id: str
    task_run_id: str
    attempt: int
    transmit_failed: bool = True


@dataclass(frozen=True)
class StateChange:
    state: ExecutionState
    at: datetime


@dataclass
class Execution:
    """One run instance of a Flow."""

    id: str
    namespace: str
    flow_id: str
    flow_revision: int
    state: ExecutionState = ExecutionState.CREATED
    task_runs: list[TaskRun] = field(default_factory=list)
    trigger: dict[str, Any] = field(default_factory=lambda: {"type": "manual"})
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    parent: ParentRef | None = None
    error: ErrorDetail | None = None
    state_history: list[StateChange] = field(default_factory=list)
    kill_requested_at: datetime | None = None
    pending_state: ExecutionState | None = None
    """Outcome computed before listeners run; applied once they are terminal."""

    version: int = 0
    """Monotonic write counter maintained by the repository."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        flow: Flow,
        execution_id: str | None = None,
        trigger: dict[str, Any] | None = None,
        inputs: dict[str, Any] | None = None,
        labels: dict[str, str] | None = None,
        parent: ParentRef | None = None,
    ) -> Execution:
        execution = cls(
            id=execution_id or new_id(),
            namespace=flow.namespace,
            flow_id=flow.id,
            flow_revision=flow.revision,
            trigger=dict(trigger or {"type": "manual"}),
            inputs=dict(inputs or {}),
            labels={**flow.labels, **(labels or {})},
            parent=parent,
        )
        execution.state_history.append(StateChange(ExecutionState.CREATED, execution.created_at))
        return execution

    @property
    def flow_ref(self) -> FlowRef:
        return FlowRef(self.namespace, self.flow_id, self.flow_revision)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, target: ExecutionState) -> None:
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(
                f"Execution {self.id} cannot go from {self.state} to {target}"
            )
        self.state = target
        self.updated_at = utcnow()
        self.state_history.append(StateChange(target, self.updated_at))

    def find_task_run(self, task_run_id: str) -> TaskRun | None:
        for task_run in self.task_runs:
            if task_run.id == task_run_id:
                return task_run
        return None

    def task_runs_for(self, task_id: str) -> list[TaskRun]:
        return sorted(
            (tr for tr in self.task_runs if tr.task_id == task_id),
            key=lambda tr: tr.iteration,
        )

    def has_task_runs(self, task_id: str) -> bool:
        return any(tr.task_id == task_id for tr in self.task_runs)

    def task_state(self, task_id: str) -> TaskRunState | None:
        """Aggregated state of a task over its iterations, None while any is open."""
        runs = self.task_runs_for(task_id)
        if not runs or not all(tr.is_terminal for tr in runs):
            return None
        return merge_task_states([tr.state for tr in runs])

    def task_passes_through(self, task_id: str) -> bool:
        runs = self.task_runs_for(task_id)
        return bool(runs) and all(
            tr.state is TaskRunState.SKIPPED and tr.pass_through for tr in runs
        )

    def in_flight(self, branch: Branch | None = None) -> list[TaskRun]:
        return [
            tr
            for tr in self.task_runs
            if not tr.is_terminal and (branch is None or tr.branch is branch)
        ]

    def outputs_scope(self) -> dict[str, Any]:
        """Accumulated outputs of terminal tasks, keyed by task id.

        Tasks with several iterations expose a list ordered by iteration.
        """
        scope: dict[str, Any] = {}
        task_ids = dict.fromkeys(tr.task_id for tr in self.task_runs)
        for task_id in task_ids:
            runs = self.task_runs_for(task_id)
            if len(runs) == 1 and runs[0].value is None:
                if runs[0].is_terminal:
                    scope[task_id] = runs[0].outputs
            else:
                scope[task_id] = [tr.outputs for tr in runs if tr.is_terminal]
        return scope

    def snapshot(self) -> Execution:
        """Deep copy handed out to readers."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id!r}, flow={self.namespace}.{self.flow_id}, "
            f"state={self.state}, task_runs={len(self.task_runs)})"
        )


def merge_task_states(states: list[TaskRunState]) -> TaskRunState:
    """Aggregate terminal states of iterations of one task.

    FAILED/KILLED dominate, then WARNING, then SUCCESS. A task whose
    iterations were all skipped is SKIPPED.
    """
    if TaskRunState.KILLED in states:
        return TaskRunState.KILLED
    if TaskRunState.FAILED in states:
        return TaskRunState.FAILED
    if TaskRunState.WARNING in states:
        return TaskRunState.WARNING
    if states and all(state is TaskRunState.SKIPPED for state in states):
        return TaskRunState.SKIPPED
    return TaskRunState.SUCCESS
