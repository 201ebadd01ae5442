"""
State enums for execution tracking.

Lifecycle of an Execution:
    CREATED → RUNNING → SUCCESS/WARNING/FAILED/KILLED
    RUNNING ⇄ PAUSED, RUNNING → KILLING → KILLED
    CREATED → QUEUED → RUNNING (concurrency limit)

Lifecycle of a TaskRun:
    CREATED → RUNNING → RETRYING → RUNNING → ... → SUCCESS/WARNING/FAILED/KILLED
    CREATED → SKIPPED
"""

from enum import Enum


class ExecutionState(Enum):
    """Status of an Execution."""

    CREATED = "CREATED"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    KILLING = "KILLING"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    FAILED = "FAILED"
    KILLED = "KILLED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is allowed."""
        return self in _EXECUTION_TERMINAL

    @property
    def is_active(self) -> bool:
        """Check if the execution holds a concurrency slot."""
        return self in (ExecutionState.RUNNING, ExecutionState.PAUSED, ExecutionState.KILLING)

    def can_transition_to(self, target: "ExecutionState") -> bool:
        return target in _EXECUTION_TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_EXECUTION_TERMINAL = frozenset(
    {
        ExecutionState.SUCCESS,
        ExecutionState.WARNING,
        ExecutionState.FAILED,
        ExecutionState.KILLED,
        ExecutionState.CANCELLED,
    }
)

_OUTCOMES = frozenset(
    {
        ExecutionState.SUCCESS,
        ExecutionState.WARNING,
        ExecutionState.FAILED,
    }
)

_EXECUTION_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.CREATED: frozenset(
        {
            ExecutionState.RUNNING,
            ExecutionState.QUEUED,
            ExecutionState.CANCELLED,
            ExecutionState.FAILED,
            ExecutionState.KILLING,
            ExecutionState.KILLED,
        }
    ),
    ExecutionState.QUEUED: frozenset(
        {
            ExecutionState.RUNNING,
            ExecutionState.KILLED,
            ExecutionState.CANCELLED,
            ExecutionState.FAILED,
        }
    ),
    ExecutionState.RUNNING: frozenset(
        {ExecutionState.PAUSED, ExecutionState.KILLING, ExecutionState.KILLED} | _OUTCOMES
    ),
    ExecutionState.PAUSED: frozenset(
        {ExecutionState.RUNNING, ExecutionState.KILLING, ExecutionState.KILLED, ExecutionState.FAILED}
    ),
    ExecutionState.KILLING: frozenset({ExecutionState.KILLED}),
    ExecutionState.SUCCESS: frozenset(),
    ExecutionState.WARNING: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.KILLED: frozenset(),
    ExecutionState.CANCELLED: frozenset(),
}


class TaskRunState(Enum):
    """Status of a TaskRun.

    RETRYING is a non-terminal waiting state between two attempts: the failed
    attempt is recorded in the attempt history while the run itself stays open.
    """

    CREATED = "CREATED"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    FAILED = "FAILED"
    KILLED = "KILLED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in _TASK_RUN_TERMINAL

    @property
    def is_successful(self) -> bool:
        """SUCCESS or WARNING: downstream tasks may consume the outputs."""
        return self in (TaskRunState.SUCCESS, TaskRunState.WARNING)

    @property
    def is_failure(self) -> bool:
        return self in (TaskRunState.FAILED, TaskRunState.KILLED)

    def can_transition_to(self, target: "TaskRunState") -> bool:
        return target in _TASK_RUN_TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_TASK_RUN_TERMINAL = frozenset(
    {
        TaskRunState.SUCCESS,
        TaskRunState.WARNING,
        TaskRunState.FAILED,
        TaskRunState.KILLED,
        TaskRunState.SKIPPED,
    }
)

_TASK_RUN_ENDINGS = frozenset(
    {TaskRunState.SUCCESS, TaskRunState.WARNING, TaskRunState.FAILED, TaskRunState.KILLED}
)

_TASK_RUN_TRANSITIONS: dict[TaskRunState, frozenset[TaskRunState]] = {
    TaskRunState.CREATED: frozenset({TaskRunState.RUNNING, TaskRunState.SKIPPED, TaskRunState.RETRYING})
    | _TASK_RUN_ENDINGS,
    TaskRunState.RUNNING: frozenset({TaskRunState.RETRYING}) | _TASK_RUN_ENDINGS,
    TaskRunState.RETRYING: frozenset({TaskRunState.CREATED, TaskRunState.RUNNING, TaskRunState.KILLED})
    | _TASK_RUN_ENDINGS,
    TaskRunState.SUCCESS: frozenset(),
    TaskRunState.WARNING: frozenset(),
    TaskRunState.FAILED: frozenset(),
    TaskRunState.KILLED: frozenset(),
    TaskRunState.SKIPPED: frozenset(),
}
