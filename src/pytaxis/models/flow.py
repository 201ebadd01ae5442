"""Flow definition types.

A Flow is immutable once loaded for a given revision: every type here is a
frozen dataclass so a Flow can be shared read-only by the Scheduler, the
Executor and every Worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pytaxis.models.retry import RetryPolicy


class Capability(Enum):
    """What a plugin type can do."""

    RUNNABLE = "runnable"
    """Executes inline inside a Worker and returns outputs."""

    FLOWABLE = "flowable"
    """Delegates to a child Execution; completion is an external event."""

    SCHEDULE = "schedule"
    """Trigger fired from a schedule expression."""

    POLLING = "polling"
    """Trigger evaluated periodically, may perform external I/O."""

    @property
    def is_task(self) -> bool:
        return self in (Capability.RUNNABLE, Capability.FLOWABLE)

    @property
    def is_trigger(self) -> bool:
        return self in (Capability.SCHEDULE, Capability.POLLING)

    def __str__(self) -> str:
        return self.value


class Branch(Enum):
    """Which task list of the Flow a task belongs to."""

    MAIN = "tasks"
    ERRORS = "errors"
    LISTENERS = "listeners"

    def __str__(self) -> str:
        return self.value


class ConcurrencyBehavior(Enum):
    QUEUE = "QUEUE"
    CANCEL = "CANCEL"
    FAIL = "FAIL"


@dataclass(frozen=True)
class Concurrency:
    limit: int
    behavior: ConcurrencyBehavior = ConcurrencyBehavior.QUEUE


@dataclass(frozen=True)
class InputDef:
    """Declared flow input, validated when an Execution is created."""

    id: str
    type: str = "STRING"
    required: bool = True
    default: Any = None
    description: str | None = None


@dataclass(frozen=True)
class TaskDef:
    """One Task node of a Flow."""

    id: str
    type: str
    capability: Capability
    config: dict[str, Any] = field(default_factory=dict)
    retry: RetryPolicy | None = None
    allow_failure: bool = False
    timeout: float | None = None
    """Seconds before the run is forcibly cancelled and reported FAILED."""

    depends_on: tuple[str, ...] | None = None
    """None: follow document order. Empty tuple: root task."""

    condition: str | None = None
    """Template expression; a false result skips the task with pass-through."""

    for_each: Any = None
    """Literal list or template rendering to a list; one TaskRun per value."""

    description: str | None = None

    @property
    def is_flowable(self) -> bool:
        return self.capability is Capability.FLOWABLE

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts if self.retry is not None else 1


@dataclass(frozen=True)
class TriggerDef:
    """One Trigger definition of a Flow."""

    id: str
    type: str
    capability: Capability
    config: dict[str, Any] = field(default_factory=dict)
    dedup_window: float = 3600.0
    """Seconds during which the same fire key cannot create a second Execution."""

    interval: float = 60.0
    """Seconds between two evaluations of a polling trigger."""

    disabled: bool = False
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Flow:
    """Declarative definition of a task graph plus its triggers."""

    namespace: str
    id: str
    revision: int = 1
    tasks: tuple[TaskDef, ...] = ()
    triggers: tuple[TriggerDef, ...] = ()
    errors: tuple[TaskDef, ...] = ()
    listeners: tuple[TaskDef, ...] = ()
    inputs: tuple[InputDef, ...] = ()
    outputs: dict[str, Any] = field(default_factory=dict)
    concurrency: Concurrency | None = None
    labels: dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    description: str | None = None

    @property
    def uid(self) -> str:
        """Namespace-qualified identifier, without revision."""
        return f"{self.namespace}.{self.id}"

    @property
    def ref(self) -> FlowRef:
        return FlowRef(self.namespace, self.id, self.revision)

    def branch(self, branch: Branch) -> tuple[TaskDef, ...]:
        if branch is Branch.MAIN:
            return self.tasks
        if branch is Branch.ERRORS:
            return self.errors
        return self.listeners

    def all_tasks(self) -> list[TaskDef]:
        return [*self.tasks, *self.errors, *self.listeners]

    def find_task(self, task_id: str) -> TaskDef:
        for task in self.all_tasks():
            if task.id == task_id:
                return task
        raise KeyError(f"Task '{task_id}' not found in flow {self.uid}")

    def branch_of(self, task_id: str) -> Branch:
        for branch in Branch:
            if any(task.id == task_id for task in self.branch(branch)):
                return branch
        raise KeyError(f"Task '{task_id}' not found in flow {self.uid}")

    def find_trigger(self, trigger_id: str) -> TriggerDef:
        for trigger in self.triggers:
            if trigger.id == trigger_id:
                return trigger
        raise KeyError(f"Trigger '{trigger_id}' not found in flow {self.uid}")

    def __repr__(self) -> str:
        return (
            f"Flow(namespace={self.namespace!r}, id={self.id!r}, revision={self.revision}, "
            f"tasks={len(self.tasks)}, triggers={len(self.triggers)})"
        )


@dataclass(frozen=True)
class FlowRef:
    """Reference to a Flow revision carried by messages and Executions."""

    namespace: str
    id: str
    revision: int | None = None

    def __str__(self) -> str:
        suffix = f"@{self.revision}" if self.revision is not None else ""
        return f"{self.namespace}.{self.id}{suffix}"
