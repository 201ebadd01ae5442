"""Queue message contracts.

Messages are plain frozen dataclasses exchanged between the Scheduler, the
Executor and the Workers. Every message declares a partition key so a
transport that supports partitioning can keep per-Execution (or per-Trigger)
ordering; consumers never rely on it and key all transitions on explicit
attempt numbers instead.

Topics:
    executor        ExecutionEvent, TaskRunEnded, TaskRunHeartbeat, KillRequest,
                    SubflowSpawn, SubflowExecutionEnd, PauseRequest, ResumeRequest
    worker          TaskRunStart, TriggerEvaluate
    worker.control  KillTaskRun (broadcast, one consumer group per worker)
    scheduler       TriggerEvaluated
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pytaxis.models.execution import ErrorDetail, Execution, LogEntry
from pytaxis.models.flow import FlowRef
from pytaxis.models.status import TaskRunState

EXECUTOR_TOPIC = "executor"
WORKER_TOPIC = "worker"
WORKER_CONTROL_TOPIC = "worker.control"
SCHEDULER_TOPIC = "scheduler"


@dataclass(frozen=True)
class Message:
    @property
    def partition_key(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class ExecutionEvent(Message):
    """A new (or re-submitted) Execution for the Executor to own."""

    execution: Execution

    @property
    def execution_id(self) -> str:
        return self.execution.id

    @property
    def flow_ref(self) -> FlowRef:
        return self.execution.flow_ref

    @property
    def partition_key(self) -> str:
        return self.execution.id


@dataclass(frozen=True)
class TaskRunStart(Message):
    """Request for a Worker to run one attempt of one TaskRun."""

    execution_id: str
    task_run_id: str
    task_id: str
    iteration: int
    attempt: int
    flow_ref: FlowRef
    task_type: str
    config: dict[str, Any]
    """Raw task configuration; templates are rendered lazily by the RunContext."""

    variables: dict[str, Any] = field(default_factory=dict)
    """Execution variable scope at dispatch time."""

    timeout: float | None = None

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class TaskRunEnded(Message):
    """Outcome of one attempt, reported by a Worker (or synthesized by the Executor)."""

    execution_id: str
    task_run_id: str
    task_id: str
    iteration: int
    attempt: int
    state: TaskRunState
    outputs: dict[str, Any] = field(default_factory=dict)
    error: ErrorDetail | None = None
    logs: tuple[LogEntry, ...] = ()
    metrics: dict[str, float] = field(default_factory=dict)
    worker_id: str | None = None

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class TaskRunHeartbeat(Message):
    execution_id: str
    task_run_id: str
    attempt: int
    worker_id: str
    at: datetime

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class KillRequest(Message):
    execution_id: str

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class PauseRequest(Message):
    execution_id: str

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class ResumeRequest(Message):
    execution_id: str

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class KillTaskRun(Message):
    """Best-effort cancellation signal broadcast to every Worker."""

    execution_id: str
    task_run_id: str
    attempt: int

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class SubflowSpawn(Message):
    """A Worker asks the Executor to create a child Execution for a flowable task."""

    execution_id: str
    task_run_id: str
    attempt: int
    flow_ref: FlowRef
    inputs: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    wait: bool = True
    transmit_failed: bool = True

    @property
    def partition_key(self) -> str:
        return self.execution_id


@dataclass(frozen=True)
class SubflowExecutionEnd(Message):
    """A child Execution reached a terminal state."""

    parent_execution_id: str
    parent_task_run_id: str
    parent_attempt: int
    child_execution_id: str
    child_state: Any
    child_outputs: dict[str, Any] = field(default_factory=dict)
    transmit_failed: bool = True

    @property
    def partition_key(self) -> str:
        return self.parent_execution_id


@dataclass(frozen=True)
class TriggerEvaluate(Message):
    """Request for a Worker to evaluate a polling trigger."""

    flow_ref: FlowRef
    trigger_id: str
    watermark: Any
    request_id: str

    @property
    def partition_key(self) -> str:
        return f"{self.flow_ref.namespace}.{self.flow_ref.id}.{self.trigger_id}"


@dataclass(frozen=True)
class TriggerEvaluated(Message):
    """Result of a polling trigger evaluation, consumed by the Scheduler."""

    flow_ref: FlowRef
    trigger_id: str
    request_id: str
    fired: bool
    fire_key: str | None = None
    watermark: Any = None
    payload: dict[str, Any] = field(default_factory=dict)
    error: ErrorDetail | None = None

    @property
    def partition_key(self) -> str:
        return f"{self.flow_ref.namespace}.{self.flow_ref.id}.{self.trigger_id}"
