"""Core data models for workflow orchestration.

Defines the Flow definition types, Execution/TaskRun records, state enums,
retry policy and queue message contracts.

Design: Dependency-Free Models
These types have no dependencies on core, storage or executor modules to
prevent circular imports and enable clean layering.
"""

from pytaxis.models.execution import (
    Attempt,
    ErrorDetail,
    Execution,
    LogEntry,
    ParentRef,
    StateChange,
    TaskRun,
    merge_task_states,
    new_id,
    utcnow,
)
from pytaxis.models.flow import (
    Branch,
    Capability,
    Concurrency,
    ConcurrencyBehavior,
    Flow,
    FlowRef,
    InputDef,
    TaskDef,
    TriggerDef,
)
from pytaxis.models.messages import (
    EXECUTOR_TOPIC,
    SCHEDULER_TOPIC,
    WORKER_CONTROL_TOPIC,
    WORKER_TOPIC,
    ExecutionEvent,
    KillRequest,
    KillTaskRun,
    Message,
    PauseRequest,
    ResumeRequest,
    SubflowExecutionEnd,
    SubflowSpawn,
    TaskRunEnded,
    TaskRunHeartbeat,
    TaskRunStart,
    TriggerEvaluate,
    TriggerEvaluated,
)
from pytaxis.models.retry import BackoffKind, RetryPolicy
from pytaxis.models.status import ExecutionState, TaskRunState

__all__ = [
    "Attempt",
    "ErrorDetail",
    "Execution",
    "LogEntry",
    "ParentRef",
    "StateChange",
    "TaskRun",
    "merge_task_states",
    "new_id",
    "utcnow",
    "Branch",
    "Capability",
    "Concurrency",
    "ConcurrencyBehavior",
    "Flow",
    "FlowRef",
    "InputDef",
    "TaskDef",
    "TriggerDef",
    "EXECUTOR_TOPIC",
    "SCHEDULER_TOPIC",
    "WORKER_CONTROL_TOPIC",
    "WORKER_TOPIC",
    "ExecutionEvent",
    "KillRequest",
    "KillTaskRun",
    "Message",
    "PauseRequest",
    "ResumeRequest",
    "SubflowExecutionEnd",
    "SubflowSpawn",
    "TaskRunEnded",
    "TaskRunHeartbeat",
    "TaskRunStart",
    "TriggerEvaluate",
    "TriggerEvaluated",
    "BackoffKind",
    "RetryPolicy",
    "ExecutionState",
    "TaskRunState",
]
