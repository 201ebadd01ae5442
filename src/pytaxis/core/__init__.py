"""
Core building blocks of pytaxis.

This module contains the pieces every control loop shares:
- Plugin capability model: PluginInfo, @plugin, PluginRegistry and the
  RunnableTask/FlowableTask/ScheduleTrigger/PollingTrigger protocols
- Flow loading: load_flow(), coerce_inputs(), parse_duration()
- Flow graph: FlowGraph, Decision
- RunContext: task-local execution context, templating and secrets
- Error taxonomy (re-exported from pytaxis.errors)
"""

from pytaxis.core.context import (
    CURRENT_RUN_CONTEXT,
    EnvSecretProvider,
    MappingSecretProvider,
    RunContext,
    SecretNotFoundError,
    SecretProvider,
    evaluate,
    evaluate_condition,
    execution_variables,
    get_current_run_context,
    render,
    task_variables,
    trigger_variables,
)
from pytaxis.core.graph import Decision, FlowGraph
from pytaxis.core.loader import coerce_inputs, load_flow, load_flow_file, parse_duration, parse_retry
from pytaxis.core.plugin import (
    FlowableTask,
    PluginInfo,
    PluginRegistry,
    PollingTrigger,
    RunnableTask,
    ScheduleTrigger,
    SubflowRequest,
    TriggerFire,
    plugin,
    plugin_info,
)
from pytaxis.errors import (
    ConfigValidationError,
    DeliveryError,
    ExecutorError,
    FlowLoadError,
    InvalidTransitionError,
    OrphanedRunError,
    PluginResolutionError,
    PytaxisError,
    QueueError,
    SchedulerError,
    StaleWriteError,
    StorageError,
    TaskExecutionError,
    TaskKilledError,
    TaskTimeoutError,
    TemplateRenderError,
    WorkerError,
)

__all__ = [
    "CURRENT_RUN_CONTEXT",
    "EnvSecretProvider",
    "MappingSecretProvider",
    "RunContext",
    "SecretNotFoundError",
    "SecretProvider",
    "evaluate",
    "evaluate_condition",
    "execution_variables",
    "get_current_run_context",
    "render",
    "task_variables",
    "trigger_variables",
    "Decision",
    "FlowGraph",
    "coerce_inputs",
    "load_flow",
    "load_flow_file",
    "parse_duration",
    "parse_retry",
    "FlowableTask",
    "PluginInfo",
    "PluginRegistry",
    "PollingTrigger",
    "RunnableTask",
    "ScheduleTrigger",
    "SubflowRequest",
    "TriggerFire",
    "plugin",
    "plugin_info",
    "ConfigValidationError",
    "DeliveryError",
    "ExecutorError",
    "FlowLoadError",
    "InvalidTransitionError",
    "OrphanedRunError",
    "PluginResolutionError",
    "PytaxisError",
    "QueueError",
    "SchedulerError",
    "StaleWriteError",
    "StorageError",
    "TaskExecutionError",
    "TaskKilledError",
    "TaskTimeoutError",
    "TemplateRenderError",
    "WorkerError",
]
