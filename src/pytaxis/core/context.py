"""Run-scoped execution context handed to plugins.

A RunContext is created by a Worker for exactly one TaskRun attempt (or one
trigger evaluation) and closed on every exit path. It gives plugin code:

- the variable scope (flow, execution, task, taskrun, inputs, outputs,
  trigger, labels, parent)
- lazy template rendering of configuration values (sandboxed Jinja2)
- secrets through the `secret(name)` template function
- the Blob Store binding (`put_blob`, `get_blob`, `externalize`)
- a logger whose records are captured and shipped with the outcome
- metrics and a cancellation flag

Design: Task-Local State (contextvars)
    The active RunContext is also published through a ContextVar so helper
    code deep inside a plugin can reach it without parameter threading.

Usage:
    ```python
    async with RunContext(variables, blob_store=blobs) as run_context:
        url = run_context.render(task.url)
        run_context.logger.info(f"Fetching {url}")
        outputs = await run_context.externalize({"body": payload})
    logs = run_context.logs
    ```
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, BinaryIO

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from pytaxis.errors import TaskKilledError, TemplateRenderError
from pytaxis.models import Execution, Flow, LogEntry, TaskDef, TaskRun, TaskRunState

if TYPE_CHECKING:
    from pytaxis.storage.blob import BlobStore

logger = logging.getLogger(__name__)

TASK_LOGGER_PREFIX = "pytaxis.task"

# Task loggers must pass INFO records to the capture handler even when the
# root logger is left at WARNING.
if logging.getLogger(TASK_LOGGER_PREFIX).level == logging.NOTSET:
    logging.getLogger(TASK_LOGGER_PREFIX).setLevel(logging.INFO)


# =============================================================================
# Secrets
# =============================================================================


class SecretNotFoundError(TemplateRenderError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret '{name}' not found")


class SecretProvider(ABC):
    @abstractmethod
    def get(self, name: str) -> str:
        """Return the secret value.

        Raises:
            SecretNotFoundError: If the secret does not exist
        """
        pass


class EnvSecretProvider(SecretProvider):
    """
    Secrets from base64-encoded environment variables.

    `{{ secret('DB_PASSWORD') }}` reads `SECRET_DB_PASSWORD`.

    Example:
        # $ export SECRET_DB_PASSWORD=$(echo -n hunter2 | base64)
    """

    PREFIX = "SECRET_"

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> str:
        raw = self._environ.get(self.PREFIX + name.upper())
        if raw is None:
            raise SecretNotFoundError(name)
        try:
            return base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise TemplateRenderError(f"Secret '{name}' is not valid base64: {e}") from e


class MappingSecretProvider(SecretProvider):
    """Secrets from a plain mapping (tests, embedded use)."""

    def __init__(self, secrets: Mapping[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def get(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(name) from None


# =============================================================================
# Templating
# =============================================================================

_ENVIRONMENT = SandboxedEnvironment(
    undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True
)
_ENVIRONMENT.filters["json"] = lambda value: json.dumps(value, default=str)
_ENVIRONMENT.filters["from_json"] = json.loads

_SINGLE_EXPRESSION = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)


def _is_template(value: str) -> bool:
    return "{{" in value or "{%" in value


def _secret_function(secrets: SecretProvider | None):
    def secret(name: str) -> str:
        if secrets is None:
            raise SecretNotFoundError(name)
        return secrets.get(name)

    return secret


def evaluate(
    expression: str, variables: Mapping[str, Any], secrets: SecretProvider | None = None
) -> Any:
    """
    Evaluate one expression and return its native value.

    Accepts both a bare expression (`outputs.a.x > 1`) and one wrapped in
    `{{ }}`.

    Raises:
        TemplateRenderError: On syntax errors, undefined variables or
            sandbox violations
    """
    match = _SINGLE_EXPRESSION.match(expression)
    source = match.group("expr") if match else expression
    try:
        compiled = _ENVIRONMENT.compile_expression(source.strip(), undefined_to_none=False)
        result = compiled(**variables, secret=_secret_function(secrets))
    except TemplateRenderError:
        raise
    except TemplateError as e:
        raise TemplateRenderError(f"Cannot evaluate {expression!r}: {e}") from e
    if isinstance(result, Undefined):
        raise TemplateRenderError(f"Cannot evaluate {expression!r}: undefined value")
    return result


def render(
    value: Any, variables: Mapping[str, Any], secrets: SecretProvider | None = None
) -> Any:
    """
    Render templated values recursively.

    Strings consisting of a single `{{ expression }}` keep the native type of
    the expression (`"{{ outputs.a.count }}"` renders to an int); other
    template strings render to text. Lists and dicts are rendered element
    by element, other values are returned unchanged.
    """
    if isinstance(value, str):
        if not _is_template(value):
            return value
        if _SINGLE_EXPRESSION.match(value):
            return evaluate(value, variables, secrets)
        try:
            template = _ENVIRONMENT.from_string(value)
            return template.render(**variables, secret=_secret_function(secrets))
        except TemplateRenderError:
            raise
        except TemplateError as e:
            raise TemplateRenderError(f"Cannot render {value!r}: {e}") from e
    if isinstance(value, Mapping):
        return {key: render(item, variables, secrets) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [render(item, variables, secrets) for item in value]
    return value


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "none", "null")
    return bool(value)


def evaluate_condition(
    expression: str, variables: Mapping[str, Any], secrets: SecretProvider | None = None
) -> bool:
    return is_truthy(evaluate(expression, variables, secrets))


# =============================================================================
# Variable scope
# =============================================================================


def execution_variables(flow: Flow, execution: Execution) -> dict[str, Any]:
    """Variables shared by every task of an Execution."""
    variables: dict[str, Any] = {
        "flow": {"namespace": flow.namespace, "id": flow.id, "revision": flow.revision},
        "execution": {
            "id": execution.id,
            "state": str(execution.pending_state or execution.state),
            "startDate": execution.created_at,
        },
        "inputs": dict(execution.inputs),
        "outputs": execution.outputs_scope(),
        "trigger": dict(execution.trigger),
        "labels": dict(execution.labels),
        "errors": [
            {"taskId": tr.task_id, "iteration": tr.iteration, "message": str(tr.error)}
            for tr in execution.task_runs
            if tr.state is TaskRunState.FAILED and tr.error is not None
        ],
    }
    if execution.parent is not None:
        variables["parent"] = {
            "executionId": execution.parent.execution_id,
            "taskRunId": execution.parent.task_run_id,
        }
    return variables


def task_variables(
    flow: Flow, execution: Execution, task: TaskDef, task_run: TaskRun | None = None
) -> dict[str, Any]:
    """Variables for one TaskRun: the execution scope plus `task` and `taskrun`."""
    variables = execution_variables(flow, execution)
    variables["task"] = {"id": task.id, "type": task.type}
    if task_run is not None:
        variables["taskrun"] = {
            "id": task_run.id,
            "attempt": task_run.attempt,
            "iteration": task_run.iteration,
            "value": task_run.value,
        }
    return variables


def trigger_variables(flow: Flow, trigger_id: str) -> dict[str, Any]:
    return {
        "flow": {"namespace": flow.namespace, "id": flow.id, "revision": flow.revision},
        "trigger": {"id": trigger_id},
        "labels": dict(flow.labels),
    }


# =============================================================================
# Log capture
# =============================================================================


class _CaptureHandler(logging.Handler):
    """Collects the records of one RunContext as LogEntry values."""

    def __init__(self, context_id: str, task_id: str | None, attempt: int | None):
        super().__init__(logging.DEBUG)
        self.context_id = context_id
        self.task_id = task_id
        self.attempt = attempt
        self.entries: list[LogEntry] = []

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, "run_context_id", None) != self.context_id:
            return
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        self.entries.append(
            LogEntry(
                timestamp=datetime.fromtimestamp(record.created, UTC),
                level=record.levelname,
                message=message,
                task_id=self.task_id,
                attempt=self.attempt,
            )
        )


# =============================================================================
# RunContext
# =============================================================================

CURRENT_RUN_CONTEXT: ContextVar[RunContext | None] = ContextVar(
    "current_run_context", default=None
)
"""RunContext of the task executing in the current asyncio task."""


def get_current_run_context() -> RunContext:
    """
    Return the active RunContext.

    Raises:
        RuntimeError: If called outside of a running task
    """
    run_context = CURRENT_RUN_CONTEXT.get()
    if run_context is None:
        raise RuntimeError("No RunContext is active; call this from inside a running task")
    return run_context


class RunContext:
    """
    Execution-scoped context bound to one TaskRun attempt.

    Args:
        variables: Variable scope, usually built by `task_variables()`
        blob_store: Blob Store binding, optional for tasks that never use blobs
        secrets: Secret provider for `secret(name)`, defaults to environment
        blob_inline_limit: Strings longer than this are externalized
    """

    def __init__(
        self,
        variables: Mapping[str, Any],
        blob_store: BlobStore | None = None,
        secrets: SecretProvider | None = None,
        blob_inline_limit: int = 64 * 1024,
    ):
        self.variables: dict[str, Any] = dict(variables)
        self.blob_store = blob_store
        self.secrets = secrets if secrets is not None else EnvSecretProvider()
        self.blob_inline_limit = blob_inline_limit

        flow = self.variables.get("flow", {})
        execution = self.variables.get("execution", {})
        task = self.variables.get("task", {})
        taskrun = self.variables.get("taskrun", {})
        self.namespace: str | None = flow.get("namespace")
        self.flow_id: str | None = flow.get("id")
        self.execution_id: str | None = execution.get("id")
        self.task_id: str | None = task.get("id")
        self.task_run_id: str | None = taskrun.get("id")
        self.attempt: int | None = taskrun.get("attempt")

        self._context_id = f"{self.task_run_id or self.flow_id}:{self.attempt}:{id(self)}"
        logger_name = ".".join(
            part for part in (TASK_LOGGER_PREFIX, self.flow_id, self.task_id) if part
        )
        self._base_logger = logging.getLogger(logger_name)
        self._capture = _CaptureHandler(self._context_id, self.task_id, self.attempt)
        self._base_logger.addHandler(self._capture)
        self.logger = logging.LoggerAdapter(
            self._base_logger,
            {
                "run_context_id": self._context_id,
                "execution_id": self.execution_id,
                "task_id": self.task_id,
                "attempt": self.attempt,
            },
        )

        self.cancelled = asyncio.Event()
        self._metrics: dict[str, float] = {}
        self._closed = False
        self._token: Token[RunContext | None] | None = None

    # -------------------------------------------------------------------------
    # Templating
    # -------------------------------------------------------------------------

    def render(self, value: Any) -> Any:
        """Render a templated value against this context's variables."""
        return render(value, self.variables, self.secrets)

    def evaluate(self, expression: str) -> Any:
        return evaluate(expression, self.variables, self.secrets)

    def evaluate_condition(self, expression: str) -> bool:
        return evaluate_condition(expression, self.variables, self.secrets)

    def secret(self, name: str) -> str:
        return self.secrets.get(name)

    # -------------------------------------------------------------------------
    # Blob Store
    # -------------------------------------------------------------------------

    @property
    def blob_prefix(self) -> str:
        parts = (self.namespace, self.flow_id, self.execution_id, self.task_id)
        return "/".join(part for part in parts if part)

    def _require_blob_store(self) -> BlobStore:
        if self.blob_store is None:
            raise RuntimeError("No Blob Store is bound to this RunContext")
        return self.blob_store

    async def put_blob(self, data: bytes | BinaryIO, name: str | None = None) -> str:
        return await self._require_blob_store().put(data, prefix=self.blob_prefix, name=name)

    async def get_blob(self, uri: str) -> BinaryIO:
        return await self._require_blob_store().get(uri)

    async def externalize(self, outputs: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Replace large output values by Blob Store URIs.

        Bytes values and strings longer than `blob_inline_limit` are stored;
        nested dicts and lists are walked.
        """
        if not outputs:
            return {}
        if self.blob_store is None:
            return dict(outputs)
        return {key: await self._externalize_value(value) for key, value in outputs.items()}

    async def _externalize_value(self, value: Any) -> Any:
        if isinstance(value, bytes | bytearray):
            return await self.put_blob(bytes(value))
        if isinstance(value, str) and len(value) > self.blob_inline_limit:
            return await self.put_blob(value.encode("utf-8"))
        if isinstance(value, Mapping):
            return {k: await self._externalize_value(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [await self._externalize_value(v) for v in value]
        return value

    # -------------------------------------------------------------------------
    # Metrics and cancellation
    # -------------------------------------------------------------------------

    def metric(self, name: str, value: float = 1.0) -> None:
        """Add to a named counter reported with the TaskRun outcome."""
        self._metrics[name] = self._metrics.get(name, 0.0) + float(value)

    @property
    def metrics(self) -> dict[str, float]:
        return dict(self._metrics)

    def kill(self) -> None:
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def check_cancelled(self) -> None:
        """Raise TaskKilledError if a kill was requested."""
        if self.cancelled.is_set():
            raise TaskKilledError()

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking up early with TaskKilledError on cancellation."""
        try:
            await asyncio.wait_for(self.cancelled.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise TaskKilledError()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def logs(self) -> list[LogEntry]:
        return list(self._capture.entries)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Detach log capture. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._base_logger.removeHandler(self._capture)

    async def __aenter__(self) -> RunContext:
        self._token = CURRENT_RUN_CONTEXT.set(self)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            CURRENT_RUN_CONTEXT.reset(self._token)
            self._token = None
        self.close()

    def __repr__(self) -> str:
        return (
            f"RunContext(execution_id={self.execution_id!r}, task_id={self.task_id!r}, "
            f"attempt={self.attempt})"
        )
