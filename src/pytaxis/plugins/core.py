"""Built-in plugins.

Tasks:
    pytaxis.core.Log        log a rendered message
    pytaxis.core.Return     expose a rendered value as the `value` output
    pytaxis.core.Sleep      wait, observing kill requests
    pytaxis.core.Fail       fail with a rendered message
    pytaxis.core.WriteBlob  store rendered content in the Blob Store
    pytaxis.core.Subflow    run another Flow as a child Execution

Triggers:
    pytaxis.core.Schedule   cron schedule (croniter)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from pytaxis.core.context import RunContext
from pytaxis.core.loader import parse_duration
from pytaxis.core.plugin import SubflowRequest, plugin
from pytaxis.errors import TaskExecutionError
from pytaxis.models import Execution

_LEVELS = {"TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
           "WARN": logging.WARNING, "WARNING": logging.WARNING, "ERROR": logging.ERROR}


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value


@plugin("pytaxis.core.Log")
@dataclass
class Log:
    """Log a message in the task logs."""

    message: str | list[str]
    level: str = "INFO"

    def __post_init__(self):
        if self.level.upper() not in _LEVELS:
            raise ValueError(f"unknown level '{self.level}', expected one of {sorted(_LEVELS)}")

    async def run(self, run_context: RunContext) -> None:
        level = _LEVELS[self.level.upper()]
        messages = self.message if isinstance(self.message, list) else [self.message]
        for message in messages:
            run_context.logger.log(level, str(run_context.render(message)))


@plugin("pytaxis.core.Return")
@dataclass
class Return:
    """Render a value and expose it as the `value` output."""

    format: Any = None

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        return {"value": run_context.render(self.format)}


@plugin("pytaxis.core.Sleep")
@dataclass
class Sleep:
    """Wait for a duration. A kill request interrupts the wait."""

    duration: Any = 1.0

    def __post_init__(self):
        if not _is_template(self.duration):
            parse_duration(self.duration, "duration")

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        seconds = parse_duration(run_context.render(self.duration), "duration")
        run_context.logger.debug(f"Sleeping {seconds:g}s")
        await run_context.sleep(seconds)
        return {"slept": seconds}


@plugin("pytaxis.core.Fail")
@dataclass
class Fail:
    """Fail the task run, optionally without retries."""

    message: str = "Task failed"
    retryable: bool = True

    async def run(self, run_context: RunContext) -> None:
        raise TaskExecutionError(str(run_context.render(self.message)), retryable=self.retryable)


@plugin("pytaxis.core.WriteBlob")
@dataclass
class WriteBlob:
    """Store rendered content in the Blob Store and output its URI."""

    content: str
    name: str | None = None

    async def run(self, run_context: RunContext) -> dict[str, Any]:
        content = run_context.render(self.content)
        data = content if isinstance(content, bytes) else str(content).encode("utf-8")
        uri = await run_context.put_blob(data, name=run_context.render(self.name))
        run_context.metric("bytes", len(data))
        return {"uri": uri, "size": len(data)}


@plugin("pytaxis.core.Subflow")
@dataclass
class Subflow:
    """Run another Flow as a child Execution.

    With `wait` the task ends when the child ends; its state maps to the task
    state (a failed child fails the task unless `transmitFailed` is false).
    """

    namespace: str
    flow_id: str
    revision: int | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    wait: bool = True
    transmit_failed: bool = True

    def create_subflow(self, run_context: RunContext) -> SubflowRequest:
        return SubflowRequest(
            namespace=run_context.render(self.namespace),
            flow_id=run_context.render(self.flow_id),
            revision=self.revision,
            inputs=run_context.render(dict(self.inputs)),
            labels={k: str(v) for k, v in run_context.render(dict(self.labels)).items()},
            wait=self.wait,
            transmit_failed=self.transmit_failed,
        )

    def outputs_from_child(self, execution: Execution) -> dict[str, Any]:
        return {
            "executionId": execution.id,
            "state": str(execution.state),
            "outputs": dict(execution.outputs),
        }


@plugin("pytaxis.core.Schedule")
@dataclass
class Schedule:
    """Fire on a cron expression, evaluated in `timezone`."""

    cron: str
    timezone: str = "UTC"

    def __post_init__(self):
        if not croniter.is_valid(self.cron):
            raise ValueError(f"invalid cron expression '{self.cron}'")
        try:
            self._zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{self.timezone}'") from e

    def _local(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return moment.astimezone(self._zone)

    def next_fire(self, after: datetime) -> datetime:
        """First fire instant strictly after `after`, in UTC."""
        return croniter(self.cron, self._local(after)).get_next(datetime).astimezone(UTC)

    def previous_fire(self, before: datetime) -> datetime:
        """Last fire instant strictly before `before`, in UTC."""
        return croniter(self.cron, self._local(before)).get_prev(datetime).astimezone(UTC)
