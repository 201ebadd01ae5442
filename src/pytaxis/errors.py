"""
Error taxonomy.

Load-time errors (FlowLoadError and its subclasses) abort Flow activation and
are raised synchronously to the caller. Run-time errors raised by task logic
(TaskExecutionError and its subclasses) are captured by the Worker and
reported inside TaskRunEnded; the Executor folds them into the Execution
status after the retry budget is exhausted.
"""

from __future__ import annotations


class PytaxisError(Exception):
    """Base class for every error raised by pytaxis."""


# =============================================================================
# Load-time errors
# =============================================================================


class FlowLoadError(PytaxisError):
    """A Flow document cannot be activated.

    Attributes:
        path: Location of the problem inside the document (e.g. "tasks[2].type")
    """

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class PluginResolutionError(FlowLoadError):
    """Unknown plugin type, or a type used with the wrong capability."""


class ConfigValidationError(FlowLoadError):
    """Malformed document, invalid identifiers, bad plugin configuration or cycles."""


# =============================================================================
# Run-time errors
# =============================================================================


class TaskExecutionError(PytaxisError):
    """
    Raised by a Task's run logic.

    Recoverable through the Task's retry policy unless `retryable` is False,
    in which case remaining attempts are skipped.

    Example:
        class PaymentError(TaskExecutionError):
            pass

        # Transient error - should retry
        raise PaymentError("Network timeout")

        # Permanent error - should NOT retry
        raise PaymentError("Insufficient funds", retryable=False)
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable

    def is_retryable(self) -> bool:
        return self.retryable


class TaskTimeoutError(TaskExecutionError):
    """The run exceeded the Task's timeout and was cancelled."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Task timed out after {timeout:g}s")


class TaskKilledError(TaskExecutionError):
    """The run observed a kill request."""

    def __init__(self, message: str = "Task was killed"):
        super().__init__(message, retryable=False)


class TemplateRenderError(TaskExecutionError):
    """A templated property or condition could not be rendered.

    Not retryable: rendering the same template against the same variables
    fails the same way.
    """

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class OrphanedRunError(PytaxisError):
    """A RUNNING TaskRun stopped sending heartbeats for longer than the grace period."""


class DeliveryError(PytaxisError):
    """A queue message exhausted its redelivery budget and was dead-lettered."""


class InvalidTransitionError(PytaxisError):
    """An illegal Execution or TaskRun state transition was requested."""


# =============================================================================
# Component errors
# =============================================================================


class StorageError(PytaxisError):
    """Storage operation failed."""


class StaleWriteError(StorageError):
    """An Execution was saved from an outdated snapshot (version mismatch)."""


class QueueError(PytaxisError):
    """Queue operation failed."""


class SchedulerError(PytaxisError):
    """Trigger evaluation or execution submission failed."""


class ExecutorError(PytaxisError):
    """Execution state machine processing failed."""


class WorkerError(PytaxisError):
    """Worker operation failed."""
