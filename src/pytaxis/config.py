"""
Runtime settings shared by the Scheduler, Executor and Worker.

Defaults work out of the box for a single-process deployment; every value
can be overridden from the environment with a `PYTAXIS_` prefix, e.g.
`PYTAXIS_HEARTBEAT_GRACE=45`. Each control loop also exposes builder
methods (`with_parallelism()`, ...) which take precedence over settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace

ENV_PREFIX = "PYTAXIS_"


@dataclass(frozen=True)
class Settings:
    worker_parallelism: int = 8
    """Maximum concurrent task runs per Worker instance."""

    executor_parallelism: int = 16
    """Maximum concurrent messages handled per Executor instance."""

    poll_interval: float = 1.0
    """Seconds between queue polls when no notification arrives."""

    heartbeat_interval: float = 5.0
    heartbeat_grace: float = 30.0
    """Seconds without heartbeat before a RUNNING TaskRun is considered orphaned."""

    kill_grace: float = 30.0
    """Seconds the Executor waits for Workers to acknowledge a kill."""

    worker_kill_grace: float = 5.0
    """Seconds a Worker lets a task observe its cancellation flag before cancelling it."""

    lease_ttl: float = 30.0
    scheduler_interval: float = 1.0
    maintenance_interval: float = 5.0
    max_deliveries: int = 5
    visibility_timeout: float = 60.0
    """Seconds before an unacknowledged message is redelivered."""

    redelivery_delay: float = 0.5
    blob_inline_limit: int = 64 * 1024
    """Outputs larger than this (bytes or characters) are stored as blobs."""

    default_dedup_window: float = 3600.0
    attempt_marker_ttl: float = 3600.0
    """Seconds a finished attempt stays fenced against duplicate TaskRunStart messages."""

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """
        Build settings from `PYTAXIS_*` environment variables.

        Unknown variables are ignored; values are converted to the field type.

        Example:
            # $ export PYTAXIS_WORKER_PARALLELISM=32
            settings = Settings.from_env()
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = getattr(cls, f.name)
            try:
                overrides[f.name] = type(default)(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e
        return cls(**overrides)

    def with_overrides(self, **overrides: object) -> Settings:
        return replace(self, **overrides)
