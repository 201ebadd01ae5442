"""Flow document loading and validation.

Parses a declarative YAML (or already-decoded mapping) Flow document into an
immutable `Flow`. Every error is detected here so a Flow that loads can be
activated: unknown plugin types raise PluginResolutionError, everything else
(missing fields, bad identifiers, duplicate ids, unknown dependencies,
cycles, invalid plugin configuration, bad durations) raises
ConfigValidationError. Both carry the path of the offending element.

Example document:

    id: hello
    namespace: company.team
    inputs:
      - id: name
        type: STRING
        defaults: world
    tasks:
      - id: greet
        type: pytaxis.core.Log
        message: "Hello {{ inputs.name }}"
        retry:
          type: constant
          maxAttempts: 3
          interval: 2s
    triggers:
      - id: every_minute
        type: pytaxis.core.Schedule
        cron: "* * * * *"
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from pytaxis.core.graph import FlowGraph
from pytaxis.core.plugin import ID_PATTERN, TYPE_PATTERN, PluginRegistry, plugin_info
from pytaxis.errors import ConfigValidationError
from pytaxis.models import (
    BackoffKind,
    Branch,
    Capability,
    Concurrency,
    ConcurrencyBehavior,
    Flow,
    InputDef,
    RetryPolicy,
    TaskDef,
    TriggerDef,
)

NAMESPACE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")

TASK_KEYS = frozenset(
    {
        "id",
        "type",
        "retry",
        "allowFailure",
        "timeout",
        "dependsOn",
        "condition",
        "forEach",
        "description",
    }
)
TRIGGER_KEYS = frozenset({"id", "type", "dedupWindow", "interval", "disabled", "inputs", "description"})
FLOW_KEYS = frozenset(
    {
        "id",
        "namespace",
        "revision",
        "description",
        "tasks",
        "triggers",
        "errors",
        "listeners",
        "inputs",
        "outputs",
        "concurrency",
        "labels",
        "disabled",
    }
)
INPUT_TYPES = frozenset({"STRING", "INT", "FLOAT", "BOOLEAN", "JSON"})

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_ISO_DURATION = re.compile(
    r"^P(?:(?P<d>\d+(?:\.\d+)?)D)?(?:T(?:(?P<h>\d+(?:\.\d+)?)H)?(?:(?P<m>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<s>\d+(?:\.\d+)?)S)?)?$"
)
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0, None: 1.0}


def parse_duration(value: Any, path: str | None = None) -> float:
    """
    Convert a duration to seconds.

    Accepts numbers (seconds), "500ms", "5s", "2m", "1h", "1d" and ISO-8601
    durations such as "PT5S" or "P1DT2H".

    Raises:
        ConfigValidationError: If the value is not a valid, non-negative duration
    """
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid duration {value!r}", path)
    if isinstance(value, int | float):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION.match(value)
        iso = _ISO_DURATION.match(value.strip().upper()) if match is None else None
        if match is not None:
            seconds = float(match.group(1)) * _UNITS[match.group(2)]
        elif iso is not None and any(iso.groupdict().values()):
            parts = {k: float(v) for k, v in iso.groupdict().items() if v is not None}
            seconds = (
                parts.get("d", 0.0) * 86400
                + parts.get("h", 0.0) * 3600
                + parts.get("m", 0.0) * 60
                + parts.get("s", 0.0)
            )
        else:
            raise ConfigValidationError(f"Invalid duration {value!r}", path)
    else:
        raise ConfigValidationError(f"Invalid duration {value!r}", path)

    if seconds < 0:
        raise ConfigValidationError(f"Duration must not be negative: {value!r}", path)
    return seconds


def parse_retry(value: Any, path: str) -> RetryPolicy:
    """Parse a `retry` block into a RetryPolicy."""
    if isinstance(value, int) and not isinstance(value, bool):
        return RetryPolicy.with_max_attempts(value)
    if not isinstance(value, Mapping):
        raise ConfigValidationError("retry must be a mapping or an integer", path)

    kind_name = str(value.get("type", "exponential")).lower()
    try:
        kind = BackoffKind(kind_name)
    except ValueError:
        raise ConfigValidationError(f"Unknown retry type '{kind_name}'", f"{path}.type") from None

    max_attempts = value.get("maxAttempts", 1)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise ConfigValidationError("maxAttempts must be a positive integer", f"{path}.maxAttempts")

    interval_ms = int(parse_duration(value.get("interval", 1), f"{path}.interval") * 1000)
    if kind is BackoffKind.CONSTANT:
        return RetryPolicy.constant(max_attempts, interval_ms)

    max_interval_ms = int(
        parse_duration(value.get("maxInterval", 30), f"{path}.maxInterval") * 1000
    )
    multiplier = value.get("multiplier", 2.0)
    try:
        return RetryPolicy(
            max_attempts=max_attempts,
            initial_delay_ms=interval_ms,
            max_delay_ms=max(max_interval_ms, interval_ms),
            backoff_multiplier=float(multiplier),
            kind=kind,
        )
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(str(e), path) from e


def _require_mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigValidationError("expected a mapping", path)
    return value


def _require_id(value: Any, path: str) -> str:
    if not isinstance(value, str) or not ID_PATTERN.match(value):
        raise ConfigValidationError(
            f"Invalid id {value!r}: must match {ID_PATTERN.pattern}", path
        )
    return value


def _require_type(value: Any, path: str) -> str:
    if not isinstance(value, str) or not TYPE_PATTERN.match(value):
        raise ConfigValidationError(
            f"Invalid type {value!r}: expected dotted identifiers", path
        )
    return value


def _parse_task(raw: Any, path: str, registry: PluginRegistry) -> TaskDef:
    spec = _require_mapping(raw, path)
    task_id = _require_id(spec.get("id"), f"{path}.id")
    type_name = _require_type(spec.get("type"), f"{path}.type")

    plugin_cls = registry.resolve(
        type_name, (Capability.RUNNABLE, Capability.FLOWABLE), f"{path}.type"
    )
    config = {key: value for key, value in spec.items() if key not in TASK_KEYS}
    registry.create(type_name, config, path)

    depends_on = spec.get("dependsOn")
    if depends_on is not None:
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigValidationError("dependsOn must be a list of task ids", f"{path}.dependsOn")
        depends_on = tuple(depends_on)

    condition = spec.get("condition")
    if condition is not None and not isinstance(condition, str):
        raise ConfigValidationError("condition must be a string expression", f"{path}.condition")

    for_each = spec.get("forEach")
    if for_each is not None and not isinstance(for_each, list | str):
        raise ConfigValidationError("forEach must be a list or an expression", f"{path}.forEach")

    allow_failure = spec.get("allowFailure", False)
    if not isinstance(allow_failure, bool):
        raise ConfigValidationError("allowFailure must be a boolean", f"{path}.allowFailure")

    timeout = spec.get("timeout")
    return TaskDef(
        id=task_id,
        type=type_name,
        capability=plugin_info(plugin_cls).capability,
        config=config,
        retry=parse_retry(spec["retry"], f"{path}.retry") if "retry" in spec else None,
        allow_failure=allow_failure,
        timeout=parse_duration(timeout, f"{path}.timeout") if timeout is not None else None,
        depends_on=depends_on,
        condition=condition,
        for_each=for_each,
        description=spec.get("description"),
    )


def _parse_trigger(
    raw: Any, path: str, registry: PluginRegistry, default_dedup_window: float
) -> TriggerDef:
    spec = _require_mapping(raw, path)
    trigger_id = _require_id(spec.get("id"), f"{path}.id")
    type_name = _require_type(spec.get("type"), f"{path}.type")

    plugin_cls = registry.resolve(
        type_name, (Capability.SCHEDULE, Capability.POLLING), f"{path}.type"
    )
    config = {key: value for key, value in spec.items() if key not in TRIGGER_KEYS}
    registry.create(type_name, config, path)

    inputs = spec.get("inputs", {})
    _require_mapping(inputs, f"{path}.inputs")

    return TriggerDef(
        id=trigger_id,
        type=type_name,
        capability=plugin_info(plugin_cls).capability,
        config=config,
        dedup_window=parse_duration(
            spec.get("dedupWindow", default_dedup_window), f"{path}.dedupWindow"
        ),
        interval=parse_duration(spec.get("interval", 60), f"{path}.interval"),
        disabled=bool(spec.get("disabled", False)),
        inputs=dict(inputs),
    )


def _parse_input(raw: Any, path: str) -> InputDef:
    spec = _require_mapping(raw, path)
    input_id = _require_id(spec.get("id"), f"{path}.id")
    input_type = str(spec.get("type", "STRING")).upper()
    if input_type not in INPUT_TYPES:
        raise ConfigValidationError(f"Unknown input type '{input_type}'", f"{path}.type")
    default = spec.get("defaults")
    return InputDef(
        id=input_id,
        type=input_type,
        required=bool(spec.get("required", default is None)),
        default=default,
        description=spec.get("description"),
    )


def _parse_concurrency(raw: Any, path: str) -> Concurrency:
    spec = _require_mapping(raw, path)
    limit = spec.get("limit")
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
        raise ConfigValidationError("limit must be a positive integer", f"{path}.limit")
    behavior_name = str(spec.get("behavior", "QUEUE")).upper()
    try:
        behavior = ConcurrencyBehavior(behavior_name)
    except ValueError:
        raise ConfigValidationError(
            f"Unknown concurrency behavior '{behavior_name}'", f"{path}.behavior"
        ) from None
    return Concurrency(limit=limit, behavior=behavior)


def load_flow(
    source: str | Mapping[str, Any],
    registry: PluginRegistry,
    default_dedup_window: float = 3600.0,
) -> Flow:
    """
    Load and validate a Flow document.

    Args:
        source: YAML text or an already-decoded mapping
        registry: Plugin registry used to resolve task and trigger types
        default_dedup_window: Dedup window for triggers that do not declare one

    Returns:
        The immutable Flow

    Raises:
        PluginResolutionError: If a type is unknown or has the wrong capability
        ConfigValidationError: For every other validation problem
    """
    if isinstance(source, str):
        try:
            data = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Invalid YAML: {e}") from e
    else:
        data = source

    doc = _require_mapping(data, "flow")
    unknown = sorted(set(doc) - FLOW_KEYS)
    if unknown:
        raise ConfigValidationError(f"Unknown properties: {', '.join(unknown)}", "flow")

    flow_id = _require_id(doc.get("id"), "id")
    namespace = doc.get("namespace")
    if not isinstance(namespace, str) or not NAMESPACE_PATTERN.match(namespace):
        raise ConfigValidationError(f"Invalid namespace {namespace!r}", "namespace")

    revision = doc.get("revision", 1)
    if not isinstance(revision, int) or isinstance(revision, bool) or revision < 1:
        raise ConfigValidationError("revision must be a positive integer", "revision")

    branches: dict[Branch, tuple[TaskDef, ...]] = {}
    for branch in Branch:
        raw_tasks = doc.get(branch.value) or []
        if not isinstance(raw_tasks, list):
            raise ConfigValidationError("expected a list of tasks", branch.value)
        branches[branch] = tuple(
            _parse_task(raw, f"{branch.value}[{index}]", registry)
            for index, raw in enumerate(raw_tasks)
        )

    if not branches[Branch.MAIN]:
        raise ConfigValidationError("A flow needs at least one task", "tasks")

    seen: dict[str, str] = {}
    for branch, tasks in branches.items():
        for index, task in enumerate(tasks):
            if task.id in seen:
                raise ConfigValidationError(
                    f"Duplicate task id '{task.id}' (already declared in {seen[task.id]})",
                    f"{branch.value}[{index}].id",
                )
            seen[task.id] = branch.value
        FlowGraph(tasks, branch)

    raw_triggers = doc.get("triggers") or []
    if not isinstance(raw_triggers, list):
        raise ConfigValidationError("expected a list of triggers", "triggers")
    triggers = tuple(
        _parse_trigger(raw, f"triggers[{index}]", registry, default_dedup_window)
        for index, raw in enumerate(raw_triggers)
    )
    trigger_ids = [t.id for t in triggers]
    if len(set(trigger_ids)) != len(trigger_ids):
        raise ConfigValidationError("Duplicate trigger id", "triggers")

    raw_inputs = doc.get("inputs") or []
    if not isinstance(raw_inputs, list):
        raise ConfigValidationError("expected a list of inputs", "inputs")
    inputs = tuple(_parse_input(raw, f"inputs[{index}]") for index, raw in enumerate(raw_inputs))

    outputs = doc.get("outputs") or {}
    _require_mapping(outputs, "outputs")
    labels = doc.get("labels") or {}
    _require_mapping(labels, "labels")

    return Flow(
        namespace=namespace,
        id=flow_id,
        revision=revision,
        tasks=branches[Branch.MAIN],
        triggers=triggers,
        errors=branches[Branch.ERRORS],
        listeners=branches[Branch.LISTENERS],
        inputs=inputs,
        outputs=dict(outputs),
        concurrency=(
            _parse_concurrency(doc["concurrency"], "concurrency") if doc.get("concurrency") else None
        ),
        labels={str(k): str(v) for k, v in labels.items()},
        disabled=bool(doc.get("disabled", False)),
        description=doc.get("description"),
    )


def load_flow_file(path: str | Path, registry: PluginRegistry, **kwargs: Any) -> Flow:
    return load_flow(Path(path).read_text(encoding="utf-8"), registry, **kwargs)


def coerce_inputs(flow: Flow, provided: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Validate execution inputs against the Flow's declared inputs.

    Missing optional inputs take their default; values are converted to the
    declared type. Undeclared inputs are rejected.

    Raises:
        ConfigValidationError: If a required input is missing or a value
            cannot be converted
    """
    provided = dict(provided or {})
    declared = {spec.id: spec for spec in flow.inputs}
    unknown = sorted(set(provided) - set(declared))
    if unknown:
        raise ConfigValidationError(f"Undeclared inputs: {', '.join(unknown)}", "inputs")

    result: dict[str, Any] = {}
    for spec in flow.inputs:
        if spec.id in provided and provided[spec.id] is not None:
            value = provided[spec.id]
        elif spec.default is not None:
            value = spec.default
        elif spec.required:
            raise ConfigValidationError(f"Missing required input '{spec.id}'", f"inputs.{spec.id}")
        else:
            result[spec.id] = None
            continue
        result[spec.id] = _coerce(value, spec)
    return result


def _coerce(value: Any, spec: InputDef) -> Any:
    path = f"inputs.{spec.id}"
    try:
        if spec.type == "STRING":
            return str(value)
        if spec.type == "INT":
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if spec.type == "FLOAT":
            if isinstance(value, bool):
                raise ValueError(value)
            return float(value)
        if spec.type == "BOOLEAN":
            if isinstance(value, bool):
                return value
            if str(value).lower() in ("true", "1", "yes"):
                return True
            if str(value).lower() in ("false", "0", "no"):
                return False
            raise ValueError(value)
        # JSON
        return json.loads(value) if isinstance(value, str) else value
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid {spec.type} value {value!r}", path) from e
