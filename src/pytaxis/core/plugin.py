"""
Plugin capability model.

A plugin is a plain class (usually a dataclass) carrying an embedded
identity (`PluginInfo`) and implementing one capability protocol:

- RunnableTask: `async run(run_context) -> dict | None`
- FlowableTask: `create_subflow(run_context) -> SubflowRequest` and
  `outputs_from_child(execution) -> dict`
- ScheduleTrigger: `next_fire(after) -> datetime`
- PollingTrigger: `async evaluate(run_context, watermark) -> TriggerFire | None`

Design: Protocol-based (PEP 544) for structural typing.
No plugin base class; the `@plugin` decorator only attaches identity, the
PluginRegistry maps type strings to classes and instantiates them from the
configuration of a Flow document.

Usage:
    @plugin("acme.http.Get")
    @dataclass
    class HttpGet:
        url: str
        timeout: float = 10.0

        async def run(self, run_context):
            url = run_context.render(self.url)
            ...
            return {"status": 200}

    registry = PluginRegistry.with_builtins()
    registry.register(HttpGet)
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from pytaxis.errors import ConfigValidationError, PluginResolutionError
from pytaxis.models import Capability

if TYPE_CHECKING:
    from pytaxis.core.context import RunContext
    from pytaxis.models import Execution

logger = logging.getLogger(__name__)

T = TypeVar("T")

TYPE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)+$")
ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")


@dataclass(frozen=True)
class PluginInfo:
    """Identity and versioning shared by every plugin type."""

    type: str
    capability: Capability
    version: str = "1.0.0"
    title: str | None = None
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class SubflowRequest:
    """What a flowable task wants the Executor to start."""

    namespace: str
    flow_id: str
    revision: int | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    wait: bool = True
    transmit_failed: bool = True


@dataclass(frozen=True)
class TriggerFire:
    """Positive evaluation of a trigger.

    Attributes:
        fire_key: Identifies the logical event; combined with flow and trigger
            ids it forms the dedup key.
        watermark: New watermark to persist before the Execution is published.
        payload: Exposed to the Execution as `trigger` variables.
    """

    fire_key: str
    watermark: Any = None
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class RunnableTask(Protocol):
    async def run(self, run_context: RunContext) -> dict[str, Any] | None: ...


@runtime_checkable
class FlowableTask(Protocol):
    def create_subflow(self, run_context: RunContext) -> SubflowRequest: ...

    def outputs_from_child(self, execution: Execution) -> dict[str, Any]: ...


@runtime_checkable
class ScheduleTrigger(Protocol):
    def next_fire(self, after: datetime) -> datetime: ...


@runtime_checkable
class PollingTrigger(Protocol):
    async def evaluate(self, run_context: RunContext, watermark: Any) -> TriggerFire | None: ...


_CAPABILITY_METHODS: tuple[tuple[str, Capability], ...] = (
    ("create_subflow", Capability.FLOWABLE),
    ("next_fire", Capability.SCHEDULE),
    ("evaluate", Capability.POLLING),
    ("run", Capability.RUNNABLE),
)


def plugin(
    type: str,
    capability: Capability | None = None,
    *,
    version: str = "1.0.0",
    title: str | None = None,
    aliases: tuple[str, ...] = (),
) -> Callable[[type[T]], type[T]]:
    """
    Attach plugin identity to a class.

    The capability is inferred from the methods the class implements when
    not given explicitly.

    Args:
        type: Dotted type identifier used in flow documents
        capability: Explicit capability, inferred if None
        version: Plugin version
        title: Human readable description
        aliases: Additional type identifiers resolving to the same class

    Raises:
        ValueError: If the type identifier is not a dotted identifier or no
            capability can be inferred
    """
    if not TYPE_PATTERN.match(type):
        raise ValueError(f"Invalid plugin type '{type}': expected dotted identifiers")

    def decorator(cls: type[T]) -> type[T]:
        resolved = capability
        if resolved is None:
            for method, candidate in _CAPABILITY_METHODS:
                if callable(getattr(cls, method, None)):
                    resolved = candidate
                    break
        if resolved is None:
            raise ValueError(f"Cannot infer capability of plugin {cls.__name__}")

        cls.__plugin__ = PluginInfo(  # type: ignore[attr-defined]
            type=type,
            capability=resolved,
            version=version,
            title=title or (cls.__doc__ or "").strip().split("\n")[0] or None,
            aliases=tuple(aliases),
        )
        return cls

    return decorator


def plugin_info(cls: type) -> PluginInfo:
    info = getattr(cls, "__plugin__", None)
    if not isinstance(info, PluginInfo):
        raise TypeError(f"{cls.__name__} is not a plugin; decorate it with @plugin(...)")
    return info


def snake_case(key: str) -> str:
    """Map a camelCase document key to a snake_case field name."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


class PluginRegistry:
    """Registry mapping plugin type identifiers to plugin classes.

    Resolution happens when a Flow is loaded, so an unknown type fails fast
    there rather than at run time.

    Example:
        ```python
        registry = PluginRegistry.with_builtins()
        registry.register(MyTask)

        cls = registry.resolve("acme.MyTask", Capability.RUNNABLE)
        task = registry.create("acme.MyTask", {"url": "https://..."})
        ```
    """

    def __init__(self):
        self._plugins: dict[str, type] = {}

    @classmethod
    def with_builtins(cls) -> PluginRegistry:
        """Create a registry pre-populated with the built-in plugins."""
        from pytaxis.plugins import BUILTINS

        registry = cls()
        for plugin_cls in BUILTINS:
            registry.register(plugin_cls)
        return registry

    def register(self, plugin_cls: type) -> None:
        """Register a plugin class under its type and aliases.

        Raises:
            TypeError: If the class has no plugin identity
            ValueError: If another class already owns the type
        """
        info = plugin_info(plugin_cls)
        for type_name in (info.type, *info.aliases):
            existing = self._plugins.get(type_name)
            if existing is not None and existing is not plugin_cls:
                raise ValueError(
                    f"Plugin type '{type_name}' already registered by {existing.__name__}"
                )
            self._plugins[type_name] = plugin_cls
        logger.debug(f"Registered plugin type: {info.type} ({info.capability})")

    def resolve(
        self,
        type_name: str,
        capabilities: Capability | tuple[Capability, ...] | None = None,
        path: str | None = None,
    ) -> type:
        """Return the plugin class for a type identifier.

        Raises:
            PluginResolutionError: If the type is unknown or does not offer
                one of the requested capabilities
        """
        plugin_cls = self._plugins.get(type_name)
        if plugin_cls is None:
            raise PluginResolutionError(f"Unknown plugin type '{type_name}'", path)

        if capabilities is not None:
            allowed = (capabilities,) if isinstance(capabilities, Capability) else capabilities
            actual = plugin_info(plugin_cls).capability
            if actual not in allowed:
                expected = ", ".join(str(c) for c in allowed)
                raise PluginResolutionError(
                    f"Plugin type '{type_name}' is {actual}, expected {expected}", path
                )
        return plugin_cls

    def info(self, type_name: str) -> PluginInfo:
        return plugin_info(self.resolve(type_name))

    def create(self, type_name: str, config: dict[str, Any], path: str | None = None) -> Any:
        """Instantiate a plugin from document configuration.

        Keys are mapped from camelCase to snake_case. For dataclass plugins
        unknown keys are rejected.

        Raises:
            PluginResolutionError: If the type is unknown
            ConfigValidationError: If the configuration does not fit the plugin
        """
        plugin_cls = self.resolve(type_name, path=path)
        kwargs = {snake_case(key): value for key, value in config.items()}

        if dataclasses.is_dataclass(plugin_cls):
            known = {f.name for f in dataclasses.fields(plugin_cls) if f.init}
            unknown = sorted(set(kwargs) - known)
            if unknown:
                raise ConfigValidationError(
                    f"Unknown properties for '{type_name}': {', '.join(unknown)}", path
                )

        try:
            return plugin_cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigValidationError(f"Invalid configuration for '{type_name}': {e}", path) from e

    def types(self) -> list[str]:
        return sorted(self._plugins)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    def is_empty(self) -> bool:
        return len(self._plugins) == 0
