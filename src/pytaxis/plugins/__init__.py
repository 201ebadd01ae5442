"""Built-in plugins and the process-wide default registry."""

from pytaxis.core.plugin import PluginRegistry
from pytaxis.plugins.core import Fail, Log, Return, Schedule, Sleep, Subflow, WriteBlob

BUILTINS = (Log, Return, Sleep, Fail, WriteBlob, Subflow, Schedule)

default_registry = PluginRegistry.with_builtins()

__all__ = [
    "BUILTINS",
    "default_registry",
    "Fail",
    "Log",
    "Return",
    "Schedule",
    "Sleep",
    "Subflow",
    "WriteBlob",
]
