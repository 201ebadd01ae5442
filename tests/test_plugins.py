"""Tests for the plugin model and the built-in plugins."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest

from pytaxis.core import (
    FlowableTask,
    PluginRegistry,
    RunContext,
    RunnableTask,
    ScheduleTrigger,
    plugin,
    plugin_info,
)
from pytaxis.errors import (
    ConfigValidationError,
    PluginResolutionError,
    TaskExecutionError,
    TaskKilledError,
)
from pytaxis.models import Capability, Execution, ExecutionState, Flow
from pytaxis.plugins import BUILTINS, Fail, Log, Return, Schedule, Sleep, Subflow, WriteBlob

VARIABLES = {
    "flow": {"namespace": "demo", "id": "plugins", "revision": 1},
    "execution": {"id": "exec-1"},
    "task": {"id": "t"},
    "taskrun": {"id": "tr-1", "attempt": 1, "iteration": 0, "value": None},
    "inputs": {"name": "world", "seconds": "10ms", "child": "report"},
}


@pytest.fixture
def run_context(blob_store):
    context = RunContext(VARIABLES, blob_store=blob_store)
    yield context
    context.close()


# ==============================================================================
# Plugin model
# ==============================================================================


def test_capability_is_inferred_from_methods():
    assert plugin_info(Log).capability is Capability.RUNNABLE
    assert plugin_info(Subflow).capability is Capability.FLOWABLE
    assert plugin_info(Schedule).capability is Capability.SCHEDULE
    assert isinstance(Return(), RunnableTask)
    assert isinstance(Subflow("demo", "x"), FlowableTask)
    assert isinstance(Schedule("* * * * *"), ScheduleTrigger)


def test_plugin_decorator_rejects_bad_types():
    with pytest.raises(ValueError):
        plugin("NoDots")

    with pytest.raises(ValueError, match="capability"):

        @plugin("acme.Nothing")
        class Nothing:
            pass


def test_registry_register_and_resolve():
    @plugin("acme.Hello", aliases=("acme.Hi",), version="2.0.0")
    @dataclass
    class Hello:
        """Say hello."""

        async def run(self, run_context):
            return {}

    registry = PluginRegistry()
    assert registry.is_empty()
    registry.register(Hello)

    assert registry.resolve("acme.Hi") is Hello
    assert registry.info("acme.Hello").version == "2.0.0"
    assert registry.info("acme.Hello").title == "Say hello."
    assert "acme.Hello" in registry
    assert registry.types() == ["acme.Hello", "acme.Hi"]
    with pytest.raises(PluginResolutionError):
        registry.resolve("acme.Hello", Capability.POLLING)


def test_registry_rejects_conflicting_types():
    @plugin("pytaxis.core.Log")
    @dataclass
    class Impostor:
        async def run(self, run_context):
            return None

    registry = PluginRegistry.with_builtins()
    with pytest.raises(ValueError, match="already registered"):
        registry.register(Impostor)
    with pytest.raises(TypeError):
        registry.register(dict)


def test_registry_create_maps_camel_case(registry):
    task = registry.create("pytaxis.core.Subflow", {"namespace": "demo", "flowId": "child", "transmitFailed": False})

    assert task.flow_id == "child"
    assert task.transmit_failed is False


def test_builtins_are_registered(registry):
    for plugin_cls in BUILTINS:
        assert plugin_info(plugin_cls).type in registry


# ==============================================================================
# Tasks
# ==============================================================================


@pytest.mark.asyncio
async def test_log_renders_and_captures(run_context):
    await Log(message=["hello {{ inputs.name }}", "second"], level="warn").run(run_context)

    assert [(e.level, e.message) for e in run_context.logs] == [
        ("WARNING", "hello world"),
        ("WARNING", "second"),
    ]


def test_log_rejects_unknown_level():
    with pytest.raises(ValueError, match="unknown level"):
        Log(message="x", level="LOUD")


@pytest.mark.asyncio
async def test_return_renders_native_value(run_context):
    assert await Return(format="{{ taskrun.attempt }}").run(run_context) == {"value": 1}
    assert await Return().run(run_context) == {"value": None}


@pytest.mark.asyncio
async def test_sleep_with_templated_duration(run_context):
    outputs = await Sleep(duration="{{ inputs.seconds }}").run(run_context)
    assert outputs == {"slept": pytest.approx(0.01)}


def test_sleep_validates_literal_duration():
    with pytest.raises(ConfigValidationError):
        Sleep(duration="forever")


@pytest.mark.asyncio
async def test_sleep_is_interrupted_by_kill(run_context):
    run_context.kill()
    with pytest.raises(TaskKilledError):
        await Sleep(duration=60).run(run_context)


@pytest.mark.asyncio
async def test_fail_raises_with_retryable_flag(run_context):
    with pytest.raises(TaskExecutionError, match="bad world") as exc_info:
        await Fail(message="bad {{ inputs.name }}", retryable=False).run(run_context)
    assert not exc_info.value.is_retryable()


@pytest.mark.asyncio
async def test_write_blob(run_context, blob_store):
    outputs = await WriteBlob(content="hello {{ inputs.name }}", name="greeting.txt").run(run_context)

    assert outputs == {"uri": "mem://demo/plugins/exec-1/t/greeting.txt", "size": 11}
    assert (await blob_store.get(outputs["uri"])).read() == b"hello world"
    assert run_context.metrics == {"bytes": 11.0}


def test_subflow_request_and_outputs(run_context):
    task = Subflow(
        namespace="demo",
        flow_id="{{ inputs.child }}",
        inputs={"who": "{{ inputs.name }}"},
        labels={"attempt": "{{ taskrun.attempt }}"},
        wait=False,
    )

    request = task.create_subflow(run_context)

    assert request.flow_id == "report"
    assert request.inputs == {"who": "world"}
    assert request.labels == {"attempt": "1"}
    assert request.wait is False

    child = Execution.create(Flow(namespace="demo", id="report"), execution_id="child-1")
    child.transition(ExecutionState.RUNNING)
    child.transition(ExecutionState.SUCCESS)
    child.outputs = {"rows": 3}
    assert task.outputs_from_child(child) == {
        "executionId": "child-1",
        "state": "SUCCESS",
        "outputs": {"rows": 3},
    }


# ==============================================================================
# Schedule trigger
# ==============================================================================


def test_schedule_next_and_previous_fire():
    schedule = Schedule(cron="0 2 * * *")
    moment = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)

    assert schedule.next_fire(moment) == datetime(2024, 1, 16, 2, 0, tzinfo=UTC)
    assert schedule.previous_fire(moment) == datetime(2024, 1, 15, 2, 0, tzinfo=UTC)


def test_schedule_fire_is_strictly_after():
    schedule = Schedule(cron="*/15 * * * *")
    fire = datetime(2024, 1, 15, 12, 15, tzinfo=UTC)

    assert schedule.next_fire(fire) == datetime(2024, 1, 15, 12, 30, tzinfo=UTC)


def test_schedule_honours_timezone():
    schedule = Schedule(cron="0 9 * * *", timezone="Europe/Paris")

    # 09:00 in Paris is 08:00 UTC in winter and 07:00 UTC in summer
    assert schedule.next_fire(datetime(2024, 1, 15, tzinfo=UTC)) == datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    assert schedule.next_fire(datetime(2024, 7, 15, tzinfo=UTC)) == datetime(2024, 7, 15, 7, 0, tzinfo=UTC)


def test_schedule_treats_naive_datetimes_as_utc():
    schedule = Schedule(cron="0 * * * *")
    assert schedule.next_fire(datetime(2024, 1, 15, 12, 30)) == datetime(2024, 1, 15, 13, 0, tzinfo=UTC)


@pytest.mark.parametrize("kwargs", [{"cron": "61 * * * *"}, {"cron": "* * * * *", "timezone": "Mars/Olympus"}])
def test_schedule_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        Schedule(**kwargs)


def test_task_loggers_drop_debug_records(run_context):
    run_context.logger.debug("hidden")
    run_context.logger.log(logging.ERROR, "shown")

    assert [e.message for e in run_context.logs] == ["shown"]
