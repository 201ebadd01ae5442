"""
Pytaxis: distributed workflow orchestration for Python

Flows are declarative YAML documents: a DAG of tasks, optional triggers,
inputs and outputs. Three cooperating control loops run them:

- Scheduler turns trigger fires and manual submissions into Executions
- Executor is the single writer of Execution state and dispatches TaskRuns
- Worker runs task attempts and evaluates polling triggers

They communicate only through a Queue and share a StateStore, so any number
of each can run in one process or across many.

Design Pattern: Façade Pattern
This module re-exports the names needed to load flows and run the loops,
hiding the layout of the models, storage, queue and executor packages.

Example:
    ```python
    import asyncio
    from pytaxis import (
        Executor, InMemoryQueue, InMemoryStateStore, Scheduler, Worker,
        default_registry, load_flow,
    )

    FLOW = '''
    id: hello
    namespace: demo
    tasks:
      - id: greet
        type: pytaxis.core.Return
        format: "hello {{ inputs.name }}"
    inputs:
      - id: name
        type: STRING
        defaults: world
    '''

    async def main():
        store, queue = InMemoryStateStore(), InMemoryQueue()
        flow = load_flow(FLOW, default_registry)

        executor = await Executor(store, queue).start()
        worker = await Worker(queue, store).start()
        scheduler = Scheduler(store, queue)

        execution = await scheduler.submit(flow, {"name": "pytaxis"})
        done = await store.wait_for_terminal(execution.id)
        print(done.state, done.task_runs[0].outputs)

        await worker.shutdown()
        await executor.shutdown()

    asyncio.run(main())
    ```
"""

from pytaxis.config import Settings
from pytaxis.core import (
    PluginRegistry,
    RunContext,
    SubflowRequest,
    TriggerFire,
    coerce_inputs,
    load_flow,
    load_flow_file,
    plugin,
)
from pytaxis.errors import (
    ConfigValidationError,
    FlowLoadError,
    PluginResolutionError,
    PytaxisError,
    TaskExecutionError,
    TaskKilledError,
    TaskTimeoutError,
)
from pytaxis.executor import (
    Executor,
    ExecutorHandle,
    Scheduler,
    SchedulerHandle,
    Worker,
    WorkerHandle,
)
from pytaxis.models import (
    Execution,
    ExecutionState,
    Flow,
    RetryPolicy,
    TaskRun,
    TaskRunState,
)
from pytaxis.plugins import default_registry
from pytaxis.queue import InMemoryQueue, Queue
from pytaxis.storage import (
    BlobStore,
    InMemoryBlobStore,
    InMemoryStateStore,
    LocalBlobStore,
    StateStore,
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "Settings",
    # Flow definition and plugins
    "Flow",
    "load_flow",
    "load_flow_file",
    "coerce_inputs",
    "plugin",
    "PluginRegistry",
    "default_registry",
    "RunContext",
    "SubflowRequest",
    "TriggerFire",
    "RetryPolicy",
    # Runtime state
    "Execution",
    "ExecutionState",
    "TaskRun",
    "TaskRunState",
    # Control loops
    "Executor",
    "ExecutorHandle",
    "Scheduler",
    "SchedulerHandle",
    "Worker",
    "WorkerHandle",
    # Storage and transport
    "StateStore",
    "InMemoryStateStore",
    "BlobStore",
    "InMemoryBlobStore",
    "LocalBlobStore",
    "Queue",
    "InMemoryQueue",
    # Errors
    "PytaxisError",
    "FlowLoadError",
    "ConfigValidationError",
    "PluginResolutionError",
    "TaskExecutionError",
    "TaskKilledError",
    "TaskTimeoutError",
]
