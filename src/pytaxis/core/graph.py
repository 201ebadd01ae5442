"""
Flow Graph Model.

Builds a DAG from the declared Tasks of one branch of a Flow (main tasks,
error handlers or listeners) and decides which tasks become runnable as an
Execution progresses.

Edges:
- `dependsOn: [a, b]` makes a and b direct predecessors (fan-in)
- `dependsOn: []` makes the task a root (parallel start)
- no `dependsOn` means the task follows the previous task in document order

**Example**:
```yaml
tasks:
  - id: extract          # root
  - id: transform_a      # after extract (document order)
  - id: transform_b
    dependsOn: [extract] # fan-out from extract
  - id: load
    dependsOn: [transform_a, transform_b]  # fan-in
```

Readiness:
- a task is eligible when every direct predecessor is terminal with
  SUCCESS, WARNING or SKIPPED-with-pass-through, and its condition holds
- a predecessor that FAILED, was KILLED or was skipped without pass-through
  skips the task (and transitively its successors)
- a false condition skips the task with pass-through, successors still run

The graph is immutable and shared read-only; all state comes from the
Execution passed to `next_eligible()`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from pytaxis.errors import ConfigValidationError
from pytaxis.models import Branch, Execution, Flow, TaskDef, TaskRunState


@dataclass(frozen=True)
class Decision:
    """Result of one readiness computation.

    Attributes:
        eligible: Tasks to dispatch, in topological order
        skipped: Tasks to record as SKIPPED, mapped to their pass-through flag
    """

    eligible: tuple[str, ...] = ()
    skipped: dict[str, bool] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.eligible and not self.skipped


ConditionEvaluator = Callable[[TaskDef], bool]


class FlowGraph:
    """
    DAG of the Task nodes of one Flow branch.

    Raises ConfigValidationError on construction when a dependency is
    unknown, a task depends on itself, ids are duplicated or a cycle exists.
    """

    def __init__(self, tasks: Sequence[TaskDef], branch: Branch = Branch.MAIN):
        self.branch = branch
        self._tasks: dict[str, TaskDef] = {}
        for index, task in enumerate(tasks):
            if task.id in self._tasks:
                raise ConfigValidationError(
                    f"Duplicate task id '{task.id}'", f"{branch}[{index}]"
                )
            self._tasks[task.id] = task

        self._predecessors: dict[str, tuple[str, ...]] = {}
        previous: str | None = None
        for index, task in enumerate(tasks):
            if task.depends_on is None:
                self._predecessors[task.id] = (previous,) if previous is not None else ()
            else:
                for dep in task.depends_on:
                    if dep == task.id:
                        raise ConfigValidationError(
                            f"Task '{task.id}' depends on itself", f"{branch}[{index}].dependsOn"
                        )
                    if dep not in self._tasks:
                        raise ConfigValidationError(
                            f"Task '{task.id}' depends on non-existent task '{dep}'",
                            f"{branch}[{index}].dependsOn",
                        )
                self._predecessors[task.id] = tuple(dict.fromkeys(task.depends_on))
            previous = task.id

        self._successors: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task_id, preds in self._predecessors.items():
            for pred in preds:
                self._successors[pred].append(task_id)

        self._order = self._topological_sort()

    @classmethod
    def of(cls, flow: Flow, branch: Branch = Branch.MAIN) -> FlowGraph:
        return cls(flow.branch(branch), branch)

    def _topological_sort(self) -> list[str]:
        """Depth-first topological sort keeping document order among peers."""
        visiting: set[str] = set()
        visited: set[str] = set()
        order: list[str] = []

        def visit(task_id: str, trail: list[str]) -> None:
            if task_id in visited:
                return
            if task_id in visiting:
                cycle = " -> ".join([*trail[trail.index(task_id):], task_id])
                raise ConfigValidationError(f"Circular dependency detected: {cycle}", str(self.branch))
            visiting.add(task_id)
            for pred in self._predecessors[task_id]:
                visit(pred, [*trail, task_id])
            visiting.discard(task_id)
            visited.add(task_id)
            order.append(task_id)

        for task_id in self._tasks:
            visit(task_id, [])
        return order

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def task(self, task_id: str) -> TaskDef:
        return self._tasks[task_id]

    def task_ids(self) -> list[str]:
        return list(self._tasks)

    def predecessors(self, task_id: str) -> tuple[str, ...]:
        return self._predecessors[task_id]

    def successors(self, task_id: str) -> tuple[str, ...]:
        return tuple(self._successors[task_id])

    def root_tasks(self) -> list[str]:
        """Tasks without predecessors, in document order."""
        return [task_id for task_id in self._tasks if not self._predecessors[task_id]]

    def topological_order(self) -> list[str]:
        return list(self._order)

    def levels(self) -> list[list[str]]:
        """Group tasks by depth: tasks of one level only depend on earlier levels."""
        depth: dict[str, int] = {}
        for task_id in self._order:
            preds = self._predecessors[task_id]
            depth[task_id] = 1 + max((depth[p] for p in preds), default=-1)
        levels: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for task_id in self._order:
            levels[depth[task_id]].append(task_id)
        return levels

    def is_complete(self, execution: Execution) -> bool:
        """True when every task of the branch has a terminal aggregated state."""
        return all(execution.task_state(task_id) is not None for task_id in self._tasks)

    def has_failure(self, execution: Execution) -> bool:
        return any(
            execution.task_state(task_id) in (TaskRunState.FAILED, TaskRunState.KILLED)
            for task_id in self._tasks
        )

    def next_eligible(
        self, execution: Execution, evaluate: ConditionEvaluator | None = None
    ) -> Decision:
        """
        Compute which tasks without TaskRuns can start now.

        Skips cascade inside one call: when a task is skipped, its successors
        are decided in the same pass, in topological order.

        Args:
            execution: Current Execution snapshot
            evaluate: Called for tasks with a condition once their
                predecessors allow them to run; returns the condition value

        Returns:
            Decision with the eligible tasks and the tasks to skip
        """
        # task_id -> (aggregated state, pass_through) for decided tasks
        resolved: dict[str, tuple[TaskRunState, bool]] = {}
        for task_id in self._tasks:
            state = execution.task_state(task_id)
            if state is not None:
                resolved[task_id] = (state, execution.task_passes_through(task_id))

        eligible: list[str] = []
        skipped: dict[str, bool] = {}

        for task_id in self._order:
            if execution.has_task_runs(task_id):
                continue

            preds = self._predecessors[task_id]
            if any(pred not in resolved for pred in preds):
                continue

            if any(_blocks(*resolved[pred]) for pred in preds):
                skipped[task_id] = False
                resolved[task_id] = (TaskRunState.SKIPPED, False)
                continue

            task = self._tasks[task_id]
            if task.condition is not None and evaluate is not None and not evaluate(task):
                skipped[task_id] = True
                resolved[task_id] = (TaskRunState.SKIPPED, True)
                continue

            eligible.append(task_id)

        return Decision(eligible=tuple(eligible), skipped=skipped)


def _blocks(state: TaskRunState, pass_through: bool) -> bool:
    if state.is_successful:
        return False
    if state is TaskRunState.SKIPPED:
        return not pass_through
    return True
