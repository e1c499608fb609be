"""Dependency resolution over a parsed plan."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from plan_coordinator.plans.models import ParsedPlan, Task, TaskStatus


class IntegrityIssue(str, Enum):
    """Plan-level integrity problems that make tasks permanently unclaimable."""

    DEPENDENCY_CYCLE = "dependency_cycle"
    SELF_DEPENDENCY = "self_dependency"
    UNKNOWN_DEPENDENCY = "unknown_dependency"


@dataclass(frozen=True, slots=True)
class IntegrityWarning:
    """One integrity finding."""

    issue: IntegrityIssue
    task_numbers: tuple[int, ...]
    message: str


def completed_task_numbers(plan: ParsedPlan) -> set[int]:
    return {task.number for task in plan.tasks if task.status == TaskStatus.COMPLETED}


def dependencies_met(task: Task, plan: ParsedPlan) -> bool:
    """True when every dependency of ``task`` is a completed task of the same plan."""

    completed = completed_task_numbers(plan)
    return all(dep in completed for dep in task.dependencies)


def is_claimable(task: Task, plan: ParsedPlan) -> bool:
    return task.status == TaskStatus.PENDING and not task.assignee and dependencies_met(task, plan)


def claimable_tasks(plan: ParsedPlan) -> list[Task]:
    """Pending, unassigned tasks whose dependencies are all completed, in plan order."""

    completed = completed_task_numbers(plan)
    return [
        task
        for task in plan.tasks
        if task.status == TaskStatus.PENDING
        and not task.assignee
        and all(dep in completed for dep in task.dependencies)
    ]


def check_plan_integrity(plan: ParsedPlan) -> list[IntegrityWarning]:
    """Report self-dependencies, unknown references and dependency cycles."""

    warnings: list[IntegrityWarning] = []
    known = {task.number for task in plan.tasks}
    graph: dict[int, tuple[int, ...]] = {}

    for task in plan.tasks:
        if task.number in task.dependencies:
            warnings.append(
                IntegrityWarning(
                    issue=IntegrityIssue.SELF_DEPENDENCY,
                    task_numbers=(task.number,),
                    message=f"Task {task.number} depends on itself",
                ),
            )
        unknown = tuple(dep for dep in task.dependencies if dep not in known)
        if unknown:
            warnings.append(
                IntegrityWarning(
                    issue=IntegrityIssue.UNKNOWN_DEPENDENCY,
                    task_numbers=(task.number, *unknown),
                    message=(
                        f"Task {task.number} depends on unknown task(s) "
                        f"{', '.join(str(dep) for dep in unknown)}"
                    ),
                ),
            )
        graph[task.number] = tuple(
            dep for dep in task.dependencies if dep in known and dep != task.number
        )

    for cycle in _find_cycles(graph):
        warnings.append(
            IntegrityWarning(
                issue=IntegrityIssue.DEPENDENCY_CYCLE,
                task_numbers=cycle,
                message="Dependency cycle among " + ", ".join(f"Task {n}" for n in cycle),
            ),
        )
    return warnings


def _find_cycles(graph: dict[int, tuple[int, ...]]) -> list[tuple[int, ...]]:
    """Strongly connected components with more than one member (iterative Tarjan)."""

    index_of: dict[int, int] = {}
    lowlink: dict[int, int] = {}
    on_stack: set[int] = set()
    stack: list[int] = []
    cycles: list[tuple[int, ...]] = []
    counter = 0

    for root in sorted(graph):
        if root in index_of:
            continue
        # Each frame is (node, position of the next dependency to look at).
        frames: list[tuple[int, int]] = [(root, 0)]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while frames:
            node, position = frames[-1]
            deps = graph.get(node, ())
            if position < len(deps):
                frames[-1] = (node, position + 1)
                dep = deps[position]
                if dep not in index_of:
                    index_of[dep] = lowlink[dep] = counter
                    counter += 1
                    stack.append(dep)
                    on_stack.add(dep)
                    frames.append((dep, 0))
                elif dep in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[dep])
                continue

            frames.pop()
            if frames:
                parent = frames[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[int] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1:
                    cycles.append(tuple(sorted(component)))
    return sorted(cycles)
