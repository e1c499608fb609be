"""Typed plan and task model shared by the codec, resolver and protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_VERIFICATION_ITEMS: tuple[str, ...] = (
    "All tasks completed",
    "Tests pass",
    "Integration works",
)


class TaskStatus(str, Enum):
    """Task lifecycle states as written in the plan document."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class PlanStatus(str, Enum):
    """Plan-level state, mirrored in ticket labels as ``plan:<value>``."""

    ACTIVE = "active"
    COMPLETE = "complete"
    BLOCKED = "blocked"


@dataclass(slots=True)
class TaskDefinition:
    """Collaborator input for one task of a new plan."""

    title: str
    description: str
    estimate: str | None = None
    dependencies: tuple[int, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(slots=True)
class PlanDefinition:
    """Collaborator input for creating a plan (work breakdown)."""

    title: str
    goal: str
    context: str
    tasks: list[TaskDefinition]
    verification: tuple[str, ...] = DEFAULT_VERIFICATION_ITEMS

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> PlanDefinition:
        """Build a definition from decoded JSON, as used by the CLI."""

        if not isinstance(data, dict) or "title" not in data:
            raise ValueError("Plan definition requires a 'title'.")
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise ValueError("Plan definition 'tasks' must be a list.")
        try:
            tasks = [
                TaskDefinition(
                    title=str(item["title"]),
                    description=str(item.get("description", "")),
                    estimate=str(item["estimate"]) if item.get("estimate") else None,
                    dependencies=tuple(int(dep) for dep in item.get("dependencies") or ()),
                    files=tuple(str(path) for path in item.get("files") or ()),
                )
                for item in raw_tasks
            ]
        except (KeyError, TypeError, AttributeError) as error:
            raise ValueError(f"Invalid task in plan definition: {error!r}") from error
        verification = data.get("verification")
        return cls(
            title=str(data["title"]),
            goal=str(data.get("goal", "")),
            context=str(data.get("context", "")),
            tasks=tasks,
            verification=(
                tuple(str(item) for item in verification)  # type: ignore[union-attr]
                if verification
                else DEFAULT_VERIFICATION_ITEMS
            ),
        )


@dataclass(slots=True)
class Task:
    """One parsed task block."""

    number: int
    title: str
    status: TaskStatus = TaskStatus.PENDING
    assignee: str | None = None
    estimate: str | None = None
    dependencies: tuple[int, ...] = ()
    files: tuple[str, ...] = ()
    description: str = ""

    def is_held_by(self, agent_id: str) -> bool:
        return self.assignee is not None and self.assignee.lower() == agent_id.lower()

    @property
    def is_locked(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS and bool(self.assignee)


@dataclass(slots=True)
class VerificationItem:
    """Checklist entry from the verification section."""

    text: str
    checked: bool = False


@dataclass(slots=True)
class ParsedPlan:
    """Plan recovered from a ticket body."""

    title: str
    goal: str
    context: str
    tasks: list[Task]
    verification: list[VerificationItem] = field(default_factory=list)
    raw_body: str = ""
    number: int | None = None
    url: str = ""
    labels: tuple[str, ...] = ()
    assignees: tuple[str, ...] = ()

    def task(self, number: int) -> Task | None:
        for task in self.tasks:
            if task.number == number:
                return task
        return None

    def tasks_held_by(self, agent_id: str) -> list[Task]:
        return [task for task in self.tasks if task.is_held_by(agent_id)]

    def active_tasks_held_by(self, agent_id: str) -> list[Task]:
        """Tasks the agent still works on; completed tasks keep their completer as assignee."""

        return [
            task
            for task in self.tasks
            if task.is_held_by(agent_id) and task.status != TaskStatus.COMPLETED
        ]

    def has_remote_assignee(self, agent_id: str) -> bool:
        wanted = agent_id.lower()
        return any(login.lower() == wanted for login in self.assignees)

    @property
    def status(self) -> PlanStatus:
        if self.tasks and all(task.status == TaskStatus.COMPLETED for task in self.tasks):
            return PlanStatus.COMPLETE
        if any(task.status == TaskStatus.BLOCKED for task in self.tasks):
            return PlanStatus.BLOCKED
        return PlanStatus.ACTIVE

    @property
    def is_complete(self) -> bool:
        return self.status == PlanStatus.COMPLETE


_UNSET = object()


@dataclass(slots=True)
class TaskUpdate:
    """Partial task metadata update for a targeted rewrite.

    ``assignee`` distinguishes "leave as is" (the default) from an explicit
    clear (``None``).
    """

    status: TaskStatus | None = None
    assignee: str | None | object = _UNSET

    @property
    def changes_assignee(self) -> bool:
        return self.assignee is not _UNSET

    @property
    def new_assignee(self) -> str | None:
        if self.assignee is _UNSET:
            raise ValueError("TaskUpdate does not change the assignee.")
        return self.assignee  # type: ignore[return-value]

    def is_applied_to(self, task: Task) -> bool:
        """True when ``task`` already carries every field of this update."""

        if self.status is not None and task.status != self.status:
            return False
        if self.changes_assignee:
            wanted = self.new_assignee
            if wanted is None:
                return task.assignee is None
            return task.is_held_by(wanted)
        return True

    @property
    def is_empty(self) -> bool:
        return self.status is None and not self.changes_assignee
