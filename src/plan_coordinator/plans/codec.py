"""Plan document grammar: render, parse and targeted single-task rewrite.

The ticket body is a serialization of :class:`ParsedPlan`. Rendering is
deterministic, parsing walks the document line by line through its sections,
and :func:`rewrite_task` touches only the ``**Status:**``/``**Assignee:**``
lines of one task so that writers working on different tasks never overwrite
each other's sections.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from plan_coordinator.errors import MalformedPlanError
from plan_coordinator.plans.models import (
    ParsedPlan,
    PlanDefinition,
    Task,
    TaskStatus,
    TaskUpdate,
    VerificationItem,
)

PLAN_MARKER = "[PLAN]"
UNASSIGNED_PLACEHOLDER = "(empty if unclaimed)"
TASK_SEPARATOR = "---"

_TASK_HEADER_RE = re.compile(r"^### Task (\d+):\s*(.*)$")
_META_RE = re.compile(
    r"^\*\*(Status|Assignee|Estimate|Dependencies|Files|Description):\*\*\s*(.*)$",
)
_FILE_RE = re.compile(r"^- `([^`]+)`")
_CHECK_RE = re.compile(r"^- \[([ xX])\]\s*(.+)$")
_DEPENDENCY_RE = re.compile(r"^(?:task\s+)?(\d+)$", re.IGNORECASE)
_STATUS_ALIASES = {"claimed": TaskStatus.IN_PROGRESS}
_UNASSIGNED_VALUES = frozenset({"", UNASSIGNED_PLACEHOLDER, "none", "-"})
# Free-text lines that the parser would read as structure get one extra
# leading backslash on render and lose it on parse.
_STRUCTURAL_RE = re.compile(r"^(\s*)(\\*)(#|```|---)")
_ESCAPED_RE = re.compile(r"^(\s*)\\(\\*)(#|```|---)")


class _Section(str, Enum):
    PREAMBLE = "preamble"
    GOAL = "goal"
    CONTEXT = "context"
    TASKS = "tasks"
    VERIFICATION = "verification"
    OTHER = "other"


_SECTION_HEADINGS = {
    "goal": _Section.GOAL,
    "context": _Section.CONTEXT,
    "tasks": _Section.TASKS,
    "verification": _Section.VERIFICATION,
}


def render_definition(definition: PlanDefinition) -> str:
    """Render a fresh plan: every task pending and unclaimed, numbered 1..N."""

    tasks = [
        Task(
            number=index,
            title=item.title,
            estimate=item.estimate,
            dependencies=tuple(item.dependencies),
            files=tuple(item.files),
            description=item.description,
        )
        for index, item in enumerate(definition.tasks, start=1)
    ]
    return render_plan(
        ParsedPlan(
            title=definition.title,
            goal=definition.goal,
            context=definition.context,
            tasks=tasks,
            verification=[VerificationItem(text=item) for item in definition.verification],
        ),
    )


def render_plan(plan: ParsedPlan) -> str:
    """Render a plan to its canonical document text."""

    lines = [f"# {PLAN_MARKER} {plan.title}", ""]
    lines.extend(["## Goal", escape_text(plan.goal), ""])
    lines.extend(["## Context", escape_text(plan.context), ""])
    lines.extend(["## Tasks", ""])
    for task in plan.tasks:
        lines.extend(render_task(task))
        lines.extend(["", TASK_SEPARATOR, ""])
    lines.append("## Verification")
    for item in plan.verification:
        lines.append(f"- [{'x' if item.checked else ' '}] {item.text}")
    return "\n".join(lines)


def render_task(task: Task) -> list[str]:
    lines = [
        f"### Task {task.number}: {task.title}",
        _status_line(task.status),
        _assignee_line(task.assignee),
    ]
    if task.estimate:
        lines.append(f"**Estimate:** {task.estimate}")
    dependencies = ", ".join(str(dep) for dep in task.dependencies) or "none"
    lines.append(f"**Dependencies:** {dependencies}")
    if task.files:
        lines.append("**Files:**")
        lines.extend(f"- `{path}`" for path in task.files)
    lines.extend(["", "**Description:**", escape_text(task.description)])
    return lines


def escape_text(text: str) -> str:
    """Escape free-text lines that would otherwise read as headings, fences or separators."""

    return "\n".join(_STRUCTURAL_RE.sub(r"\1\\\2\3", line, count=1) for line in text.split("\n"))


def unescape_line(line: str) -> str:
    return _ESCAPED_RE.sub(r"\1\2\3", line, count=1)


def is_reserved_assignee(agent_id: str) -> bool:
    """True for ids that would read back as "unassigned" from an assignee line."""

    return agent_id.strip().lstrip("@").strip().lower() in _UNASSIGNED_VALUES


@dataclass(slots=True)
class _TaskBuilder:
    number: int
    title: str
    line_no: int
    status: TaskStatus | None = None
    assignee: str | None = None
    estimate: str | None = None
    dependencies: tuple[int, ...] = ()
    files: list[str] = field(default_factory=list)
    description: list[str] = field(default_factory=list)
    in_files: bool = False
    in_description: bool = False

    def feed(self, line: str, line_no: int) -> None:
        stripped = line.strip()
        if self.in_description:
            self.description.append(line)
            return

        match = _META_RE.match(stripped)
        if match is None:
            if self.in_files and _FILE_RE.match(stripped):
                self.files.append(_FILE_RE.match(stripped).group(1))  # type: ignore[union-attr]
                return
            if not stripped:
                return
            # Free text before the description marker is kept as description.
            self.in_description = True
            self.description.append(line)
            return

        label, value = match.group(1), match.group(2).strip()
        self.in_files = False
        if label == "Status":
            self.status = _parse_status(value, task_number=self.number, line_no=line_no)
        elif label == "Assignee":
            self.assignee = _parse_assignee(value)
        elif label == "Estimate":
            self.estimate = value or None
        elif label == "Dependencies":
            self.dependencies = _parse_dependencies(value, task_number=self.number, line_no=line_no)
        elif label == "Files":
            self.in_files = True
        else:
            self.in_description = True
            if value:
                self.description.append(value)

    def build(self) -> Task:
        if self.status is None:
            raise MalformedPlanError(
                message=f"Task {self.number} has no **Status:** line",
                task_number=self.number,
                line_no=self.line_no,
            )
        return Task(
            number=self.number,
            title=self.title,
            status=self.status,
            assignee=self.assignee,
            estimate=self.estimate,
            dependencies=self.dependencies,
            files=tuple(self.files),
            description=_trim_description(self.description),
        )


def parse_plan(body: str, *, title: str = "") -> ParsedPlan:
    """Parse a ticket body into a plan; raise :class:`MalformedPlanError` on bad structure."""

    if not body.strip():
        raise MalformedPlanError(message="Plan body is empty")

    header_title: str | None = None
    section = _Section.PREAMBLE
    seen_tasks_section = False
    goal: list[str] = []
    context: list[str] = []
    tasks: list[Task] = []
    verification: list[VerificationItem] = []
    builder: _TaskBuilder | None = None
    fence_opened_at: int | None = None

    for line_no, line in enumerate(body.splitlines(), start=1):
        stripped = line.strip()
        if stripped.startswith("```"):
            fence_opened_at = line_no if fence_opened_at is None else None
        elif fence_opened_at is None:
            if header_title is None and stripped.startswith(f"# {PLAN_MARKER}"):
                header_title = stripped[len(f"# {PLAN_MARKER}") :].strip()
                continue
            if stripped.startswith("## "):
                if builder is not None:
                    tasks.append(builder.build())
                    builder = None
                section = _SECTION_HEADINGS.get(stripped[3:].strip().lower(), _Section.OTHER)
                seen_tasks_section = seen_tasks_section or section == _Section.TASKS
                continue
            header = _TASK_HEADER_RE.match(stripped)
            if header is not None:
                if section != _Section.TASKS:
                    raise MalformedPlanError(
                        message=f"Task header outside the '## Tasks' section: {stripped!r}",
                        task_number=int(header.group(1)),
                        line_no=line_no,
                    )
                if builder is not None:
                    tasks.append(builder.build())
                builder = _TaskBuilder(
                    number=int(header.group(1)),
                    title=header.group(2).strip(),
                    line_no=line_no,
                )
                continue

        if section == _Section.GOAL:
            goal.append(line)
        elif section == _Section.CONTEXT:
            context.append(line)
        elif section == _Section.TASKS and builder is not None:
            builder.feed(line, line_no)
        elif section == _Section.VERIFICATION:
            check = _CHECK_RE.match(stripped)
            if check is not None:
                verification.append(
                    VerificationItem(text=check.group(2).strip(), checked=check.group(1) != " "),
                )

    if fence_opened_at is not None:
        raise MalformedPlanError(
            message=f"Code fence opened at line {fence_opened_at} is never closed",
            line_no=fence_opened_at,
        )
    if builder is not None:
        tasks.append(builder.build())

    if header_title is None and not title.strip().startswith(PLAN_MARKER):
        raise MalformedPlanError(message=f"Document has no '# {PLAN_MARKER}' header")
    if not seen_tasks_section:
        raise MalformedPlanError(message="Document has no '## Tasks' section")
    _check_numbering(tasks)

    plan_title = title.strip()
    if plan_title.startswith(PLAN_MARKER):
        plan_title = plan_title[len(PLAN_MARKER) :].strip()
    return ParsedPlan(
        title=plan_title or header_title or "",
        goal=_trim_description(goal),
        context=_trim_description(context),
        tasks=tasks,
        verification=verification,
        raw_body=body,
    )


def rewrite_task(body: str, task_number: int, update: TaskUpdate) -> str:
    """Replace the status and/or assignee line of one task, leaving all other bytes intact."""

    if update.is_empty:
        return body

    lines = body.splitlines(keepends=True)
    start = _find_task_header(lines, task_number)
    end = _find_block_end(lines, start + 1)

    status_index: int | None = None
    assignee_index: int | None = None
    for index in range(start + 1, end):
        match = _META_RE.match(lines[index].strip())
        if match is None:
            continue
        label = match.group(1)
        if label == "Description":
            break
        if label == "Status" and status_index is None:
            status_index = index
        elif label == "Assignee" and assignee_index is None:
            assignee_index = index

    if status_index is None:
        raise MalformedPlanError(
            message=f"Task {task_number} has no **Status:** line to rewrite",
            task_number=task_number,
        )

    result = list(lines)
    if update.status is not None:
        result[status_index] = _status_line(update.status) + _line_ending(lines[status_index])
    if update.changes_assignee:
        new_line = _assignee_line(update.new_assignee)
        if assignee_index is None:
            result.insert(status_index + 1, new_line + _line_ending(lines[status_index], "\n"))
        else:
            result[assignee_index] = new_line + _line_ending(lines[assignee_index])
    return "".join(result)


def task_block(body: str, task_number: int) -> str:
    """Return the raw text of one task block, header included."""

    lines = body.splitlines(keepends=True)
    start = _find_task_header(lines, task_number)
    return "".join(lines[start : _find_block_end(lines, start + 1)])


def _find_task_header(lines: list[str], task_number: int) -> int:
    in_fence = False
    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        header = _TASK_HEADER_RE.match(stripped)
        if header is not None and int(header.group(1)) == task_number:
            return index
    raise MalformedPlanError(
        message=f"Task {task_number} not found in plan document",
        task_number=task_number,
    )


def _find_block_end(lines: list[str], begin: int) -> int:
    in_fence = False
    for index in range(begin, len(lines)):
        stripped = lines[index].strip()
        if stripped.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        if stripped.startswith("## ") or _TASK_HEADER_RE.match(stripped):
            return index
    return len(lines)


def _status_line(status: TaskStatus) -> str:
    return f"**Status:** {status.value}"


def _assignee_line(assignee: str | None) -> str:
    return f"**Assignee:** {f'@{assignee}' if assignee else UNASSIGNED_PLACEHOLDER}"


def _line_ending(line: str, default: str = "") -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith(("\n", "\r")):
        return line[-1]
    return default


def _parse_status(value: str, *, task_number: int, line_no: int) -> TaskStatus:
    normalized = value.strip().lower()
    if normalized in _STATUS_ALIASES:
        return _STATUS_ALIASES[normalized]
    try:
        return TaskStatus(normalized)
    except ValueError as error:
        raise MalformedPlanError(
            message=f"Task {task_number} has unknown status {value!r}",
            task_number=task_number,
            line_no=line_no,
        ) from error


def _parse_assignee(value: str) -> str | None:
    normalized = value.strip()
    if normalized.lower() in _UNASSIGNED_VALUES:
        return None
    return normalized.lstrip("@").strip() or None


def _parse_dependencies(value: str, *, task_number: int, line_no: int) -> tuple[int, ...]:
    if value.strip().lower() in {"", "none"}:
        return ()
    numbers: list[int] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        match = _DEPENDENCY_RE.match(token)
        if match is None:
            raise MalformedPlanError(
                message=f"Task {task_number} has invalid dependency reference {token!r}",
                task_number=task_number,
                line_no=line_no,
            )
        number = int(match.group(1))
        if number not in numbers:
            numbers.append(number)
    return tuple(numbers)


def _check_numbering(tasks: list[Task]) -> None:
    seen: set[int] = set()
    for task in tasks:
        if task.number in seen:
            raise MalformedPlanError(
                message=f"Duplicate task number {task.number}",
                task_number=task.number,
            )
        seen.add(task.number)
    expected = set(range(1, len(tasks) + 1))
    if seen != expected:
        missing = sorted(expected - seen)
        raise MalformedPlanError(
            message=f"Task numbers must be dense 1..{len(tasks)}; missing {missing}",
        )


def _trim_description(lines: list[str]) -> str:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    if end > start and lines[end - 1].strip() == TASK_SEPARATOR:
        end -= 1
        while end > start and not lines[end - 1].strip():
            end -= 1
    return "\n".join(unescape_line(line) for line in lines[start:end])
