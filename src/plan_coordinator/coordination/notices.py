"""Markdown comment bodies posted on the plan ticket for task status transitions."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum


class NoticeKind(str, Enum):
    """Notice identifiers; also used as the journal dedup key."""

    CLAIM = "claim"
    RELEASE = "release"
    COMPLETE = "complete"
    PROGRESS = "progress"
    BLOCKED = "blocked"
    FAILED = "failed"
    PLAN_COMPLETE = "plan_complete"


@dataclass(slots=True)
class CompletionReport:
    """What an agent reports when it finishes a task."""

    summary: str
    files_changed: Sequence[str] = field(default_factory=tuple)
    tests_run: bool | None = None
    tests_passed: bool | None = None


def claim_notice(task_number: int, title: str) -> str:
    return f"**Claiming Task {task_number}: {title}**\n\nI'll start working on this now."


def release_notice(task_number: int) -> str:
    return f"**Releasing Task {task_number}**\n\nThis task is available to be claimed."


def complete_notice(
    task_number: int,
    title: str,
    report: CompletionReport,
    *,
    agent_id: str,
) -> str:
    parts = [f"**Task {task_number} Complete: {title}**", "", report.summary.strip()]
    if report.files_changed:
        parts.extend(["", "**Files changed:**"])
        parts.extend(f"- `{path}`" for path in report.files_changed)
    if report.tests_run is not None:
        parts.extend(["", f"**Tests:** {_tests_outcome(report)}"])
    parts.extend(["", "---", f"*Completed by @{agent_id}*"])
    return "\n".join(parts)


def progress_notice(task_number: int, message: str, *, agent_id: str) -> str:
    return (
        f"**Task {task_number} Progress**\n\n{message.strip()}\n\n"
        f"---\n*Progress update by @{agent_id}*"
    )


def blocked_notice(task_number: int, title: str, reason: str, *, agent_id: str) -> str:
    return (
        f"**Task {task_number} Blocked: {title}**\n\n"
        f"**Reason:**\n{reason.strip()}\n\n"
        "This task cannot proceed until the blocking issue is resolved.\n\n"
        f"---\n*Blocked by @{agent_id}*"
    )


def failed_notice(task_number: int, title: str, error: str, *, agent_id: str) -> str:
    return (
        f"**Task {task_number} Failed: {title}**\n\n"
        f"**Error:**\n```\n{error.strip()}\n```\n\n"
        "This task encountered an error and could not be completed. "
        "Manual intervention may be required.\n\n"
        f"---\n*Failed attempt by @{agent_id}*"
    )


def plan_complete_notice() -> str:
    return (
        "**Plan Complete!**\n\n"
        "All tasks have been completed. The plan is now ready for final verification.\n\n"
        "Please review:\n"
        "- [ ] All changes are correct\n"
        "- [ ] Tests pass\n"
        "- [ ] Integration works as expected"
    )


def _tests_outcome(report: CompletionReport) -> str:
    if not report.tests_run:
        return "Not run"
    return "Passed" if report.tests_passed else "Failed"
