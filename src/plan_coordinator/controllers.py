"""Controllers for plan-coord CLI commands."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx

from plan_coordinator.config import Settings
from plan_coordinator.coordination.claims import TaskClaimProtocol
from plan_coordinator.coordination.journal import CoordinationJournal
from plan_coordinator.coordination.notices import CompletionReport
from plan_coordinator.coordination.reporter import ReportResult, TaskLifecycleReporter
from plan_coordinator.errors import CoordinationError
from plan_coordinator.http.gateway import RateLimitedGateway, github_credentials
from plan_coordinator.http.tracker import GithubTracker
from plan_coordinator.plans.models import ParsedPlan, PlanDefinition, Task
from plan_coordinator.plans.resolver import check_plan_integrity, claimable_tasks
from plan_coordinator.plans.service import PlanService

FATAL_ERROR_KINDS = frozenset({"auth", "malformed_plan"})


@dataclass(slots=True)
class PlanCreateCommand:
    """CLI input for plan creation from a JSON definition file."""

    definition_path: Path


@dataclass(slots=True)
class PlanRefCommand:
    """CLI input for commands addressing one plan ticket."""

    number: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task of a plan."""

    number: int
    task_number: int
    db_path: Path | None = None


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for task completion report."""

    number: int
    task_number: int
    summary: str
    files_changed: tuple[str, ...] = ()
    tests_passed: bool | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class TaskMessageCommand:
    """CLI input for block/fail/progress reports."""

    number: int
    task_number: int
    message: str
    db_path: Path | None = None


@dataclass(slots=True)
class JournalCommand:
    """CLI input for journal inspection."""

    number: int
    task_number: int | None
    db_path: Path | None


class PlanCliController:
    """Coordinates plan command execution."""

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self.transport = transport

    def create(self, command: PlanCreateCommand) -> list[str]:
        definition = PlanDefinition.from_dict(
            json.loads(command.definition_path.read_text(encoding="utf-8")),
        )
        with _tracker_session(_tracker_settings(), self.transport) as tracker:
            created = PlanService(tracker).create_plan(definition)
        return [f"Plan created: number={created.number} url={created.url or '-'}"]

    def show(self, command: PlanRefCommand) -> list[str]:
        plan = self._fetch(command.number)
        lines = [
            f"Plan #{command.number}: {plan.title} status={plan.status.value}",
            f"Goal: {plan.goal or '-'}",
        ]
        lines.extend(_task_line(task) for task in plan.tasks)
        return lines

    def claimable(self, command: PlanRefCommand) -> list[str]:
        tasks = claimable_tasks(self._fetch(command.number))
        if not tasks:
            return [f"No claimable tasks in plan #{command.number}"]
        return [_task_line(task) for task in tasks]

    def check(self, command: PlanRefCommand) -> list[str]:
        warnings = check_plan_integrity(self._fetch(command.number))
        if not warnings:
            return [f"Plan #{command.number}: no integrity issues"]
        return [f"{warning.issue.value}: {warning.message}" for warning in warnings]

    def close(self, command: PlanRefCommand) -> list[str]:
        with _tracker_session(_tracker_settings(), self.transport) as tracker:
            ticket = PlanService(tracker).close_plan(command.number)
        return [f"Plan #{ticket.number} closed: labels={','.join(ticket.labels)}"]

    def _fetch(self, number: int) -> ParsedPlan:
        with _tracker_session(_tracker_settings(), self.transport) as tracker:
            return PlanService(tracker).fetch_plan(number)


class TaskCliController:
    """Coordinates task command execution for the configured agent."""

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.transport = transport
        self.sleep = sleep

    def claim(self, command: TaskRefCommand) -> list[str]:
        with self._protocol(command.db_path) as protocol:
            result = protocol.claim(command.number, command.task_number)
        if result.error_kind in FATAL_ERROR_KINDS:
            raise CoordinationError(message=result.error or "claim failed", code=result.error_kind)
        if result.claimed:
            state = "already held" if result.already_held else "claimed"
            return [f"Task {command.task_number} {state} by {protocol.agent_id}"]
        lines = [f"Task {command.task_number} not claimed: {result.error}"]
        if result.claimed_by:
            lines.append(f"claimed_by={result.claimed_by}")
        return lines

    def start(self, command: TaskRefCommand) -> list[str]:
        with self._protocol(command.db_path) as protocol:
            task = protocol.mark_in_progress(command.number, command.task_number)
        return [f"Task {task.number} status={task.status.value} assignee={task.assignee}"]

    def release(self, command: TaskRefCommand) -> list[str]:
        with self._protocol(command.db_path) as protocol:
            released = protocol.release(command.number, command.task_number)
        if not released:
            return [f"Task {command.task_number} was not claimed, nothing to release"]
        return [f"Task {command.task_number} released"]

    def complete(self, command: TaskCompleteCommand) -> list[str]:
        report = CompletionReport(
            summary=command.summary,
            files_changed=command.files_changed,
            tests_run=command.tests_passed is not None,
            tests_passed=command.tests_passed,
        )
        with self._reporter(command.db_path) as reporter:
            result = reporter.report_complete(command.number, command.task_number, report)
        _raise_for_report(result)
        lines = [f"Task {command.task_number} completed"]
        if result.plan_complete:
            lines.append(f"Plan #{command.number} complete and closed")
        return lines

    def block(self, command: TaskMessageCommand) -> list[str]:
        with self._reporter(command.db_path) as reporter:
            result = reporter.report_blocked(command.number, command.task_number, command.message)
        _raise_for_report(result)
        return [f"Task {command.task_number} blocked"]

    def fail(self, command: TaskMessageCommand) -> list[str]:
        with self._reporter(command.db_path) as reporter:
            result = reporter.report_failed(command.number, command.task_number, command.message)
        _raise_for_report(result)
        return [f"Task {command.task_number} marked failed (blocked)"]

    def progress(self, command: TaskMessageCommand) -> list[str]:
        with self._reporter(command.db_path) as reporter:
            result = reporter.report_progress(command.number, command.task_number, command.message)
        _raise_for_report(result)
        return [f"Progress posted for Task {command.task_number}"]

    def journal(self, command: JournalCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if not settings.coordination.agent_id:
            raise ValueError("PLAN_COORD_AGENT_ID is required (a stable, globally unique id).")
        journal = CoordinationJournal(
            settings.journal.db_path,
            agent_id=settings.coordination.agent_id,
        )
        try:
            journal.init_schema()
            entries = journal.history(ticket=command.number, task_number=command.task_number)
        finally:
            journal.close()
        if not entries:
            return [f"No journal entries for ticket #{command.number}"]
        return [
            f"{entry.created_at.isoformat()} task={entry.task_number or '-'} "
            f"agent={entry.agent_id} event={entry.event_type.value}"
            + (f" details={json.dumps(entry.details, sort_keys=True)}" if entry.details else "")
            for entry in entries
        ]

    @contextmanager
    def _protocol(self, db_path: Path | None) -> Iterator[TaskClaimProtocol]:
        settings = Settings.from_env(db_path=db_path)
        settings.validate_for_coordination()
        journal = _open_journal(settings)
        try:
            with _tracker_session(settings, self.transport) as tracker:
                yield TaskClaimProtocol.from_settings(
                    tracker,
                    settings.coordination,
                    journal=journal,
                    sleep=self.sleep,
                )
        finally:
            if journal is not None:
                journal.close()

    @contextmanager
    def _reporter(self, db_path: Path | None) -> Iterator[TaskLifecycleReporter]:
        with self._protocol(db_path) as protocol:
            yield TaskLifecycleReporter(protocol)


def _tracker_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate_for_tracker()
    return settings


@contextmanager
def _tracker_session(
    settings: Settings,
    transport: httpx.BaseTransport | None,
) -> Iterator[GithubTracker]:
    credentials = github_credentials(
        settings.gateway.token,
        token_source=_token_from_env,
    )
    with RateLimitedGateway.from_settings(
        settings.gateway,
        credentials=credentials,
        transport=transport,
    ) as gateway:
        yield GithubTracker(
            gateway,
            owner=settings.coordination.owner,
            repo=settings.coordination.repo,
        )


def _open_journal(settings: Settings) -> CoordinationJournal | None:
    if not settings.journal.enabled:
        return None
    journal = CoordinationJournal(
        settings.journal.db_path,
        agent_id=settings.coordination.agent_id,
    )
    journal.init_schema()
    return journal


def _token_from_env() -> str | None:
    return os.getenv("PLAN_COORD_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN")


def _raise_for_report(result: ReportResult) -> None:
    if not result.success:
        raise CoordinationError(
            message=result.error or "report failed",
            code=result.error_kind or "coordination_error",
        )


def _task_line(task: Task) -> str:
    dependencies = ",".join(str(dep) for dep in task.dependencies) or "-"
    return (
        f"Task {task.number} [{task.status.value}] "
        f"assignee={task.assignee or '-'} deps={dependencies} {task.title}"
    )
