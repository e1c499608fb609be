"""Task lifecycle reporting: completion, blocking, failure and progress notices."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from plan_coordinator.coordination.claims import TaskClaimProtocol
from plan_coordinator.coordination.journal import JournalEventType
from plan_coordinator.coordination.notices import (
    CompletionReport,
    NoticeKind,
    blocked_notice,
    complete_notice,
    failed_notice,
    plan_complete_notice,
    progress_notice,
)
from plan_coordinator.errors import CoordinationError
from plan_coordinator.plans.models import PlanStatus, TaskStatus, TaskUpdate
from plan_coordinator.plans.service import PlanService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReportResult:
    """Outcome of one lifecycle report."""

    success: bool
    plan_complete: bool = False
    error: str | None = None
    error_kind: str | None = None


class TaskLifecycleReporter:
    """Moves a held task to its terminal state and tells the other agents about it."""

    def __init__(self, protocol: TaskClaimProtocol, *, plans: PlanService | None = None) -> None:
        self.protocol = protocol
        self.plans = plans or PlanService(protocol.tracker)

    @property
    def agent_id(self) -> str:
        return self.protocol.agent_id

    def report_complete(
        self,
        ticket_number: int,
        task_number: int,
        report: CompletionReport,
    ) -> ReportResult:
        try:
            task = self.protocol.update_task(
                ticket_number,
                task_number,
                TaskUpdate(status=TaskStatus.COMPLETED, assignee=self.agent_id),
            )
            self.protocol.record_event(
                ticket_number,
                JournalEventType.COMPLETED,
                task_number,
                {"summary": report.summary},
            )
            self.protocol.post_notice(
                ticket_number,
                task_number,
                NoticeKind.COMPLETE,
                complete_notice(task_number, task.title, report, agent_id=self.agent_id),
            )

            plan = self.protocol.fetch_plan(ticket_number)
            plan_complete = plan.is_complete
            if plan_complete:
                self._finish_plan(ticket_number, plan.labels)
            self.protocol.release_assignee(ticket_number, task_number)
        except (CoordinationError, httpx.HTTPError) as error:
            return _failed("complete", ticket_number, task_number, error)

        logger.info(
            "Task completed: ticket=%d task=%d plan_complete=%s",
            ticket_number,
            task_number,
            plan_complete,
        )
        return ReportResult(success=True, plan_complete=plan_complete)

    def report_blocked(self, ticket_number: int, task_number: int, reason: str) -> ReportResult:
        try:
            task = self.protocol.update_task(
                ticket_number,
                task_number,
                TaskUpdate(status=TaskStatus.BLOCKED, assignee=None),
            )
            plan = self.protocol.fetch_plan(ticket_number)
            self.plans.set_plan_status(
                ticket_number,
                PlanStatus.BLOCKED,
                current_labels=plan.labels,
            )
            self.protocol.record_event(
                ticket_number,
                JournalEventType.BLOCKED,
                task_number,
                {"reason": reason},
            )
            self.protocol.post_notice(
                ticket_number,
                task_number,
                NoticeKind.BLOCKED,
                blocked_notice(task_number, task.title, reason, agent_id=self.agent_id),
            )
            self.protocol.release_assignee(ticket_number, task_number)
        except (CoordinationError, httpx.HTTPError) as error:
            return _failed("blocked", ticket_number, task_number, error)

        logger.info("Task blocked: ticket=%d task=%d", ticket_number, task_number)
        return ReportResult(success=True)

    def report_failed(self, ticket_number: int, task_number: int, error: str) -> ReportResult:
        try:
            task = self.protocol.update_task(
                ticket_number,
                task_number,
                TaskUpdate(status=TaskStatus.BLOCKED, assignee=None),
            )
            self.protocol.record_event(
                ticket_number,
                JournalEventType.FAILED,
                task_number,
                {"error": error},
            )
            self.protocol.post_notice(
                ticket_number,
                task_number,
                NoticeKind.FAILED,
                failed_notice(task_number, task.title, error, agent_id=self.agent_id),
            )
            self.protocol.release_assignee(ticket_number, task_number)
        except (CoordinationError, httpx.HTTPError) as report_error:
            return _failed("failed", ticket_number, task_number, report_error)

        logger.error("Task failed: ticket=%d task=%d error=%s", ticket_number, task_number, error)
        return ReportResult(success=True)

    def report_progress(self, ticket_number: int, task_number: int, message: str) -> ReportResult:
        try:
            self.protocol.tracker.create_comment(
                ticket_number,
                progress_notice(task_number, message, agent_id=self.agent_id),
            )
        except (CoordinationError, httpx.HTTPError) as error:
            return _failed("progress", ticket_number, task_number, error)
        return ReportResult(success=True)

    def _finish_plan(self, ticket_number: int, labels: tuple[str, ...]) -> None:
        logger.info("All tasks complete, closing plan: ticket=%d", ticket_number)
        self.protocol.post_notice(
            ticket_number,
            None,
            NoticeKind.PLAN_COMPLETE,
            plan_complete_notice(),
        )
        self.plans.close_plan(ticket_number, current_labels=labels)
        self.protocol.record_event(ticket_number, JournalEventType.PLAN_COMPLETED)


def _failed(
    action: str,
    ticket_number: int,
    task_number: int,
    error: CoordinationError | httpx.HTTPError,
) -> ReportResult:
    logger.warning(
        "Task report failed: action=%s ticket=%d task=%d error=%s",
        action,
        ticket_number,
        task_number,
        error,
    )
    kind = error.code if isinstance(error, CoordinationError) else "transport"
    return ReportResult(success=False, error=str(error), error_kind=kind)
