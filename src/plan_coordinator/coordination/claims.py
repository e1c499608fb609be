"""Optimistic task claiming over a shared plan ticket.

There is no lock server. An agent claims a task by adding itself to the
ticket's assignee set and rewriting the task's status/assignee lines, then
confirms by re-reading after a short consensus delay. The assignee set is
additive, so two agents can both be "assigned"; the document's task assignee
decides who won.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from plan_coordinator.config import CoordinationSettings, MultiTaskPolicy
from plan_coordinator.coordination.journal import CoordinationJournal, JournalEventType
from plan_coordinator.coordination.notices import NoticeKind, claim_notice, release_notice
from plan_coordinator.errors import ClaimConflictError, CoordinationError, MalformedPlanError
from plan_coordinator.http.tracker import IssueTracker
from plan_coordinator.plans.codec import is_reserved_assignee, rewrite_task
from plan_coordinator.plans.models import ParsedPlan, Task, TaskStatus, TaskUpdate
from plan_coordinator.plans.resolver import completed_task_numbers, dependencies_met
from plan_coordinator.plans.service import plan_from_ticket

logger = logging.getLogger(__name__)

CLAIM_NOT_FOUND = "not_found"
CLAIM_HELD_BY_OTHER = "already_claimed"
CLAIM_NOT_CLAIMABLE = "not_claimable"
CLAIM_POLICY_BLOCKED = "multi_task_blocked"
CLAIM_LOST = "claim_lost"
CLAIM_UNCONFIRMED = "unconfirmed"
TRANSPORT_ERROR = "transport"
WRITE_NOT_PERSISTED = "write_not_persisted"


@dataclass(slots=True)
class ClaimResult:
    """Outcome of one claim attempt.

    ``claimed_by`` names the winner when the claim was lost to another agent.
    ``error_kind`` is a stable identifier (an error ``code`` or one of the
    ``CLAIM_*`` constants) so callers can tell fatal causes from normal losses.
    """

    claimed: bool
    task_number: int
    task: Task | None = None
    claimed_by: str | None = None
    error: str | None = None
    error_kind: str | None = None
    already_held: bool = False


class TaskClaimProtocol:
    """Claim, confirm, update and release tasks of a plan ticket for one agent."""

    def __init__(  # noqa: PLR0913
        self,
        tracker: IssueTracker,
        *,
        agent_id: str,
        journal: CoordinationJournal | None = None,
        consensus_delay_seconds: float = 5.0,
        claim_max_attempts: int = 3,
        write_max_attempts: int = 3,
        multi_task_policy: MultiTaskPolicy = MultiTaskPolicy.PERMIT,
        post_notices: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not agent_id:
            raise ValueError("agent_id must not be empty")
        if is_reserved_assignee(agent_id):
            raise ValueError(f"agent_id {agent_id!r} is reserved for unassigned tasks")
        self.tracker = tracker
        self.agent_id = agent_id
        self.journal = journal
        self.consensus_delay_seconds = consensus_delay_seconds
        self.claim_max_attempts = max(1, claim_max_attempts)
        self.write_max_attempts = max(1, write_max_attempts)
        self.multi_task_policy = multi_task_policy
        self.post_notices = post_notices
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        tracker: IssueTracker,
        settings: CoordinationSettings,
        *,
        journal: CoordinationJournal | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> TaskClaimProtocol:
        return cls(
            tracker,
            sleep=sleep or time.sleep,
            agent_id=settings.agent_id,
            journal=journal,
            consensus_delay_seconds=settings.consensus_delay_seconds,
            claim_max_attempts=settings.claim_max_attempts,
            write_max_attempts=settings.write_max_attempts,
            multi_task_policy=settings.multi_task_policy,
            post_notices=settings.post_notices,
        )

    def fetch_plan(self, ticket_number: int) -> ParsedPlan:
        """Always a fresh read; the protocol never decides on cached state."""

        return plan_from_ticket(self.tracker.fetch_issue(ticket_number))

    def claim(self, ticket_number: int, task_number: int) -> ClaimResult:
        """Try to become the single holder of a task. Never raises for remote failures."""

        self.record_event(ticket_number, JournalEventType.CLAIM_ATTEMPT, task_number)
        try:
            result = self._claim(ticket_number, task_number)
        except CoordinationError as error:
            logger.warning(
                "Claim failed: ticket=%d task=%d code=%s error=%s",
                ticket_number,
                task_number,
                error.code,
                error,
            )
            result = ClaimResult(
                claimed=False,
                task_number=task_number,
                error=str(error),
                error_kind=error.code,
            )
        except httpx.HTTPError as error:
            logger.warning(
                "Claim failed on transport: ticket=%d task=%d error=%s",
                ticket_number,
                task_number,
                error,
            )
            result = ClaimResult(
                claimed=False,
                task_number=task_number,
                error=f"{type(error).__name__}: {error}",
                error_kind=TRANSPORT_ERROR,
            )

        self._finish_claim(ticket_number, result)
        return result

    def mark_in_progress(self, ticket_number: int, task_number: int) -> Task:
        task = self.update_task(
            ticket_number,
            task_number,
            TaskUpdate(status=TaskStatus.IN_PROGRESS, assignee=self.agent_id),
        )
        self.record_event(ticket_number, JournalEventType.IN_PROGRESS, task_number)
        return task

    def release(self, ticket_number: int, task_number: int) -> bool:
        """Give a task back to the pool. Returns False when there was nothing to release."""

        plan = self.fetch_plan(ticket_number)
        task = _require_task(plan, task_number)
        if task.assignee is None and task.status == TaskStatus.PENDING:
            logger.info(
                "Release skipped, task is not claimed: ticket=%d task=%d",
                ticket_number,
                task_number,
            )
            return False
        self._ensure_not_held_by_other(task)

        self.update_task(
            ticket_number,
            task_number,
            TaskUpdate(status=TaskStatus.PENDING, assignee=None),
        )
        self.release_assignee(ticket_number, task_number)
        self.record_event(ticket_number, JournalEventType.RELEASED, task_number)
        self.post_notice(
            ticket_number,
            task_number,
            NoticeKind.RELEASE,
            release_notice(task_number),
        )
        logger.info("Task released: ticket=%d task=%d", ticket_number, task_number)
        return True

    def update_task(self, ticket_number: int, task_number: int, update: TaskUpdate) -> Task:
        """Verified read-modify-write of one task's status/assignee lines.

        Each attempt reads the ticket fresh, rewrites only the target task,
        writes the body and reads it back. A concurrent writer working on a
        different task can overwrite our body write with its own; in that case
        the change is re-applied on top of the newer body.
        """

        for attempt in range(1, self.write_max_attempts + 1):
            plan = self.fetch_plan(ticket_number)
            task = _require_task(plan, task_number)
            self._ensure_not_held_by_other(task)
            if update.is_applied_to(task):
                return task

            body = rewrite_task(plan.raw_body, task_number, update)
            self.tracker.update_issue(ticket_number, body=body)

            verified = _require_task(self.fetch_plan(ticket_number), task_number)
            if update.is_applied_to(verified):
                return verified
            self._ensure_not_held_by_other(verified)
            logger.warning(
                "Task update did not persist: ticket=%d task=%d attempt=%d/%d",
                ticket_number,
                task_number,
                attempt,
                self.write_max_attempts,
            )

        raise CoordinationError(
            message=(
                f"Task {task_number} update did not persist after "
                f"{self.write_max_attempts} attempts"
            ),
            code=WRITE_NOT_PERSISTED,
        )

    def release_assignee(self, ticket_number: int, task_number: int) -> bool:
        """Leave the ticket's assignee set unless another active task of ours needs it."""

        return self._release_remote(self.fetch_plan(ticket_number), task_number)

    def _claim(self, ticket_number: int, task_number: int) -> ClaimResult:
        plan = self.fetch_plan(ticket_number)
        task = plan.task(task_number)
        if task is None:
            return ClaimResult(
                claimed=False,
                task_number=task_number,
                error=f"Task {task_number} not found in plan #{ticket_number}",
                error_kind=CLAIM_NOT_FOUND,
            )
        held_by_self = task.is_held_by(self.agent_id) and task.status != TaskStatus.COMPLETED
        if held_by_self and plan.has_remote_assignee(self.agent_id):
            logger.info(
                "Task already held by this agent: ticket=%d task=%d",
                ticket_number,
                task_number,
            )
            return ClaimResult(
                claimed=True,
                task_number=task_number,
                task=task,
                claimed_by=self.agent_id,
                already_held=True,
            )
        if task.assignee and not task.is_held_by(self.agent_id):
            return ClaimResult(
                claimed=False,
                task_number=task_number,
                task=task,
                claimed_by=task.assignee,
                error=f"Task {task_number} is already claimed by {task.assignee}",
                error_kind=CLAIM_HELD_BY_OTHER,
            )
        # A document claim without the remote assignee is re-confirmed below.
        refusal = None if held_by_self else self._refusal_reason(plan, task)
        if refusal is not None:
            return refusal

        self.tracker.add_assignees(ticket_number, [self.agent_id])

        for attempt in range(1, self.claim_max_attempts + 1):
            plan = self.fetch_plan(ticket_number)
            current = _require_task(plan, task_number)
            if current.assignee and not current.is_held_by(self.agent_id):
                return self._lost(plan, current)
            if current.assignee is None:
                if current.status != TaskStatus.PENDING:
                    self._abandon_claim(ticket_number, task_number)
                    return ClaimResult(
                        claimed=False,
                        task_number=task_number,
                        task=current,
                        error=f"Task {task_number} became {current.status.value} during claim",
                        error_kind=CLAIM_NOT_CLAIMABLE,
                    )
                body = rewrite_task(
                    plan.raw_body,
                    task_number,
                    TaskUpdate(status=TaskStatus.IN_PROGRESS, assignee=self.agent_id),
                )
                self.tracker.update_issue(ticket_number, body=body)

            if self.consensus_delay_seconds > 0:
                self._sleep(self.consensus_delay_seconds)

            confirmed_plan = self.fetch_plan(ticket_number)
            confirmed = _require_task(confirmed_plan, task_number)
            holds_document = confirmed.is_held_by(self.agent_id)
            in_remote_set = confirmed_plan.has_remote_assignee(self.agent_id)
            if holds_document and in_remote_set:
                logger.info(
                    "Task claimed: ticket=%d task=%d agent=%s attempt=%d",
                    ticket_number,
                    task_number,
                    self.agent_id,
                    attempt,
                )
                return ClaimResult(
                    claimed=True,
                    task_number=task_number,
                    task=confirmed,
                    claimed_by=self.agent_id,
                )
            if confirmed.assignee and not holds_document:
                return self._lost(confirmed_plan, confirmed)
            if not in_remote_set:
                logger.warning(
                    "Agent dropped from assignees during claim: ticket=%d task=%d",
                    ticket_number,
                    task_number,
                )
                self.tracker.add_assignees(ticket_number, [self.agent_id])
            else:
                logger.info(
                    "Claim write was overwritten, retrying: ticket=%d task=%d attempt=%d/%d",
                    ticket_number,
                    task_number,
                    attempt,
                    self.claim_max_attempts,
                )

        self._abandon_claim(ticket_number, task_number)
        return ClaimResult(
            claimed=False,
            task_number=task_number,
            error=(
                f"Could not confirm claim of Task {task_number} after "
                f"{self.claim_max_attempts} attempts"
            ),
            error_kind=CLAIM_UNCONFIRMED,
        )

    def _refusal_reason(self, plan: ParsedPlan, task: Task) -> ClaimResult | None:
        if task.status != TaskStatus.PENDING:
            return ClaimResult(
                claimed=False,
                task_number=task.number,
                task=task,
                error=f"Task {task.number} is {task.status.value}, not pending",
                error_kind=CLAIM_NOT_CLAIMABLE,
            )
        if not dependencies_met(task, plan):
            completed = completed_task_numbers(plan)
            unmet = ", ".join(str(dep) for dep in task.dependencies if dep not in completed)
            return ClaimResult(
                claimed=False,
                task_number=task.number,
                task=task,
                error=f"Task {task.number} has unmet dependencies: {unmet}",
                error_kind=CLAIM_NOT_CLAIMABLE,
            )
        if self.multi_task_policy == MultiTaskPolicy.BLOCK:
            held = [held.number for held in plan.active_tasks_held_by(self.agent_id)]
            if held:
                return ClaimResult(
                    claimed=False,
                    task_number=task.number,
                    task=task,
                    error=(
                        f"Agent {self.agent_id} already holds Task "
                        f"{', '.join(str(number) for number in held)} in this plan"
                    ),
                    error_kind=CLAIM_POLICY_BLOCKED,
                )
        return None

    def _abandon_claim(self, ticket_number: int, task_number: int) -> None:
        """Undo this agent's unconfirmed document write, then leave the assignee set."""

        plan = self.fetch_plan(ticket_number)
        task = _require_task(plan, task_number)
        if task.is_held_by(self.agent_id) and task.status != TaskStatus.COMPLETED:
            logger.warning(
                "Rolling back unconfirmed claim: ticket=%d task=%d agent=%s",
                ticket_number,
                task_number,
                self.agent_id,
            )
            self.update_task(
                ticket_number,
                task_number,
                TaskUpdate(status=TaskStatus.PENDING, assignee=None),
            )
            plan = self.fetch_plan(ticket_number)
        self._release_remote(plan, task_number)

    def _lost(self, plan: ParsedPlan, task: Task) -> ClaimResult:
        logger.info(
            "Claim lost: ticket=%s task=%d winner=%s",
            plan.number,
            task.number,
            task.assignee,
        )
        self._release_remote(plan, task.number)
        return ClaimResult(
            claimed=False,
            task_number=task.number,
            task=task,
            claimed_by=task.assignee,
            error=f"Task {task.number} was claimed by {task.assignee}",
            error_kind=CLAIM_LOST,
        )

    def _release_remote(self, plan: ParsedPlan, task_number: int) -> bool:
        if plan.number is None or not plan.has_remote_assignee(self.agent_id):
            return False
        others = [
            task.number
            for task in plan.active_tasks_held_by(self.agent_id)
            if task.number != task_number
        ]
        if others:
            logger.info(
                "Keeping assignee, agent still holds tasks %s on ticket=%d",
                others,
                plan.number,
            )
            return False
        self.tracker.remove_assignees(plan.number, [self.agent_id])
        return True

    def _ensure_not_held_by_other(self, task: Task) -> None:
        if task.assignee and not task.is_held_by(self.agent_id):
            raise ClaimConflictError(
                message=f"Task {task.number} is held by {task.assignee}",
                claimed_by=task.assignee,
            )

    def _finish_claim(self, ticket_number: int, result: ClaimResult) -> None:
        details: dict[str, object] = {}
        if result.claimed_by:
            details["claimed_by"] = result.claimed_by
        if result.error:
            details["error"] = result.error
        if result.claimed:
            if result.already_held:
                return
            self.record_event(ticket_number, JournalEventType.CLAIMED, result.task_number, details)
            title = result.task.title if result.task is not None else ""
            self.post_notice(
                ticket_number,
                result.task_number,
                NoticeKind.CLAIM,
                claim_notice(result.task_number, title),
                deduplicate=True,
            )
        else:
            event_type = (
                JournalEventType.CLAIM_LOST
                if result.error_kind == CLAIM_LOST
                else JournalEventType.CLAIM_FAILED
            )
            self.record_event(ticket_number, event_type, result.task_number, details)

    def post_notice(
        self,
        ticket_number: int,
        task_number: int | None,
        kind: NoticeKind,
        body: str,
        *,
        deduplicate: bool = False,
    ) -> bool:
        """Post a status comment. Notices are informational; failures are logged only."""

        if not self.post_notices:
            return False
        if (
            deduplicate
            and self.journal is not None
            and task_number is not None
            and self.journal.has_notice_since_release(
                ticket=ticket_number,
                task_number=task_number,
                kind=kind.value,
            )
        ):
            logger.info(
                "Notice already posted: ticket=%d task=%s kind=%s",
                ticket_number,
                task_number,
                kind.value,
            )
            return False
        try:
            self.tracker.create_comment(ticket_number, body)
        except (CoordinationError, httpx.HTTPError) as error:
            logger.warning(
                "Notice not posted: ticket=%d task=%s kind=%s error=%s",
                ticket_number,
                task_number,
                kind.value,
                error,
            )
            return False
        self.record_event(
            ticket_number,
            JournalEventType.NOTICE_POSTED,
            task_number,
            {"kind": kind.value},
        )
        return True

    def record_event(
        self,
        ticket_number: int,
        event_type: JournalEventType,
        task_number: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        if self.journal is None:
            return
        self.journal.record(
            ticket=ticket_number,
            event_type=event_type,
            task_number=task_number,
            details=details,
        )


def _require_task(plan: ParsedPlan, task_number: int) -> Task:
    task = plan.task(task_number)
    if task is None:
        raise MalformedPlanError(
            message=f"Task {task_number} not found in plan #{plan.number}",
            task_number=task_number,
        )
    return task
