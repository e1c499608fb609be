"""Plan ticket lifecycle: create, label by status, close."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from plan_coordinator.http.tracker import IssueTracker, Ticket
from plan_coordinator.plans.codec import PLAN_MARKER, parse_plan, render_definition
from plan_coordinator.plans.models import ParsedPlan, PlanDefinition, PlanStatus
from plan_coordinator.plans.resolver import IntegrityIssue, check_plan_integrity

logger = logging.getLogger(__name__)

PLAN_LABEL = "plan"
PLAN_STATUS_LABEL_PREFIX = "plan:"


@dataclass(slots=True)
class CreatedPlan:
    """Ticket created for a new plan."""

    number: int
    url: str


def plan_from_ticket(ticket: Ticket) -> ParsedPlan:
    """Parse the ticket body and attach the remote ticket fields."""

    plan = parse_plan(ticket.body, title=ticket.title)
    plan.number = ticket.number
    plan.url = ticket.url
    plan.labels = ticket.labels
    plan.assignees = ticket.assignees
    return plan


def plan_labels(status: PlanStatus, existing: Sequence[str] = ()) -> list[str]:
    """Replace any ``plan:*`` label with the one for ``status``; keep unrelated labels."""

    kept = [
        label
        for label in existing
        if label != PLAN_LABEL and not label.startswith(PLAN_STATUS_LABEL_PREFIX)
    ]
    return [PLAN_LABEL, f"{PLAN_STATUS_LABEL_PREFIX}{status.value}", *kept]


class PlanService:
    """Creates plan tickets and keeps their status labels in sync."""

    def __init__(self, tracker: IssueTracker) -> None:
        self.tracker = tracker

    def create_plan(self, definition: PlanDefinition) -> CreatedPlan:
        self.validate_definition(definition)
        ticket = self.tracker.create_issue(
            title=f"{PLAN_MARKER} {definition.title}",
            body=render_definition(definition),
            labels=plan_labels(PlanStatus.ACTIVE),
        )
        logger.info(
            "Plan created: number=%d tasks=%d url=%s",
            ticket.number,
            len(definition.tasks),
            ticket.url,
        )
        return CreatedPlan(number=ticket.number, url=ticket.url)

    def fetch_plan(self, number: int) -> ParsedPlan:
        return plan_from_ticket(self.tracker.fetch_issue(number))

    def set_plan_status(
        self,
        number: int,
        status: PlanStatus,
        *,
        current_labels: Sequence[str] | None = None,
    ) -> Ticket:
        if current_labels is None:
            current_labels = self.tracker.fetch_issue(number).labels
        logger.info("Plan status update: number=%d status=%s", number, status.value)
        return self.tracker.update_issue(number, labels=plan_labels(status, current_labels))

    def close_plan(self, number: int, *, current_labels: Sequence[str] | None = None) -> Ticket:
        if current_labels is None:
            current_labels = self.tracker.fetch_issue(number).labels
        logger.info("Closing plan: number=%d", number)
        return self.tracker.update_issue(
            number,
            state="closed",
            labels=plan_labels(PlanStatus.COMPLETE, current_labels),
        )

    @staticmethod
    def validate_definition(definition: PlanDefinition) -> None:
        """Reject definitions that would not render faithfully or could never finish."""

        if not definition.title.strip():
            raise ValueError("Plan title must not be empty.")
        _require_single_line("Plan title", definition.title)
        if not definition.tasks:
            raise ValueError("Plan must contain at least one task.")
        total = len(definition.tasks)
        for number, task in enumerate(definition.tasks, start=1):
            if not task.title.strip():
                raise ValueError(f"Task {number} has an empty title.")
            _require_single_line(f"Task {number} title", task.title)
            _require_single_line(f"Task {number} estimate", task.estimate or "")
            for path in task.files:
                _require_single_line(f"Task {number} file", path)
            for dep in task.dependencies:
                if dep == number:
                    raise ValueError(f"Task {number} cannot depend on itself.")
                if not 1 <= dep <= total:
                    raise ValueError(
                        f"Task {number} depends on Task {dep}, which does not exist (1..{total}).",
                    )

        for item in definition.verification:
            _require_single_line("Verification item", item)

        plan = parse_plan(render_definition(definition))
        if len(plan.tasks) != total:
            raise ValueError(
                f"Rendered plan has {len(plan.tasks)} task(s), expected {total}.",
            )
        for warning in check_plan_integrity(plan):
            if warning.issue == IntegrityIssue.DEPENDENCY_CYCLE:
                raise ValueError(warning.message)


def _require_single_line(label: str, value: str) -> None:
    if "\n" in value or "\r" in value:
        raise ValueError(f"{label} must be a single line.")
