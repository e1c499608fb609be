"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

from plan_coordinator.coordination.claims import TaskClaimProtocol
from plan_coordinator.coordination.journal import CoordinationJournal
from plan_coordinator.http.tracker import Comment, Ticket
from plan_coordinator.plans.codec import render_definition
from plan_coordinator.plans.models import PlanDefinition, TaskDefinition


class FakeTracker:
    """In-memory issue tracker with the same additive assignee semantics as GitHub."""

    def __init__(self) -> None:
        self.tickets: dict[int, Ticket] = {}
        self.comments: dict[int, list[Comment]] = {}
        self.calls: list[tuple[str, int]] = []
        self.on_add_assignees: Callable[[int], None] | None = None
        self.drop_body_writes = False
        self.unassignable: set[str] = set()
        self.fail_with: Exception | None = None
        self._next_number = 1
        self._next_comment = 1

    def seed(
        self,
        body: str,
        *,
        title: str = "[PLAN] Demo",
        labels: Sequence[str] = ("plan", "plan:active"),
        assignees: Sequence[str] = (),
    ) -> int:
        return self.create_issue(title=title, body=body, labels=labels, assignees=assignees).number

    def body(self, number: int) -> str:
        return self.tickets[number].body

    def count(self, call: str) -> int:
        return sum(1 for name, _ in self.calls if name == call)

    def create_issue(
        self,
        *,
        title: str,
        body: str,
        labels: Sequence[str] = (),
        assignees: Sequence[str] = (),
    ) -> Ticket:
        number = self._next_number
        self._next_number += 1
        self.tickets[number] = Ticket(
            number=number,
            title=title,
            body=body,
            state="open",
            labels=tuple(labels),
            assignees=tuple(assignees),
            url=f"https://github.test/acme/widgets/issues/{number}",
        )
        self.comments[number] = []
        self.calls.append(("create_issue", number))
        return replace(self.tickets[number])

    def fetch_issue(self, number: int) -> Ticket:
        self._maybe_fail()
        self.calls.append(("fetch_issue", number))
        return replace(self.tickets[number])

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> Ticket:
        self._maybe_fail()
        self.calls.append(("update_issue", number))
        ticket = self.tickets[number]
        if title is not None:
            ticket.title = title
        if body is not None and not self.drop_body_writes:
            ticket.body = body
        if state is not None:
            ticket.state = state
        if labels is not None:
            ticket.labels = tuple(labels)
        return replace(ticket)

    def add_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        self._maybe_fail()
        hook, self.on_add_assignees = self.on_add_assignees, None
        if hook is not None:
            hook(number)
        self.calls.append(("add_assignees", number))
        ticket = self.tickets[number]
        current = list(ticket.assignees)
        for login in assignees:
            if login in self.unassignable:
                continue
            if login.lower() not in {existing.lower() for existing in current}:
                current.append(login)
        ticket.assignees = tuple(current)
        return replace(ticket)

    def remove_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        self._maybe_fail()
        self.calls.append(("remove_assignees", number))
        ticket = self.tickets[number]
        removed = {login.lower() for login in assignees}
        ticket.assignees = tuple(
            login for login in ticket.assignees if login.lower() not in removed
        )
        return replace(ticket)

    def create_comment(self, number: int, body: str) -> Comment:
        self._maybe_fail()
        self.calls.append(("create_comment", number))
        comment = Comment(comment_id=self._next_comment, body=body, author="bot")
        self._next_comment += 1
        self.comments[number].append(comment)
        return comment

    def list_comments(self, number: int) -> list[Comment]:
        self.calls.append(("list_comments", number))
        return list(self.comments[number])

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with


class GithubApiStub:
    """Serves the GitHub issue endpoints from memory through ``httpx.MockTransport``."""

    def __init__(self, *, owner: str = "acme", repo: str = "widgets") -> None:
        self.prefix = f"/repos/{owner}/{repo}/issues"
        self.issues: dict[int, dict] = {}
        self.comments: dict[int, list[dict]] = {}
        self.requests: list[httpx.Request] = []
        self.status_override: int | None = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        headers = {
            "x-ratelimit-remaining": "4999",
            "x-ratelimit-limit": "5000",
            "x-ratelimit-reset": "1900000000",
        }
        if self.status_override is not None:
            return httpx.Response(
                self.status_override,
                json={"message": "Bad credentials"},
                headers=headers,
            )

        path = request.url.path
        payload = json.loads(request.content) if request.content else {}
        if path == self.prefix and request.method == "POST":
            number = len(self.issues) + 1
            self.issues[number] = {
                "number": number,
                "title": payload["title"],
                "body": payload["body"],
                "state": "open",
                "labels": [{"name": label} for label in payload.get("labels", [])],
                "assignees": [],
                "html_url": f"https://github.test/acme/widgets/issues/{number}",
            }
            self.comments[number] = []
            return httpx.Response(201, json=self.issues[number], headers=headers)

        parts = path[len(self.prefix) :].strip("/").split("/")
        number = int(parts[0])
        issue = self.issues.get(number)
        if issue is None:
            return httpx.Response(404, json={"message": "Not Found"}, headers=headers)
        tail = parts[1] if len(parts) > 1 else ""

        if tail == "" and request.method == "GET":
            return httpx.Response(200, json=issue, headers=headers)
        if tail == "" and request.method == "PATCH":
            for key in ("title", "body", "state"):
                if key in payload:
                    issue[key] = payload[key]
            if "labels" in payload:
                issue["labels"] = [{"name": label} for label in payload["labels"]]
            return httpx.Response(200, json=issue, headers=headers)
        if tail == "assignees":
            logins = [item["login"] for item in issue["assignees"]]
            if request.method == "POST":
                logins.extend(login for login in payload["assignees"] if login not in logins)
            else:
                logins = [login for login in logins if login not in payload["assignees"]]
            issue["assignees"] = [{"login": login} for login in logins]
            return httpx.Response(201, json=issue, headers=headers)
        if tail == "comments" and request.method == "POST":
            comment = {
                "id": len(self.comments[number]) + 1,
                "body": payload["body"],
                "user": {"login": "bot"},
                "created_at": "2026-01-01T00:00:00Z",
            }
            self.comments[number].append(comment)
            return httpx.Response(201, json=comment, headers=headers)
        if tail == "comments":
            return httpx.Response(200, json=self.comments[number], headers=headers)
        return httpx.Response(405, json={"message": "Method Not Allowed"}, headers=headers)


def plan_definition(task_count: int = 2, dependencies: dict[int, tuple[int, ...]] | None = None):
    dependencies = dependencies or {}
    return PlanDefinition(
        title="Ship the widget",
        goal="Widgets ship on time.",
        context="Two agents share this plan.",
        tasks=[
            TaskDefinition(
                title=f"Step {number}",
                description=f"Do step {number}.",
                estimate="1h",
                dependencies=dependencies.get(number, ()),
                files=(f"src/step_{number}.py",),
            )
            for number in range(1, task_count + 1)
        ],
    )


def plan_body(task_count: int = 2, dependencies: dict[int, tuple[int, ...]] | None = None) -> str:
    return render_definition(plan_definition(task_count, dependencies))


@pytest.fixture()
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def journal(tmp_path: Path):
    journal = CoordinationJournal(tmp_path / "journal.db", agent_id="agent-a")
    journal.init_schema()
    yield journal
    journal.close()


@pytest.fixture()
def make_protocol(tracker: FakeTracker):
    def _make(agent_id: str = "agent-a", **kwargs) -> TaskClaimProtocol:
        kwargs.setdefault("consensus_delay_seconds", 0.0)
        kwargs.setdefault("sleep", lambda _seconds: None)
        return TaskClaimProtocol(tracker, agent_id=agent_id, **kwargs)

    return _make


@pytest.fixture()
def coordination_env(monkeypatch, tmp_path: Path) -> Path:
    db_path = tmp_path / "coord.db"
    monkeypatch.setenv("PLAN_COORD_AGENT_ID", "agent-a")
    monkeypatch.setenv("PLAN_COORD_OWNER", "acme")
    monkeypatch.setenv("PLAN_COORD_REPO", "widgets")
    monkeypatch.setenv("PLAN_COORD_GITHUB_TOKEN", "token-1")
    monkeypatch.setenv("PLAN_COORD_MIN_SPACING_SECONDS", "0")
    monkeypatch.setenv("PLAN_COORD_CONSENSUS_DELAY_SECONDS", "0")
    monkeypatch.setenv("PLAN_COORD_DB_PATH", str(db_path))
    return db_path
