from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner
from conftest import GithubApiStub

from plan_coordinator import __version__, main
from plan_coordinator.main import plan_coord

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Plan and Task Commands"),
]


@pytest.fixture()
def stub(monkeypatch, coordination_env: Path) -> GithubApiStub:
    stub = GithubApiStub()
    monkeypatch.setattr(main.PLAN_CONTROLLER, "transport", stub.transport())
    monkeypatch.setattr(main.TASK_CONTROLLER, "transport", stub.transport())
    monkeypatch.setattr(main.TASK_CONTROLLER, "sleep", lambda _seconds: None)
    return stub


def _definition_file(tmp_path: Path) -> Path:
    path = tmp_path / "plan.json"
    path.write_text(
        json.dumps(
            {
                "title": "Ship the widget",
                "goal": "Widgets ship on time.",
                "tasks": [
                    {"title": "Build core", "files": ["src/core.py"]},
                    {"title": "Wire CLI", "dependencies": [1]},
                ],
            },
        ),
        encoding="utf-8",
    )
    return path


def _invoke(*args: str):
    return CliRunner().invoke(plan_coord, list(args))


def test_version_option() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_plan_lifecycle_through_cli(stub: GithubApiStub, tmp_path: Path) -> None:
    created = _invoke("plan", "create", "--file", str(_definition_file(tmp_path)))
    assert created.exit_code == 0, created.output
    assert "Plan created: number=1" in created.output
    assert stub.issues[1]["title"] == "[PLAN] Ship the widget"

    claimable = _invoke("plan", "claimable", "1")
    assert claimable.exit_code == 0, claimable.output
    assert "Task 1 [pending]" in claimable.output
    assert "Task 2" not in claimable.output

    check = _invoke("plan", "check", "1")
    assert "no integrity issues" in check.output

    blocked = _invoke("task", "claim", "1", "2")
    assert blocked.exit_code == 0, blocked.output
    assert "Task 2 not claimed" in blocked.output

    claimed = _invoke("task", "claim", "1", "1")
    assert claimed.exit_code == 0, claimed.output
    assert "Task 1 claimed by agent-a" in claimed.output
    assert stub.issues[1]["assignees"] == [{"login": "agent-a"}]

    again = _invoke("task", "claim", "1", "1")
    assert "Task 1 already held by agent-a" in again.output

    first = _invoke(
        "task",
        "complete",
        "1",
        "1",
        "--summary",
        "Core built.",
        "--file",
        "src/core.py",
        "--tests-passed",
    )
    assert first.exit_code == 0, first.output
    assert "Task 1 completed" in first.output
    assert "Plan #1 complete" not in first.output

    assert _invoke("task", "claim", "1", "2").exit_code == 0
    progress = _invoke("task", "progress", "1", "2", "-m", "Half way")
    assert "Progress posted for Task 2" in progress.output

    second = _invoke("task", "complete", "1", "2", "--summary", "CLI wired.")
    assert second.exit_code == 0, second.output
    assert "Plan #1 complete and closed" in second.output
    assert stub.issues[1]["state"] == "closed"
    assert stub.issues[1]["assignees"] == []
    assert [label["name"] for label in stub.issues[1]["labels"]] == ["plan", "plan:complete"]

    shown = _invoke("plan", "show", "1")
    assert "Task 1 [completed] assignee=agent-a" in shown.output
    assert "Task 2 [completed] assignee=agent-a" in shown.output

    bodies = [comment["body"] for comment in stub.comments[1]]
    assert any(body.startswith("**Claiming Task 1") for body in bodies)
    assert any(body.startswith("**Plan Complete!**") for body in bodies)

    history = _invoke("journal", "1", "--task", "1")
    assert history.exit_code == 0, history.output
    assert "event=claimed" in history.output
    assert "event=completed" in history.output


def test_release_and_block_commands(stub: GithubApiStub, tmp_path: Path) -> None:
    _invoke("plan", "create", "--file", str(_definition_file(tmp_path)))

    assert "nothing to release" in _invoke("task", "release", "1", "1").output

    _invoke("task", "claim", "1", "1")
    released = _invoke("task", "release", "1", "1")
    assert "Task 1 released" in released.output
    assert stub.issues[1]["assignees"] == []

    _invoke("task", "claim", "1", "1")
    blocked = _invoke("task", "block", "1", "1", "--reason", "Missing API key")
    assert blocked.exit_code == 0, blocked.output
    assert "Task 1 blocked" in blocked.output
    assert "plan:blocked" in [label["name"] for label in stub.issues[1]["labels"]]


def test_unauthorized_claim_aborts(stub: GithubApiStub, tmp_path: Path) -> None:
    _invoke("plan", "create", "--file", str(_definition_file(tmp_path)))
    stub.status_override = 401

    result = _invoke("task", "claim", "1", "1")

    assert result.exit_code == 1
    assert "unauthorized" in result.output


def test_missing_agent_id_is_reported(stub: GithubApiStub, monkeypatch) -> None:
    monkeypatch.delenv("PLAN_COORD_AGENT_ID")

    result = _invoke("task", "claim", "1", "1")

    assert result.exit_code == 1
    assert "PLAN_COORD_AGENT_ID" in result.output
    assert stub.requests == []


def test_transport_error_is_reported_without_traceback(
    monkeypatch,
    coordination_env: Path,
) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(main.PLAN_CONTROLLER, "transport", httpx.MockTransport(refuse))

    result = _invoke("plan", "show", "1")

    assert result.exit_code == 1
    assert "ConnectError" in result.output
    assert "Traceback" not in result.output
