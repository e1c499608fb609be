"""CLI entrypoint for plan-coord."""

import logging
from collections.abc import Callable
from pathlib import Path

import httpx
import rich_click as click

from plan_coordinator import __version__
from plan_coordinator.controllers import (
    JournalCommand,
    PlanCliController,
    PlanCreateCommand,
    PlanRefCommand,
    TaskCliController,
    TaskCompleteCommand,
    TaskMessageCommand,
    TaskRefCommand,
)
from plan_coordinator.errors import CoordinationError

click.rich_click.USE_MARKDOWN = True
PLAN_CONTROLLER = PlanCliController()
TASK_CONTROLLER = TaskCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Coordination journal SQLite path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="plan-coord")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def plan_coord(log_level: str) -> None:
    """Coordinate agents working on a shared **[PLAN]** ticket."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@plan_coord.group()
def plan() -> None:
    """Plan ticket commands."""


@plan.command("create")
@click.option(
    "--file",
    "definition_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON plan definition: title, goal, context, tasks, verification.",
)
def plan_create(definition_path: Path) -> None:
    """Create a plan ticket from a definition file."""

    _run(lambda: PLAN_CONTROLLER.create(PlanCreateCommand(definition_path=definition_path)))


@plan.command("show")
@click.argument("number", type=click.IntRange(min=1))
def plan_show(number: int) -> None:
    """Show plan status and tasks."""

    _run(lambda: PLAN_CONTROLLER.show(PlanRefCommand(number=number)))


@plan.command("claimable")
@click.argument("number", type=click.IntRange(min=1))
def plan_claimable(number: int) -> None:
    """List tasks that can be claimed right now."""

    _run(lambda: PLAN_CONTROLLER.claimable(PlanRefCommand(number=number)))


@plan.command("check")
@click.argument("number", type=click.IntRange(min=1))
def plan_check(number: int) -> None:
    """Report dependency cycles and broken dependency references."""

    _run(lambda: PLAN_CONTROLLER.check(PlanRefCommand(number=number)))


@plan.command("close")
@click.argument("number", type=click.IntRange(min=1))
def plan_close(number: int) -> None:
    """Close a plan ticket and label it complete."""

    _run(lambda: PLAN_CONTROLLER.close(PlanRefCommand(number=number)))


@plan_coord.group()
def task() -> None:
    """Task commands for the agent named by PLAN_COORD_AGENT_ID."""


@task.command("claim")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@_DB_PATH_OPTION
def task_claim(number: int, task_number: int, db_path: Path | None) -> None:
    """Claim a task with confirm-by-re-read."""

    _run(
        lambda: TASK_CONTROLLER.claim(
            TaskRefCommand(number=number, task_number=task_number, db_path=db_path),
        ),
    )


@task.command("start")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@_DB_PATH_OPTION
def task_start(number: int, task_number: int, db_path: Path | None) -> None:
    """Mark a held task in progress."""

    _run(
        lambda: TASK_CONTROLLER.start(
            TaskRefCommand(number=number, task_number=task_number, db_path=db_path),
        ),
    )


@task.command("release")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@_DB_PATH_OPTION
def task_release(number: int, task_number: int, db_path: Path | None) -> None:
    """Return a task to the pool."""

    _run(
        lambda: TASK_CONTROLLER.release(
            TaskRefCommand(number=number, task_number=task_number, db_path=db_path),
        ),
    )


@task.command("complete")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@click.option("--summary", required=True, help="What was done.")
@click.option(
    "--file",
    "files_changed",
    multiple=True,
    help="Changed file path. Can be repeated.",
)
@click.option(
    "--tests-passed/--tests-failed",
    default=None,
    help="Test outcome; omit when tests were not run.",
)
@_DB_PATH_OPTION
def task_complete(  # noqa: PLR0913
    number: int,
    task_number: int,
    summary: str,
    files_changed: tuple[str, ...],
    tests_passed: bool | None,
    db_path: Path | None,
) -> None:
    """Report a task as completed; closes the plan when it was the last one."""

    _run(
        lambda: TASK_CONTROLLER.complete(
            TaskCompleteCommand(
                number=number,
                task_number=task_number,
                summary=summary,
                files_changed=files_changed,
                tests_passed=tests_passed,
                db_path=db_path,
            ),
        ),
    )


@task.command("block")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@click.option("--reason", required=True, help="Why the task cannot proceed.")
@_DB_PATH_OPTION
def task_block(number: int, task_number: int, reason: str, db_path: Path | None) -> None:
    """Report a task as blocked and release it."""

    _run(
        lambda: TASK_CONTROLLER.block(
            TaskMessageCommand(
                number=number,
                task_number=task_number,
                message=reason,
                db_path=db_path,
            ),
        ),
    )


@task.command("fail")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@click.option("--error", "error_text", required=True, help="Failure details.")
@_DB_PATH_OPTION
def task_fail(number: int, task_number: int, error_text: str, db_path: Path | None) -> None:
    """Report an unrecoverable task failure and release it."""

    _run(
        lambda: TASK_CONTROLLER.fail(
            TaskMessageCommand(
                number=number,
                task_number=task_number,
                message=error_text,
                db_path=db_path,
            ),
        ),
    )


@task.command("progress")
@click.argument("number", type=click.IntRange(min=1))
@click.argument("task_number", type=click.IntRange(min=1))
@click.option("-m", "--message", required=True, help="Progress update text.")
@_DB_PATH_OPTION
def task_progress(number: int, task_number: int, message: str, db_path: Path | None) -> None:
    """Post a progress notice for a task."""

    _run(
        lambda: TASK_CONTROLLER.progress(
            TaskMessageCommand(
                number=number,
                task_number=task_number,
                message=message,
                db_path=db_path,
            ),
        ),
    )


@plan_coord.command("journal")
@click.argument("number", type=click.IntRange(min=1))
@click.option("--task", "task_number", type=click.IntRange(min=1), default=None)
@_DB_PATH_OPTION
def journal(number: int, task_number: int | None, db_path: Path | None) -> None:
    """Show this agent's local coordination journal for a plan ticket."""

    _run(
        lambda: TASK_CONTROLLER.journal(
            JournalCommand(number=number, task_number=task_number, db_path=db_path),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (CoordinationError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    except httpx.HTTPError as error:
        raise click.ClickException(f"{type(error).__name__}: {error}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    plan_coord()
