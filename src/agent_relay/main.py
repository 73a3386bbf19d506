"""CLI entrypoint for agent-relay."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.controllers import (
    ActiveCommand,
    AgentRelayCliController,
    CleanupCommand,
    QueueCommand,
    RerunCommand,
    RerunOutput,
    RunCommand,
    StatusCommand,
)
from agent_relay.errors import AgentRelayError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentRelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for relay output.",
)
def agent_relay(log_level: str) -> None:
    """Relay tracker tasks through coding-agent pipeline stages."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one poll of tasks and watchers, or loop until SIGINT/SIGTERM.",
)
def run(db_path: Path | None, once: bool) -> None:
    """Run the relay daemon."""

    try:
        lines = CONTROLLER.run(RunCommand(db_path=db_path, once=once))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_relay.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def status(db_path: Path | None, task_id: str) -> None:
    """Show pipeline state, stage log and errors for one task."""

    _emit_lines(CONTROLLER.status(StatusCommand(db_path=db_path, task_id=task_id)))


@agent_relay.command("active")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def active(db_path: Path | None) -> None:
    """List pipelines that are still in progress."""

    _emit_lines(CONTROLLER.active(ActiveCommand(db_path=db_path)))


@agent_relay.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Remove finished pipelines older than this; defaults to AGENT_RELAY_CLEANUP_AFTER_DAYS.",
)
def cleanup(db_path: Path | None, days: int | None) -> None:
    """Delete completed and failed pipelines past the retention window."""

    _emit_lines(CONTROLLER.cleanup(CleanupCommand(db_path=db_path, days=days)))


@agent_relay.command("queue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--resolve", "resolve_task_id", default=None, help="Mark a task as handled.")
def queue(db_path: Path | None, resolve_task_id: str | None) -> None:
    """List tasks waiting for manual intervention."""

    _emit_lines(
        CONTROLLER.queue(QueueCommand(db_path=db_path, resolve_task_id=resolve_task_id)),
    )


@agent_relay.command("rerun-review")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def rerun_review(db_path: Path | None, task_id: str) -> None:
    """Re-run the review stage for a task whose implementation completed."""

    _emit_rerun(lambda: CONTROLLER.rerun_review(RerunCommand(db_path=db_path, task_id=task_id)))


@agent_relay.command("rerun-fixes")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def rerun_fixes(db_path: Path | None, task_id: str) -> None:
    """Re-run the fixes stage for a task whose implementation completed."""

    _emit_rerun(lambda: CONTROLLER.rerun_fixes(RerunCommand(db_path=db_path, task_id=task_id)))


def _emit_rerun(action: Callable[[], RerunOutput]) -> None:
    try:
        output = action()
    except (AgentRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(output.lines)
    if not output.success:
        raise click.ClickException("Re-run failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
