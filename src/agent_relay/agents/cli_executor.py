"""Subprocess-based stage executor for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from agent_relay.clients.base import Task, default_branch_name
from agent_relay.config import AgentSettings, RepositorySettings
from agent_relay.errors import StageExecutionError
from agent_relay.pipeline.models import StageContext, StageName, StageResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_CONTENT_LIMIT_CHARS = 20_000
_STAGE_INSTRUCTIONS: dict[StageName, str] = {
    StageName.ANALYSIS: (
        "Analyze the task below against the repository. Describe the files to change and the "
        "approach. Do not modify files."
    ),
    StageName.IMPLEMENTATION: (
        "Implement the task below on branch {branch}. Commit your changes, push the branch and "
        "open a pull request."
    ),
    StageName.REVIEW: (
        "Review the changes on branch {branch}. Leave TODO comments where changes are needed and "
        "commit them with a message starting with 'review:'."
    ),
    StageName.FIXES: (
        "Address every TODO review comment on branch {branch}. Commit with a message starting "
        "with 'fix:' that mentions the resolved TODOs."
    ),
}


class CliStageExecutor:
    """Render a per-stage command template and run it with a hard timeout."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        repository: RepositorySettings,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.shutdown_requested = shutdown_requested

    def execute(self, task: Task, context: StageContext) -> StageResult:
        stage = context.stage
        branch = context.branch or default_branch_name(task.task_id)
        workdir = self.settings.workdir_root / task.task_id / stage.value
        workdir.mkdir(parents=True, exist_ok=True)
        prompt = build_stage_prompt(task, context, branch=branch)
        prompt_file = workdir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"

        template = self.settings.command_templates.get(stage.value, "")
        run_args = build_run_args(
            stage=stage,
            command_template=template,
            values={
                "prompt": prompt,
                "prompt_file": str(prompt_file),
                "branch": branch,
                "task_id": task.task_id,
                "workdir": str(workdir),
            },
        )

        env = os.environ.copy()
        env["AGENT_RELAY_TASK_ID"] = task.task_id
        env["AGENT_RELAY_STAGE"] = stage.value
        env["AGENT_RELAY_BRANCH"] = branch
        cwd = self.repository.path

        logger.info("Launching %s for %s: %s", stage.value, task.task_id, run_args[0])
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=cwd,
                    timeout_seconds=self.settings.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=self.shutdown_requested,
                )
        except FileNotFoundError as error:
            raise StageExecutionError(
                stage.value,
                f"Agent command not found: {run_args[0]}",
            ) from error
        except OSError as error:
            raise StageExecutionError(stage.value, f"Agent failed to start: {error}") from error

        details = {
            "command": run_args[0],
            "exit_code": exit_code,
            "timed_out": timed_out,
            "workdir": str(workdir),
        }
        if timed_out:
            return StageResult(
                success=False,
                branch=branch,
                error=f"{stage.value} agent timed out after {self.settings.timeout_seconds}s",
                details=details,
            )
        if exit_code != 0:
            return StageResult(
                success=False,
                branch=branch,
                error=f"{stage.value} agent exited with code {exit_code}: {_tail(stderr_path)}",
                details=details,
            )
        return StageResult(
            success=True,
            branch=branch,
            content=_read_text(stdout_path)[:_CONTENT_LIMIT_CHARS] or None,
            details=details,
        )


def build_stage_prompt(task: Task, context: StageContext, *, branch: str) -> str:
    """Plain stage instruction followed by the task text."""

    parts = [
        _STAGE_INSTRUCTIONS[context.stage].format(branch=branch),
        "",
        f"Repository: {context.repository}",
        f"Task {task.task_id}: {task.name}",
    ]
    if task.description:
        parts.extend(["", task.description])
    if context.analysis:
        parts.extend(["", "Prior analysis:", context.analysis])
    if context.pr_url:
        parts.extend(["", f"Pull request: {context.pr_url}"])
    return "\n".join(parts) + "\n"


def build_run_args(
    *,
    stage: StageName,
    command_template: str,
    values: dict[str, str],
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise StageExecutionError(stage.value, f"No command template for {stage.value} stage.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise StageExecutionError(
            stage.value,
            "Command template must include {prompt} or {prompt_file}.",
        )
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise StageExecutionError(
            stage.value,
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise StageExecutionError(stage.value, "Command template rendered empty command.")
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        if shutdown_requested is not None and shutdown_requested():
            logger.warning("Shutdown requested; terminating agent pid %s", process.pid)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace").strip()


def _tail(path: Path, *, limit: int = 500) -> str:
    text = _read_text(path)
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]
