"""Stage executor interface."""

from __future__ import annotations

from typing import Protocol

from agent_relay.clients.base import Task
from agent_relay.pipeline.models import StageContext, StageResult


class StageExecutor(Protocol):
    """Protocol implemented by per-stage agent runners."""

    def execute(self, task: Task, context: StageContext) -> StageResult:
        """Run one stage for ``task`` and report the outcome."""
