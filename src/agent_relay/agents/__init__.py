"""Stage executor implementations."""

from agent_relay.agents.base import StageExecutor
from agent_relay.agents.cli_executor import CliStageExecutor

__all__ = [
    "CliStageExecutor",
    "StageExecutor",
]
