"""Task pipeline: durable stage state, stage execution and the orchestrator.

Every component reads and writes the same SQLite-backed state store. The
orchestrator, the completion watchers and the command dispatcher never keep
a private copy of a pipeline record between calls, and stage executors only
run through :class:`~agent_relay.pipeline.stages.StageRunner`, which refuses
to start a stage that is already in progress for the task.
"""
