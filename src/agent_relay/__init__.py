"""agent-relay: tracker-driven multi-agent change pipeline."""

__version__ = "0.1.0"
