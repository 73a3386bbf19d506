from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_relay.config import (
    DEFAULT_AGENT_COMMAND_TEMPLATES,
    AgentSettings,
    PipelineSettings,
    RepositorySettings,
    Settings,
    TrackerSettings,
)

pytestmark = [
    allure.epic("Daemon Runtime"),
    allure.feature("Configuration"),
]


def _valid_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "tracker": TrackerSettings(api_key="pk_test", workspace_id="9001"),
        "repository": RepositorySettings(owner="acme", repo="widgets"),
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def test_from_env_reads_grouped_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_TRACKER_API_KEY", "pk_env")
    monkeypatch.setenv("AGENT_RELAY_TRACKER_WORKSPACE_ID", "42")
    monkeypatch.setenv("AGENT_RELAY_TRACKER_WATCH_STATUSES", "bot in progress, ready ,ready")
    monkeypatch.setenv("AGENT_RELAY_TRACKER_COMMENTS_ENABLED", "off")
    monkeypatch.setenv("AGENT_RELAY_REPO_OWNER", "acme")
    monkeypatch.setenv("AGENT_RELAY_REPO_NAME", "widgets")
    monkeypatch.setenv("AGENT_RELAY_REPO_PATH", "/srv/widgets")
    monkeypatch.setenv("AGENT_RELAY_PR_WATCH_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("AGENT_RELAY_MAX_REVIEW_ITERATIONS", "5")
    monkeypatch.setenv("AGENT_RELAY_RETRY_MAX_ATTEMPTS", "4")

    settings = Settings.from_env(db_path=Path("relay.db"))

    assert settings.db_path == Path("relay.db")
    assert settings.tracker.api_key == "pk_env"
    assert settings.tracker.workspace_id == "42"
    assert settings.tracker.watch_statuses == ("bot in progress", "ready")
    assert settings.tracker.comments_enabled is False
    assert settings.repository.full_name == "acme/widgets"
    assert settings.repository.path == Path("/srv/widgets")
    assert settings.pipeline.pr_watch_timeout_seconds == 600
    assert settings.pipeline.max_review_iterations == 5
    assert settings.retry.max_attempts == 4
    settings.validate_for_daemon()


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_RELAY_DB_PATH", raising=False)
    monkeypatch.delenv("AGENT_RELAY_REPO_PATH", raising=False)
    monkeypatch.delenv("AGENT_RELAY_TRACKER_COMMENTS_ENABLED", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_relay.db")
    assert settings.repository.path is None
    assert settings.tracker.comments_enabled is True
    assert settings.pipeline.cleanup_after_days == 7


def test_invalid_boolean_env_value_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_TRACKER_COMMENTS_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_command_template_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_REVIEW_COMMAND", "my-reviewer --prompt {prompt}")

    templates = Settings.from_env().agents.command_templates

    assert templates["review"] == "my-reviewer --prompt {prompt}"
    assert templates["analysis"] == DEFAULT_AGENT_COMMAND_TEMPLATES["analysis"]


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(), "AGENT_RELAY_TRACKER_API_KEY is required"),
        (
            Settings(tracker=TrackerSettings(api_key="pk_test")),
            "AGENT_RELAY_TRACKER_WORKSPACE_ID is required",
        ),
        (
            Settings(tracker=TrackerSettings(api_key="pk_test", workspace_id="1")),
            "AGENT_RELAY_REPO_OWNER and AGENT_RELAY_REPO_NAME are required",
        ),
    ],
)
def test_validate_for_daemon_requires_credentials(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_daemon()


def test_validate_for_daemon_rejects_relative_api_url() -> None:
    settings = _valid_settings(
        repository=RepositorySettings(owner="acme", repo="widgets", api_base_url="api.github.com"),
    )

    with pytest.raises(ValueError, match="Invalid AGENT_RELAY_HOST_API_URL"):
        settings.validate_for_daemon()


def test_validate_for_daemon_rejects_non_positive_intervals() -> None:
    settings = _valid_settings(pipeline=PipelineSettings(pr_check_interval_seconds=0))

    with pytest.raises(ValueError, match="AGENT_RELAY_PR_CHECK_INTERVAL_SECONDS must be > 0"):
        settings.validate_for_daemon()


def test_validate_for_daemon_rejects_zero_review_iterations() -> None:
    settings = _valid_settings(pipeline=PipelineSettings(max_review_iterations=0))

    with pytest.raises(ValueError, match="MAX_REVIEW_ITERATIONS must be >= 1"):
        settings.validate_for_daemon()


def test_validate_for_daemon_requires_template_per_stage() -> None:
    settings = _valid_settings(
        agents=AgentSettings(command_templates={"analysis": "gemini {prompt}"}),
    )

    with pytest.raises(ValueError, match="fixes, implementation, review"):
        settings.validate_for_daemon()
