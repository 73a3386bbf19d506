from pathlib import Path

import allure
from sqlalchemy import text

from agent_relay.pipeline.repository import PipelineStateStore

pytestmark = [
    allure.epic("Pipeline State"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """
            )
        ).scalars().all()
    store.close()

    assert version == "20261018_0002"
    assert tables == [
        "manual_queue",
        "pipeline_errors",
        "pipeline_stages",
        "pipelines",
        "pr_watches",
        "processed_comments",
        "review_watches",
    ]


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_pipeline("T1", "Task T1")

    store.init_schema()

    assert store.get("T1") is not None
    store.close()
