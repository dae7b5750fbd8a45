from pathlib import Path

import allure
from sqlalchemy import text

from mission_control.scheduler.repository import WorkStore
from mission_control.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Work Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = WorkStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()

    assert version == "20261018_0001"
    assert store.schema_revision() == version
    assert tables == ["agents", "capability_tokens", "events", "phases", "stories", "tasks"]
    store.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    store = WorkStore(tmp_path / "repeat.db")
    store.init_schema()
    store.init_schema()
    assert store.list_tasks() == []
    store.close()


def test_current_revision_is_none_before_migrations(tmp_path: Path) -> None:
    assert current_revision(tmp_path / "fresh.db") is None
