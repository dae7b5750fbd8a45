"""Apply and inspect work store migrations."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

# src/mission_control/storage -> project root holding alembic.ini
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_schema(db_path: Path, revision: str = "head") -> None:
    """Migrate the work store database up to ``revision``."""

    command.upgrade(alembic_config(db_path), revision)


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, ``None`` before the first migration."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
