"""Run Alembic migrations programmatically against a SQLite file."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    command.upgrade(_alembic_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    """Return the revision stamped in the database, or None for a fresh file."""

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def _alembic_config(db_path: Path) -> Config:
    project_root = Path(__file__).resolve().parents[3]
    config = Config(str(project_root / "alembic.ini"))
    config.set_main_option("script_location", str(project_root / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
