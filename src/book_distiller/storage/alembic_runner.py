"""Programmatic Alembic access for the settings database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from book_distiller.storage.common import sqlite_url

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config pointing at the repository migrations and ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    logger.debug("Upgrading settings schema at %s", db_path)
    command.upgrade(migration_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``, or ``None`` for an unmigrated database."""

    engine = create_engine(sqlite_url(db_path), poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
