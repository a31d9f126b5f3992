"""Programmatic Alembic migration runner.

Lets the CLI apply the schema without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"


def sqlalchemy_url(db_url: str) -> str:
    """Return *db_url* with the ``postgresql://`` scheme SQLAlchemy expects."""
    if db_url.startswith("postgres://"):
        return "postgresql://" + db_url[len("postgres://") :]
    return db_url


def _build_alembic_config(db_url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", sqlalchemy_url(db_url).replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions"))
    return config


async def run_migrations(db_url: str, revision: str = "head") -> None:
    """Upgrade the database at *db_url* to *revision*.

    Args:
        db_url: asyncpg-style or SQLAlchemy-style PostgreSQL URL.
        revision: Alembic revision target, ``head`` by default.
    """
    config = _build_alembic_config(db_url)
    logger.info("Running migrations to %s", revision)
    command.upgrade(config, revision)
