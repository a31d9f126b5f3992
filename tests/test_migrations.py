"""Tests for calmirror.migrations: Alembic configuration built in code."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from calmirror.migrations import ALEMBIC_DIR, _build_alembic_config, run_migrations, sqlalchemy_url

pytestmark = pytest.mark.unit


def test_sqlalchemy_url_rewrites_libpq_scheme():
    assert sqlalchemy_url("postgres://u:p@h/db") == "postgresql://u:p@h/db"
    assert sqlalchemy_url("postgresql://u:p@h/db") == "postgresql://u:p@h/db"


def test_config_points_at_bundled_versions():
    config = _build_alembic_config("postgres://u:p%40ss@h/db")

    assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
    assert config.get_main_option("version_locations") == str(ALEMBIC_DIR / "versions")
    # '%' is escaped for configparser and read back unescaped
    assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h/db"


def test_schema_revision_ships_with_package():
    assert (ALEMBIC_DIR / "env.py").is_file()
    assert (ALEMBIC_DIR / "versions" / "001_create_sync_tables.py").is_file()


async def test_run_migrations_upgrades_to_requested_revision():
    with patch("calmirror.migrations.command.upgrade") as upgrade:
        await run_migrations("postgres://u:p@h/db", "calmirror_001")

    config, revision = upgrade.call_args.args
    assert revision == "calmirror_001"
    assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p@h/db"
