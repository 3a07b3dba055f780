"""Tests for the calendar schema migration and the programmatic runner."""

from __future__ import annotations

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from briefings import migrations

pytestmark = pytest.mark.unit

ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"
MIGRATION_FILE = ALEMBIC_DIR / "versions" / "core" / "001_create_calendar_tables.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_core_001", MIGRATION_FILE)
    assert spec is not None
    assert spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def _executed_sql(monkeypatch, fn_name: str) -> str:
    mod = _load_migration()
    op = MagicMock()
    monkeypatch.setattr(mod, "op", op)
    getattr(mod, fn_name)()
    return "\n".join(call.args[0] for call in op.execute.call_args_list)


class TestCore001Migration:
    def test_revision_identifiers(self):
        mod = _load_migration()
        assert mod.revision == "core_001"
        assert mod.down_revision is None
        assert mod.branch_labels == ("core",)

    def test_upgrade_creates_calendar_tables(self, monkeypatch):
        sql = _executed_sql(monkeypatch, "upgrade")
        for table in (
            "calendar_connections",
            "calendar_meetings",
            "calendar_sync_progress",
            "analysts",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql

    def test_meetings_unique_per_connection_event(self, monkeypatch):
        sql = _executed_sql(monkeypatch, "upgrade")
        assert "UNIQUE (connection_id, external_event_id)" in sql
        assert "ON DELETE CASCADE" in sql

    def test_downgrade_keeps_crm_analysts(self, monkeypatch):
        sql = _executed_sql(monkeypatch, "downgrade")
        assert "DROP TABLE IF EXISTS calendar_connections" in sql
        assert "analysts" not in sql


class TestRunner:
    def test_core_chain_discovered(self):
        assert migrations.get_all_chains() == ["core"]

    def test_config_escapes_percent(self):
        config = migrations._build_alembic_config("postgresql://u:p%40ss@h/db")
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h/db"
        assert config.get_main_option("version_locations").endswith("core")

    async def test_unknown_chain_rejected(self):
        with pytest.raises(ValueError, match="Unknown migration chain"):
            await migrations.run_migrations("postgresql://u:p@h/db", chain="nope")

    async def test_upgrades_each_chain_to_head(self, monkeypatch):
        upgrade = MagicMock()
        monkeypatch.setattr(migrations.command, "upgrade", upgrade)
        await migrations.run_migrations("postgresql://u:p@h/db", chain="all")
        assert upgrade.call_args.args[1] == "core@head"
