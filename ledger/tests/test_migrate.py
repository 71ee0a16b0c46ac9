"""Tests for schema migration."""

from unittest.mock import MagicMock

from ledger.migrate import run_migration, schema_files


def test_bundled_schema_creates_both_tables():
    store = MagicMock()

    applied = run_migration(store)

    assert applied == [path.name for path in schema_files()]
    ddl = " ".join(call.args[0] for call in store.run_migration.call_args_list)
    assert "sync_cursor" in ddl
    assert "token_holders" in ddl


def test_files_apply_in_name_order(tmp_path):
    (tmp_path / "002_b.sql").write_text("CREATE TABLE b (y UInt8);")
    (tmp_path / "001_a.sql").write_text("CREATE TABLE a (x UInt8);")
    (tmp_path / "notes.txt").write_text("ignored")
    store = MagicMock()

    assert run_migration(store, schema_dir=tmp_path) == ["001_a.sql", "002_b.sql"]


def test_empty_schema_dir_applies_nothing(tmp_path):
    store = MagicMock()

    assert run_migration(store, schema_dir=tmp_path) == []
    store.run_migration.assert_not_called()
