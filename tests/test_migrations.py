"""Tests for the accounts schema migration."""

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock, patch

MIGRATION = Path(__file__).resolve().parents[1] / "migrations" / "versions" / "001_create_accounts.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("create_accounts_001", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_login_is_indexed_once_by_its_unique_constraint() -> None:
    migration = _load_migration()
    op = MagicMock()
    with patch.object(migration, "op", op):
        migration.upgrade()

    op.create_table.assert_called_once()
    op.create_index.assert_not_called()
    login = next(
        col for col in op.create_table.call_args.args[1:] if getattr(col, "name", None) == "login"
    )
    assert login.unique is True


def test_downgrade_drops_table_and_enum() -> None:
    migration = _load_migration()
    op = MagicMock()
    with patch.object(migration, "op", op), patch.object(migration, "activation_status") as enum:
        migration.downgrade()

    op.drop_table.assert_called_once_with("accounts")
    op.drop_index.assert_not_called()
    enum.drop.assert_called_once()
