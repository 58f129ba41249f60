"""Tests for the operator CLI."""

import pytest

from vesting_ledger.__main__ import build_parser, main
from vesting_ledger.config import clear_settings_cache


class TestParser:
    def test_rollback_requires_target(self) -> None:
        parser = build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["rollback"])
        args = parser.parse_args(["rollback", "--to", "100"])
        assert args.to == 100

    def test_reconcile_dry_run(self) -> None:
        args = build_parser().parse_args(["reconcile", "--dry-run"])
        assert args.command == "reconcile"
        assert args.dry_run is True

    def test_backfill_batch_size(self) -> None:
        args = build_parser().parse_args(["backfill-prices", "--batch-size", "25"])
        assert args.batch_size == 25


class TestMain:
    @pytest.fixture(autouse=True)
    def env(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.delenv("CHAIN_VAULT_FACTORY_ADDRESS", raising=False)
        monkeypatch.delenv("REDIS_URL", raising=False)
        clear_settings_cache()
        yield
        clear_settings_cache()

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_show_config(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["show-config"]) == 0
        assert "database_url" in capsys.readouterr().out

    def test_reconcile_without_factory_fails(self) -> None:
        assert main(["reconcile"]) == 1

    def test_init_db_then_rollback(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["init-db"]) == 0
        assert main(["rollback", "--to", "0"]) == 0
        assert '"new_head": 0' in capsys.readouterr().out
