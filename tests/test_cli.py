"""Tests for the command-line interface."""

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import yaml
from click.testing import CliRunner
from cryptography.fernet import Fernet

from inbox_janitor.cli import cli
from inbox_janitor.db.store import DatabaseStore
from inbox_janitor.engine.sync import SyncEngine, SyncStepResult


@pytest.fixture
def cli_config(
    temp_config_dir: Path, sample_config_dict: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Config file pointing the database and tokens at the temp data dir."""
    path = temp_config_dir / "config.yaml"
    path.write_text(yaml.dump(sample_config_dict))
    monkeypatch.setenv("JANITOR_CONFIG_PATH", str(path))
    monkeypatch.delenv("JANITOR_USER_ID", raising=False)
    return path


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in (
        "validate-config", "token-key", "serve", "accounts", "sync", "suggest", "candidates"
    ):
        assert command in result.output


def test_validate_config_ok(config_file: Path) -> None:
    result = CliRunner().invoke(cli, ["validate-config", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "Configuration valid" in result.output


def test_validate_config_missing(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["validate-config", "-c", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Load error" in result.output


def test_accounts_add_and_list(cli_config: Path, data_dir: Path) -> None:
    runner = CliRunner()

    added = runner.invoke(
        cli, ["accounts", "add", "Me@Gmail.com", "--refresh-token", "refresh-123"]
    )
    listed = runner.invoke(cli, ["accounts", "list"])

    assert added.exit_code == 0, added.output
    assert "me@gmail.com" in added.output
    assert len(list((data_dir / "tokens").iterdir())) == 1
    assert listed.exit_code == 0, listed.output
    assert "me@gmail.com" in listed.output
    assert "never" in listed.output


def test_accounts_are_per_user(cli_config: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["accounts", "add", "me@gmail.com", "--user", "alice"])

    result = runner.invoke(cli, ["accounts", "list", "--user", "bob"])

    assert result.exit_code == 0
    assert "No accounts connected" in result.output


def test_sync_unknown_account(cli_config: Path) -> None:
    result = CliRunner().invoke(cli, ["sync", "does-not-exist"])

    assert result.exit_code == 1
    assert "Account not found" in result.output


def test_candidates_empty(cli_config: Path, data_dir: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["accounts", "add", "me@gmail.com"])
    store = DatabaseStore(data_dir / "janitor.db")
    [account] = asyncio.run(store.list_accounts("local"))

    result = runner.invoke(cli, ["candidates", account.id])

    assert result.exit_code == 0
    assert "No deletion candidates" in result.output


def _step(status: str, has_more: bool, error_kind: str | None = None) -> SyncStepResult:
    return SyncStepResult(
        run_id="run-1",
        status=status,
        has_more=has_more,
        processed=3,
        total=10,
        error_kind=error_kind,
    )


class TestSyncTimeoutBackoff:
    @pytest.fixture
    def account_id(self, cli_config: Path, data_dir: Path) -> str:
        CliRunner().invoke(cli, ["accounts", "add", "me@gmail.com"])
        store = DatabaseStore(data_dir / "janitor.db")
        [account] = asyncio.run(store.list_accounts("local"))
        return account.id

    @pytest.fixture(autouse=True)
    def short_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("inbox_janitor.cli.SYNC_TIMEOUT_BACKOFF_SECONDS", [0.0, 0.0])

    def test_waits_after_transport_timeout_then_continues(
        self, account_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        run_sync = AsyncMock(
            side_effect=[
                _step("timeout", True, error_kind="timeout"),
                _step("completed", False),
            ]
        )
        monkeypatch.setattr(SyncEngine, "run_sync", run_sync)

        result = CliRunner().invoke(cli, ["sync", account_id])

        assert result.exit_code == 0, result.output
        assert "Retrying in 0s" in result.output
        assert run_sync.await_count == 2

    def test_gives_up_after_repeated_timeouts(
        self, account_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        run_sync = AsyncMock(return_value=_step("timeout", True, error_kind="timeout"))
        monkeypatch.setattr(SyncEngine, "run_sync", run_sync)

        result = CliRunner().invoke(cli, ["sync", account_id])

        assert result.exit_code == 1
        assert "kept timing out" in result.output
        assert run_sync.await_count == 3

    def test_budget_timeouts_continue_without_waiting(
        self, account_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        run_sync = AsyncMock(
            side_effect=[_step("timeout", True), _step("timeout", True), _step("completed", False)]
        )
        monkeypatch.setattr(SyncEngine, "run_sync", run_sync)

        result = CliRunner().invoke(cli, ["sync", account_id])

        assert result.exit_code == 0, result.output
        assert "Retrying" not in result.output
        assert run_sync.await_count == 3


def test_token_key_prints_usable_key() -> None:
    result = CliRunner().invoke(cli, ["token-key"])

    assert result.exit_code == 0
    key = result.stdout.splitlines()[0]
    assert len(key) == 44
    Fernet(key.encode())
