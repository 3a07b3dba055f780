"""Tests for the CLI commands."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from briefings import __version__
from briefings.cli import cli
from briefings.errors import ConfigurationError
from briefings.sync.progress import SyncState
from briefings.sync.window import WindowPolicy
from briefings.vault import TokenVault

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


class TestGenerateKey:
    def test_prints_usable_key(self, runner):
        result = runner.invoke(cli, ["generate-key"])
        assert result.exit_code == 0
        key = result.output.strip()
        vault = TokenVault(key)
        assert vault.decrypt(vault.encrypt("secret")) == "secret"

    def test_keys_differ(self, runner):
        first = runner.invoke(cli, ["generate-key"]).output
        second = runner.invoke(cli, ["generate-key"]).output
        assert first != second


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestSyncCommand:
    def test_custom_window_requires_both_bounds(self, runner):
        result = runner.invoke(
            cli, ["sync", "conn-1", "--window", "custom", "--start", "2025-01-01"]
        )
        assert result.exit_code == 2
        assert "--start and --end are required" in result.output

    def test_configuration_error_exits_2(self, runner, monkeypatch):
        def _fail():
            raise ConfigurationError("GOOGLE_OAUTH_CLIENT_ID is not set")

        monkeypatch.setattr("briefings.cli.load_settings", _fail)
        result = runner.invoke(cli, ["sync", "conn-1"])
        assert result.exit_code == 2
        assert "GOOGLE_OAUTH_CLIENT_ID" in result.output

    @pytest.mark.parametrize(
        ("state", "exit_code"),
        [(SyncState.COMPLETED, 0), (SyncState.FAILED, 1), (SyncState.CANCELLED, 1)],
    )
    def test_exit_code_follows_outcome(self, runner, monkeypatch, settings, state, exit_code):
        calls = []

        async def _fake_run_sync(settings_arg, connection_id, policy):
            calls.append((connection_id, policy))
            return state

        monkeypatch.setattr("briefings.cli.load_settings", lambda: settings)
        monkeypatch.setattr("briefings.cli._run_sync", _fake_run_sync)
        result = runner.invoke(
            cli, ["sync", "conn-1", "--start", "2025-01-01", "--end", "2025-01-31"]
        )
        assert result.exit_code == exit_code
        [(connection_id, policy)] = calls
        assert connection_id == "conn-1"
        assert policy.kind == "custom"
        assert str(policy.start) == "2025-01-01"
        assert str(policy.end) == "2025-01-31"

    def test_named_window(self, runner, monkeypatch, settings):
        seen = []

        async def _fake_run_sync(settings_arg, connection_id, policy):
            seen.append(policy)
            return SyncState.COMPLETED

        monkeypatch.setattr("briefings.cli.load_settings", lambda: settings)
        monkeypatch.setattr("briefings.cli._run_sync", _fake_run_sync)
        result = runner.invoke(cli, ["sync", "conn-1", "--window", "all"])
        assert result.exit_code == 0
        assert seen == [WindowPolicy.all()]
