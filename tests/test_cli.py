"""Tests for the calsync CLI commands."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from click.testing import CliRunner
from support import STANDUP_RETRO_ICS, USER_ID, FakeTransport, ReversibleCipher, make_source

import calsync.cli as cli_mod
from calsync.calendar.errors import AuthError
from calsync.calendar.orchestrator import SyncOrchestrator
from calsync.calendar.store import InMemoryEventStore
from calsync.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Swap the PostgreSQL/CalDAV wiring for in-memory doubles."""
    store = InMemoryEventStore()
    transport = FakeTransport()
    transport.set_ics(STANDUP_RETRO_ICS)
    cipher = ReversibleCipher()

    @asynccontextmanager
    async def _fake_orchestrator(config):
        yield SyncOrchestrator(store=store, transport=transport, cipher=cipher, config=config.sync)

    monkeypatch.setattr(cli_mod, "_orchestrator", _fake_orchestrator)
    monkeypatch.setattr(cli_mod, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli_mod, "init_telemetry", lambda service_name: None)
    monkeypatch.delenv("CALSYNC_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)

    store.sources["src-1"] = make_source(cipher=cipher, username="alice", password="s3cret")
    return store, transport


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestSyncCommand:
    def test_sync_one_day(self, runner, backend):
        store, transport = backend

        result = runner.invoke(cli, ["sync", "src-1", "--user", USER_ID, "--date", "2025-01-06"])

        assert result.exit_code == 0, result.output
        assert '"created": 1' in result.output
        assert len(store.occurrences) == 1
        _, window, credentials = transport.calls[0]
        assert window.start.isoformat() == "2025-01-06T00:00:00+00:00"
        assert credentials.username == "alice"

    def test_bad_date(self, runner, backend):
        result = runner.invoke(cli, ["sync", "src-1", "--user", USER_ID, "--date", "06/01/2025"])

        assert result.exit_code == 2
        assert "is not an ISO date" in result.output

    def test_sync_error_exits_one(self, runner, backend):
        _, transport = backend
        transport.error = AuthError("CalDAV server rejected the credentials")

        result = runner.invoke(cli, ["sync", "src-1", "--user", USER_ID, "--date", "2025-01-06"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_unknown_source(self, runner, backend):
        result = runner.invoke(cli, ["sync", "nope", "--user", USER_ID])

        assert result.exit_code == 1


class TestSyncAllCommand:
    def test_all_sources_succeed(self, runner, backend):
        result = runner.invoke(cli, ["sync-all", "--user", USER_ID, "--date", "2025-01-06"])

        assert result.exit_code == 0, result.output
        assert '"succeeded": 1' in result.output

    def test_failures_exit_two(self, runner, backend):
        store, transport = backend
        store.sources["src-2"] = make_source("src-2")
        transport.errors_by_source["src-2"] = AuthError("rejected")

        result = runner.invoke(cli, ["sync-all", "--user", USER_ID, "--date", "2025-01-06"])

        assert result.exit_code == 2
        assert '"failed": 1' in result.output
        assert "src-2" in result.output


class TestSourcesCommand:
    def test_lists_sources_without_passwords(self, runner, backend):
        result = runner.invoke(cli, ["sources", "--user", USER_ID])

        assert result.exit_code == 0
        assert "src-1" in result.output
        assert "never" in result.output
        assert "s3cret" not in result.output

    def test_no_sources(self, runner, backend):
        result = runner.invoke(cli, ["sources", "--user", "somebody-else"])

        assert result.exit_code == 0
        assert "No calendar sources." in result.output


class TestConfigErrors:
    def test_invalid_config_exits_one(self, runner, backend, tmp_path: Path):
        path = tmp_path / "calsync.toml"
        path.write_text("[http]\ntimeout_seconds = 0\n")

        result = runner.invoke(cli, ["--config", str(path), "sources", "--user", USER_ID])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_poll_without_users(self, runner, backend):
        result = runner.invoke(cli, ["poll"])

        assert result.exit_code == 1
        assert "No users configured" in result.output
