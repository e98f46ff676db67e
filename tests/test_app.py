"""
Tests for app.py - the datamigrate command line.
"""

import pytest

from datamigrations import __version__
from datamigrations.app import build_parser, main
from datamigrations.lock import MigrationLock

FIRST = "2024_01_01_000000_first_job"
SECOND = "2024_01_02_000000_second_job"


@pytest.fixture
def cli_env(tmp_path, monkeypatch, settings):
    """Point the CLI at the test database and migrations directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATA_MIGRATIONS_DATABASE_URL", settings.database_url)
    monkeypatch.setenv("DATA_MIGRATIONS_PATH", str(settings.path))
    monkeypatch.setenv("DATA_MIGRATIONS_ENV", "local")
    monkeypatch.delenv("DATA_MIGRATIONS_CONFIRM_THRESHOLD", raising=False)
    monkeypatch.delenv("DATA_MIGRATIONS_USE_LOCK", raising=False)
    return settings


@pytest.fixture
def answer(monkeypatch):
    """Answer interactive prompts with the given reply; returns the prompts asked."""
    prompts = []

    def _answer(reply):
        def fake_input(prompt=""):
            prompts.append(prompt)
            return reply

        monkeypatch.setattr("builtins.input", fake_input)
        return prompts

    return _answer


class TestBasics:
    def test_version(self, capsys, cli_env):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == __version__

    def test_help_without_command(self, capsys, cli_env):
        assert main([]) == 0
        assert "usage: datamigrate" in capsys.readouterr().out

    def test_parser_defaults(self):
        args = build_parser().parse_args(["rollback"])
        assert args.step == 0
        assert args.batch is None


class TestInstallAndRun:
    """Test install and run commands."""

    def test_install(self, capsys, cli_env, datastore):
        assert main(["install"]) == 0
        assert "Data migrations table ready: data_migrations" in capsys.readouterr().out
        assert datastore.has_table("data_migrations")
        assert datastore.has_table("data_migrations_lock")

    def test_run_requires_install(self, capsys, cli_env, write_migration):
        write_migration(FIRST)

        assert main(["run"]) == 1
        assert "Run: datamigrate install" in capsys.readouterr().out

    def test_run(self, capsys, cli_env, write_migration, events_table, read_events):
        write_migration(FIRST)
        main(["install"])

        assert main(["run"]) == 0

        out = capsys.readouterr().out
        assert f"Migrating: {FIRST}" in out
        assert f"Migrated: {FIRST}" in out
        assert read_events() == [(FIRST, "up")]

    def test_run_nothing_pending(self, capsys, cli_env):
        main(["install"])

        assert main(["run"]) == 0
        assert "Nothing to migrate." in capsys.readouterr().out

    def test_dry_run(self, capsys, cli_env, write_migration, events_table, read_events):
        write_migration(FIRST)
        write_migration(SECOND)
        main(["install"])

        assert main(["run", "--dry-run"]) == 0

        out = capsys.readouterr().out
        assert "=== DRY RUN MODE ===" in out
        assert f"[DRY RUN] {FIRST}" in out
        assert "2 migration(s) would run." in out
        assert read_events() == []

    def test_failed_run_exits_non_zero(self, capsys, cli_env, write_migration, events_table):
        write_migration(FIRST, fail_message="boom")
        main(["install"])

        assert main(["run"]) == 1

        out = capsys.readouterr().out
        assert f"Failed: {FIRST} - boom" in out
        assert "Unexpected error: boom" in out

    def test_timeout_reported_as_migration_error(self, capsys, cli_env, write_migration, events_table, monkeypatch):
        write_migration(FIRST, up_extra=["time.sleep(1.1)"])
        monkeypatch.setenv("DATA_MIGRATIONS_TIMEOUT", "1")
        main(["install"])

        assert main(["run"]) == 1
        assert "Migration error: Migration" in capsys.readouterr().out

    def test_locked_run_exits_non_zero(self, capsys, cli_env, write_migration, datastore, events_table):
        write_migration(FIRST)
        main(["install"])
        MigrationLock(datastore, owner="other-host:7").acquire()

        assert main(["run"]) == 1
        assert "locked by other-host:7" in capsys.readouterr().out


class TestConfirmations:
    """Test production and row-count guards."""

    def test_production_requires_confirmation(self, capsys, cli_env, write_migration, events_table, read_events, answer, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_ENV", "production")
        write_migration(FIRST)
        main(["install"])
        prompts = answer("n")

        assert main(["run"]) == 1
        assert prompts and "production" in prompts[0]
        assert read_events() == []

    def test_production_with_force(self, cli_env, write_migration, events_table, read_events, answer, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_ENV", "production")
        write_migration(FIRST)
        main(["install"])
        prompts = answer("n")

        assert main(["run", "--force"]) == 0
        assert prompts == []
        assert read_events() == [(FIRST, "up")]

    def test_row_threshold_prompt(self, capsys, cli_env, write_migration, events_table, answer, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_CONFIRM_THRESHOLD", "10")
        write_migration(FIRST, attributes=["def get_estimated_rows(self):", "    return 50"])
        main(["install"])
        prompts = answer("no")

        assert main(["run"]) == 1

        out = capsys.readouterr().out
        assert "Estimated rows to be affected: 50" in out
        assert "exceeds the confirmation threshold of 10 rows" in out
        assert len(prompts) == 1

    def test_row_threshold_skipped_with_no_confirm(self, cli_env, write_migration, events_table, read_events, answer, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_CONFIRM_THRESHOLD", "10")
        write_migration(FIRST, attributes=["def get_estimated_rows(self):", "    return 50"])
        main(["install"])
        prompts = answer("no")

        assert main(["run", "--no-confirm"]) == 0
        assert prompts == []
        assert read_events() == [(FIRST, "up")]

    def test_eof_counts_as_no(self, cli_env, write_migration, events_table, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_ENV", "production")
        write_migration(FIRST)
        main(["install"])

        def closed_stdin(prompt=""):
            raise EOFError

        monkeypatch.setattr("builtins.input", closed_stdin)
        assert main(["run"]) == 1


class TestRollbackAndStatus:
    """Test rollback, status, fresh, reset and unlock commands."""

    def test_rollback(self, capsys, cli_env, write_migration, events_table, read_events):
        write_migration(FIRST)
        main(["install"])
        main(["run"])

        assert main(["rollback"]) == 0

        out = capsys.readouterr().out
        assert f"Rolled back: {FIRST}" in out
        assert "1 migration(s) rolled back." in out
        assert read_events() == [(FIRST, "up"), (FIRST, "down")]

    def test_rollback_unknown_batch(self, capsys, cli_env):
        main(["install"])

        assert main(["rollback", "--batch", "9"]) == 0
        assert "No migrations found for batch 9." in capsys.readouterr().out

    def test_rollback_batch(self, capsys, cli_env, write_migration, events_table):
        write_migration(FIRST)
        main(["install"])
        main(["run"])

        assert main(["rollback", "--batch", "1"]) == 0
        assert "Rolling back batch 1..." in capsys.readouterr().out

    def test_status(self, capsys, cli_env, write_migration, events_table):
        write_migration(FIRST)
        main(["install"])
        main(["run"])
        write_migration(SECOND)
        capsys.readouterr()

        assert main(["status"]) == 0

        out = capsys.readouterr().out
        lines = out.splitlines()
        assert lines[0].split() == ["Migration", "Batch", "Status", "Rows", "Duration", "Ran", "At"]
        assert any(FIRST in line and "Completed" in line for line in lines)
        assert any(SECOND in line and "Pending" in line for line in lines)
        assert "Total: 2 | Pending: 1 | Completed: 1 | Failed: 0" in out

    def test_status_filters(self, capsys, cli_env, write_migration, events_table):
        write_migration(FIRST)
        main(["install"])
        main(["run"])
        write_migration(SECOND)
        capsys.readouterr()

        main(["status", "--pending"])
        out = capsys.readouterr().out
        assert SECOND in out and FIRST not in out

        main(["status", "--ran"])
        out = capsys.readouterr().out
        assert FIRST in out and SECOND not in out

    def test_status_empty(self, capsys, cli_env):
        main(["install"])
        assert main(["status"]) == 0
        assert "No migrations found." in capsys.readouterr().out

    def test_fresh(self, capsys, cli_env, write_migration, events_table, read_events):
        write_migration(FIRST)
        main(["install"])
        main(["run"])

        assert main(["fresh"]) == 0

        out = capsys.readouterr().out
        assert f"Reset: {FIRST}" in out
        assert read_events() == [(FIRST, "up"), (FIRST, "up")]

    def test_reset(self, capsys, cli_env, write_migration, events_table, read_events):
        write_migration(FIRST)
        main(["install"])
        main(["run"])

        assert main(["reset", FIRST]) == 0
        assert f"Reset: {FIRST}" in capsys.readouterr().out

        main(["run"])
        assert read_events() == [(FIRST, "up"), (FIRST, "up")]

    def test_reset_unknown(self, capsys, cli_env):
        main(["install"])

        assert main(["reset", "2024_01_01_000000_nope"]) == 1
        assert "Migration not found: 2024_01_01_000000_nope" in capsys.readouterr().out

    def test_unlock(self, capsys, cli_env, datastore):
        main(["install"])
        MigrationLock(datastore, owner="crashed:1").acquire()

        assert main(["unlock"]) == 0
        assert "Lock released." in capsys.readouterr().out

        assert main(["unlock"]) == 0
        assert "No lock held." in capsys.readouterr().out

    def test_unlock_disabled(self, capsys, cli_env, monkeypatch):
        monkeypatch.setenv("DATA_MIGRATIONS_USE_LOCK", "0")

        assert main(["unlock"]) == 0
        assert "Locking is disabled" in capsys.readouterr().out
