import asyncio
import os
import signal
import sqlite3
from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

from energylogger.core.database import Database
from energylogger.maintenance.backup import is_sqlite_file
from energylogger.server import energylogger as service
from energylogger.server.cli import cli_apply_args_to_config, cli_parse_args
from energylogger.server.energylogger import (
    SYMBOL_FAIL,
    SYMBOL_OK,
    create_backup_job,
    create_scheduler,
    main,
    open_database,
    run_service,
)


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    # main() installs its own sinks
    logger.remove()


@pytest.fixture
def live_database(config_energylogger, insert_energy_rows):
    """The configured database with some readings."""
    return config_energylogger.database.db_file_path


@pytest.fixture
def insert_energy_rows(config_energylogger):
    db = Database(config_energylogger.database.db_file_path)
    with db:
        db.init_schema()
        for hour, e_in in ((8, 100.0), (20, 105.0)):
            db.execute(
                "INSERT INTO energy_data (timestamp_unix, timestamp_rfc3339, e_in, e_out, power) "
                "VALUES (?, ?, ?, 0, 0)",
                (1761984000 - 8 * 3600 + hour * 3600, "2025-11-01", e_in),
            )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParseArgs:
    def test_default_command_is_run(self):
        args = cli_parse_args([])
        assert args.command == "run"
        assert not args.verbose
        assert not args.debug
        assert args.log_level is None

    def test_backup_file(self, tmp_path):
        args = cli_parse_args(["--verbose", "backup", str(tmp_path / "snap.db")])
        assert args.command == "backup"
        assert args.file == tmp_path / "snap.db"
        assert args.verbose

    def test_compact_retention(self):
        args = cli_parse_args(["compact", "--retention-days", "7"])
        assert args.retention_days == 7
        assert cli_parse_args(["compact"]).retention_days is None

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            cli_parse_args(["explode"])


class TestApplyArgs:
    @pytest.mark.parametrize(
        "argv, expected",
        [
            (["--verbose"], "INFO"),
            (["--debug"], "DEBUG"),
            (["--verbose", "--debug"], "DEBUG"),
            (["--debug", "--log_level", "warning"], "WARNING"),
            (["--log_level", "trace"], "TRACE"),
        ],
    )
    def test_log_level_precedence(self, config_energylogger, argv, expected):
        cli_apply_args_to_config(cli_parse_args(argv))
        assert config_energylogger.logging.console_level == expected

    def test_no_flags_keep_configuration(self, config_energylogger):
        config_energylogger.set_nested_value("logging/console_level", "ERROR")
        cli_apply_args_to_config(cli_parse_args([]))
        assert config_energylogger.logging.console_level == "ERROR"
        assert config_energylogger.database.trace_sql is False

    def test_unknown_level_ignored(self, config_energylogger):
        cli_apply_args_to_config(cli_parse_args(["--log_level", "chatty"]))
        assert config_energylogger.logging.console_level is None

    def test_debug_traces_sql(self, config_energylogger):
        cli_apply_args_to_config(cli_parse_args(["--debug"]))
        assert config_energylogger.database.trace_sql is True


# ---------------------------------------------------------------------------
# One-shot commands
# ---------------------------------------------------------------------------


class TestCommands:
    def test_path(self, config_energylogger, capsys):
        assert main(["path"]) == 0
        assert capsys.readouterr().out.strip() == str(config_energylogger.database.db_file_path)

    def test_stats(self, live_database, capsys):
        assert main(["stats"]) == 0
        out = capsys.readouterr().out
        assert str(live_database) in out
        assert "Journal mode: wal" in out
        assert "energy_data: 2 rows" in out

    def test_backup_and_restore(self, live_database, tmp_path, capsys):
        snapshot = tmp_path / "snap.db"
        assert main(["backup", str(snapshot)]) == 0
        assert f"{SYMBOL_OK} Backup created: {snapshot}" in capsys.readouterr().out

        with sqlite3.connect(live_database) as conn:
            conn.execute("DELETE FROM energy_data")
        conn.close()

        assert main(["restore", str(snapshot)]) == 0
        out = capsys.readouterr().out
        assert SYMBOL_OK in out
        assert "Restart" in out
        with Database(live_database) as db:
            assert db.query("SELECT COUNT(*) FROM energy_data") == [(2,)]

    def test_backup_failure(self, live_database, capsys):
        assert main(["backup", str(live_database)]) == 1
        assert f"{SYMBOL_FAIL} Backup failed" in capsys.readouterr().out

    def test_backup_while_service_holds_database(
        self, live_database, tmp_path, capsys, config_energylogger
    ):
        config_energylogger.set_nested_value("database/busy_timeout_ms", 100)
        service_conn = sqlite3.connect(live_database)
        try:
            service_conn.execute("SELECT COUNT(*) FROM energy_data").fetchall()
            assert main(["backup", str(tmp_path / "snap.db")]) == 1
        finally:
            service_conn.close()
        out = capsys.readouterr().out
        assert f"{SYMBOL_FAIL} Backup failed: Database is in use by another connection" in out
        assert "SIGUSR2" in out

    def test_restore_invalid_snapshot(self, live_database, tmp_path, capsys):
        bogus = tmp_path / "bogus.db"
        bogus.write_bytes(b"definitely not sqlite")
        assert main(["restore", str(bogus)]) == 1
        assert "not an SQLite database" in capsys.readouterr().out

    def test_rollup(self, live_database, capsys):
        assert main(["rollup"]) == 0
        out = capsys.readouterr().out
        assert f"{SYMBOL_OK} Rollup day: 1 periods" in out
        assert f"{SYMBOL_OK} Rollup year: 1 periods" in out

    def test_rollup_failure(self, live_database, capsys):
        with Database(live_database) as db:
            db.execute("DROP TABLE weekly_energy_raw")
        with patch("energylogger.core.database.Database.init_schema"):
            assert main(["rollup"]) == 1
        out = capsys.readouterr().out
        assert f"{SYMBOL_FAIL} Rollup week failed" in out
        assert f"{SYMBOL_OK} Rollup day" in out

    def test_compact(self, live_database, capsys):
        assert main(["compact", "--retention-days", "1"]) == 0
        out = capsys.readouterr().out
        assert f"{SYMBOL_OK} energy_data: 2 rows compacted into 2" in out
        assert f"{SYMBOL_OK} solar_data: 0 rows compacted into 0" in out

    def test_compact_invalid_retention(self, live_database, capsys):
        assert main(["compact", "--retention-days", "0"]) == 1
        assert "at least one day" in capsys.readouterr().out

    def test_unexpected_error(self, config_energylogger, capsys):
        with patch.object(service, "open_database", side_effect=OSError("disk on fire")):
            assert main(["stats"]) == 1
        assert f"{SYMBOL_FAIL} disk on fire" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TestService:
    def test_open_database_creates_schema(self, config_energylogger):
        database = open_database()
        try:
            assert "energy_data" in database.object_names("table")
            assert database.db_file == config_energylogger.database.db_file_path
        finally:
            database.close()

    def test_create_scheduler(self, database):
        scheduler = create_scheduler(database)
        assert scheduler.jobs() == ["rollup", "compaction", "backup"]
        status = {entry["name"]: entry for entry in scheduler.status()}
        assert status["rollup"]["cadence"] == "every 600s"
        assert status["compaction"]["cadence"] == "daily at 03:00"
        if hasattr(signal, "SIGUSR1"):
            assert scheduler._jobs["compaction"].trigger_signal == signal.SIGUSR1
        assert status["backup"]["cadence"] is None
        if hasattr(signal, "SIGUSR2"):
            assert scheduler._jobs["backup"].trigger_signal == signal.SIGUSR2

    def test_backup_job_uses_service_handle(self, database, config_energylogger, tmp_path):
        destination = tmp_path / "backups" / "snap.db"
        config_energylogger.set_nested_value("maintenance/backup_path", str(destination))
        assert create_backup_job(database)() == destination.resolve()
        assert is_sqlite_file(destination)
        assert database.journal_mode() == "wal"

    def test_backup_job_without_path(self, database):
        assert create_backup_job(database)() is None

    @pytest.mark.asyncio
    @pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="POSIX signals required")
    async def test_run_service_until_sigterm(self, config_energylogger):
        ingestor = MagicMock()
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)

        with patch.object(service, "MqttIngestor", return_value=ingestor) as ingestor_cls:
            await asyncio.wait_for(run_service(), timeout=10)

        ingestor_cls.assert_called_once()
        ingestor.start.assert_called_once()
        ingestor.stop.assert_called_once()
        # The rollup job runs on start
        with Database(config_energylogger.database.db_file_path) as db:
            assert "daily_energy_raw" in db.object_names("table")
