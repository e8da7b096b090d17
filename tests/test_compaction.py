"""Tests for the compaction engine."""

from unittest.mock import patch

import pendulum
import pytest

from energylogger.maintenance.compaction import (
    COMPACTION_TABLES,
    CompactionEngine,
    CompactionTable,
)

NOW = pendulum.datetime(2025, 12, 31, 12, 0, tz="UTC")
RETENTION = pendulum.duration(days=30)
OLD_HOUR = pendulum.datetime(2025, 11, 1, 8, 0, tz="UTC")
RECENT = pendulum.datetime(2025, 12, 30, 10, 0, tz="UTC")


def ts(dt) -> int:
    return dt.int_timestamp


@pytest.fixture
def engine(database) -> CompactionEngine:
    return CompactionEngine(database, timezone="UTC")


@pytest.fixture
def raw_rows(database):
    """Fine-grained rows in two old hours, one recent row and one placeholder row."""
    energy = [
        (OLD_HOUR.add(minutes=10), 10.0, 1.0, 100.0),
        (OLD_HOUR.add(minutes=40), 12.0, 1.5, 200.0),
        (OLD_HOUR.add(minutes=65), 13.0, 2.0, 50.0),
        (RECENT, 50.0, 3.0, 1.0),
    ]
    for dt, e_in, e_out, power in energy:
        database.execute(
            "INSERT INTO energy_data (timestamp_unix, timestamp_rfc3339, e_in, e_out, power) "
            "VALUES (?, ?, ?, ?, ?)",
            (ts(dt), dt.to_rfc3339_string(), e_in, e_out, power),
        )
    database.execute(
        "INSERT INTO energy_data (timestamp_unix, timestamp_rfc3339, e_in, e_out, power) "
        "VALUES (-3600, '1969-12-31T23:00:00+00:00', 1.0, 1.0, 1.0)"
    )

    tasmota = [
        ("plug-a", OLD_HOUR.add(minutes=5), 10.0),
        ("plug-a", OLD_HOUR.add(minutes=50), 20.0),
        ("plug-b", OLD_HOUR.add(minutes=30), 5.0),
        ("plug-a", RECENT, 99.0),
    ]
    for device, dt, power in tasmota:
        database.execute(
            "INSERT INTO tasmota_data (device_id, timestamp_unix, timestamp_rfc3339, power) "
            "VALUES (?, ?, ?, ?)",
            (device, ts(dt), dt.to_rfc3339_string(), power),
        )

    solar = [
        ("inv1", "power", OLD_HOUR.add(minutes=1), 100.0),
        ("inv1", "power", OLD_HOUR.add(minutes=31), 300.0),
        ("inv1", "yield", OLD_HOUR.add(minutes=2), 1.0),
    ]
    for device, metric, dt, value in solar:
        database.execute(
            "INSERT INTO solar_data "
            "(timestamp_unix, timestamp_rfc3339, device_id, channel, metric, value) "
            "VALUES (?, ?, ?, -1, ?, ?)",
            (ts(dt), dt.to_rfc3339_string(), device, metric, value),
        )


def energy_rows(database) -> list[tuple]:
    return database.query(
        "SELECT timestamp_unix, e_in, e_out, power FROM energy_data ORDER BY timestamp_unix"
    )


# ---------------------------------------------------------------------------
# Horizon
# ---------------------------------------------------------------------------


class TestCompactionHorizon:
    def test_horizon_is_floored_to_hour(self):
        now = pendulum.datetime(2025, 12, 31, 12, 34, 56, tz="UTC")
        horizon = CompactionEngine.compaction_horizon(RETENTION, now)
        assert horizon == ts(pendulum.datetime(2025, 12, 1, 12, 0, tz="UTC"))

    @pytest.mark.parametrize("retention", ["30 days", 30 * 86400, pendulum.duration(days=30)])
    def test_horizon_retention_types(self, retention):
        assert CompactionEngine.compaction_horizon(retention, NOW) == ts(NOW.subtract(days=30))

    def test_rows_at_or_after_horizon_are_untouched(self, database, engine):
        horizon = CompactionEngine.compaction_horizon(RETENTION, NOW)
        for offset in (-2, -1, 0, 1):
            database.execute(
                "INSERT INTO tasmota_data (device_id, timestamp_unix, timestamp_rfc3339, power) "
                "VALUES ('plug', ?, 'x', ?)",
                (horizon + offset, float(offset)),
            )

        engine.compact_table(COMPACTION_TABLES[1], horizon)

        rows = database.query(
            "SELECT timestamp_unix, timestamp_rfc3339, power FROM tasmota_data ORDER BY timestamp_unix"
        )
        # The two older rows fall into the hour before the horizon
        assert rows[0][0] == horizon - 3600
        assert rows[0][2] == pytest.approx(-1.5)
        assert rows[1:] == [(horizon, "x", 0.0), (horizon + 1, "x", 1.0)]


# ---------------------------------------------------------------------------
# Table compaction
# ---------------------------------------------------------------------------


class TestCompactTable:
    def test_energy_means_power_and_keeps_counter_maximum(self, database, engine, raw_rows):
        horizon = engine.compaction_horizon(RETENTION, NOW)
        result = engine.compact_table(COMPACTION_TABLES[0], horizon)

        assert result.ok
        assert result.rows_replaced == 3
        assert result.rows_inserted == 2
        assert energy_rows(database) == [
            (-3600, 1.0, 1.0, 1.0),
            (ts(OLD_HOUR), 12.0, 1.5, 150.0),
            (ts(OLD_HOUR.add(hours=1)), 13.0, 2.0, 50.0),
            (ts(RECENT), 50.0, 3.0, 1.0),
        ]

    def test_compacted_rows_are_stamped_at_top_of_hour(self, database, engine, raw_rows):
        engine.compact_table(COMPACTION_TABLES[0], engine.compaction_horizon(RETENTION, NOW))
        (text,) = database.query(
            "SELECT timestamp_rfc3339 FROM energy_data WHERE timestamp_unix = ?", (ts(OLD_HOUR),)
        )[0]
        assert pendulum.parse(text) == OLD_HOUR
        assert "08:00:00" in text

    def test_rfc3339_uses_configured_timezone(self, database, raw_rows):
        engine = CompactionEngine(database, timezone="Europe/Berlin")
        engine.compact_table(COMPACTION_TABLES[0], engine.compaction_horizon(RETENTION, NOW))
        (text,) = database.query(
            "SELECT timestamp_rfc3339 FROM energy_data WHERE timestamp_unix = ?", (ts(OLD_HOUR),)
        )[0]
        assert text.startswith("2025-11-01T09:00:00+01:00")

    def test_grouped_by_device(self, database, engine, raw_rows):
        engine.compact_table(COMPACTION_TABLES[1], engine.compaction_horizon(RETENTION, NOW))
        rows = database.query(
            "SELECT device_id, timestamp_unix, power FROM tasmota_data ORDER BY timestamp_unix, device_id"
        )
        assert rows == [
            ("plug-a", ts(OLD_HOUR), 15.0),
            ("plug-b", ts(OLD_HOUR), 5.0),
            ("plug-a", ts(RECENT), 99.0),
        ]

    def test_grouped_by_device_channel_metric(self, database, engine, raw_rows):
        engine.compact_table(COMPACTION_TABLES[2], engine.compaction_horizon(RETENTION, NOW))
        rows = database.query(
            "SELECT device_id, channel, metric, timestamp_unix, value FROM solar_data ORDER BY metric"
        )
        assert rows == [
            ("inv1", -1, "power", ts(OLD_HOUR), 200.0),
            ("inv1", -1, "yield", ts(OLD_HOUR), 1.0),
        ]

    def test_failure_rolls_back(self, database, raw_rows):
        class FailingEngine(CompactionEngine):
            def _rfc3339(self, timestamp: int) -> str:
                raise ValueError("no format")

        engine = FailingEngine(database, timezone="UTC")
        before = energy_rows(database)

        with pytest.raises(Exception):
            engine.compact_table(COMPACTION_TABLES[0], engine.compaction_horizon(RETENTION, NOW))

        assert energy_rows(database) == before
        assert not database.query("SELECT name FROM sqlite_temp_master WHERE type = 'table'")

    def test_stage_table_is_dropped(self, database, engine, raw_rows):
        engine.compact_table(COMPACTION_TABLES[0], engine.compaction_horizon(RETENTION, NOW))
        assert not database.query("SELECT name FROM sqlite_temp_master WHERE type = 'table'")


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------


class TestCompact:
    def test_compacts_all_tables(self, database, engine, raw_rows):
        results = engine.compact(RETENTION, now=NOW, vacuum=False)

        assert [r.table for r in results] == ["energy_data", "tasmota_data", "solar_data"]
        assert all(r.ok for r in results)
        assert [r.rows_inserted for r in results] == [2, 2, 2]

    def test_failing_table_does_not_stop_the_pass(self, database, raw_rows):
        tables = (
            CompactionTable("tasmota_data", group_columns=("no_such_column",), mean_columns=("power",)),
            COMPACTION_TABLES[2],
        )
        engine = CompactionEngine(database, tables=tables, timezone="UTC")

        with patch.object(database, "checkpoint", wraps=database.checkpoint) as checkpoint:
            results = engine.compact(RETENTION, now=NOW, vacuum=False)

        assert not results[0].ok
        assert "no_such_column" in results[0].error
        assert results[1].ok
        assert database.query("SELECT COUNT(*) FROM tasmota_data")[0][0] == 4
        checkpoint.assert_called_once_with("FULL")

    def test_rerun_is_idempotent(self, database, engine, raw_rows):
        engine.compact(RETENTION, now=NOW, vacuum=False)
        first = energy_rows(database)
        results = engine.compact(RETENTION, now=NOW, vacuum=False)
        assert energy_rows(database) == first
        assert results[0].rows_replaced == results[0].rows_inserted == 2

    def test_vacuum_follows_setting(self, database, engine, config_energylogger):
        with patch.object(database, "vacuum") as vacuum:
            engine.compact(RETENTION, now=NOW)
        vacuum.assert_called_once()

        config_energylogger.set_nested_value("maintenance/compaction_vacuum", False)
        with patch.object(database, "vacuum") as vacuum:
            engine.compact(RETENTION, now=NOW)
        vacuum.assert_not_called()

    def test_vacuum_failure_is_logged(self, database, engine, raw_rows):
        with patch.object(database, "vacuum", side_effect=RuntimeError("disk full")):
            results = engine.compact(RETENTION, now=NOW, vacuum=True)
        assert all(r.ok for r in results)
        assert "daily_energy" in database.object_names("view")

    def test_views_are_recreated(self, database, engine):
        database.execute("DROP VIEW daily_energy")
        engine.compact(RETENTION, now=NOW, vacuum=False)
        assert "daily_energy" in database.object_names("view")

    def test_retention_defaults_to_config(self, database, engine, config_energylogger):
        config_energylogger.set_nested_value("maintenance/compaction_retention_days", 10)
        database.execute(
            "INSERT INTO tasmota_data (device_id, timestamp_unix, timestamp_rfc3339, power) "
            "VALUES ('plug', ?, 'x', 1.0), ('plug', ?, 'x', 3.0)",
            (ts(NOW.subtract(days=15)), ts(NOW.subtract(days=15).add(minutes=1))),
        )
        engine.compact(now=NOW, vacuum=False)
        assert database.query("SELECT power FROM tasmota_data") == [(2.0,)]
