"""Retention-driven downsampling of the raw tables.

Rows older than the retention horizon are replaced by one row per hour and grouping
key. Instantaneous values (power, inverter values) become the hourly mean; monotonic
counters keep their hourly closing reading, so rollups over compacted data stay exact.

The replacement of one table is a stage-then-swap inside a single ``BEGIN IMMEDIATE``
transaction: the hourly groups are materialized into a temp table, the originals are
deleted and the staged rows are inserted. Readers see either the fine-grained or the
compacted form of an hour, never both and never neither.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

import pendulum
from loguru import logger
from pendulum import DateTime, Duration

from energylogger.core.coreabc import ConfigMixin
from energylogger.core.database import Database
from energylogger.utils.datetimeutil import to_datetime, to_duration

HOUR_SECONDS = 3600

# SQL function formatting an epoch bucket as offset-aware RFC 3339 string
RFC3339_FUNCTION = "energylogger_rfc3339"

RetentionT = Union[Duration, timedelta, int, float, str]


@dataclass(frozen=True)
class CompactionTable:
    """Compaction layout of one raw table.

    Attributes:
        name: Table name.
        group_columns: Columns that, besides the hour, identify a series.
        mean_columns: Columns replaced by their hourly mean.
        max_columns: Counter columns replaced by their hourly maximum.
    """

    name: str
    group_columns: tuple[str, ...] = ()
    mean_columns: tuple[str, ...] = ()
    max_columns: tuple[str, ...] = ()

    @property
    def stage_name(self) -> str:
        return f"{self.name}_compact_stage"

    @property
    def value_columns(self) -> tuple[str, ...]:
        return (*self.mean_columns, *self.max_columns)


COMPACTION_TABLES: tuple[CompactionTable, ...] = (
    CompactionTable("energy_data", mean_columns=("power",), max_columns=("e_in", "e_out")),
    CompactionTable("tasmota_data", group_columns=("device_id",), mean_columns=("power",)),
    CompactionTable(
        "solar_data", group_columns=("device_id", "channel", "metric"), mean_columns=("value",)
    ),
)


@dataclass
class CompactionResult:
    """Outcome of compacting one table."""

    table: str
    rows_replaced: int = 0
    rows_inserted: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CompactionEngine(ConfigMixin):
    """Downsamples raw rows past the retention horizon to hourly rows.

    Args:
        database: Open database handle.
        tables: Tables to compact, in order.
        timezone: Timezone of the `timestamp_rfc3339` strings of compacted rows.
            Defaults to `general/timezone`, or the host timezone.
    """

    def __init__(
        self,
        database: Database,
        *,
        tables: tuple[CompactionTable, ...] = COMPACTION_TABLES,
        timezone: Optional[str] = None,
    ) -> None:
        self.database = database
        self.tables = tables
        self.timezone = timezone if timezone is not None else self.config_value("general/timezone")

    def _rfc3339(self, timestamp: int) -> str:
        return to_datetime(int(timestamp), in_timezone=self.timezone).to_rfc3339_string()

    @staticmethod
    def compaction_horizon(retention_window: RetentionT, now: Optional[DateTime] = None) -> int:
        """Epoch second before which rows are compacted.

        The horizon is ``now - retention_window`` floored to the top of the hour, so an
        hour is never split and no row newer than the retention window is touched.
        """
        retention = to_duration(retention_window)
        now_ts = to_datetime(now, in_timezone="UTC").int_timestamp
        horizon = now_ts - int(retention.total_seconds())
        return horizon - horizon % HOUR_SECONDS

    def compact_table(self, table: CompactionTable, horizon: int) -> CompactionResult:
        """Replace the rows of one table that are older than `horizon` by hourly rows.

        Rows with placeholder timestamps (<= 0) are left untouched.

        Raises:
            sqlite3.Error: On any statement failure; the transaction is rolled back.
        """
        horizon = int(horizon)
        result = CompactionResult(table.name)
        self.database.register_function(RFC3339_FUNCTION, 1, self._rfc3339)

        series = list(table.group_columns)
        aggregates = [f"AVG({column}) AS {column}" for column in table.mean_columns]
        aggregates += [f"MAX({column}) AS {column}" for column in table.max_columns]
        where = f"timestamp_unix > 0 AND timestamp_unix < {horizon}"
        stage = f"temp.{table.stage_name}"
        stage_select = ", ".join(
            [f"(timestamp_unix / {HOUR_SECONDS}) * {HOUR_SECONDS} AS bucket", *series, *aggregates]
        )
        target_columns = ", ".join(
            ["timestamp_unix", "timestamp_rfc3339", *series, *table.value_columns]
        )
        source_columns = ", ".join(
            ["bucket", f"{RFC3339_FUNCTION}(bucket)", *series, *table.value_columns]
        )

        with self.database.transaction() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {stage}")
            conn.execute(
                f"CREATE TEMP TABLE {table.stage_name} AS "  # noqa: S608
                f"SELECT {stage_select} FROM {table.name} WHERE {where} "
                f"GROUP BY {', '.join(['bucket', *series])}"
            )
            result.rows_replaced = conn.execute(f"DELETE FROM {table.name} WHERE {where}").rowcount  # noqa: S608
            result.rows_inserted = conn.execute(
                f"INSERT INTO {table.name} ({target_columns}) "  # noqa: S608
                f"SELECT {source_columns} FROM {stage} ORDER BY bucket"
            ).rowcount
            conn.execute(f"DROP TABLE {stage}")

        logger.info(
            "Compacted {}: {} rows replaced by {} hourly rows",
            table.name,
            result.rows_replaced,
            result.rows_inserted,
        )
        return result

    def compact(
        self,
        retention_window: Optional[RetentionT] = None,
        now: Optional[DateTime] = None,
        vacuum: Optional[bool] = None,
    ) -> list[CompactionResult]:
        """Compact all tables, then checkpoint, vacuum and re-create the views.

        A failure of one table is logged and recorded in its result; the other tables and
        the closing steps still run.

        Args:
            retention_window: Age after which rows are compacted. Defaults to
                `maintenance/compaction_retention_days`.
            now: Reference instant, defaults to now.
            vacuum: Run VACUUM afterwards. Defaults to `maintenance/compaction_vacuum`.

        Returns:
            list[CompactionResult]: One result per table.
        """
        if retention_window is None:
            retention_window = pendulum.duration(
                days=self.config_value("maintenance/compaction_retention_days", 30)
            )
        if vacuum is None:
            vacuum = bool(self.config_value("maintenance/compaction_vacuum", True))

        horizon = self.compaction_horizon(retention_window, now)
        logger.info(
            "Compaction started, horizon {}",
            to_datetime(horizon, as_string=True, in_timezone=self.timezone),
        )

        results: list[CompactionResult] = []
        for table in self.tables:
            try:
                results.append(self.compact_table(table, horizon))
            except Exception as e:
                logger.exception("Compaction of {} failed", table.name)
                results.append(CompactionResult(table.name, error=str(e)))

        self._reclaim(vacuum)
        return results

    def _reclaim(self, vacuum: bool) -> None:
        try:
            self.database.checkpoint("FULL")
        except Exception:
            logger.exception("WAL checkpoint after compaction failed")
        if vacuum:
            try:
                self.database.vacuum()
            except Exception:
                logger.exception("VACUUM after compaction failed")
        try:
            self.database.create_views()
        except Exception:
            logger.exception("Re-creating views after compaction failed")
