"""Rollup of the energy meter counter into period summaries.

The `e_in` counter of `energy_data` is bucketed by calendar period (day, ISO week,
month, year) and one summary row per bucket is upserted into the matching summary
table. Buckets follow the calendar of a configurable timezone (UTC by default).

The consumption of a bucket is the counter advance over the period. The closing
reading of a bucket is the larger of its own maximum and the opening reading of the
immediately following bucket, so the advance between the last reading of a period
and the first reading of the next one is booked on the earlier period. Without
following readings this is plain ``max - min``; a bucket with a single reading
yields zero.

Every pass rewrites the whole summary table from the current raw content, which
makes rollups idempotent.
"""

from enum import Enum
from typing import Any, Optional

import numpy as np
import pandas as pd
from loguru import logger
from pendulum import DateTime

from energylogger.core.coreabc import ConfigMixin
from energylogger.core.database import Database
from energylogger.core.dbschema import (
    CURRENT_YEAR_KEY,
    DAILY_TABLE,
    MONTHLY_TABLE,
    WEEKLY_TABLE,
    YEARLY_TABLE,
    SummaryTable,
)
from energylogger.utils.datetimeutil import to_datetime, to_timezone


class Granularity(str, Enum):
    """Calendar period of a rollup."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def table(self) -> SummaryTable:
        return SUMMARY_TABLE_BY_GRANULARITY[self]


SUMMARY_TABLE_BY_GRANULARITY: dict[Granularity, SummaryTable] = {
    Granularity.DAY: DAILY_TABLE,
    Granularity.WEEK: WEEKLY_TABLE,
    Granularity.MONTH: MONTHLY_TABLE,
    Granularity.YEAR: YEARLY_TABLE,
}

# Reference points of the day and ISO week ordinals (1970-01-05 is a Monday)
_EPOCH_DAY = pd.Timestamp("1970-01-01")
_EPOCH_MONDAY = pd.Timestamp("1970-01-05")


def period_keys(timestamps: pd.Series, granularity: Granularity, timezone: str) -> pd.DataFrame:
    """Bucket epoch timestamps into calendar periods.

    Args:
        timestamps: Epoch seconds.
        granularity: Calendar period.
        timezone: Timezone whose calendar defines the periods.

    Returns:
        pd.DataFrame: Columns ``key`` (the summary table key) and ``ordinal``
        (consecutive integers for consecutive periods), aligned with `timestamps`.
    """
    wall = pd.to_datetime(timestamps, unit="s", utc=True).dt.tz_convert(timezone).dt.tz_localize(None)

    if granularity == Granularity.DAY:
        day = wall.dt.normalize()
        keys = day.dt.strftime("%Y-%m-%d")
        ordinal = (day - _EPOCH_DAY).dt.days
    elif granularity == Granularity.WEEK:
        iso = wall.dt.isocalendar()
        iso_year = iso["year"].astype("int64")
        iso_week = iso["week"].astype("int64")
        keys = iso_year.astype(str) + "-W" + iso_week.map("{:02d}".format)
        monday = wall.dt.normalize() - pd.to_timedelta(iso["day"].astype("int64") - 1, unit="D")
        ordinal = (monday - _EPOCH_MONDAY).dt.days // 7
    elif granularity == Granularity.MONTH:
        keys = wall.dt.strftime("%Y-%m")
        ordinal = wall.dt.year * 12 + wall.dt.month - 1
    elif granularity == Granularity.YEAR:
        keys = wall.dt.year.astype("int64")
        ordinal = wall.dt.year
    else:
        raise ValueError(f"Unknown granularity '{granularity}'.")

    return pd.DataFrame(
        {"key": keys.to_numpy(), "ordinal": ordinal.astype("int64").to_numpy()},
        index=timestamps.index,
    )


def aggregate_consumption(readings: pd.DataFrame, granularity: Granularity, timezone: str) -> pd.DataFrame:
    """Compute the counter advance per period.

    Args:
        readings: Columns ``timestamp_unix`` and ``e_in``; placeholder rows already removed.
        granularity: Calendar period.
        timezone: Timezone whose calendar defines the periods.

    Returns:
        pd.DataFrame: One row per period, indexed by period ordinal, with columns
        ``key``, ``low``, ``high``, ``opening`` and ``consumption``.
    """
    if readings.empty:
        return pd.DataFrame(columns=["key", "low", "high", "opening", "consumption"])

    readings = readings.sort_values("timestamp_unix", kind="stable")
    periods = period_keys(readings["timestamp_unix"], granularity, timezone)
    data = readings.join(periods)

    buckets = data.groupby("ordinal", sort=True).agg(
        key=("key", "first"),
        low=("e_in", "min"),
        high=("e_in", "max"),
        opening=("e_in", "first"),
    )
    # Opening reading of the directly following period, NaN if it has no readings
    next_opening = buckets["opening"].reindex(buckets.index + 1).to_numpy()
    closing = np.fmax(buckets["high"].to_numpy(), next_opening)
    buckets["consumption"] = closing - buckets["low"].to_numpy()
    return buckets


class RollupEngine(ConfigMixin):
    """Computes the daily, weekly, monthly and yearly summaries.

    Args:
        database: Open database handle.
        timezone: Timezone of the bucket calendar. Defaults to the configured
            `maintenance/rollup_timezone`, or UTC.
    """

    def __init__(self, database: Database, *, timezone: Optional[str] = None) -> None:
        self.database = database
        if timezone is None:
            timezone = self.config_value("maintenance/rollup_timezone", "UTC")
        to_timezone(timezone)
        self.timezone = timezone

    def _cost_rate(self, cost_rate: Optional[float]) -> float:
        if cost_rate is not None:
            return float(cost_rate)
        return float(self.config_value("cost/per_kwh", 0.0))

    def load_readings(self) -> pd.DataFrame:
        """Counter readings with valid timestamps, in time order."""
        rows = self.database.query(
            "SELECT timestamp_unix, e_in FROM energy_data "
            "WHERE timestamp_unix > 0 AND e_in IS NOT NULL "
            "ORDER BY timestamp_unix"
        )
        return pd.DataFrame(rows, columns=["timestamp_unix", "e_in"]).astype(
            {"timestamp_unix": "int64", "e_in": "float64"}
        )

    def rollup(
        self,
        granularity: Granularity,
        cost_rate: Optional[float] = None,
        now: Optional[DateTime] = None,
    ) -> int:
        """Rebuild the summary table of one granularity.

        The yearly rollup also records the current year of the rollup calendar, which
        the `yearly_energy_cost_current` view filters on.

        Args:
            granularity: Calendar period.
            cost_rate: Price per kWh; defaults to `cost/per_kwh`.
            now: Reference time of the current year; defaults to now.

        Returns:
            int: Number of summary rows written.
        """
        granularity = Granularity(granularity)
        table = granularity.table
        rate = self._cost_rate(cost_rate)

        buckets = aggregate_consumption(self.load_readings(), granularity, self.timezone)
        rows: list[tuple[Any, float, float]] = []
        for key, consumption in zip(buckets["key"], buckets["consumption"]):
            consumption = float(consumption)
            key = int(key) if table.key_type == "INTEGER" else str(key)
            rows.append((key, consumption, consumption * rate))

        with self.database.transaction() as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO {table.name} "  # noqa: S608
                f"({table.key_column}, {table.consumption_column}, {table.cost_column}) "
                "VALUES (?, ?, ?)",
                rows,
            )
            # Drop periods that have no readings anymore (e.g. after a restore)
            existing = [r[0] for r in conn.execute(f"SELECT {table.key_column} FROM {table.name}")]  # noqa: S608
            written = {row[0] for row in rows}
            orphans = [(key,) for key in existing if key not in written]
            if orphans:
                conn.executemany(
                    f"DELETE FROM {table.name} WHERE {table.key_column} = ?",  # noqa: S608
                    orphans,
                )
            if granularity == Granularity.YEAR:
                year = to_datetime(now, in_timezone=self.timezone).year
                conn.execute(
                    "INSERT OR REPLACE INTO rollup_state (key, value) VALUES (?, ?)",
                    (CURRENT_YEAR_KEY, str(year)),
                )

        logger.debug("Rollup {}: {} rows written to {}", granularity.value, len(rows), table.name)
        return len(rows)

    def rollup_all(self, cost_rate: Optional[float] = None) -> dict[Granularity, Optional[int]]:
        """Run the rollup of every granularity.

        A failing granularity is logged and recorded as None; the others still run.
        """
        results: dict[Granularity, Optional[int]] = {}
        for granularity in Granularity:
            try:
                results[granularity] = self.rollup(granularity, cost_rate)
            except Exception:
                logger.exception("Rollup {} failed", granularity.value)
                results[granularity] = None
        logger.info(
            "Rollup finished: {}",
            ", ".join(f"{g.value}={n if n is not None else 'failed'}" for g, n in results.items()),
        )
        return results

    def current_year(self, now: Optional[DateTime] = None) -> Optional[dict[str, Any]]:
        """Summary of the current year in the rollup calendar, or None if not rolled up."""
        now = to_datetime(now, in_timezone=self.timezone)
        table = YEARLY_TABLE
        rows = self.database.query(
            f"SELECT {table.key_column}, {table.consumption_column}, {table.cost_column} "  # noqa: S608
            f"FROM {table.name} WHERE {table.key_column} = ?",
            (now.year,),
        )
        if not rows:
            return None
        year, consumption, cost = rows[0]
        return {"year": year, "consumption": consumption, "cost": cost}
