"""Schema of the energylogger SQLite store.

Raw tables are written by the ingestion path; summary tables are written by the rollup
engine only; the views are what Grafana dashboards read.
"""

from dataclasses import dataclass

RAW_TABLES: dict[str, str] = {
    "energy_data": """
        CREATE TABLE IF NOT EXISTS energy_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp_unix INTEGER NOT NULL,
            timestamp_rfc3339 TEXT NOT NULL,
            e_in REAL,
            e_out REAL,
            power REAL
        )
    """,
    "tasmota_data": """
        CREATE TABLE IF NOT EXISTS tasmota_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            device_id TEXT NOT NULL,
            timestamp_unix INTEGER NOT NULL,
            timestamp_rfc3339 TEXT NOT NULL,
            power REAL
        )
    """,
    "solar_data": """
        CREATE TABLE IF NOT EXISTS solar_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp_unix INTEGER NOT NULL,
            timestamp_rfc3339 TEXT NOT NULL,
            device_id TEXT NOT NULL,
            channel INTEGER,
            metric TEXT NOT NULL,
            value REAL
        )
    """,
    "solar_meta": """
        CREATE TABLE IF NOT EXISTS solar_meta (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            device_id TEXT NOT NULL,
            channel INTEGER,
            key TEXT NOT NULL,
            value TEXT,
            UNIQUE(device_id, channel, key)
        )
    """,
}

RAW_INDICES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_energy_data_ts ON energy_data(timestamp_unix)",
    "CREATE INDEX IF NOT EXISTS idx_tasmota_data_ts ON tasmota_data(timestamp_unix)",
    "CREATE INDEX IF NOT EXISTS idx_solar_data_ts ON solar_data(timestamp_unix)",
]


@dataclass(frozen=True)
class SummaryTable:
    """Layout of one rollup summary table."""

    name: str
    key_column: str
    key_type: str
    consumption_column: str
    cost_column: str

    def ddl(self) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self.name} ("
            f"{self.key_column} {self.key_type} PRIMARY KEY, "
            f"{self.consumption_column} REAL, "
            f"{self.cost_column} REAL)"
        )


DAILY_TABLE = SummaryTable("daily_energy_raw", "day", "TEXT", "daily_consumption", "daily_cost")
WEEKLY_TABLE = SummaryTable("weekly_energy_raw", "week", "TEXT", "weekly_consumption", "weekly_cost")
MONTHLY_TABLE = SummaryTable("monthly_energy_cost_raw", "month", "TEXT", "consumption", "cost")
YEARLY_TABLE = SummaryTable("yearly_energy_cost_current_raw", "year", "INTEGER", "consumption", "cost")

SUMMARY_TABLES: tuple[SummaryTable, ...] = (DAILY_TABLE, WEEKLY_TABLE, MONTHLY_TABLE, YEARLY_TABLE)

# Bookkeeping of the rollup engine, one value per key
STATE_TABLES: dict[str, str] = {
    "rollup_state": """
        CREATE TABLE IF NOT EXISTS rollup_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
    """,
}

# Year of the rollup calendar at the last yearly rollup
CURRENT_YEAR_KEY = "current_year"

# Column names are what existing dashboards query; the views are dropped and
# re-created on start so a changed definition replaces an older one.
VIEWS: dict[str, str] = {
    "daily_energy": """
        CREATE VIEW daily_energy AS
        SELECT day, daily_consumption, daily_cost
        FROM daily_energy_raw
        ORDER BY day
    """,
    "weekly_energy": """
        CREATE VIEW weekly_energy AS
        SELECT week, weekly_consumption, weekly_cost
        FROM weekly_energy_raw
        ORDER BY week
    """,
    "monthly_energy_cost": """
        CREATE VIEW monthly_energy_cost AS
        SELECT month, consumption AS monthly_consumption, ROUND(cost, 2) AS monthly_cost
        FROM monthly_energy_cost_raw
        ORDER BY month
    """,
    # Current year of the rollup calendar; falls back to the UTC year before the first rollup
    "yearly_energy_cost_current": """
        CREATE VIEW yearly_energy_cost_current AS
        SELECT consumption AS total_consumption, ROUND(cost, 2) AS total_cost
        FROM yearly_energy_cost_current_raw
        WHERE year = COALESCE(
            (SELECT CAST(value AS INTEGER) FROM rollup_state WHERE key = 'current_year'),
            CAST(strftime('%Y', 'now') AS INTEGER)
        )
    """,
}

# Tables reported by the stats command, in display order
STATS_TABLES: tuple[str, ...] = (*RAW_TABLES, *(table.name for table in SUMMARY_TABLES))
