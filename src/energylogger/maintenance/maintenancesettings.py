"""Settings for the maintenance engine and the cost model.

Kept in an extra module to avoid cyclic dependencies on package import.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator

from energylogger.config.configabc import SettingsBaseModel
from energylogger.utils.datetimeutil import to_time_of_day, to_timezone


class CostCommonSettings(SettingsBaseModel):
    """Cost model configuration."""

    per_kwh: float = Field(
        default=0.0,
        ge=0.0,
        json_schema_extra={
            "description": "Energy price per kWh used to derive the cost of summary periods.",
            "examples": [0.0, 0.32],
        },
    )


class MaintenanceCommonSettings(SettingsBaseModel):
    """Rollup, compaction and backup scheduling configuration."""

    rollup_interval_sec: Optional[int] = Field(
        default=600,
        ge=1,
        json_schema_extra={
            "description": (
                "Interval in between rollup aggregation runs [seconds].\n"
                "Set to None to disable automatic rollups."
            ),
            "examples": [600],
        },
    )

    rollup_timezone: str = Field(
        default="UTC",
        json_schema_extra={
            "description": "Timezone whose calendar defines day, week, month and year buckets.",
            "examples": ["UTC", "Europe/Berlin"],
        },
    )

    compaction_time: Optional[str] = Field(
        default="03:00",
        json_schema_extra={
            "description": (
                "Daily wall-clock time of the compaction run [HH:MM, general timezone].\n"
                "Set to None to disable automatic compaction."
            ),
            "examples": ["03:00"],
        },
    )

    compaction_retention_days: int = Field(
        default=30,
        ge=1,
        json_schema_extra={
            "description": "Raw rows older than this are downsampled to hourly averages [days].",
            "examples": [30],
        },
    )

    compaction_vacuum: bool = Field(
        default=True,
        json_schema_extra={
            "description": "Reclaim file space with VACUUM after compaction.",
            "examples": [True],
        },
    )

    backup_path: Optional[Path] = Field(
        default=None,
        json_schema_extra={
            "description": (
                "Snapshot file written by the backup job of the running service.\n"
                "The service backs up on SIGUSR2 and every backup_interval_sec."
            ),
            "examples": [None, "/var/backups/energylogger.db"],
        },
    )

    backup_interval_sec: Optional[int] = Field(
        default=None,
        ge=1,
        json_schema_extra={
            "description": (
                "Interval in between backups of the running service [seconds].\n"
                "Set to None to back up on SIGUSR2 only."
            ),
            "examples": [None, 86400],
        },
    )

    shutdown_timeout_sec: float = Field(
        default=30.0,
        ge=0.0,
        json_schema_extra={
            "description": "Time to wait for in-flight maintenance jobs on shutdown [seconds].",
            "examples": [30.0],
        },
    )

    @field_validator("rollup_timezone", mode="after")
    @classmethod
    def validate_rollup_timezone(cls, value: str) -> str:
        to_timezone(value)
        return value

    @field_validator("compaction_time", mode="after")
    @classmethod
    def validate_compaction_time(cls, value: Optional[str]) -> Optional[str]:
        """Validate the compaction time of day."""
        if value is None:
            return None
        hour, minute = to_time_of_day(value)
        return f"{hour:02d}:{minute:02d}"
