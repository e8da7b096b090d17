"""SQLite store handle for the energylogger.

One `Database` instance owns the single connection that is shared by the MQTT
ingestion thread and the maintenance jobs. Statements are serialized by an
`RLock`; the connection runs in autocommit mode and explicit transactions are
opened with `transaction()`.

The store is placed into write-ahead-log mode on open, which allows readers
(e.g. Grafana) alongside the single writer.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

from loguru import logger
from pydantic import Field, computed_field

from energylogger.config.configabc import SettingsBaseModel
from energylogger.core.dbschema import (
    RAW_INDICES,
    RAW_TABLES,
    STATE_TABLES,
    STATS_TABLES,
    SUMMARY_TABLES,
    VIEWS,
)

DATABASE_FILE_NAME = "energylogger.db"

# Valid arguments of PRAGMA wal_checkpoint
checkpoint_modes: list[str] = ["PASSIVE", "FULL", "RESTART", "TRUNCATE"]


class DatabaseCommonSettings(SettingsBaseModel):
    """Configuration model for database settings."""

    path: Optional[Path] = Field(
        default=None,
        json_schema_extra={
            "description": (
                "Path to the SQLite database file. "
                "Relative paths are resolved against the data folder. "
                f"Defaults to '{DATABASE_FILE_NAME}' in the data folder."
            ),
            "examples": [None, "/var/lib/energylogger/energy.db"],
        },
    )

    wal_autocheckpoint: int = Field(
        default=1000,
        ge=0,
        json_schema_extra={
            "description": "WAL auto-checkpoint threshold [pages]. 0 disables auto-checkpoints.",
            "examples": [1000],
        },
    )

    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        json_schema_extra={
            "description": "Time to wait for a locked database before failing [milliseconds].",
            "examples": [5000],
        },
    )

    trace_sql: bool = Field(
        default=False,
        json_schema_extra={
            "description": "Log every SQL statement at DEBUG level.",
            "examples": [False],
        },
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def db_file_path(self) -> Optional[Path]:
        """Absolute path of the database file."""
        data_folder: Optional[Path] = None
        try:
            data_folder = SettingsBaseModel.config.general.data_folder_path
        except AttributeError:
            # Config may not be fully set up
            pass
        if self.path is None:
            return data_folder / DATABASE_FILE_NAME if data_folder else None
        if self.path.is_absolute() or data_folder is None:
            return self.path
        return data_folder / self.path


class Database:
    """SQLite database handle in WAL mode.

    Attributes:
        db_file: Path of the main database file.
        conn: The open connection or None.
        lock: Re-entrant lock serializing all use of the connection.
    """

    db_file: Path
    conn: Optional[sqlite3.Connection]

    def __init__(
        self,
        db_file: Path | str,
        *,
        wal_autocheckpoint: int = 1000,
        busy_timeout_ms: int = 5000,
        trace_sql: bool = False,
    ) -> None:
        self.db_file = Path(db_file)
        self.wal_autocheckpoint = wal_autocheckpoint
        self.busy_timeout_ms = busy_timeout_ms
        self.trace_sql = trace_sql
        self.conn = None
        self.lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: DatabaseCommonSettings) -> "Database":
        """Create a handle from the database settings section."""
        if settings.db_file_path is None:
            raise ValueError("Database file path unknown - data folder not configured.")
        return cls(
            settings.db_file_path,
            wal_autocheckpoint=settings.wal_autocheckpoint,
            busy_timeout_ms=settings.busy_timeout_ms,
            trace_sql=settings.trace_sql,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    @property
    def wal_path(self) -> Path:
        return self.db_file.with_name(self.db_file.name + "-wal")

    @property
    def shm_path(self) -> Path:
        return self.db_file.with_name(self.db_file.name + "-shm")

    def open(self) -> None:
        """Open the SQLite connection and switch the store into WAL mode."""
        if self.conn is not None:
            return
        self.db_file.parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(
            str(self.db_file),
            isolation_level=None,  # autocommit
            check_same_thread=False,
            timeout=self.busy_timeout_ms / 1000,
        )
        if self.trace_sql:
            self.conn.set_trace_callback(self._trace)

        mode = self.journal_mode("WAL")
        if mode != "wal":
            logger.warning("Database {} did not enter WAL mode (mode={})", self.db_file, mode)
        self.conn.execute(f"PRAGMA wal_autocheckpoint={int(self.wal_autocheckpoint)}")
        logger.debug("Opened SQLite at {} (journal_mode={})", self.db_file, mode)

    def close(self) -> None:
        """Close the SQLite connection."""
        with self.lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.debug("Closed SQLite at {}", self.db_file)

    def __enter__(self) -> "Database":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @staticmethod
    def _trace(statement: str) -> None:
        logger.debug("SQL: {}", statement)

    def _connection(self) -> sqlite3.Connection:
        if not isinstance(self.conn, sqlite3.Connection):
            raise RuntimeError("Database not open")
        return self.conn

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create raw tables, summary tables, indices and views if missing."""
        with self.lock:
            conn = self._connection()
            for ddl in RAW_TABLES.values():
                conn.execute(ddl)
            for index in RAW_INDICES:
                conn.execute(index)
            for table in SUMMARY_TABLES:
                conn.execute(table.ddl())
            for ddl in STATE_TABLES.values():
                conn.execute(ddl)
        self.create_views()

    def create_views(self) -> None:
        """(Re-)create the reporting views, replacing older definitions."""
        with self.transaction() as conn:
            for name, view in VIEWS.items():
                conn.execute(f"DROP VIEW IF EXISTS {name}")
                conn.execute(view)

    def object_names(self, object_type: str = "table") -> list[str]:
        """Names of schema objects of the given type ('table', 'view', 'index')."""
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = ? AND name NOT LIKE 'sqlite_%' ORDER BY name",
            (object_type,),
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> sqlite3.Cursor:
        """Execute a single statement."""
        with self.lock:
            return self._connection().execute(sql, params)

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> int:
        """Execute a statement for every row within one transaction.

        Returns:
            Number of rows affected.
        """
        if not rows:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(sql, rows)
        return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> list[tuple]:
        """Execute a query and materialize all rows while holding the lock."""
        with self.lock:
            return self._connection().execute(sql, params).fetchall()

    @contextmanager
    def transaction(self, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        """Run a block of statements in one transaction.

        The lock is held for the whole transaction so no other statement of the shared
        connection can interleave. The transaction is rolled back on any exception.

        Args:
            mode: "DEFERRED", "IMMEDIATE" or "EXCLUSIVE".
        """
        with self.lock:
            conn = self._connection()
            conn.execute(f"BEGIN {mode}")
            try:
                yield conn
            except BaseException:
                # SQLite may already have rolled back on its own
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def register_function(self, name: str, num_params: int, func: Callable[..., Any]) -> None:
        """Register a deterministic SQL function on the connection."""
        with self.lock:
            self._connection().create_function(name, num_params, func, deterministic=True)

    # ------------------------------------------------------------------
    # Maintenance primitives
    # ------------------------------------------------------------------

    def journal_mode(self, mode: Optional[str] = None) -> str:
        """Get or set the journal mode.

        Args:
            mode: New journal mode (e.g. "WAL", "DELETE") or None to query only.

        Returns:
            The journal mode in effect afterwards, lower case.
        """
        sql = "PRAGMA journal_mode" if mode is None else f"PRAGMA journal_mode={mode}"
        with self.lock:
            row = self._connection().execute(sql).fetchone()
        return str(row[0]).lower()

    def checkpoint(self, mode: str = "FULL") -> tuple[int, int, int]:
        """Run a WAL checkpoint.

        Args:
            mode: One of PASSIVE, FULL, RESTART, TRUNCATE.

        Returns:
            (busy, log_frames, checkpointed_frames) as reported by SQLite.

        Raises:
            ValueError: If the mode is unknown.
        """
        mode = mode.upper()
        if mode not in checkpoint_modes:
            raise ValueError(f"Checkpoint mode '{mode}' is not one of {checkpoint_modes}.")
        with self.lock:
            row = self._connection().execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
        busy, log_frames, checkpointed = (int(v) for v in row)
        if busy:
            logger.warning("WAL checkpoint ({}) could not complete, database busy", mode)
        logger.debug("WAL checkpoint ({}): {} of {} frames", mode, checkpointed, log_frames)
        return busy, log_frames, checkpointed

    def vacuum(self) -> None:
        """Rebuild the database file to reclaim space of deleted rows."""
        with self.lock:
            self._connection().execute("VACUUM")

    def get_backend_stats(self) -> Dict[str, Any]:
        """Get SQLite backend statistics: file sizes, pages and row counts per table."""
        with self.lock:
            conn = self._connection()
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            freelist = conn.execute("PRAGMA freelist_count").fetchone()[0]
            existing = set(self.object_names("table"))
            rows = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]  # noqa: S608
                for table in STATS_TABLES
                if table in existing
            }

        return {
            "backend": "sqlite",
            "db_file": str(self.db_file),
            "size_bytes": self.db_file.stat().st_size if self.db_file.exists() else 0,
            "wal_size_bytes": self.wal_path.stat().st_size if self.wal_path.exists() else 0,
            "journal_mode": self.journal_mode(),
            "page_count": page_count,
            "page_size": page_size,
            "freelist_count": freelist,
            "rows": rows,
        }
