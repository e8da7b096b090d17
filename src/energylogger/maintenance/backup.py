"""Online backup and restore of the WAL-mode store.

A backup is a byte-for-byte copy of the main database file. To make the main file
self-contained, all WAL frames are checkpointed and the store is switched into
rollback-journal mode (``DELETE``) for the duration of the copy. The store is switched
back into WAL mode afterwards, whatever the outcome.

A restore replaces the live main file by a snapshot. The WAL and shared memory side
files belong to the replaced file and are removed. The caller must make sure no other
handle to the store is open.
"""

import os
import shutil
import sqlite3
from pathlib import Path
from typing import Union

from loguru import logger

from energylogger.core.database import Database

PathT = Union[str, Path]

SQLITE_HEADER = b"SQLite format 3\x00"


class MaintenanceError(Exception):
    """Base class of maintenance errors reported to the operator."""


class BackupError(MaintenanceError):
    """The backup could not be created."""


class DatabaseBusyError(BackupError):
    """Another connection holds the store open, so it cannot leave WAL mode.

    Typically the service is running. Back up through the service handle instead.
    """


class RestoreError(MaintenanceError):
    """The snapshot could not be restored."""


def _is_busy(exc: Exception) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def _copy_durable(source: Path, destination: Path) -> None:
    """Copy a file and flush the copy to durable storage."""
    with source.open("rb") as src, destination.open("wb") as dst:
        shutil.copyfileobj(src, dst)
        dst.flush()
        os.fsync(dst.fileno())


def is_sqlite_file(path: PathT) -> bool:
    """Check the SQLite file header."""
    try:
        with Path(path).open("rb") as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def backup(database: Database, destination_path: PathT) -> Path:
    """Create a consistent single-file snapshot of the open store.

    The store lock is held for the whole operation, which blocks ingestion writes only
    for the time of the checkpoint and the copy.

    Only the handle given can be open on the store. Leaving WAL mode needs exclusive
    access, so a second process holding the store (e.g. the running service) makes the
    backup fail with `DatabaseBusyError`.

    Args:
        database: Open database handle.
        destination_path: File to write. Existing files are overwritten.

    Returns:
        Path: Absolute path of the snapshot.

    Raises:
        DatabaseBusyError: If another connection holds the store.
        BackupError: If any step fails. A partially written snapshot is removed.
    """
    destination = Path(destination_path).expanduser().resolve()
    if destination == database.db_file.resolve():
        raise BackupError(f"Backup destination is the live database: {destination}")

    with database.lock:
        try:
            database.checkpoint("FULL")
            mode = database.journal_mode("DELETE")
            if mode != "delete":
                raise DatabaseBusyError(
                    f"Database is in use by another connection, could not leave WAL mode (mode={mode})"
                )

            destination.parent.mkdir(parents=True, exist_ok=True)
            try:
                _copy_durable(database.db_file, destination)
            except OSError as e:
                destination.unlink(missing_ok=True)
                raise BackupError(f"Copy to {destination} failed: {e}") from e
        except BackupError:
            raise
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise DatabaseBusyError(f"Database is in use by another connection: {e}") from e
            raise BackupError(f"Backup failed: {e}") from e
        except Exception as e:
            raise BackupError(f"Backup failed: {e}") from e
        finally:
            try:
                mode = database.journal_mode("WAL")
                if mode != "wal":
                    logger.error("Database did not return to WAL mode after backup (mode={})", mode)
            except Exception:
                logger.exception("Could not switch database back to WAL mode after backup")

    logger.info("Backup created: {}", destination)
    return destination


def restore(live_path: PathT, snapshot_path: PathT) -> Path:
    """Replace the live store by a snapshot.

    The snapshot is validated and copied next to the live file before the live file is
    touched; the copy then atomically replaces the live file. Finally the store is
    opened once to put it back into WAL mode.

    Args:
        live_path: Main file of the live store. All handles to it must be closed.
        snapshot_path: Snapshot created by `backup`.

    Returns:
        Path: Path of the restored live store.

    Raises:
        RestoreError: If the snapshot is invalid or any step fails.
    """
    live = Path(live_path).expanduser().resolve()
    snapshot = Path(snapshot_path).expanduser().resolve()

    if not snapshot.is_file():
        raise RestoreError(f"Snapshot not found: {snapshot}")
    if not is_sqlite_file(snapshot):
        raise RestoreError(f"Snapshot is not an SQLite database: {snapshot}")
    if snapshot == live:
        raise RestoreError(f"Snapshot is the live database: {snapshot}")

    staging = live.with_name(live.name + ".restore")
    try:
        live.parent.mkdir(parents=True, exist_ok=True)
        _copy_durable(snapshot, staging)
        for side_file in (live.with_name(live.name + "-wal"), live.with_name(live.name + "-shm")):
            side_file.unlink(missing_ok=True)
        os.replace(staging, live)
    except OSError as e:
        staging.unlink(missing_ok=True)
        raise RestoreError(f"Restore from {snapshot} failed: {e}") from e

    try:
        with Database(live) as database:
            mode = database.journal_mode()
    except Exception as e:
        raise RestoreError(f"Restored database could not be opened: {e}") from e
    if mode != "wal":
        raise RestoreError(f"Restored database is not in WAL mode (mode={mode})")

    logger.info("Database restored from {}", snapshot)
    return live
