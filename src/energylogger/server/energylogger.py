#!/usr/bin/env python3

"""energylogger service and command line entry point.

Without a subcommand the service is run: sensor readings are ingested from MQTT while
the maintenance scheduler keeps the summary tables current (rollup) and bounds the raw
tables (compaction, also on ``SIGUSR1``). The other subcommands run one maintenance
operation and report the outcome with the exit status.
"""

import argparse
import asyncio
import signal
import sys
import traceback
from pathlib import Path
from typing import Callable, Optional

import pendulum
from loguru import logger

from energylogger.config.config import get_config
from energylogger.core.database import Database
from energylogger.core.logging import logging_track_config
from energylogger.ingest.mqtt import MqttIngestor
from energylogger.maintenance.backup import DatabaseBusyError, MaintenanceError, backup, restore
from energylogger.maintenance.compaction import CompactionEngine
from energylogger.maintenance.rollup import RollupEngine
from energylogger.maintenance.scheduler import MaintenanceScheduler
from energylogger.server.cli import cli_apply_args_to_config, cli_parse_args

SYMBOL_OK = "✔"
SYMBOL_FAIL = "✘"
SYMBOL_INFO = "•"


def open_database() -> Database:
    """Open the configured database and make sure the schema exists."""
    config = get_config()
    database = Database.from_settings(config.database)
    database.open()
    database.init_schema()
    return database


# ------------------------------------
# Service
# ------------------------------------


def create_backup_job(database: Database) -> Callable[[], Optional[Path]]:
    """Backup job writing to `maintenance/backup_path` through the service handle."""

    def backup_job() -> Optional[Path]:
        destination = get_config().maintenance.backup_path
        if destination is None:
            logger.warning("Backup requested, but maintenance/backup_path is not set")
            return None
        return backup(database, destination)

    return backup_job


def create_scheduler(database: Database) -> MaintenanceScheduler:
    """Scheduler with the rollup, compaction and backup jobs registered."""
    config = get_config()
    rollup_engine = RollupEngine(database)
    compaction_engine = CompactionEngine(database)

    scheduler = MaintenanceScheduler(
        config.get_nested_value,
        timezone=config.general.timezone,
        shutdown_timeout=config.maintenance.shutdown_timeout_sec,
    )
    scheduler.register(
        "rollup",
        rollup_engine.rollup_all,
        cadence_attr="maintenance/rollup_interval_sec",
        fallback_cadence=600,
        run_on_start=True,
    )
    scheduler.register(
        "compaction",
        compaction_engine.compact,
        cadence_attr="maintenance/compaction_time",
        fallback_cadence="03:00",
        trigger_signal=getattr(signal, "SIGUSR1", None),
    )
    scheduler.register(
        "backup",
        create_backup_job(database),
        cadence_attr="maintenance/backup_interval_sec",
        trigger_signal=getattr(signal, "SIGUSR2", None),
    )
    return scheduler


async def run_service() -> None:
    """Run ingestion and maintenance until SIGINT or SIGTERM."""
    config = get_config()
    database = open_database()
    logger.info("Database: {}", database.db_file)

    ingestor: Optional[MqttIngestor] = None
    if config.mqtt is not None and config.mqtt.enabled:
        ingestor = MqttIngestor(database, config.mqtt, timezone=config.general.timezone)
        ingestor.start()
    else:
        logger.warning("MQTT ingestion disabled. Set mqtt/enabled.")

    scheduler = create_scheduler(database)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.warning("Signal {} not supported on this platform", sig.name)

    scheduler_task = asyncio.create_task(scheduler.run(), name="scheduler")
    logger.info("energylogger running")
    try:
        await stop.wait()
    finally:
        logger.info("energylogger shutting down")
        if ingestor is not None:
            ingestor.stop()
        # Lets an in-flight maintenance job finish
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
        database.close()
    logger.info("energylogger stopped")


def command_run(args: argparse.Namespace) -> int:
    asyncio.run(run_service())
    return 0


# ------------------------------------
# One-shot commands
# ------------------------------------


def command_backup(args: argparse.Namespace) -> int:
    """Create a backup and print its path."""
    try:
        database = open_database()
    except Exception as e:
        print(f"{SYMBOL_FAIL} Cannot open database: {e}")
        return 1
    try:
        path = backup(database, args.file)
    except DatabaseBusyError as e:
        print(f"{SYMBOL_FAIL} Backup failed: {e}")
        print(
            f"{SYMBOL_INFO} The energylogger service seems to be running. Send it SIGUSR2 to back up "
            "to maintenance/backup_path, or stop it before running this command."
        )
        return 1
    except MaintenanceError as e:
        print(f"{SYMBOL_FAIL} Backup failed: {e}")
        return 1
    finally:
        database.close()
    print(f"{SYMBOL_OK} Backup created: {path}")
    return 0


def command_restore(args: argparse.Namespace) -> int:
    """Restore a backup over the configured database."""
    live = get_config().database.db_file_path
    if live is None:
        print(f"{SYMBOL_FAIL} Database path unknown.")
        return 1
    try:
        path = restore(live, args.file)
    except MaintenanceError as e:
        print(f"{SYMBOL_FAIL} Restore failed: {e}")
        return 1
    print(f"{SYMBOL_OK} Database restored from {args.file} to {path}")
    print(f"{SYMBOL_INFO} Restart the energylogger service to use the restored database.")
    return 0


def command_stats(args: argparse.Namespace) -> int:
    """Print database statistics."""
    database = open_database()
    try:
        stats = database.get_backend_stats()
    finally:
        database.close()
    print(f"{SYMBOL_INFO} Database: {stats['db_file']}")
    print(f"{SYMBOL_INFO} Size: {stats['size_bytes'] / (1024 * 1024):.2f} MB")
    print(f"{SYMBOL_INFO} WAL size: {stats['wal_size_bytes'] / (1024 * 1024):.2f} MB")
    print(f"{SYMBOL_INFO} Journal mode: {stats['journal_mode']}")
    print(f"{SYMBOL_INFO} Free pages: {stats['freelist_count']} of {stats['page_count']}")
    for table, count in stats["rows"].items():
        print(f"  {table}: {count} rows")
    return 0


def command_path(args: argparse.Namespace) -> int:
    """Print the database path."""
    path = get_config().database.db_file_path
    if path is None:
        print(f"{SYMBOL_FAIL} Database path unknown.")
        return 1
    print(path)
    return 0


def command_rollup(args: argparse.Namespace) -> int:
    """Run one rollup pass."""
    database = open_database()
    try:
        results = RollupEngine(database).rollup_all()
    finally:
        database.close()
    failed = False
    for granularity, rows in results.items():
        if rows is None:
            failed = True
            print(f"{SYMBOL_FAIL} Rollup {granularity.value} failed")
        else:
            print(f"{SYMBOL_OK} Rollup {granularity.value}: {rows} periods")
    return 1 if failed else 0


def command_compact(args: argparse.Namespace) -> int:
    """Run one compaction pass."""
    retention = None
    if args.retention_days is not None:
        if args.retention_days < 1:
            print(f"{SYMBOL_FAIL} Retention must be at least one day.")
            return 1
        retention = pendulum.duration(days=args.retention_days)

    database = open_database()
    try:
        results = CompactionEngine(database).compact(retention_window=retention)
    finally:
        database.close()
    failed = False
    for result in results:
        if result.ok:
            print(
                f"{SYMBOL_OK} {result.table}: {result.rows_replaced} rows compacted "
                f"into {result.rows_inserted}"
            )
        else:
            failed = True
            print(f"{SYMBOL_FAIL} {result.table}: {result.error}")
    return 1 if failed else 0


COMMAND_HANDLERS: dict[str, Callable[[argparse.Namespace], int]] = {
    "run": command_run,
    "backup": command_backup,
    "restore": command_restore,
    "stats": command_stats,
    "path": command_path,
    "rollup": command_rollup,
    "compact": command_compact,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Parse command-line arguments, set up logging and run the requested command.

    Returns:
        int: Exit status, 0 on success and 1 on failure.
    """
    args = cli_parse_args(argv)

    config = get_config()
    logger.remove()
    logging_track_config(config, "logging", None, None)
    config.track_nested_value("logging", logging_track_config)
    cli_apply_args_to_config(args)

    try:
        return COMMAND_HANDLERS[args.command](args)
    except Exception as ex:
        logger.error("Failed to run energylogger {}: {}", args.command, ex)
        traceback.print_exc()
        print(f"{SYMBOL_FAIL} {ex}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
