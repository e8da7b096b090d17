import argparse
from pathlib import Path

from loguru import logger

from energylogger.config.config import get_config
from energylogger.core.logsettings import LOGGING_LEVELS
from energylogger.core.version import __version__


def cli_argument_parser() -> argparse.ArgumentParser:
    """Build argument parser for the energylogger cli."""
    parser = argparse.ArgumentParser(
        prog="energylogger",
        description="Log MQTT energy readings into SQLite and maintain the database.",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log informational messages to the console.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log debug messages to the console and trace every SQL statement.",
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default=None,
        help='Log level for the console. Options: "critical", "error", "warning", "info", "debug", "trace" (default: value from config)',
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser("run", help="Run the logger service (default).")

    backup_parser = subparsers.add_parser(
        "backup", help="Create a backup of the database. Stop the service first, or send it SIGUSR2."
    )
    backup_parser.add_argument("file", type=Path, help="Backup file to write.")

    restore_parser = subparsers.add_parser(
        "restore", help="Replace the database by a backup. Stop the service first."
    )
    restore_parser.add_argument("file", type=Path, help="Backup file to restore.")

    subparsers.add_parser("stats", help="Show database statistics.")
    subparsers.add_parser("path", help="Show the database path.")
    subparsers.add_parser("rollup", help="Run the rollup aggregation now.")

    compact_parser = subparsers.add_parser("compact", help="Run the compaction now.")
    compact_parser.add_argument(
        "--retention-days",
        dest="retention_days",
        type=int,
        default=None,
        help="Compact rows older than this many days (default: value from config).",
    )
    return parser


def cli_parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the energylogger CLI.

    If ``argv`` is ``None``, arguments are read from ``sys.argv[1:]``. Without a
    subcommand the service is run.

    Args:
        argv: Optional list of command-line arguments to parse.

    Returns:
        The namespace with the parsed arguments; ``command`` is always set.
    """
    args = cli_argument_parser().parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def cli_apply_args_to_config(args: argparse.Namespace) -> None:
    """Apply parsed CLI arguments to the configuration.

    The console log level is taken from ``--log_level``, else ``--debug`` (DEBUG),
    else ``--verbose`` (INFO), else left as configured. ``--debug`` also switches on
    SQL statement tracing.

    Args:
        args: Parsed command-line arguments from argparse.
    """
    config = get_config()

    log_level = None
    if args.log_level is not None and args.log_level.lower() != "none":
        log_level = args.log_level.upper()
    elif args.debug:
        log_level = "DEBUG"
    elif args.verbose:
        log_level = "INFO"

    if log_level is not None:
        if log_level in LOGGING_LEVELS:
            # Triggers logging configuration by logging_track_config
            config.set_nested_value("logging/console_level", log_level)
            logger.debug("logging/console_level configuration set by argument to {}", log_level)
        else:
            logger.warning("Unknown log level '{}' ignored.", args.log_level)

    if args.debug:
        config.set_nested_value("database/trace_sql", True)
