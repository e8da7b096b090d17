"""Utility for configuring Loguru loggers."""

import logging as pylogging
import os
import sys
from types import FrameType
from typing import Any, Optional

from loguru import logger

from energylogger.core.logsettings import LOGGING_LEVELS


class InterceptHandler(pylogging.Handler):
    """A logging handler that redirects standard Python logging messages to Loguru.

    paho-mqtt and sqlite tooling log through the standard `logging` module; this handler
    re-emits those records through Loguru with proper call depth and exception info.

    Attributes:
        loglevel_mapping (dict): Mapping from standard logging levels to Loguru level names.
    """

    loglevel_mapping: dict[int, str] = {
        50: "CRITICAL",
        40: "ERROR",
        30: "WARNING",
        20: "INFO",
        10: "DEBUG",
        5: "TRACE",
        0: "NOTSET",
    }

    def emit(self, record: pylogging.LogRecord) -> None:
        """Emits a logging record by forwarding it to Loguru with preserved metadata.

        Args:
            record (logging.LogRecord): A record object containing log message and metadata.
        """
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = self.loglevel_mapping.get(record.levelno, "INFO")

        frame: Optional[FrameType] = pylogging.currentframe()
        depth: int = 2
        while frame and frame.f_code.co_filename == pylogging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


console_handler_id = None
file_handler_id = None


def logging_track_config(config: Any, path: str, old_value: Any, value: Any) -> None:
    """Track logging config changes and (re-)create the loguru sinks."""
    global console_handler_id, file_handler_id

    if not path.startswith("logging"):
        raise ValueError(f"Logging shall not track '{path}'")

    if not config.logging.console_level:
        # No value given - check environment value - may also be None
        config.logging.console_level = os.getenv("ENERGYLOGGER_LOGGING__LEVEL")
    if not config.logging.file_level:
        config.logging.file_level = os.getenv("ENERGYLOGGER_LOGGING__LEVEL")

    # Remove handlers
    if console_handler_id is not None:
        try:
            logger.remove(console_handler_id)
        except ValueError as e:
            logger.debug("Exception on logger.remove: {}", e)
        console_handler_id = None
    if file_handler_id is not None:
        try:
            logger.remove(file_handler_id)
        except ValueError as e:
            logger.debug("Exception on logger.remove: {}", e)
        file_handler_id = None

    # Always add console handler
    console_level = config.logging.console_level or "INFO"
    if console_level not in LOGGING_LEVELS:
        logger.error("Invalid console log level '{}' - forced to INFO.", console_level)
        console_level = "INFO"

    console_handler_id = logger.add(
        sys.stderr,
        enqueue=True,
        backtrace=True,
        level=console_level,
    )

    # Add file handler
    if config.logging.file_level and config.logging.file_path:
        file_handler_id = logger.add(
            sink=config.logging.file_path,
            rotation="100 MB",
            retention="3 days",
            enqueue=True,
            backtrace=True,
            level=config.logging.file_level,
            serialize=True,  # JSON dict formatting
        )

    # Redirect standard logging to Loguru
    pylogging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for pylogger_name in ["paho", "paho.mqtt", "paho.mqtt.client"]:
        pylogger = pylogging.getLogger(pylogger_name)
        pylogger.handlers = [InterceptHandler()]
        pylogger.propagate = False

    logger.info(
        "Logger reconfigured - console: {}, file: {}.",
        console_level,
        config.logging.file_level,
    )
