"""
Logging Configuration Module
===========================

Controls logging levels and output formatting for the market feed.
Provides different logging modes for development, testing, and production.
"""

import sys
from enum import Enum
from loguru import logger


class LogLevel(Enum):
    """Logging levels for different runtime modes"""
    SILENT = "SILENT"           # Only critical errors
    QUIET = "QUIET"             # Errors and warnings only
    NORMAL = "NORMAL"           # Info, warnings, and errors
    VERBOSE = "VERBOSE"         # Debug, info, warnings, and errors
    TRACE = "TRACE"             # All logging including trace


LEVEL_MAPPING = {
    LogLevel.SILENT: "CRITICAL",
    LogLevel.QUIET: "WARNING",
    LogLevel.NORMAL: "INFO",
    LogLevel.VERBOSE: "DEBUG",
    LogLevel.TRACE: "TRACE"
}


class LogConfig:
    """Logging configuration manager"""

    def __init__(self):
        self.current_level = LogLevel.NORMAL
        self._initialized = False
        self._console_sink = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def setup_logging(self,
                      level: LogLevel = LogLevel.NORMAL,
                      show_backtrace: bool = False,
                      show_diagnose: bool = False) -> None:
        """
        Configure logging for the application

        Args:
            level: Logging level to use
            show_backtrace: Show full backtraces on errors
            show_diagnose: Show diagnostic information
        """
        # Only our own console sink is replaced; sinks added by the host
        # application (or by tests) stay in place.
        if self._console_sink is not None:
            logger.remove(self._console_sink)
        elif not self._initialized:
            logger.remove()

        if level == LogLevel.SILENT:
            format_str = "<red><bold>CRITICAL</bold></red> | {message}"
        elif level == LogLevel.QUIET:
            format_str = "<level>{level}</level> | {message}"
        elif level == LogLevel.NORMAL:
            format_str = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> | {message}"
        else:
            format_str = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}"

        logger.configure(extra={"name": "polyfeed"})
        self._console_sink = logger.add(
            sys.stderr,
            format=format_str,
            level=LEVEL_MAPPING[level],
            backtrace=show_backtrace,
            diagnose=show_diagnose,
            colorize=True
        )

        self.current_level = level

        if level != LogLevel.SILENT and not self._initialized:
            logger.info(f"Logging configured: level={level.value}")

        self._initialized = True

    def set_development_mode(self) -> None:
        """Configure logging for development - full output"""
        self.setup_logging(
            level=LogLevel.VERBOSE,
            show_backtrace=True,
            show_diagnose=True
        )

    def add_file_logging(self,
                         filepath: str,
                         level: LogLevel = LogLevel.VERBOSE,
                         rotation: str = "10 MB",
                         retention: str = "7 days") -> int:
        """
        Add file logging in addition to console

        Args:
            filepath: Path to log file
            level: Logging level for file
            rotation: File rotation policy
            retention: Log retention policy

        Returns:
            The loguru sink id, usable with ``logger.remove``
        """
        file_format = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

        sink_id = logger.add(
            filepath,
            format=file_format,
            level=LEVEL_MAPPING[level],
            rotation=rotation,
            retention=retention,
            backtrace=True,
            diagnose=True
        )

        if self.current_level != LogLevel.SILENT:
            logger.info(f"File logging enabled: {filepath}")
        return sink_id


# Process-wide sink configuration; loguru itself is global.
log_config = LogConfig()


def setup_development_logging():
    """Quick setup for development - full logging"""
    log_config.set_development_mode()


def get_logger(name: str):
    """
    Get a logger instance for a module

    Args:
        name: Component name shown in the log line

    Returns:
        Logger instance
    """
    if not log_config.initialized:
        log_config.setup_logging()

    return logger.bind(name=name)
