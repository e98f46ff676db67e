"""
Structured logging for data migrations.

Provides centralized logging with console and file outputs, log levels,
and counters summarising what a migrator invocation did.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DATE_FORMAT))
    return handler


class StructuredLogger:
    """
    Logger for migrator runs: console and optional daily file output, plus
    counters of what the current process migrated.
    """

    def __init__(
        self,
        name: str = "datamigrations",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """
        Args:
            name: Logger name (the log channel)
            level: Minimum level for the console (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for the daily log file (default: logs/)
            enable_file: Also write to ``<log_dir>/<name>_<YYYYmmdd>.log``
            enable_console: Write to stderr
        """
        threshold = getattr(logging, level.upper())
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if enable_file else threshold)
        self.logger.handlers.clear()
        self.logger.propagate = False

        self.metrics = {
            "migrations_run": 0,
            "migrations_failed": 0,
            "migrations_rolled_back": 0,
            "migrations_skipped": 0,
            "rows_affected": 0,
            "errors_by_type": {},
        }

        if enable_console:
            self.logger.addHandler(_handler(logging.StreamHandler(sys.stderr), threshold, CONSOLE_FORMAT))

        if enable_file:
            log_dir = log_dir or Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / f"{name}_{datetime.now():%Y%m%d}.log"
            # file gets everything down to DEBUG regardless of level
            self.logger.addHandler(
                _handler(logging.FileHandler(log_file, encoding="utf-8"), logging.DEBUG, FILE_FORMAT)
            )

        if not self.logger.handlers:
            self.logger.addHandler(logging.NullHandler())

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def log(self, level: str, message: str, **kwargs):
        """Log at a level given by name ("info", "warning", ...)."""
        self._log(getattr(logging, level.upper()), message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_migration_run(self, rows_affected: int = 0):
        """Record a migration that completed its forward logic."""
        self.metrics["migrations_run"] += 1
        self.metrics["rows_affected"] += rows_affected

    def record_migration_failure(self, error_type: str):
        """Record a migration whose forward or reverse logic raised."""
        self.metrics["migrations_failed"] += 1

        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def record_rollback(self):
        """Record a migration whose reverse logic completed."""
        self.metrics["migrations_rolled_back"] += 1

    def record_skip(self):
        """Record a migration skipped during rollback."""
        self.metrics["migrations_skipped"] += 1

    def get_metrics(self) -> dict:
        """Return a copy of current metrics."""
        metrics_copy = dict(self.metrics)
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Data Migration Metrics ===")
        self.info(f"Migrated: {metrics['migrations_run']} ({metrics['rows_affected']} rows)")
        self.info(f"Rolled back: {metrics['migrations_rolled_back']}")
        self.info(f"Skipped: {metrics['migrations_skipped']}")
        self.info(f"Failed: {metrics['migrations_failed']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "datamigrations",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def logger_from_settings(settings) -> StructuredLogger:
    """Get the global logger configured from Settings."""
    return get_logger(
        name=settings.log_channel,
        level=settings.log_level,
        log_dir=settings.log_dir,
        enable_file=settings.log_dir is not None,
    )


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
