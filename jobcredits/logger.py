"""
Structured logging system for the credit ledger.

Provides centralized logging with console and file outputs, log levels,
and metrics tracking for monitoring purchase reconciliation and
credit consumption.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks ledger metrics (events, mints, consumption, sweep repairs).
    """

    def __init__(
        self,
        name: str = "jobcredits",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()
        self.logger.propagate = False

        self.metrics = {
            "events_received": 0,
            "events_duplicate": 0,
            "events_unknown": 0,
            "purchases_completed": 0,
            "purchases_failed": 0,
            "credits_minted": 0,
            "mints_skipped": 0,
            "consumptions_ok": 0,
            "consumptions_denied": 0,
            "credits_consumed": 0,
            "sweep_repairs": 0,
            "errors_by_type": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"jobcredits_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

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

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str, sort_keys=True)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_event(self, outcome: str):
        """Record a provider event and how it was resolved."""
        self.metrics["events_received"] += 1
        if outcome == "duplicate":
            self.metrics["events_duplicate"] += 1
        elif outcome == "unknown_purchase":
            self.metrics["events_unknown"] += 1

    def record_status_change(self, status: str):
        """Record a purchase reaching a terminal status."""
        key = f"purchases_{status}"
        if key in self.metrics:
            self.metrics[key] += 1

    def record_mint(self, created: int):
        """Record a mint attempt; zero means it was already minted."""
        if created:
            self.metrics["credits_minted"] += created
        else:
            self.metrics["mints_skipped"] += 1

    def record_consumption(self, success: bool, credits: int = 0):
        if success:
            self.metrics["consumptions_ok"] += 1
            self.metrics["credits_consumed"] += credits
        else:
            self.metrics["consumptions_denied"] += 1

    def record_sweep_repair(self, count: int = 1):
        self.metrics["sweep_repairs"] += count

    def record_error(self, error_type: str):
        """Track errors by type."""
        errors = self.metrics["errors_by_type"]
        errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a copy of the current metrics with derived rates."""
        metrics_copy = dict(self.metrics)
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])

        attempts = metrics_copy["consumptions_ok"] + metrics_copy["consumptions_denied"]
        if attempts > 0:
            metrics_copy["consumption_success_rate"] = round(
                metrics_copy["consumptions_ok"] / attempts, 3
            )
        received = metrics_copy["events_received"]
        if received > 0:
            metrics_copy["duplicate_event_rate"] = round(
                metrics_copy["events_duplicate"] / received, 3
            )

        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Credit Ledger Metrics ===")
        self.info(
            f"Events: {metrics['events_received']} received, "
            f"{metrics['events_duplicate']} duplicate, {metrics['events_unknown']} unknown"
        )
        self.info(
            f"Purchases: {metrics['purchases_completed']} completed, "
            f"{metrics['purchases_failed']} failed"
        )
        self.info(f"Credits minted: {metrics['credits_minted']} (skipped mints: {metrics['mints_skipped']})")
        self.info(
            f"Consumption: {metrics['consumptions_ok']} ok, {metrics['consumptions_denied']} denied, "
            f"{metrics['credits_consumed']} credits used"
        )
        if metrics["sweep_repairs"]:
            self.info(f"Sweep repairs: {metrics['sweep_repairs']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "jobcredits",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Level and log directory default to JOBCREDITS_LOG_LEVEL and
    JOBCREDITS_LOG_DIR; file logging is only on when a directory is known.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        level = level or os.getenv("JOBCREDITS_LOG_LEVEL", "INFO")
        if "log_dir" not in kwargs and os.getenv("JOBCREDITS_LOG_DIR"):
            kwargs["log_dir"] = Path(os.environ["JOBCREDITS_LOG_DIR"])
        kwargs.setdefault("enable_file", kwargs.get("log_dir") is not None)
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
