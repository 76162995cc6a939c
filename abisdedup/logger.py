"""
Structured logging system for the dedup core.

Provides centralized logging with console and file outputs, log levels,
and metrics tracking for monitoring ABIS traffic and dedup outcomes.

Modules grab the shared instance at import time; the CLI calls
``configure()`` once settings are known so every module picks up the
configured level and log directory.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks counters for requests, responses, decisions and manual tasks.
    """

    def __init__(
        self,
        name: str = "abisdedup",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
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
        self.reset_metrics()
        self.configure(level=level, log_dir=log_dir, enable_file=enable_file, enable_console=enable_console)

    def configure(
        self,
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ) -> None:
        """Replace handlers and level. Metrics are kept."""
        numeric_level = getattr(logging, level.upper())
        self.logger.setLevel(numeric_level)
        self.logger.handlers.clear()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(numeric_level)
            console_handler.setFormatter(logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(console_handler)

        if enable_file:
            log_dir = log_dir or Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"abisdedup_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # file keeps everything
            file_handler.setFormatter(logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(file_handler)

    def reset_metrics(self) -> None:
        self.metrics = {
            "requests_submitted": {},
            "dispatch_failures": 0,
            "requests_expired": 0,
            "responses_ingested": 0,
            "duplicate_responses": 0,
            "decisions": {},
            "manual_tasks": {},
            "errors_by_kind": {},
        }

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
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def _bump(self, bucket: str, key: str):
        counts = self.metrics[bucket]
        counts[key] = counts.get(key, 0) + 1

    def record_request_submitted(self, request_type: str):
        """Record a request handed to the ABIS channel."""
        self._bump("requests_submitted", request_type)

    def record_dispatch_failure(self):
        """Record an outbound dispatch rejected by the channel."""
        self.metrics["dispatch_failures"] += 1

    def record_requests_expired(self, count: int):
        """Record requests moved to FAILED by the timeout sweep."""
        self.metrics["requests_expired"] += count

    def record_response(self, duplicate: bool = False):
        """Record an inbound response (or a discarded redelivery)."""
        if duplicate:
            self.metrics["duplicate_responses"] += 1
        else:
            self.metrics["responses_ingested"] += 1

    def record_decision(self, decision: str):
        """Record a dedup decision outcome."""
        self._bump("decisions", decision)

    def record_task_event(self, event: str):
        """Record a manual verification queue event (enqueued, assigned, ...)."""
        self._bump("manual_tasks", event)

    def record_error(self, kind: str):
        """Record a surfaced error by kind."""
        self._bump("errors_by_kind", kind)

    def get_metrics(self) -> dict:
        """Return a copy of current metrics."""
        metrics_copy = {}
        for key, value in self.metrics.items():
            metrics_copy[key] = dict(value) if isinstance(value, dict) else value

        total_requests = sum(metrics_copy["requests_submitted"].values())
        attempts = total_requests + metrics_copy["dispatch_failures"]
        metrics_copy["dispatch_success_rate"] = (
            round(total_requests / attempts, 3) if attempts > 0 else None
        )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        total_requests = sum(metrics["requests_submitted"].values())
        self.info("=== Dedup Session Metrics ===")
        self.info(f"Requests sent: {total_requests} (dispatch failures: {metrics['dispatch_failures']})")
        for request_type, count in sorted(metrics["requests_submitted"].items()):
            self.info(f"  {request_type}: {count}")
        self.info(f"Requests expired: {metrics['requests_expired']}")
        self.info(
            f"Responses: {metrics['responses_ingested']} "
            f"(duplicates discarded: {metrics['duplicate_responses']})"
        )

        if metrics["decisions"]:
            self.info("Decisions:")
            for decision, count in sorted(metrics["decisions"].items()):
                self.info(f"  {decision}: {count}")

        if metrics["manual_tasks"]:
            self.info("Manual verification:")
            for event, count in sorted(metrics["manual_tasks"].items()):
                self.info(f"  {event}: {count}")

        if metrics["errors_by_kind"]:
            self.info("Errors:")
            for kind, count in sorted(metrics["errors_by_kind"].items()):
                self.info(f"  {kind}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "abisdedup",
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


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
