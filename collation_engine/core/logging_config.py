"""Structured logging configuration for the application."""

from datetime import UTC, datetime
import json
import logging
import sys
from typing import Any

from collation_engine.core.config import settings


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging() -> None:
    """Configure application logging based on environment."""
    log_level = logging.INFO
    if settings.ENVIRONMENT == "development":
        log_level = logging.DEBUG
    elif settings.ENVIRONMENT == "production":
        log_level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    # Use JSON formatter in production, standard in development
    if settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = StandardFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set specific log levels for noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class CollationLogger:
    """Specialized logger for result sheet workflow events."""

    def __init__(self) -> None:
        self.logger = get_logger("collation")

    def log_transition(
        self,
        sheet_id: str,
        action: str,
        from_status: str,
        to_status: str,
        version: int,
        performed_by: str,
    ) -> None:
        """Log an accepted state transition."""
        self.logger.info(
            f"Result sheet {sheet_id} {action}: {from_status} -> {to_status}",
            extra={
                "extra_fields": {
                    "event_type": "sheet_transition",
                    "sheet_id": sheet_id,
                    "action": action,
                    "from_status": from_status,
                    "to_status": to_status,
                    "version": version,
                    "performed_by": performed_by,
                }
            },
        )

    def log_refused(
        self,
        sheet_id: str,
        operation: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log an operation refused by a workflow rule."""
        extra_fields: dict[str, Any] = {
            "event_type": "operation_refused",
            "sheet_id": sheet_id,
            "operation": operation,
            "code": code,
        }
        if details:
            extra_fields.update(details)

        self.logger.warning(
            f"Refused {operation} on result sheet {sheet_id}: {code}",
            extra={"extra_fields": extra_fields},
        )

    def log_bulk_upsert(self, sheet_id: str, count: int, version: int) -> None:
        """Log a bulk entry upsert."""
        self.logger.info(
            f"Upserted {count} entries on result sheet {sheet_id}",
            extra={
                "extra_fields": {
                    "event_type": "entries_upserted",
                    "sheet_id": sheet_id,
                    "count": count,
                    "version": version,
                }
            },
        )

    def log_discrepancy(
        self,
        sheet_id: str,
        calculated_total: int,
        reported_total: int | None,
        delta: int | None,
    ) -> None:
        """Log a vote total mismatch detected by the consistency check."""
        self.logger.warning(
            f"Discrepancy on result sheet {sheet_id}: delta {delta}",
            extra={
                "extra_fields": {
                    "event_type": "discrepancy_detected",
                    "sheet_id": sheet_id,
                    "calculated_total": calculated_total,
                    "reported_total": reported_total,
                    "delta": delta,
                }
            },
        )


# Global collation logger instance
collation_logger = CollationLogger()
