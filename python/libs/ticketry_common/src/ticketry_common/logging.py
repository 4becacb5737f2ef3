"""Structured logging setup for Ticketry services."""
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from .config import get_config


class TicketryJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every record with the service identity."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        config = get_config()

        log_record["env"] = config.env
        log_record["service"] = config.service.name
        log_record["version"] = config.service.version
        log_record["pipeline"] = config.service.pipeline

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["thread"] = record.threadName

        if "message" not in log_record:
            log_record["message"] = record.getMessage()


def configure_logging(level: str | None = None) -> None:
    """Route the root logger through the JSON formatter on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        TicketryJsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, (level or get_config().log_level).upper()))

    # psycopg logs every connection attempt at INFO
    logging.getLogger("psycopg").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)
