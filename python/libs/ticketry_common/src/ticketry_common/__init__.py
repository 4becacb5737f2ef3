"""Ticketry common utilities for Python components."""

from .config import PostgresConfig, TicketryConfig, get_config
from .logging import configure_logging, get_logger

__all__ = [
    "get_config",
    "PostgresConfig",
    "TicketryConfig",
    "get_logger",
    "configure_logging",
]
