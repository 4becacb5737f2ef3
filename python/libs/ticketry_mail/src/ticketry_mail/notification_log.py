"""Append-only mail notification log."""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
from ticketry_common.config import PostgresConfig

from ticketry_mail.models import SyncStatus

logger = logging.getLogger(__name__)

VALID_STATUSES = ("sent", "error", "skipped")
MAX_RECENT_EVENTS = 100


@dataclass
class SyncNotificationLogEntry:
    """One row of ``mail_notification_logs``."""

    id: int
    event_type: str
    status: SyncStatus
    context_json: dict[str, Any] | None
    created_at: datetime
    subject: str | None = None
    error_message: str | None = None


class NotificationLogStore:
    """Postgres store for ``mail_notification_logs``."""

    def __init__(self, config: PostgresConfig | None = None) -> None:
        """Initialize notification log store."""
        self.config = config or PostgresConfig.from_env()

    def _get_connection(self) -> psycopg.Connection[tuple[Any, ...]]:
        """Get database connection."""
        return psycopg.connect(self.config.connection_string)

    def append(
        self,
        event_type: str,
        status: str = "sent",
        context: Mapping[str, Any] | None = None,
        subject: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Insert one log row.

        Unknown statuses are stored as 'sent', matching the column's enum.

        Args:
            event_type: Event name, e.g. 'sync.completed'
            status: One of sent, error, skipped
            context: JSON-serializable details
            subject: Optional mail subject the event relates to
            error_message: Optional error text
        """
        query = """
            INSERT INTO mail_notification_logs (
                event_type, subject, status, error_message, context_json
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                query,
                (
                    event_type or "generic",
                    subject,
                    status if status in VALID_STATUSES else "sent",
                    error_message,
                    json.dumps(dict(context), default=str) if context else None,
                ),
            )
            conn.commit()

    def list_recent(self, limit: int = 25) -> list[SyncNotificationLogEntry]:
        """
        List the most recent log rows, newest first.

        Args:
            limit: Number of rows, clamped to 1..100

        Returns:
            List of log entries
        """
        safe_limit = min(MAX_RECENT_EVENTS, max(1, int(limit)))
        query = """
            SELECT id, event_type, status, context_json, created_at,
                   subject, error_message
            FROM mail_notification_logs
            ORDER BY created_at DESC, id DESC
            LIMIT %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (safe_limit,))
            return [
                SyncNotificationLogEntry(
                    id=row[0],
                    event_type=row[1],
                    status=row[2],
                    context_json=row[3],
                    created_at=row[4],
                    subject=row[5],
                    error_message=row[6],
                )
                for row in cur.fetchall()
            ]


class SyncEventLogger:
    """Sync event sink that never lets a log failure escape."""

    def __init__(self, store: NotificationLogStore) -> None:
        self.store = store

    def log_sync_event(
        self,
        kind: str,
        details: Mapping[str, Any] | None = None,
        status: SyncStatus = "sent",
    ) -> None:
        """Write a sync event, swallowing storage failures."""
        details = dict(details or {})
        error_message = details.get("error") if status == "error" else None
        try:
            self.store.append(
                event_type=kind,
                status=status,
                context=details,
                error_message=str(error_message) if error_message else None,
            )
        except Exception:
            logger.exception("Could not persist sync event %s", kind)
