"""Watermark storage for incremental ticket inbox sync."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
from ticketry_common.config import PostgresConfig

from ticketry_mail.ports import WatermarkBackend

logger = logging.getLogger(__name__)

# mail_sync_state holds exactly one row
SYNC_STATE_ROW_ID = 1


@dataclass
class Watermark:
    """The persisted resume point."""

    last_successful_sync: datetime | None
    updated_at: datetime | None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "lastSuccessfulSync": (
                self.last_successful_sync.isoformat() if self.last_successful_sync else None
            ),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class WatermarkStore:
    """Store for the ticket sync watermark."""

    def __init__(self, config: PostgresConfig | None = None) -> None:
        """Initialize watermark store."""
        self.config = config or PostgresConfig.from_env()

    def _get_connection(self) -> psycopg.Connection[tuple[Any, ...]]:
        """Get database connection."""
        return psycopg.connect(self.config.connection_string)

    def get_watermark(self) -> Watermark | None:
        """
        Get the watermark row.

        Returns:
            Watermark if the row exists, None otherwise
        """
        query = """
            SELECT last_successful_sync, updated_at
            FROM mail_sync_state
            WHERE id = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (SYNC_STATE_ROW_ID,))
            row = cur.fetchone()
            if row:
                return Watermark(last_successful_sync=row[0], updated_at=row[1])

        return None

    def get_last_successful_sync(self) -> datetime | None:
        """Timestamp of the last message durably ingested, if any."""
        watermark = self.get_watermark()
        return watermark.last_successful_sync if watermark else None

    def set_last_successful_sync(self, value: datetime) -> bool:
        """
        Advance the watermark.

        The update only applies when ``value`` is later than the stored
        timestamp, so concurrent writers can never move it backward.

        Args:
            value: Timestamp of the last ingested message

        Returns:
            True if the row changed
        """
        query = """
            INSERT INTO mail_sync_state (id, last_successful_sync)
            VALUES (%s, %s)
            ON CONFLICT (id) DO UPDATE SET
                last_successful_sync = EXCLUDED.last_successful_sync,
                updated_at = NOW()
            WHERE mail_sync_state.last_successful_sync IS NULL
               OR mail_sync_state.last_successful_sync < EXCLUDED.last_successful_sync
            RETURNING last_successful_sync
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (SYNC_STATE_ROW_ID, value))
            row = cur.fetchone()
            conn.commit()

        if row is None:
            logger.debug("Watermark not advanced to %s", value.isoformat())
            return False

        logger.debug("Watermark advanced to %s", value.isoformat())
        return True


class WatermarkGate:
    """Decides where a pass resumes and whether a commit may advance."""

    def __init__(self, backend: WatermarkBackend) -> None:
        self.backend = backend
        self._lock = threading.Lock()

    def resume_point(self) -> datetime | None:
        """Return the persisted watermark, or None to start from the beginning."""
        return self.backend.get_last_successful_sync()

    def commit(self, value: datetime) -> bool:
        """
        Advance the watermark iff ``value`` is strictly later than the current one.

        Returns:
            True if the watermark moved
        """
        with self._lock:
            current = self.backend.get_last_successful_sync()
            if current is not None and value <= current:
                logger.debug(
                    "Ignoring watermark commit %s (current %s)",
                    value.isoformat(),
                    current.isoformat(),
                )
                return False
            return self.backend.set_last_successful_sync(value)
