"""Ledger of mailbox messages claimed for or written to the ticket store."""

import logging
from datetime import datetime
from typing import Any

import psycopg
from ticketry_common.config import PostgresConfig

from ticketry_mail.models import LEDGER_PENDING, LedgerEntry, TicketId

logger = logging.getLogger(__name__)


class IngestLedgerStore:
    """Postgres store for ``mail_ingested_messages``."""

    def __init__(self, config: PostgresConfig | None = None) -> None:
        """Initialize ingest ledger store."""
        self.config = config or PostgresConfig.from_env()

    def _get_connection(self) -> psycopg.Connection[tuple[Any, ...]]:
        """Get database connection."""
        return psycopg.connect(self.config.connection_string)

    def get(self, external_id: str) -> LedgerEntry | None:
        """
        Look up a message by external id.

        Args:
            external_id: Stable per-message identifier

        Returns:
            LedgerEntry if the message was already ingested, None otherwise
        """
        query = """
            SELECT external_id, ticket_id, outcome, received_at, created_at
            FROM mail_ingested_messages
            WHERE external_id = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (external_id,))
            row = cur.fetchone()
            if row:
                return LedgerEntry(
                    external_id=row[0],
                    ticket_id=row[1],
                    outcome=row[2],
                    received_at=row[3],
                    created_at=row[4],
                )

        return None

    def reserve(self, external_id: str, received_at: datetime) -> bool:
        """
        Claim a message before it is written to the ticket store.

        Returns:
            True if this call inserted the pending row, False if the id was
            already present
        """
        query = """
            INSERT INTO mail_ingested_messages (external_id, outcome, received_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (external_id) DO NOTHING
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (external_id, LEDGER_PENDING, received_at))
            inserted = cur.rowcount
            conn.commit()

        return inserted == 1

    def release(self, external_id: str) -> None:
        """Drop a pending claim so the message can be retried."""
        query = """
            DELETE FROM mail_ingested_messages
            WHERE external_id = %s AND outcome = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (external_id, LEDGER_PENDING))
            conn.commit()

    def record(
        self,
        external_id: str,
        ticket_id: TicketId,
        outcome: str,
        received_at: datetime,
    ) -> None:
        """
        Record that a message produced a ticket or reply.

        Completes a pending claim. A row that is already complete is kept.
        """
        query = """
            INSERT INTO mail_ingested_messages (
                external_id, ticket_id, outcome, received_at
            ) VALUES (%s, %s, %s, %s)
            ON CONFLICT (external_id) DO UPDATE
            SET ticket_id = EXCLUDED.ticket_id, outcome = EXCLUDED.outcome
            WHERE mail_ingested_messages.outcome = 'pending'
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (external_id, str(ticket_id), outcome, received_at))
            updated = cur.rowcount
            conn.commit()

        if not updated:
            logger.warning("Message %s was already in the ingest ledger", external_id)
