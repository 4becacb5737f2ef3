"""Map fetched messages onto ticket store writes."""

import logging
import threading
from typing import Any

from ticketry_mail.errors import IngestError
from ticketry_mail.models import LEDGER_PENDING, IngestedMessage, IngestResult, TicketId
from ticketry_mail.parsing import extract_ticket_code, trim_quoted_conversation
from ticketry_mail.ports import IngestLedger, TicketStore

logger = logging.getLogger(__name__)


class MessageIngestor:
    """
    Commits one message as a new ticket or as a reply.

    The external id is the idempotency key. It is reserved in the ledger
    before the ticket store is touched and marked done afterwards, under a
    lock, so a message delivered twice produces at most one ticket store
    write even when the final ledger update fails.
    """

    def __init__(self, ticket_store: TicketStore, ledger: IngestLedger) -> None:
        self.ticket_store = ticket_store
        self.ledger = ledger
        self._lock = threading.Lock()

    @staticmethod
    def correlation_ref(message: IngestedMessage) -> str | None:
        """Ticket reference the message replies to, if any."""
        if message.in_reply_to_ticket_ref:
            return message.in_reply_to_ticket_ref.strip().upper() or None
        return extract_ticket_code(message.subject)

    def ingest(self, message: IngestedMessage) -> IngestResult:
        """
        Write ``message`` to the ticket store unless it was already ingested.

        Messages with nothing left after quoted history is trimmed are
        skipped without a write.

        Raises:
            IngestError: If the ticket store or the ledger rejects the write
        """
        external_id = message.external_id
        with self._lock:
            try:
                existing = self.ledger.get(external_id)
            except Exception as e:
                raise IngestError(external_id, f"ledger lookup failed: {e}") from e

            if existing is not None:
                if existing.outcome == LEDGER_PENDING:
                    logger.warning(
                        "Message %s was claimed by an earlier pass that did not finish, "
                        "not writing it again",
                        external_id,
                    )
                else:
                    logger.debug("Skipping already ingested message %s", external_id)
                return IngestResult(external_id, "duplicate", existing.ticket_id)

            fields = self._fields(message)
            if not fields["message"]:
                logger.info("Skipping message %s with an empty body", external_id)
                return IngestResult(external_id, "skipped", None)

            try:
                claimed = self.ledger.reserve(external_id, message.received_at)
            except Exception as e:
                raise IngestError(external_id, f"ledger reserve failed: {e}") from e
            if not claimed:
                logger.debug("Message %s was reserved concurrently", external_id)
                return IngestResult(external_id, "duplicate", None)

            try:
                result = self._write(message, fields)
            except Exception as e:
                self._release(external_id)
                raise IngestError(external_id, str(e)) from e

            try:
                self.ledger.record(
                    external_id,
                    result.ticket_id,
                    result.outcome,
                    message.received_at,
                )
            except Exception:
                # The reservation stays in place and blocks a second write
                logger.warning(
                    "Could not mark message %s as ingested on ticket %s",
                    external_id,
                    result.ticket_id,
                    exc_info=True,
                )

        logger.info(
            "Ingested message %s as %s on ticket %s",
            external_id,
            result.outcome,
            result.ticket_id,
        )
        return result

    def _release(self, external_id: str) -> None:
        try:
            self.ledger.release(external_id)
        except Exception:
            logger.exception("Could not release ledger reservation for %s", external_id)

    def _fields(self, message: IngestedMessage) -> dict[str, Any]:
        return {
            "subject": message.subject,
            "message": trim_quoted_conversation(message.body),
            "sender_address": message.sender_address,
            "received_at": message.received_at,
            "source_message_id": message.external_id,
        }

    def _write(self, message: IngestedMessage, fields: dict[str, Any]) -> IngestResult:
        ref = self.correlation_ref(message)

        ticket_id: TicketId | None = None
        if ref:
            ticket_id = self.ticket_store.find_ticket_by_ref(ref)
            if ticket_id is None:
                logger.warning(
                    "Message %s references unknown ticket %s, opening a new ticket",
                    message.external_id,
                    ref,
                )

        if ticket_id is not None:
            self.ticket_store.append_reply(ticket_id, fields)
            return IngestResult(message.external_id, "replied", ticket_id)

        ticket_id = self.ticket_store.create_ticket(fields)
        return IngestResult(message.external_id, "created", ticket_id)
