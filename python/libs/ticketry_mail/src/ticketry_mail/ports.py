"""Interfaces of the collaborators the sync engine talks to.

The ticket store lives in the web application; the remaining ports have
Postgres implementations in this package and in-memory fakes in the tests.
"""

from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any, Protocol

from ticketry_mail.models import IngestedMessage, LedgerEntry, SyncStatus, TicketId


class TicketStore(Protocol):
    """Ticket persistence owned by the application."""

    def create_ticket(self, fields: Mapping[str, Any]) -> TicketId: ...

    def append_reply(self, ticket_id: TicketId, fields: Mapping[str, Any]) -> None: ...

    def find_ticket_by_ref(self, ref: str) -> TicketId | None: ...


class MailboxClient(Protocol):
    """A mailbox session owned by one sync pass."""

    def connect(self) -> None: ...

    def fetch_since(self, since: datetime | None) -> Iterator[IngestedMessage]:
        """Yield messages received strictly after ``since``, oldest first."""
        ...

    def acknowledge(self, message: IngestedMessage) -> None: ...

    def close(self) -> None: ...


class WatermarkBackend(Protocol):
    """Persisted resume point."""

    def get_last_successful_sync(self) -> datetime | None: ...

    def set_last_successful_sync(self, value: datetime) -> bool: ...


class SyncEventSink(Protocol):
    """Append-only sync event log."""

    def log_sync_event(
        self,
        kind: str,
        details: Mapping[str, Any] | None = None,
        status: SyncStatus = "sent",
    ) -> None: ...


class IngestLedger(Protocol):
    """
    Record of external ids claimed for or committed to the ticket store.

    A message is reserved before the write and recorded after it, so a
    reserved id is never written a second time.
    """

    def get(self, external_id: str) -> LedgerEntry | None: ...

    def reserve(self, external_id: str, received_at: datetime) -> bool: ...

    def release(self, external_id: str) -> None: ...

    def record(
        self,
        external_id: str,
        ticket_id: TicketId,
        outcome: str,
        received_at: datetime,
    ) -> None: ...
