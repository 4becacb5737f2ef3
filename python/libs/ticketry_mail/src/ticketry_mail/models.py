"""Data types shared across the inbox sync engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

TicketId = int | str

SyncStatus = Literal["sent", "error", "skipped"]
IngestOutcome = Literal["created", "replied", "duplicate", "skipped"]

# Ledger outcome of a message whose ticket store write has not been confirmed
LEDGER_PENDING = "pending"

# Sync event types written to the notification log
EVENT_SYNC_COMPLETED = "sync.completed"
EVENT_SYNC_ABORTED = "sync.aborted"
EVENT_SYNC_ERROR = "sync.error"
EVENT_SYNC_SKIPPED = "sync.skipped"
EVENT_CONNECT_ERROR = "sync.connect.error"
EVENT_INGEST_ERROR = "sync.ingest.error"
EVENT_CLOSE_ERROR = "sync.close.error"
EVENT_WATCHDOG_RESET = "sync.watchdog.reset"


class SyncPhase(str, Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    CONNECTING = "connecting"
    RESUMING = "resuming"
    FETCHING = "fetching"
    INGESTING = "ingesting"
    COMMITTING = "committing"
    ABORTING = "aborting"


@dataclass(frozen=True)
class IngestedMessage:
    """One fetched mailbox message, decoded and ready for the ticket store."""

    external_id: str
    received_at: datetime
    subject: str
    body: str
    sender_address: str | None
    in_reply_to_ticket_ref: str | None = None


@dataclass(frozen=True)
class IngestResult:
    """What the ingestor did with a message."""

    external_id: str
    outcome: IngestOutcome
    ticket_id: TicketId | None


@dataclass(frozen=True)
class LedgerEntry:
    """A message claimed for, or already written to, the ticket store."""

    external_id: str
    ticket_id: TicketId | None
    outcome: str
    received_at: datetime
    created_at: datetime | None = None


@dataclass
class SyncSummary:
    """Result of a single sync pass."""

    fetched: int = 0
    created: int = 0
    replied: int = 0
    duplicates: int = 0
    skipped: int = 0
    acknowledged: int = 0
    errors: list[str] = field(default_factory=list)
    watermark_updated: bool = False
    aborted: bool = False
    last_committed_at: datetime | None = None

    def record(self, result: IngestResult) -> None:
        """Count an ingest outcome."""
        if result.outcome == "created":
            self.created += 1
        elif result.outcome == "replied":
            self.replied += 1
        elif result.outcome == "skipped":
            self.skipped += 1
        else:
            self.duplicates += 1

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "fetched": self.fetched,
            "created": self.created,
            "replied": self.replied,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "acknowledged": self.acknowledged,
            "errors": list(self.errors),
            "watermarkUpdated": self.watermark_updated,
            "aborted": self.aborted,
            "lastCommittedAt": (
                self.last_committed_at.isoformat() if self.last_committed_at else None
            ),
        }
