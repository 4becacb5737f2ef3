"""Ticketry mailbox-to-ticket sync."""

from ticketry_mail.cancellation import CancellationController, CancellationToken
from ticketry_mail.connectors import ImapConfig, ImapConnector
from ticketry_mail.errors import CloseError, ConnectError, FetchError, IngestError, SyncError
from ticketry_mail.ingest_ledger import IngestLedgerStore
from ticketry_mail.ingestor import MessageIngestor
from ticketry_mail.models import IngestedMessage, IngestResult, SyncPhase, SyncSummary
from ticketry_mail.notification_log import NotificationLogStore, SyncEventLogger
from ticketry_mail.orchestrator import SyncOrchestrator
from ticketry_mail.scheduler import (
    SyncConfig,
    SyncScheduler,
    build_ticket_inbox_sync,
    configure_ticket_inbox_sync,
    get_ticket_inbox_sync_state,
    start_ticket_inbox_sync,
    stop_ticket_inbox_sync,
)
from ticketry_mail.sync_state import StopResult, SyncState, SyncStateSnapshot
from ticketry_mail.watermarks import Watermark, WatermarkGate, WatermarkStore

__all__ = [
    "SyncState",
    "SyncStateSnapshot",
    "StopResult",
    "SyncPhase",
    "SyncSummary",
    "IngestedMessage",
    "IngestResult",
    "CancellationController",
    "CancellationToken",
    "MessageIngestor",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncConfig",
    "WatermarkGate",
    "WatermarkStore",
    "Watermark",
    "IngestLedgerStore",
    "NotificationLogStore",
    "SyncEventLogger",
    "ImapConfig",
    "ImapConnector",
    "SyncError",
    "ConnectError",
    "FetchError",
    "IngestError",
    "CloseError",
    "build_ticket_inbox_sync",
    "configure_ticket_inbox_sync",
    "start_ticket_inbox_sync",
    "stop_ticket_inbox_sync",
    "get_ticket_inbox_sync_state",
]
