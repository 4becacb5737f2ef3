"""Periodic trigger and control surface for the ticket inbox sync.

The scheduler owns one ``SyncState`` and one ``CancellationController``. It
starts at most one pass at a time, each on its own daemon thread, and exposes
``start``/``stop``/``get_state`` for operators. A module-level instance backs
the ``*_ticket_inbox_sync`` functions.
"""

import logging
import os
import threading
from typing import Any

from pydantic import BaseModel
from ticketry_common.config import PostgresConfig

from ticketry_mail.cancellation import CancellationController
from ticketry_mail.connectors.imap_connector import ImapConfig, ImapConnector
from ticketry_mail.ingest_ledger import IngestLedgerStore
from ticketry_mail.ingestor import MessageIngestor
from ticketry_mail.models import EVENT_SYNC_SKIPPED
from ticketry_mail.notification_log import NotificationLogStore, SyncEventLogger
from ticketry_mail.orchestrator import SyncOrchestrator
from ticketry_mail.ports import SyncEventSink, TicketStore
from ticketry_mail.sync_state import StopResult, SyncState, SyncStateSnapshot
from ticketry_mail.watermarks import WatermarkGate, WatermarkStore

logger = logging.getLogger(__name__)

DEFAULT_ABORT_TIMEOUT_MS = 30_000
DEFAULT_INTERVAL_MS = 300_000
MIN_INTERVAL_MS = 60_000


def _env_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, value)
        return None


class SyncConfig(BaseModel):
    """Ticket inbox sync timing."""

    abort_timeout_ms: int = DEFAULT_ABORT_TIMEOUT_MS
    interval_ms: int = DEFAULT_INTERVAL_MS
    max_messages: int | None = None

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load from environment variables."""
        abort_timeout_ms = _env_int("MAIL_TICKET_SYNC_ABORT_TIMEOUT_MS")
        interval_ms = _env_int("MAIL_TICKET_SYNC_INTERVAL_MS")
        max_messages = _env_int("MAIL_TICKET_SYNC_MAX_MESSAGES")
        return cls(
            abort_timeout_ms=(
                abort_timeout_ms
                if abort_timeout_ms is not None and abort_timeout_ms > 0
                else DEFAULT_ABORT_TIMEOUT_MS
            ),
            interval_ms=max(MIN_INTERVAL_MS, interval_ms or DEFAULT_INTERVAL_MS),
            max_messages=max_messages if max_messages and max_messages > 0 else None,
        )


class SyncScheduler:
    """
    Runs sync passes periodically and on demand.

    Args:
        orchestrator: Runs a single pass
        config: Timing configuration
        enabled: False when the mailbox is not configured; ``start()`` then
            only records a skipped event
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config: SyncConfig | None = None,
        enabled: bool = True,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config or SyncConfig()
        self.enabled = enabled
        self.state = orchestrator.state
        self.controller = orchestrator.controller
        self.events: SyncEventSink = orchestrator.events
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._timer_thread: threading.Thread | None = None
        self._pass_thread: threading.Thread | None = None

    def start(self) -> SyncStateSnapshot:
        """
        Arm the periodic trigger and run a pass now.

        Returns:
            State snapshot after the trigger
        """
        if not self.enabled:
            logger.info("Ticket inbox sync skipped: IMAP is not configured")
            self.events.log_sync_event(
                EVENT_SYNC_SKIPPED, {"reason": "IMAP_NOT_CONFIGURED"}, "skipped"
            )
            return self.state.get()

        with self._lock:
            if self._timer_thread is None or not self._timer_thread.is_alive():
                self._shutdown.clear()
                self._timer_thread = threading.Thread(
                    target=self._timer_loop,
                    name="ticket-sync-timer",
                    daemon=True,
                )
                self._timer_thread.start()
                logger.info(
                    "Ticket inbox sync scheduled every %d ms", self.config.interval_ms
                )

        self.trigger()
        return self.state.get()

    def trigger(self) -> bool:
        """
        Start a pass unless one is already running.

        Returns:
            True if a new pass was started
        """
        generation = self.state.acquire()
        if generation is None:
            logger.debug("Ticket inbox sync already running, trigger ignored")
            return False

        self.controller.begin(generation)
        thread = threading.Thread(
            target=self._run,
            args=(generation,),
            name=f"ticket-sync-pass-{generation}",
            daemon=True,
        )
        with self._lock:
            self._pass_thread = thread
        thread.start()
        return True

    def stop(self) -> StopResult:
        """Ask the running pass to stop. Never blocks on the network."""
        result = self.controller.request_stop()
        if not result.was_running:
            logger.debug("Stop requested while ticket inbox sync is idle")
        return result

    def get_state(self) -> SyncStateSnapshot:
        """Current sync state."""
        return self.state.get()

    def shutdown(self, timeout: float | None = None) -> None:
        """
        Halt the periodic trigger and stop any running pass.

        Args:
            timeout: Seconds to wait for the threads to exit
        """
        self._shutdown.set()
        self.stop()
        with self._lock:
            threads = [t for t in (self._timer_thread, self._pass_thread) if t is not None]
            self._timer_thread = None
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout)
        logger.info("Ticket inbox sync shut down")

    def _run(self, generation: int) -> None:
        try:
            self.orchestrator.run_pass(generation)
        except Exception:
            # run_pass contains its own failures; this only guards the thread
            logger.exception("Ticket inbox sync pass %d crashed", generation)
            self.controller.finish(generation)

    def _timer_loop(self) -> None:
        interval = self.config.interval_ms / 1000
        while not self._shutdown.wait(interval):
            try:
                self.trigger()
            except Exception:
                logger.exception("Scheduled ticket inbox sync failed to start")


_scheduler: SyncScheduler | None = None
_scheduler_lock = threading.Lock()


def configure_ticket_inbox_sync(scheduler: SyncScheduler | None) -> None:
    """Install the scheduler used by the module-level control functions."""
    global _scheduler
    with _scheduler_lock:
        _scheduler = scheduler


def build_ticket_inbox_sync(
    ticket_store: TicketStore,
    *,
    imap_config: ImapConfig | None = None,
    sync_config: SyncConfig | None = None,
    postgres_config: PostgresConfig | None = None,
    events: SyncEventSink | None = None,
) -> SyncScheduler:
    """
    Wire a scheduler against Postgres and IMAP.

    Configuration not passed explicitly is read from the environment.

    Args:
        ticket_store: Where tickets and replies are written
        imap_config: Mailbox settings
        sync_config: Timing settings
        postgres_config: Database for watermark, ledger and notification log
        events: Sink for sync events, defaults to the notification log

    Returns:
        A scheduler, also installed for the module-level functions
    """
    imap_config = imap_config or ImapConfig.from_env()
    sync_config = sync_config or SyncConfig.from_env()
    postgres_config = postgres_config or PostgresConfig.from_env()
    events = events or SyncEventLogger(NotificationLogStore(postgres_config))

    state = SyncState()
    controller = CancellationController(state, sync_config.abort_timeout_ms, events)
    orchestrator = SyncOrchestrator(
        state=state,
        controller=controller,
        client_factory=lambda: ImapConnector(imap_config),
        gate=WatermarkGate(WatermarkStore(postgres_config)),
        ingestor=MessageIngestor(ticket_store, IngestLedgerStore(postgres_config)),
        events=events,
        max_messages=sync_config.max_messages,
    )
    scheduler = SyncScheduler(orchestrator, sync_config, enabled=imap_config.is_configured)
    configure_ticket_inbox_sync(scheduler)
    return scheduler


def _require_scheduler() -> SyncScheduler:
    if _scheduler is None:
        raise RuntimeError("Ticket inbox sync is not configured")
    return _scheduler


def start_ticket_inbox_sync() -> dict[str, Any]:
    """Start the configured ticket inbox sync."""
    return _require_scheduler().start().to_json()


def stop_ticket_inbox_sync() -> dict[str, Any]:
    """Stop the running pass, if any."""
    return _require_scheduler().stop().to_json()


def get_ticket_inbox_sync_state() -> dict[str, Any]:
    """Current state of the configured ticket inbox sync."""
    return _require_scheduler().get_state().to_json()
