"""One end-to-end ticket inbox sync pass.

A pass walks ``CONNECTING -> RESUMING -> FETCHING/INGESTING -> COMMITTING``
and always ends back at ``IDLE``. Messages are fetched and committed one at
a time, in arrival order, and the cancellation token is checked before every
fetch, so a stop never splits a single message's ingestion.

Whatever happens, the watermark only advances to the arrival time of the last
message that reached the ticket store, and nothing raised inside the pass
escapes ``run_pass``.
"""

import logging
from collections.abc import Callable, Iterator
from typing import Any, Literal

from ticketry_mail.cancellation import CancellationController, CancellationToken
from ticketry_mail.errors import FetchError, IngestError
from ticketry_mail.ingestor import MessageIngestor
from ticketry_mail.models import (
    EVENT_CLOSE_ERROR,
    EVENT_CONNECT_ERROR,
    EVENT_INGEST_ERROR,
    EVENT_SYNC_ABORTED,
    EVENT_SYNC_COMPLETED,
    EVENT_SYNC_ERROR,
    IngestedMessage,
    SyncPhase,
    SyncSummary,
)
from ticketry_mail.ports import MailboxClient, SyncEventSink
from ticketry_mail.sync_state import SyncState
from ticketry_mail.watermarks import WatermarkGate

logger = logging.getLogger(__name__)

PassOutcome = Literal["completed", "aborted", "connect_error", "ingest_error", "error"]


class SyncOrchestrator:
    """Drives connect, fetch, ingest, commit and disconnect for one pass."""

    def __init__(
        self,
        state: SyncState,
        controller: CancellationController,
        client_factory: Callable[[], MailboxClient],
        gate: WatermarkGate,
        ingestor: MessageIngestor,
        events: SyncEventSink,
        max_messages: int | None = None,
    ) -> None:
        self.state = state
        self.controller = controller
        self.client_factory = client_factory
        self.gate = gate
        self.ingestor = ingestor
        self.events = events
        self.max_messages = max_messages

    def run_pass(self, generation: int) -> SyncSummary:
        """
        Run a pass on behalf of ``generation``.

        The caller must have acquired ``generation`` from the sync state.

        Returns:
            Summary of what the pass did
        """
        token = self.controller.token(generation)
        summary = SyncSummary()
        client: MailboxClient | None = None
        outcome: PassOutcome = "completed"
        context: dict[str, Any] = {}

        try:
            self._enter(generation, SyncPhase.CONNECTING)
            client = self.client_factory()
            self.state.try_set(generation, client=client)
            outcome = self._run(generation, token, client, summary, context)
        except Exception as e:
            if token.cancelled:
                outcome = "aborted"
                logger.info("Sync pass %d stopped while busy: %s", generation, e)
            else:
                outcome = "error"
                context["error"] = str(e)
                summary.errors.append(str(e))
                logger.exception("Sync pass %d failed", generation)
        finally:
            self._commit(generation, summary)
            self._finish(generation, client, outcome, summary, context)

        return summary

    def _run(
        self,
        generation: int,
        token: CancellationToken,
        client: MailboxClient,
        summary: SyncSummary,
        context: dict[str, Any],
    ) -> PassOutcome:
        try:
            client.connect()
        except Exception as e:
            if token.cancelled:
                return "aborted"
            context["error"] = str(e)
            summary.errors.append(str(e))
            logger.warning("Sync pass %d could not connect: %s", generation, e)
            return "connect_error"

        if token.cancelled:
            return "aborted"

        self._enter(generation, SyncPhase.RESUMING)
        since = self.gate.resume_point()
        logger.info(
            "Sync pass %d resuming from %s",
            generation,
            since.isoformat() if since else "the beginning",
        )

        if token.cancelled:
            return "aborted"

        messages = iter(client.fetch_since(since))
        while True:
            if token.cancelled:
                return "aborted"
            if self.max_messages is not None and summary.fetched >= self.max_messages:
                logger.info("Sync pass %d reached the %d message cap", generation, self.max_messages)
                return "completed"

            self._enter(generation, SyncPhase.FETCHING)
            message = self._next_message(messages, token)
            if message is None:
                return "aborted" if token.cancelled else "completed"
            summary.fetched += 1

            self._enter(generation, SyncPhase.INGESTING)
            try:
                result = self.ingestor.ingest(message)
            except IngestError as e:
                context["external_id"] = e.external_id
                context["error"] = str(e)
                summary.errors.append(str(e))
                logger.error("Sync pass %d could not ingest %s: %s", generation, e.external_id, e)
                return "ingest_error"

            summary.record(result)
            summary.last_committed_at = message.received_at
            self._acknowledge(client, message, summary)

    def _next_message(
        self,
        messages: Iterator[IngestedMessage],
        token: CancellationToken,
    ) -> IngestedMessage | None:
        try:
            return next(messages, None)
        except Exception as e:
            if token.cancelled:
                logger.debug("Fetch interrupted by stop: %s", e)
                return None
            if isinstance(e, FetchError):
                raise
            raise FetchError(str(e)) from e

    def _acknowledge(
        self,
        client: MailboxClient,
        message: IngestedMessage,
        summary: SyncSummary,
    ) -> None:
        try:
            client.acknowledge(message)
        except Exception as e:
            summary.errors.append(f"acknowledge {message.external_id}: {e}")
            logger.warning("Could not acknowledge message %s: %s", message.external_id, e)
        else:
            summary.acknowledged += 1

    def _commit(self, generation: int, summary: SyncSummary) -> None:
        if summary.last_committed_at is None:
            return
        self._enter(generation, SyncPhase.COMMITTING)
        try:
            summary.watermark_updated = self.gate.commit(summary.last_committed_at)
        except Exception as e:
            summary.errors.append(f"watermark commit: {e}")
            logger.exception("Sync pass %d could not commit the watermark", generation)

    def _finish(
        self,
        generation: int,
        client: MailboxClient | None,
        outcome: PassOutcome,
        summary: SyncSummary,
        context: dict[str, Any],
    ) -> None:
        summary.aborted = outcome == "aborted"
        if summary.aborted:
            self._enter(generation, SyncPhase.ABORTING)

        if client is not None:
            self.controller.arm_watchdog(generation)
            try:
                client.close()
            except Exception as e:
                summary.errors.append(f"close: {e}")
                logger.warning("Sync pass %d could not close the mailbox client: %s", generation, e)
                self.events.log_sync_event(
                    EVENT_CLOSE_ERROR, {"generation": generation, "error": str(e)}, "error"
                )

        released = self.controller.finish(generation)
        if not released:
            logger.warning("Sync pass %d finished after a forced reset", generation)

        details = {**context, "generation": generation, "summary": summary.to_json()}
        if outcome == "completed":
            logger.info(
                "Sync pass %d complete: %d fetched, %d created, %d replied, "
                "%d duplicates, %d skipped",
                generation,
                summary.fetched,
                summary.created,
                summary.replied,
                summary.duplicates,
                summary.skipped,
            )
            self.events.log_sync_event(EVENT_SYNC_COMPLETED, details, "sent")
        elif outcome == "aborted":
            logger.info("Sync pass %d aborted after %d messages", generation, summary.fetched)
            self.events.log_sync_event(EVENT_SYNC_ABORTED, details, "skipped")
        elif outcome == "connect_error":
            self.events.log_sync_event(EVENT_CONNECT_ERROR, details, "error")
        elif outcome == "ingest_error":
            self.events.log_sync_event(EVENT_INGEST_ERROR, details, "error")
        else:
            self.events.log_sync_event(EVENT_SYNC_ERROR, details, "error")

    def _enter(self, generation: int, phase: SyncPhase) -> None:
        self.state.try_set(generation, phase=phase)
