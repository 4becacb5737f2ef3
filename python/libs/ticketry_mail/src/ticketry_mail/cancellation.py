"""Cooperative cancellation with a forced-cleanup watchdog.

Stopping a pass uses two independent mechanisms:

1. A per-pass ``CancellationToken`` that the orchestrator checks between
   messages. When the pass notices it, the orchestrator closes the client,
   resets the state and calls :meth:`CancellationController.finish`, which
   also disarms the watchdog.
2. A watchdog timer armed by :meth:`CancellationController.request_stop`
   and again before the pass closes its client. If the cooperative path has
   not finished within ``abort_timeout_ms``, the watchdog resets the state
   for that pass no matter what the client is doing.

Both paths reset through ``SyncState.reset(generation)``, so whichever runs
second is a no-op.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from ticketry_mail.models import EVENT_CLOSE_ERROR, EVENT_WATCHDOG_RESET, SyncStatus
from ticketry_mail.ports import SyncEventSink
from ticketry_mail.sync_state import StopResult, SyncState

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation flag for one pass."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()


@dataclass
class _PassControl:
    token: CancellationToken = field(default_factory=CancellationToken)
    watchdog: threading.Timer | None = None


class CancellationController:
    """Stops running passes and guarantees the state returns to idle."""

    def __init__(
        self,
        state: SyncState,
        abort_timeout_ms: int,
        events: SyncEventSink | None = None,
    ) -> None:
        self.state = state
        self.abort_timeout_ms = abort_timeout_ms
        self.events = events
        self._lock = threading.Lock()
        self._passes: dict[int, _PassControl] = {}

    def _control(self, generation: int) -> _PassControl:
        with self._lock:
            return self._passes.setdefault(generation, _PassControl())

    def begin(self, generation: int) -> CancellationToken:
        """Register a new pass and return its token."""
        return self._control(generation).token

    def token(self, generation: int) -> CancellationToken:
        """Token of a registered pass."""
        return self._control(generation).token

    def request_stop(self) -> StopResult:
        """
        Ask the running pass to stop.

        Returns immediately; cleanup completes later through the pass itself
        or through the watchdog.
        """
        claimed = self.state.request_abort()
        if claimed is None:
            return StopResult(was_running=False, abort_requested=False)

        generation, client = claimed
        self._control(generation).token.cancel()

        if not self.arm_watchdog(generation):
            logger.debug("Stop already pending for sync pass %d", generation)
        else:
            logger.info(
                "Stop requested for sync pass %d (watchdog %d ms)",
                generation,
                self.abort_timeout_ms,
            )
            if client is not None:
                threading.Thread(
                    target=self._close_quietly,
                    args=(generation, client),
                    name=f"ticket-sync-close-{generation}",
                    daemon=True,
                ).start()

        return StopResult(was_running=True, abort_requested=True)

    def arm_watchdog(self, generation: int) -> bool:
        """
        Start the forced-reset timer for a pass.

        The pass also arms it before its final client close, so a close that
        never returns cannot hold the state.

        Returns:
            True if this call armed the timer, False if it was already running
        """
        control = self._control(generation)
        with self._lock:
            if control.watchdog is not None:
                return False
            control.watchdog = threading.Timer(
                self.abort_timeout_ms / 1000,
                self._force_reset,
                args=(generation, "watchdog"),
            )
            control.watchdog.name = f"ticket-sync-watchdog-{generation}"
            control.watchdog.daemon = True
            control.watchdog.start()
        return True

    def finish(self, generation: int) -> bool:
        """
        Complete a pass from the cooperative path.

        Disarms the watchdog and resets the state if this pass still owns it.

        Returns:
            True if this call performed the reset
        """
        with self._lock:
            control = self._passes.pop(generation, None)
        if control and control.watchdog:
            control.watchdog.cancel()
        return self.state.reset(generation)

    def _close_quietly(self, generation: int, client: Any) -> None:
        """Best-effort close issued by a stop request."""
        try:
            client.close()
        except Exception as exc:
            logger.warning("Closing mailbox client for pass %d failed: %s", generation, exc)
            self._log(EVENT_CLOSE_ERROR, {"generation": generation, "error": str(exc)}, "error")
            self._force_reset(generation, "close_error")
        else:
            logger.debug("Mailbox client for pass %d closed after stop", generation)

    def _force_reset(self, generation: int, reason: str) -> None:
        """Restore idle for ``generation`` regardless of the client."""
        with self._lock:
            control = self._passes.pop(generation, None)
        if control and control.watchdog:
            control.watchdog.cancel()
        if self.state.reset(generation):
            logger.warning("Forced reset of sync pass %d (%s)", generation, reason)
            self._log(
                EVENT_WATCHDOG_RESET,
                {"generation": generation, "reason": reason},
                "error",
            )

    def _log(self, kind: str, details: dict[str, Any], status: SyncStatus) -> None:
        if self.events is not None:
            self.events.log_sync_event(kind, details, status)
