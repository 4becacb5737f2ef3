"""Process-wide bookkeeping for the ticket inbox sync.

``SyncState`` is the only place that knows whether a pass is running, which
client it owns and whether a stop was requested. Every mutation happens under
one lock and nothing here performs I/O, so the control surface can read it
synchronously while a pass is blocked on the network.

Ownership is expressed as a *generation*: ``acquire()`` hands the caller a
fresh integer and only that generation may mutate the pass fields or reset
them. A stale pass (for example one that the watchdog already cleaned up)
therefore cannot clobber the state of the pass that replaced it.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ticketry_mail.models import SyncPhase

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class SyncStateSnapshot:
    """Read-only copy of the sync state."""

    in_progress: bool
    abort_requested: bool
    started_at: datetime | None
    phase: SyncPhase = SyncPhase.IDLE

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "inProgress": self.in_progress,
            "abortRequested": self.abort_requested,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "phase": self.phase.value,
        }


@dataclass(frozen=True)
class StopResult:
    """Outcome of a stop request."""

    was_running: bool
    abort_requested: bool

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {"wasRunning": self.was_running, "abortRequested": self.abort_requested}


class SyncState:
    """Single source of truth for the running pass."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._in_progress = False
        self._client: Any = None
        self._abort_requested = False
        self._started_at: datetime | None = None
        self._phase = SyncPhase.IDLE

    def get(self) -> SyncStateSnapshot:
        """Return a snapshot of the public fields."""
        with self._lock:
            return SyncStateSnapshot(
                in_progress=self._in_progress,
                abort_requested=self._abort_requested,
                started_at=self._started_at,
                phase=self._phase,
            )

    @property
    def generation(self) -> int:
        """Generation of the most recent pass."""
        with self._lock:
            return self._generation

    def acquire(self) -> int | None:
        """
        Claim the state for a new pass.

        Returns:
            The owning generation, or None when a pass is already running
        """
        with self._lock:
            if self._in_progress:
                return None
            self._generation += 1
            self._in_progress = True
            self._started_at = datetime.now(UTC)
            self._phase = SyncPhase.CONNECTING
            return self._generation

    def is_current(self, generation: int) -> bool:
        """Whether ``generation`` still owns a running pass."""
        with self._lock:
            return self._in_progress and generation == self._generation

    def try_set(
        self,
        generation: int,
        *,
        client: Any = _UNSET,
        phase: SyncPhase | None = None,
        abort_requested: bool | None = None,
    ) -> bool:
        """
        Update pass fields on behalf of the owning generation.

        Returns:
            False (and changes nothing) if ``generation`` is not the owner
        """
        with self._lock:
            if not self._in_progress or generation != self._generation:
                return False
            if client is not _UNSET:
                self._client = client
            if phase is not None:
                self._phase = phase
            if abort_requested is not None:
                self._abort_requested = abort_requested
            return True

    def client_for(self, generation: int) -> Any:
        """Client owned by ``generation``, if it is still current."""
        with self._lock:
            if not self._in_progress or generation != self._generation:
                return None
            return self._client

    def request_abort(self) -> tuple[int, Any] | None:
        """
        Flag the running pass for cancellation.

        Returns:
            (generation, client) of the running pass, or None when idle
        """
        with self._lock:
            if not self._in_progress:
                return None
            self._abort_requested = True
            return self._generation, self._client

    def reset(self, generation: int | None = None) -> bool:
        """
        Restore the idle invariant.

        Without a generation the reset is unconditional. With one, only the
        first reset for that live generation takes effect.

        Returns:
            True if this call performed the reset
        """
        with self._lock:
            if generation is not None and (
                not self._in_progress or generation != self._generation
            ):
                return False
            was_running = self._in_progress
            current = self._generation
            self._in_progress = False
            self._client = None
            self._abort_requested = False
            self._started_at = None
            self._phase = SyncPhase.IDLE
        if was_running:
            logger.debug("Sync state reset (generation %d)", current)
        return was_running or generation is None
