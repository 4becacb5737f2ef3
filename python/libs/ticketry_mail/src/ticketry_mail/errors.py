"""Failure taxonomy for the inbox sync engine."""


class SyncError(Exception):
    """Base class for failures inside a sync pass."""


class ConnectError(SyncError):
    """The mailbox session could not be established."""


class FetchError(SyncError):
    """Listing or fetching messages failed mid-pass."""


class IngestError(SyncError):
    """A single message could not be committed to the ticket store."""

    def __init__(self, external_id: str, message: str) -> None:
        super().__init__(f"{external_id}: {message}")
        self.external_id = external_id


class CloseError(SyncError):
    """The mailbox client did not close cleanly."""
