"""Shared fakes for the ticket inbox sync tests."""

import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from ticketry_mail.cancellation import CancellationController
from ticketry_mail.ingestor import MessageIngestor
from ticketry_mail.models import LEDGER_PENDING, IngestedMessage, LedgerEntry, TicketId
from ticketry_mail.orchestrator import SyncOrchestrator
from ticketry_mail.scheduler import SyncConfig, SyncScheduler
from ticketry_mail.sync_state import SyncState
from ticketry_mail.watermarks import WatermarkGate

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeTicketStore:
    """Ticket store that keeps everything in memory."""

    def __init__(self, fail_on_subject: str | None = None) -> None:
        self.tickets: dict[int, dict[str, Any]] = {}
        self.codes: dict[str, int] = {}
        self.replies: list[tuple[TicketId, dict[str, Any]]] = []
        self.fail_on_subject = fail_on_subject
        self._next_id = 1

    @property
    def writes(self) -> int:
        return len(self.tickets) + len(self.replies)

    def add_ticket(self, code: str) -> int:
        ticket_id = self._next_id
        self._next_id += 1
        self.tickets[ticket_id] = {"subject": f"[Ticket #{code}]"}
        self.codes[code] = ticket_id
        return ticket_id

    def create_ticket(self, fields: Mapping[str, Any]) -> TicketId:
        self._check(fields)
        ticket_id = self._next_id
        self._next_id += 1
        self.tickets[ticket_id] = dict(fields)
        return ticket_id

    def append_reply(self, ticket_id: TicketId, fields: Mapping[str, Any]) -> None:
        self._check(fields)
        self.replies.append((ticket_id, dict(fields)))

    def find_ticket_by_ref(self, ref: str) -> TicketId | None:
        return self.codes.get(ref)

    def _check(self, fields: Mapping[str, Any]) -> None:
        if self.fail_on_subject and fields.get("subject") == self.fail_on_subject:
            raise RuntimeError("ticket store unavailable")


class InMemoryLedger:
    """Ingest ledger backed by a dict."""

    def __init__(self, fail_record_times: int = 0) -> None:
        self.entries: dict[str, LedgerEntry] = {}
        self.fail_record_times = fail_record_times

    def get(self, external_id: str) -> LedgerEntry | None:
        return self.entries.get(external_id)

    def reserve(self, external_id: str, received_at: datetime) -> bool:
        if external_id in self.entries:
            return False
        self.entries[external_id] = LedgerEntry(external_id, None, LEDGER_PENDING, received_at)
        return True

    def release(self, external_id: str) -> None:
        entry = self.entries.get(external_id)
        if entry is not None and entry.outcome == LEDGER_PENDING:
            del self.entries[external_id]

    def record(
        self,
        external_id: str,
        ticket_id: TicketId,
        outcome: str,
        received_at: datetime,
    ) -> None:
        if self.fail_record_times > 0:
            self.fail_record_times -= 1
            raise ConnectionError("ledger database went away")
        entry = self.entries.get(external_id)
        if entry is None or entry.outcome == LEDGER_PENDING:
            self.entries[external_id] = LedgerEntry(external_id, ticket_id, outcome, received_at)


class InMemoryWatermarkStore:
    """Watermark backend that only moves forward, like the SQL upsert."""

    def __init__(self, value: datetime | None = None) -> None:
        self.value = value
        self.set_calls: list[datetime] = []

    def get_last_successful_sync(self) -> datetime | None:
        return self.value

    def set_last_successful_sync(self, value: datetime) -> bool:
        self.set_calls.append(value)
        if self.value is not None and value <= self.value:
            return False
        self.value = value
        return True


class RecordingEventSink:
    """Collects sync events."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], str]] = []

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.events]

    def log_sync_event(
        self,
        kind: str,
        details: Mapping[str, Any] | None = None,
        status: str = "sent",
    ) -> None:
        self.events.append((kind, dict(details or {}), status))

    def last(self, kind: str) -> tuple[dict[str, Any], str]:
        for event_kind, details, status in reversed(self.events):
            if event_kind == kind:
                return details, status
        raise AssertionError(f"no {kind} event in {self.kinds}")


class FakeMailboxClient:
    """Mailbox client over a shared list of messages."""

    def __init__(
        self,
        mailbox: list[IngestedMessage],
        *,
        connect_error: Exception | None = None,
        fail_at: int | None = None,
        close_error: Exception | None = None,
        hang_close: threading.Event | None = None,
        on_fetch: Callable[[int, IngestedMessage], None] | None = None,
    ) -> None:
        self.mailbox = mailbox
        self.connect_error = connect_error
        self.fail_at = fail_at
        self.close_error = close_error
        self.hang_close = hang_close
        self.on_fetch = on_fetch
        self.connected = False
        self.close_calls = 0
        self.since_calls: list[datetime | None] = []
        self.acknowledged: list[str] = []

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def fetch_since(self, since: datetime | None) -> Iterator[IngestedMessage]:
        self.since_calls.append(since)
        pending = sorted(
            (m for m in self.mailbox if since is None or m.received_at > since),
            key=lambda m: m.received_at,
        )
        for index, message in enumerate(pending):
            if self.on_fetch is not None:
                self.on_fetch(index, message)
            if self.fail_at == index:
                raise ConnectionResetError("connection reset by peer")
            yield message

    def acknowledge(self, message: IngestedMessage) -> None:
        self.acknowledged.append(message.external_id)

    def close(self) -> None:
        self.close_calls += 1
        if self.hang_close is not None:
            self.hang_close.wait(5)
        if self.close_error is not None:
            raise self.close_error
        self.connected = False


@dataclass
class SyncHarness:
    """A fully wired sync engine over in-memory fakes."""

    mailbox: list[IngestedMessage]
    tickets: FakeTicketStore
    ledger: InMemoryLedger
    watermarks: InMemoryWatermarkStore
    events: RecordingEventSink
    state: SyncState
    controller: CancellationController
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    client_options: dict[str, Any] = field(default_factory=dict)
    clients: list[FakeMailboxClient] = field(default_factory=list)

    def new_client(self) -> FakeMailboxClient:
        client = FakeMailboxClient(self.mailbox, **self.client_options)
        self.clients.append(client)
        return client

    def run_pass(self) -> Any:
        generation = self.state.acquire()
        assert generation is not None
        self.controller.begin(generation)
        return self.orchestrator.run_pass(generation)


@pytest.fixture
def make_message() -> Callable[..., IngestedMessage]:
    """Factory for messages spaced one minute apart."""

    def factory(
        n: int,
        subject: str | None = None,
        body: str = "Hello",
        ref: str | None = None,
    ) -> IngestedMessage:
        return IngestedMessage(
            external_id=f"777:{n}",
            received_at=BASE_TIME + timedelta(minutes=n),
            subject=subject if subject is not None else f"Question {n}",
            body=body,
            sender_address="customer@example.com",
            in_reply_to_ticket_ref=ref,
        )

    return factory


@pytest.fixture
def make_harness() -> Iterator[Callable[..., SyncHarness]]:
    """Factory for wired engines; shuts every scheduler down afterwards."""
    created: list[SyncHarness] = []

    def factory(
        mailbox: list[IngestedMessage] | None = None,
        *,
        tickets: FakeTicketStore | None = None,
        watermark: datetime | None = None,
        abort_timeout_ms: int = 5000,
        max_messages: int | None = None,
        enabled: bool = True,
        **client_options: Any,
    ) -> SyncHarness:
        tickets = tickets or FakeTicketStore()
        ledger = InMemoryLedger()
        watermarks = InMemoryWatermarkStore(watermark)
        events = RecordingEventSink()
        state = SyncState()
        controller = CancellationController(state, abort_timeout_ms, events)
        holder: dict[str, SyncHarness] = {}
        orchestrator = SyncOrchestrator(
            state=state,
            controller=controller,
            client_factory=lambda: holder["harness"].new_client(),
            gate=WatermarkGate(watermarks),
            ingestor=MessageIngestor(tickets, ledger),
            events=events,
            max_messages=max_messages,
        )
        scheduler = SyncScheduler(
            orchestrator,
            SyncConfig(abort_timeout_ms=abort_timeout_ms, interval_ms=3_600_000),
            enabled=enabled,
        )
        harness = SyncHarness(
            mailbox=list(mailbox or []),
            tickets=tickets,
            ledger=ledger,
            watermarks=watermarks,
            events=events,
            state=state,
            controller=controller,
            orchestrator=orchestrator,
            scheduler=scheduler,
            client_options=client_options,
        )
        holder["harness"] = harness
        created.append(harness)
        return harness

    yield factory

    for harness in created:
        harness.scheduler.shutdown(timeout=1)


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a condition until it holds or the deadline passes."""

    def poll(condition: Callable[[], bool], timeout: float = 1.2, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()

    return poll
