"""Tests for the mail notification log and sync ledger stores."""

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _cursor(mock_connect: MagicMock) -> MagicMock:
    mock_conn = mock_connect.return_value.__enter__.return_value
    return mock_conn.cursor.return_value.__enter__.return_value


class TestNotificationLogStore:
    """Tests for NotificationLogStore."""

    @patch("psycopg.connect")
    def test_append_serializes_context(self, mock_connect: MagicMock) -> None:
        """Test context is stored as JSON and unknown statuses become sent."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.notification_log import NotificationLogStore

        cur = _cursor(mock_connect)
        store = NotificationLogStore(PostgresConfig())

        store.append("sync.completed", status="bogus", context={"at": T0})

        query, params = cur.execute.call_args[0]
        assert "INSERT INTO mail_notification_logs" in query
        assert params[0] == "sync.completed"
        assert params[2] == "sent"
        assert json.loads(params[4]) == {"at": str(T0)}

    @patch("psycopg.connect")
    def test_list_recent_clamps_limit(self, mock_connect: MagicMock) -> None:
        """Test the limit is clamped to 1..100."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.notification_log import NotificationLogStore

        cur = _cursor(mock_connect)
        cur.fetchall.return_value = [
            (5, "sync.aborted", "skipped", {"generation": 2}, T0, None, None),
        ]
        store = NotificationLogStore(PostgresConfig())

        entries = store.list_recent(limit=5000)

        assert cur.execute.call_args[0][1] == (100,)
        assert entries[0].event_type == "sync.aborted"
        assert entries[0].context_json == {"generation": 2}

        store.list_recent(limit=0)
        assert cur.execute.call_args[0][1] == (1,)


class TestSyncEventLogger:
    """Tests for the best-effort event sink."""

    def test_error_details_become_error_message(self) -> None:
        """Test error text is copied to the error_message column."""
        from ticketry_mail.notification_log import SyncEventLogger

        store = MagicMock()
        SyncEventLogger(store).log_sync_event("sync.error", {"error": "boom"}, "error")

        store.append.assert_called_once_with(
            event_type="sync.error",
            status="error",
            context={"error": "boom"},
            error_message="boom",
        )

    def test_storage_failure_is_swallowed(self) -> None:
        """Test a failing insert never reaches the caller."""
        from ticketry_mail.notification_log import SyncEventLogger

        store = MagicMock()
        store.append.side_effect = RuntimeError("database is down")

        with patch("ticketry_mail.notification_log.logger") as mock_logger:
            SyncEventLogger(store).log_sync_event("sync.completed")

            mock_logger.exception.assert_called_once()


class TestIngestLedgerStore:
    """Tests for IngestLedgerStore."""

    @patch("psycopg.connect")
    def test_record_completes_pending_claim(self, mock_connect: MagicMock) -> None:
        """Test records only overwrite a pending row and store ids as text."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.ingest_ledger import IngestLedgerStore

        cur = _cursor(mock_connect)
        cur.rowcount = 1
        store = IngestLedgerStore(PostgresConfig())

        store.record("1:5", 42, "created", T0)

        query, params = cur.execute.call_args[0]
        assert "ON CONFLICT (external_id) DO UPDATE" in query
        assert "WHERE mail_ingested_messages.outcome = 'pending'" in query
        assert params == ("1:5", "42", "created", T0)

    @patch("psycopg.connect")
    def test_reserve_reports_claim(self, mock_connect: MagicMock) -> None:
        """Test reserve inserts a pending row and reports whether it won."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.ingest_ledger import IngestLedgerStore

        cur = _cursor(mock_connect)
        store = IngestLedgerStore(PostgresConfig())

        cur.rowcount = 1
        assert store.reserve("1:5", T0) is True
        cur.rowcount = 0
        assert store.reserve("1:5", T0) is False

        query, params = cur.execute.call_args[0]
        assert "ON CONFLICT (external_id) DO NOTHING" in query
        assert params == ("1:5", "pending", T0)

    @patch("psycopg.connect")
    def test_release_only_drops_pending(self, mock_connect: MagicMock) -> None:
        """Test release deletes the claim but never a completed row."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.ingest_ledger import IngestLedgerStore

        cur = _cursor(mock_connect)
        store = IngestLedgerStore(PostgresConfig())

        store.release("1:5")

        query, params = cur.execute.call_args[0]
        assert query.strip().startswith("DELETE FROM mail_ingested_messages")
        assert params == ("1:5", "pending")

    @patch("psycopg.connect")
    def test_get_returns_entry(self, mock_connect: MagicMock) -> None:
        """Test a known external id returns its ledger entry."""
        from ticketry_common.config import PostgresConfig
        from ticketry_mail.ingest_ledger import IngestLedgerStore

        cur = _cursor(mock_connect)
        cur.fetchone.return_value = ("1:5", "42", "created", T0, T0)
        store = IngestLedgerStore(PostgresConfig())

        entry = store.get("1:5")

        assert entry is not None
        assert entry.ticket_id == "42"
        assert entry.outcome == "created"
