"""IMAP mailbox client for the ticket inbox sync."""

import imaplib
import logging
import os
import re
import ssl
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any

from pydantic import BaseModel

from ticketry_mail.errors import CloseError, ConnectError, FetchError
from ticketry_mail.models import IngestedMessage
from ticketry_mail.parsing import parse_message

logger = logging.getLogger(__name__)

SEEN_FLAG = "\\Seen"

_UID_PATTERN = re.compile(rb"UID (\d+)")
_INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "([^"]+)"')


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("false", "0", "no")


class ImapConfig(BaseModel):
    """IMAP connector configuration."""

    host: str
    port: int = 993
    username: str
    password: str
    use_ssl: bool = True
    folder: str = "INBOX"
    allow_invalid_certs: bool = False
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "ImapConfig":
        """Load from environment variables."""
        return cls(
            host=os.getenv("MAIL_IMAP_HOST", ""),
            port=int(os.getenv("MAIL_IMAP_PORT", "993")),
            username=os.getenv("MAIL_USER", ""),
            password=os.getenv("MAIL_PASSWORD", ""),
            use_ssl=_env_flag("MAIL_IMAP_SECURE", True),
            folder=os.getenv("MAIL_IMAP_INBOX", "INBOX"),
            allow_invalid_certs=_env_flag("MAIL_ALLOW_INVALID_CERTS", False),
            timeout_seconds=float(os.getenv("MAIL_IMAP_TIMEOUT_SECONDS", "30")),
        )

    @property
    def is_configured(self) -> bool:
        """Whether enough settings are present to open a session."""
        return bool(self.host and self.username and self.password)


@dataclass
class ImapMessage:
    """IMAP message metadata and raw content."""

    uid: int
    uidvalidity: int
    folder: str
    flags: list[str]
    internal_date: datetime | None
    raw_bytes: bytes

    @property
    def provider_message_id(self) -> str:
        """Generate provider message ID from UID/UIDVALIDITY."""
        return f"{self.uidvalidity}:{self.uid}"


def _parse_internal_date(value: bytes | str) -> datetime:
    """
    Parse an INTERNALDATE value.

    Raises:
        ValueError: If the value is not a date
    """
    text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        # INTERNALDATE uses "17-Jul-1996 02:44:25 -0700", not RFC 2822
        try:
            parsed = datetime.strptime(text, "%d-%b-%Y %H:%M:%S %z")
        except ValueError:
            raise ValueError(f"Unparseable INTERNALDATE {text!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ImapConnector:
    """
    Mailbox session owned by one sync pass.

    ``close()`` may be called from another thread while a fetch is running.
    In that case the socket is shut down instead of sending LOGOUT, which
    makes the blocked fetch fail promptly.
    """

    def __init__(self, config: ImapConfig) -> None:
        """Initialize IMAP connector."""
        self.config = config
        self._connection: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._current_folder: str | None = None
        self._current_uidvalidity: int | None = None
        self._io_lock = threading.Lock()
        self._closed = False

    def connect(self) -> None:
        """
        Establish connection to IMAP server.

        Raises:
            ConnectError: If the server is unreachable or rejects the login
        """
        if self._connection:
            return

        logger.debug("Connecting to IMAP server %s:%d", self.config.host, self.config.port)

        try:
            if self.config.use_ssl:
                context = ssl.create_default_context()
                if self.config.allow_invalid_certs:
                    context.check_hostname = False
                    context.verify_mode = ssl.CERT_NONE
                connection: imaplib.IMAP4_SSL | imaplib.IMAP4 = imaplib.IMAP4_SSL(
                    self.config.host,
                    self.config.port,
                    ssl_context=context,
                    timeout=self.config.timeout_seconds,
                )
            else:
                connection = imaplib.IMAP4(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout_seconds,
                )
            connection.login(self.config.username, self.config.password)
        except (OSError, imaplib.IMAP4.error) as e:
            raise ConnectError(f"IMAP connect to {self.config.host} failed: {e}") from e

        self._connection = connection
        self._closed = False
        logger.info("Connected to IMAP server %s", self.config.host)

    def close(self) -> None:
        """
        Close the IMAP session.

        Safe to call more than once and from a thread other than the one
        fetching.

        Raises:
            CloseError: If LOGOUT or the socket shutdown fails
        """
        connection = self._connection
        if connection is None or self._closed:
            return
        self._closed = True

        try:
            if self._io_lock.acquire(blocking=False):
                try:
                    connection.logout()
                finally:
                    self._io_lock.release()
            else:
                logger.debug("IMAP connection busy, shutting the socket down")
                connection.shutdown()
        except (OSError, imaplib.IMAP4.error) as e:
            raise CloseError(f"IMAP close failed: {e}") from e
        finally:
            self._connection = None
            self._current_folder = None
            self._current_uidvalidity = None

    def __enter__(self) -> "ImapConnector":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        try:
            self.close()
        except CloseError as e:
            logger.warning("%s", e)

    def _ensure_connected(self) -> imaplib.IMAP4_SSL | imaplib.IMAP4:
        """Return the live connection."""
        if self._closed or self._connection is None:
            raise FetchError("IMAP connection is closed")
        return self._connection

    def select_folder(self, folder: str) -> int:
        """
        Select an IMAP folder.

        Args:
            folder: Folder name (e.g., 'INBOX')

        Returns:
            UIDVALIDITY value for the folder
        """
        conn = self._ensure_connected()

        if self._current_folder == folder and self._current_uidvalidity:
            return self._current_uidvalidity

        status, data = conn.select(folder)
        if status != "OK":
            raise RuntimeError(f"Failed to select folder {folder}: {data}")

        status, response = conn.status(folder, "(UIDVALIDITY)")
        if status != "OK":
            raise RuntimeError(f"Failed to get UIDVALIDITY for {folder}")

        # Parse UIDVALIDITY from response like: b'INBOX (UIDVALIDITY 12345)'
        match = re.search(rb"UIDVALIDITY\s+(\d+)", response[0])
        if not match:
            raise RuntimeError(f"Could not parse UIDVALIDITY from {response}")

        uidvalidity = int(match.group(1))
        self._current_folder = folder
        self._current_uidvalidity = uidvalidity

        logger.debug("Selected folder %s with UIDVALIDITY %d", folder, uidvalidity)
        return uidvalidity

    def list_candidates(
        self,
        folder: str,
        since: datetime | None,
    ) -> list[tuple[int, datetime]]:
        """
        List messages that arrived strictly after ``since``.

        IMAP SINCE compares calendar dates in each message's own timezone, so
        the server search starts a day early and INTERNALDATE is compared
        here.

        Args:
            folder: Folder name
            since: Exclusive lower bound, or None for the whole folder

        Returns:
            (uid, internal_date) pairs ordered by arrival
        """
        conn = self._ensure_connected()
        self.select_folder(folder)

        criteria = "ALL"
        if since is not None:
            criteria = f"SINCE {(since - timedelta(days=1)).strftime('%d-%b-%Y')}"
        status, data = conn.uid("search", None, criteria)
        if status != "OK":
            raise RuntimeError(f"UID search failed in folder {folder}: {data}")

        uids = data[0].split() if data and data[0] else []
        if not uids:
            return []

        status, data = conn.uid("fetch", b",".join(uids).decode("ascii"), "(UID INTERNALDATE)")
        if status != "OK":
            raise RuntimeError(f"INTERNALDATE fetch failed in folder {folder}: {data}")

        candidates: list[tuple[int, datetime]] = []
        for item in data:
            line = item[0] if isinstance(item, tuple) else item
            if not isinstance(line, bytes):
                continue
            uid_match = _UID_PATTERN.search(line)
            date_match = _INTERNALDATE_PATTERN.search(line)
            if not uid_match or not date_match:
                continue
            internal_date = _parse_internal_date(date_match.group(1))
            if since is None or internal_date > since:
                candidates.append((int(uid_match.group(1)), internal_date))

        candidates.sort(key=lambda c: (c[1], c[0]))
        logger.debug("Found %d new messages in %s since %s", len(candidates), folder, since)
        return candidates

    def fetch_message(self, folder: str, uid: int) -> ImapMessage:
        """
        Fetch a single message by UID.

        Args:
            folder: Folder name
            uid: Message UID

        Returns:
            ImapMessage with raw bytes and metadata
        """
        conn = self._ensure_connected()
        uidvalidity = self.select_folder(folder)

        # BODY.PEEK leaves \Seen untouched until the message is acknowledged
        status, data = conn.uid("fetch", str(uid), "(BODY.PEEK[] FLAGS INTERNALDATE)")
        if status != "OK" or not data or data[0] is None:
            raise RuntimeError(f"Failed to fetch message UID {uid} from {folder}")

        # data[0] is a tuple: (header_info, message_bytes)
        msg_data = data[0]
        if isinstance(msg_data, tuple):
            header_info = msg_data[0].decode("utf-8", errors="replace")
            raw_bytes = msg_data[1]
        else:
            raise RuntimeError(f"Unexpected fetch response format: {type(msg_data)}")

        flags_match = re.search(r"FLAGS \(([^)]*)\)", header_info)
        flags = flags_match.group(1).split() if flags_match else []

        date_match = re.search(r'INTERNALDATE "([^"]+)"', header_info)
        internal_date = _parse_internal_date(date_match.group(1)) if date_match else None

        return ImapMessage(
            uid=uid,
            uidvalidity=uidvalidity,
            folder=folder,
            flags=flags,
            internal_date=internal_date,
            raw_bytes=raw_bytes,
        )

    def fetch_since(self, since: datetime | None) -> Iterator[IngestedMessage]:
        """
        Yield messages newer than ``since`` one at a time, oldest first.

        Each message is fetched only when the caller asks for the next one.

        Raises:
            FetchError: If listing or fetching fails
        """
        folder = self.config.folder
        with self._io_lock:
            try:
                candidates = self.list_candidates(folder, since)
            except (OSError, RuntimeError, ValueError, imaplib.IMAP4.error) as e:
                raise FetchError(f"Listing {folder} failed: {e}") from e

        logger.info("Found %d new messages in %s", len(candidates), folder)

        for uid, internal_date in candidates:
            with self._io_lock:
                try:
                    imap_message = self.fetch_message(folder, uid)
                except (OSError, RuntimeError, ValueError, imaplib.IMAP4.error) as e:
                    raise FetchError(f"Fetching UID {uid} failed: {e}") from e

            yield parse_message(
                imap_message.raw_bytes,
                external_id=imap_message.provider_message_id,
                received_at=internal_date,
            )

    def acknowledge(self, message: IngestedMessage) -> None:
        """Flag an ingested message as seen."""
        _, _, uid = message.external_id.partition(":")
        with self._io_lock:
            conn = self._ensure_connected()
            self.select_folder(self.config.folder)
            status, data = conn.uid("store", uid, "+FLAGS.SILENT", f"({SEEN_FLAG})")
        if status != "OK":
            raise RuntimeError(f"Failed to flag message UID {uid} as seen: {data}")
