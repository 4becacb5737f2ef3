#!/usr/bin/env python3
"""
Dry run of the ticket inbox sync against the configured mailbox.

Connects with the MAIL_IMAP_* settings, reads the watermark from Postgres and
lists the messages the next pass would ingest. Nothing is written.

Usage:
    python -m scripts.dry_run_inbox_sync
"""

import os
import sys
from pathlib import Path

# Load .env manually
env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())


def dry_run() -> int:
    """Print the resume point and the messages waiting after it."""
    from ticketry_common import configure_logging
    from ticketry_mail.connectors.imap_connector import ImapConfig, ImapConnector
    from ticketry_mail.errors import SyncError
    from ticketry_mail.ingestor import MessageIngestor
    from ticketry_mail.watermarks import WatermarkStore

    configure_logging(os.getenv("LOG_LEVEL", "WARNING"))
    config = ImapConfig.from_env()

    if not config.is_configured:
        print("ERROR: MAIL_IMAP_HOST, MAIL_USER, and MAIL_PASSWORD must be set in .env")
        print("\nCurrent values:")
        print(f"  MAIL_IMAP_HOST={config.host or '(not set)'}")
        print(f"  MAIL_USER={config.username or '(not set)'}")
        print(f"  MAIL_PASSWORD={'***' if config.password else '(not set)'}")
        return 1

    print("\n" + "=" * 60)
    print("Ticket inbox sync dry run")
    print("=" * 60)
    print(f"Host: {config.host}:{config.port}")
    print(f"User: {config.username}")
    print(f"Folder: {config.folder}")

    print("\n[1] Reading watermark...")
    watermark = WatermarkStore().get_watermark()
    since = watermark.last_successful_sync if watermark else None
    print(f"    Resume after: {since.isoformat() if since else '(beginning of mailbox)'}")

    try:
        with ImapConnector(config) as imap:
            print("\n[2] Listing messages after the watermark...")
            count = 0
            for message in imap.fetch_since(since):
                count += 1
                ref = MessageIngestor.correlation_ref(message)
                target = f"reply to {ref}" if ref else "new ticket"
                print(
                    f"    {message.received_at.isoformat()}  {message.external_id}  "
                    f"{message.sender_address or '?'}  {message.subject[:50]!r} -> {target}"
                )
            print(f"    {count} message(s) would be ingested")
    except SyncError as e:
        print(f"\n✗ Mailbox error: {e}")
        return 1

    print("\n" + "=" * 60)
    print("Dry run complete. No tickets or flags were written.")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(dry_run())
