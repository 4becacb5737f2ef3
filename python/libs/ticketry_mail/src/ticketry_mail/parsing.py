"""Turn raw RFC 822 messages into ``IngestedMessage`` records."""

import email
import logging
import re
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.utils import parseaddr
from html import unescape

from ticketry_mail.models import IngestedMessage

logger = logging.getLogger(__name__)

# Outbound ticket notifications carry "[Ticket #CODE]" in the subject
TICKET_CODE_PATTERN = re.compile(r"\[\s*Ticket\s*#([A-Z0-9]+)\s*\]", re.IGNORECASE)

QUOTE_MARKERS = (
    re.compile(r"^On .+ wrote:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^De la:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^From:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^-----Original Message-----", re.IGNORECASE | re.MULTILINE),
)

_HTML_BREAKS = re.compile(r"<\s*br\s*/?>|<\s*/p\s*>", re.IGNORECASE)
_HTML_TAGS = re.compile(r"<[^>]+>")


def extract_ticket_code(subject: str | None) -> str | None:
    """Return the upper-cased ticket display code from a subject line."""
    if not subject:
        return None
    match = TICKET_CODE_PATTERN.search(subject)
    return match.group(1).upper() if match else None


def normalize_address(value: str | None) -> str | None:
    """Lower-cased bare address from a header value like ``Name <a@b.c>``."""
    if not value:
        return None
    _, address = parseaddr(value)
    address = (address or value).strip().lower()
    return address or None


def html_to_text(value: str | None) -> str:
    """Flatten HTML into a single line of text."""
    if not value:
        return ""
    text = _HTML_BREAKS.sub("\n", value)
    text = _HTML_TAGS.sub(" ", text)
    return re.sub(r"\s+", " ", unescape(text)).strip()


def trim_quoted_conversation(text: str | None) -> str:
    """Drop the quoted history a mail client appends below a reply."""
    if not text:
        return ""
    cutoffs = [m.start() for m in (p.search(text) for p in QUOTE_MARKERS) if m]
    cutoff = min(cutoffs) if cutoffs else len(text)
    return text[:cutoff].strip()


def _body_text(message: EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError) as e:
        logger.warning("Could not decode message body: %s", e)
        return ""
    if part.get_content_type() == "text/html":
        return html_to_text(content)
    return str(content).strip()


def parse_message(
    raw_bytes: bytes,
    external_id: str,
    received_at: datetime,
) -> IngestedMessage:
    """
    Decode a raw message into the fields the ingestor needs.

    Args:
        raw_bytes: Raw RFC822 message bytes
        external_id: Stable per-message identifier
        received_at: Server-side arrival time

    Returns:
        IngestedMessage with the quoted history trimmed from the body
    """
    message = email.message_from_bytes(raw_bytes, policy=policy.default)
    assert isinstance(message, EmailMessage)

    subject = str(message.get("Subject", "") or "").strip()
    body = _body_text(message)

    return IngestedMessage(
        external_id=external_id,
        received_at=received_at,
        subject=subject,
        body=trim_quoted_conversation(body) or body,
        sender_address=normalize_address(str(message.get("From", "") or "")),
        in_reply_to_ticket_ref=extract_ticket_code(subject),
    )
