"""Mailbox connectors."""

from ticketry_mail.connectors.imap_connector import ImapConfig, ImapConnector

__all__ = ["ImapConfig", "ImapConnector"]
