"""Transport adapters for external mail and file providers."""

from .dropbox_client import DropboxClient, DropboxError
from .gmail_client import GmailClient, GmailError

__all__ = ["DropboxClient", "DropboxError", "GmailClient", "GmailError"]
