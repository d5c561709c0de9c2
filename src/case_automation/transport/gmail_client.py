"""Gmail REST client for sending mail and fetching attachments."""

from __future__ import annotations

import base64
import logging
from collections.abc import Iterator, Sequence
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import httpx

from case_automation.core.config import GmailSettings
from case_automation.core.models import MailAttachment

LOGGER = logging.getLogger(__name__)


class GmailError(RuntimeError):
    """Raised when a Gmail API call fails."""


class GmailClient:
    """Async client for the subset of the Gmail API used by automations.

    Requests carry the configured OAuth access token. A 401 response triggers a
    single refresh through the Google token endpoint when a refresh token and
    client credentials are configured.
    """

    API_BASE = "https://gmail.googleapis.com/gmail/v1/users"
    TOKEN_URL = "https://oauth2.googleapis.com/token"

    def __init__(
        self,
        settings: GmailSettings,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._transport = transport
        self._access_token = settings.access_token

    async def send_email(
        self, to: str | Sequence[str], subject: str, body: str, *, html: bool = False
    ) -> str:
        """Send a message and return the Gmail message id."""
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            raise GmailError("At least one recipient is required")

        mime_message = self._build_mime_message(recipients, subject, body, html=html)
        raw = base64.urlsafe_b64encode(mime_message.as_bytes()).decode("ascii")
        LOGGER.info("Sending email to %s: %s", ", ".join(recipients), subject)

        data = await self._request(
            "POST", f"{self._user_path}/messages/send", json={"raw": raw}
        )
        message_id = str(data.get("id") or "")
        LOGGER.info("Email sent (message id %s)", message_id or "unknown")
        return message_id

    async def list_attachments(self, message_id: str) -> list[MailAttachment]:
        """Return attachment metadata found anywhere in the message payload."""
        data = await self._request(
            "GET",
            f"{self._user_path}/messages/{message_id}",
            params={"format": "full"},
        )
        attachments = [
            MailAttachment(
                attachment_id=part["body"]["attachmentId"],
                filename=part.get("filename") or "attachment",
                mime_type=part.get("mimeType"),
                size=part["body"].get("size"),
            )
            for part in _walk_parts(data.get("payload") or {})
            if part.get("filename") and (part.get("body") or {}).get("attachmentId")
        ]
        LOGGER.debug(
            "Message %s has %d attachment(s)", message_id, len(attachments)
        )
        return attachments

    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download and decode one attachment."""
        data = await self._request(
            "GET",
            f"{self._user_path}/messages/{message_id}/attachments/{attachment_id}",
        )
        encoded = data.get("data")
        if not isinstance(encoded, str):
            raise GmailError(f"Attachment {attachment_id} returned no data")
        padding = "=" * (-len(encoded) % 4)
        return base64.urlsafe_b64decode(encoded + padding)

    # Internal helpers --------------------------------------------------------
    @property
    def _user_path(self) -> str:
        return f"{self.API_BASE}/{self._settings.sender}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                if not self._access_token and not await self._refresh(client):
                    raise GmailError("Gmail access token is not configured")
                response = await client.request(
                    method, url, headers=self._auth_headers(), **kwargs
                )
                if response.status_code == 401 and await self._refresh(client):
                    response = await client.request(
                        method, url, headers=self._auth_headers(), **kwargs
                    )
                if response.status_code >= 400:
                    LOGGER.error(
                        "Gmail %s %s failed: %s - %s",
                        method,
                        url,
                        response.status_code,
                        response.text,
                    )
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPError as exc:
            raise GmailError(f"Gmail request failed: {exc}") from exc

    async def _refresh(self, client: httpx.AsyncClient) -> bool:
        settings = self._settings
        if not (settings.refresh_token and settings.client_id and settings.client_secret):
            LOGGER.warning("Gmail token rejected and no refresh credentials available")
            return False
        LOGGER.info("Refreshing Gmail access token")
        response = await client.post(
            self.TOKEN_URL,
            data={
                "client_id": settings.client_id,
                "client_secret": settings.client_secret,
                "refresh_token": settings.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        response.raise_for_status()
        self._access_token = response.json().get("access_token")
        return bool(self._access_token)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def _build_mime_message(
        self, recipients: list[str], subject: str, body: str, *, html: bool
    ) -> MIMEMultipart:
        mime_msg = MIMEMultipart("alternative")
        mime_msg["To"] = ", ".join(recipients)
        mime_msg["Subject"] = subject
        subtype = "html" if html else "plain"
        mime_msg.attach(MIMEText(body, subtype, "utf-8"))
        return mime_msg


def _walk_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    yield part
    for child in part.get("parts") or ():
        yield from _walk_parts(child)


__all__ = ["GmailClient", "GmailError"]
