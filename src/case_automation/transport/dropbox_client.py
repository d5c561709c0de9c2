"""Dropbox REST client used to file attachments into case folders."""

from __future__ import annotations

import json
import logging

import httpx

from case_automation.core.config import DropboxSettings

LOGGER = logging.getLogger(__name__)


class DropboxError(RuntimeError):
    """Raised when a Dropbox API call fails."""


class DropboxClient:
    """Upload and delete files through the Dropbox v2 API."""

    CONTENT_URL = "https://content.dropboxapi.com/2/files/upload"
    DELETE_URL = "https://api.dropboxapi.com/2/files/delete_v2"

    def __init__(
        self,
        settings: DropboxSettings,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._transport = transport

    def resolve_path(self, path: str) -> str:
        """Join ``path`` onto the configured root, always starting with ``/``."""
        root = self._settings.root_path.strip("/")
        relative = path.strip("/")
        joined = "/".join(part for part in (root, relative) if part)
        return f"/{joined}"

    async def upload(self, path: str, content: bytes) -> str:
        """Upload ``content`` to ``path`` and return the path Dropbox stored."""
        target = self.resolve_path(path)
        api_arg = {"path": target, "mode": "add", "autorename": True, "mute": False}
        LOGGER.info("Uploading %d byte(s) to Dropbox path %s", len(content), target)
        headers = {
            **self._auth_headers(),
            "Dropbox-API-Arg": json.dumps(api_arg),
            "Content-Type": "application/octet-stream",
        }
        async with self._client() as client:
            try:
                response = await client.post(
                    self.CONTENT_URL, headers=headers, content=content
                )
            except httpx.HTTPError as exc:
                raise DropboxError(f"Dropbox upload failed for {target}: {exc}") from exc
            self._raise_for_status(response, "upload", target)
            stored = response.json().get("path_display") or target
        LOGGER.debug("Dropbox stored file at %s", stored)
        return stored

    async def delete(self, path: str) -> None:
        """Delete a file by its full Dropbox path."""
        LOGGER.info("Deleting Dropbox path %s", path)
        headers = self._auth_headers()
        async with self._client() as client:
            try:
                response = await client.post(
                    self.DELETE_URL, headers=headers, json={"path": path}
                )
            except httpx.HTTPError as exc:
                raise DropboxError(f"Dropbox delete failed for {path}: {exc}") from exc
            self._raise_for_status(response, "delete", path)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _auth_headers(self) -> dict[str, str]:
        if not self._settings.access_token:
            raise DropboxError("Dropbox access token is not configured")
        return {"Authorization": f"Bearer {self._settings.access_token}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str, path: str) -> None:
        if response.status_code < 400:
            return
        LOGGER.error(
            "Dropbox %s failed for %s: %s - %s",
            operation,
            path,
            response.status_code,
            response.text,
        )
        raise DropboxError(
            f"Dropbox {operation} failed for {path}: HTTP {response.status_code}"
        )


__all__ = ["DropboxClient", "DropboxError"]
