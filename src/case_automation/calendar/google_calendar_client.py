"""Google Calendar client for docketing deadlines and hearings."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import httpx

from case_automation.core.config import CalendarSettings
from case_automation.core.datetime_utils import to_utc

logger = logging.getLogger(__name__)


class CalendarError(RuntimeError):
    """Raised when a Google Calendar request fails."""


class GoogleCalendarClient:
    """Create and delete events with a refreshable OAuth bearer token."""

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

    def __init__(
        self,
        settings: CalendarSettings,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the calendar client with settings."""
        self._settings = settings
        self._timeout = timeout
        self._transport = transport
        self._access_token: str | None = settings.access_token
        self._refresh_token: str | None = settings.refresh_token

    async def refresh_access_token(self) -> None:
        """Refresh the access token using the stored refresh token."""
        if not self._refresh_token:
            raise CalendarError("Token is invalid and no refresh token available")
        logger.info("Refreshing Google Calendar access token")
        async with self._client() as client:
            try:
                response = await client.post(
                    self.TOKEN_URL,
                    data={
                        "client_id": self._settings.client_id,
                        "client_secret": self._settings.client_secret,
                        "refresh_token": self._refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
            except httpx.HTTPError as exc:
                raise CalendarError(f"Token refresh failed: {exc}") from exc
            if response.status_code != 200:
                logger.error("Token refresh failed: %s", response.status_code)
                logger.error("Response: %s", response.text)
                raise CalendarError(f"Token refresh failed: HTTP {response.status_code}")
            self._access_token = response.json().get("access_token")

    async def create_event(
        self,
        *,
        title: str,
        start: datetime,
        duration_minutes: int,
        description: str = "",
        attendees: Sequence[str] = (),
        reminder_minutes: int | None = None,
        create_meet_link: bool = False,
        calendar_id: str | None = None,
    ) -> dict[str, Any]:
        """Create a calendar event for a case deadline or hearing."""
        target_calendar = calendar_id or self._settings.selected_calendar
        start_utc = to_utc(start)
        end_utc = start_utc + timedelta(
            minutes=duration_minutes or self._settings.event_duration_minutes
        )

        event_body: dict[str, Any] = {
            "summary": title,
            "description": description,
            "start": {"dateTime": start_utc.isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": end_utc.isoformat(), "timeZone": "UTC"},
            "attendees": [{"email": email} for email in attendees],
        }
        if reminder_minutes is not None:
            event_body["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": reminder_minutes},
                    {"method": "popup", "minutes": 30},
                ],
            }
        else:
            event_body["reminders"] = {"useDefault": True}

        params: dict[str, Any] = {}
        if create_meet_link:
            event_body["conferenceData"] = {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            params["conferenceDataVersion"] = 1
        if attendees:
            params["sendUpdates"] = "all"

        logger.info("Creating event in calendar: %s", target_calendar)
        logger.debug("Event body: %s", event_body)

        response = await self._authorized(
            "POST",
            f"{self.CALENDAR_API_BASE}/calendars/{target_calendar}/events",
            json=event_body,
            params=params,
        )
        event = response.json()
        logger.info(
            "Created calendar event: %s (ID: %s)",
            event.get("summary"),
            event.get("id"),
        )
        return event

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        """Delete an event; an already deleted event counts as success."""
        target_calendar = calendar_id or self._settings.selected_calendar
        response = await self._authorized(
            "DELETE",
            f"{self.CALENDAR_API_BASE}/calendars/{target_calendar}/events/{event_id}",
            allowed_statuses=(404, 410),
        )
        if response.status_code in (404, 410):
            logger.info("Calendar event %s was already gone", event_id)
        else:
            logger.info("Deleted calendar event %s", event_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _authorized(
        self,
        method: str,
        url: str,
        *,
        allowed_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a bearer-authenticated request, refreshing once on 401."""
        if not self._access_token:
            if not self._refresh_token:
                raise CalendarError("No access token available. Please authenticate first.")
            await self.refresh_access_token()

        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, headers=self._auth_headers(), **kwargs
                )
            if response.status_code == 401 and self._refresh_token:
                logger.warning("Calendar token rejected, attempting refresh...")
                await self.refresh_access_token()
                async with self._client() as client:
                    response = await client.request(
                        method, url, headers=self._auth_headers(), **kwargs
                    )
        except httpx.HTTPError as exc:
            raise CalendarError(f"Calendar request failed: {exc}") from exc

        if response.status_code >= 400 and response.status_code not in allowed_statuses:
            logger.error(
                "Calendar %s %s failed: %s - %s",
                method,
                url,
                response.status_code,
                response.text,
            )
            raise CalendarError(
                f"Calendar request failed: HTTP {response.status_code}"
            )
        return response

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}


__all__ = ["CalendarError", "GoogleCalendarClient"]
