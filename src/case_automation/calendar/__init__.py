"""Calendar integrations."""

from .google_calendar_client import CalendarError, GoogleCalendarClient

__all__ = ["CalendarError", "GoogleCalendarClient"]
