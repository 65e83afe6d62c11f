from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, TypeVar
from zoneinfo import ZoneInfo

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calbot.config.settings import Settings, get_settings
from calbot.schemas.calendar import CalendarChoice, CalendarEvent, CandidateEvent, SearchResult
from calbot.services.async_executor import run_in_executor
from calbot.services.errors import CalendarBackendError

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]
TOKEN_URI = "https://oauth2.googleapis.com/token"
PRIMARY_FALLBACK_SUMMARY = "我的主要日曆"
CALENDAR_CHOICE_LIMIT = 3
SEARCH_PAGE_SIZE = 10

T = TypeVar("T")


class GoogleCalendarService:
    """Google Calendar v3 backend for a single account authorised by refresh token."""

    def __init__(self, settings: Settings | None = None, client: Any | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client
        if client is None and not self.settings.google_refresh_token:
            raise RuntimeError("Google refresh token is missing")

    def ensure_credentials(self) -> Credentials:
        credentials = Credentials(
            token=None,
            refresh_token=self.settings.google_refresh_token,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
        )
        credentials.refresh(Request())
        return credentials

    def get_calendar_client(self):
        if self._client is None:
            self._client = build("calendar", "v3", credentials=self.ensure_credentials())
        return self._client

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        try:
            return await run_in_executor(func)
        except (HttpError, GoogleAuthError, OSError) as exc:
            logger.error("Google Calendar %s failed: %s", operation, exc)
            raise CalendarBackendError(f"{operation} failed") from exc

    async def list_eligible_calendars(self) -> list[CalendarChoice]:
        """Primary calendar first, then calendars named in ``target_calendar_names``, at most three."""

        def _sync() -> list[dict[str, Any]]:
            service = self.get_calendar_client()
            result = service.calendarList().list(showHidden=True).execute()
            return result.get("items", [])

        calendars = await self._call("calendar listing", _sync)

        primary = next((item for item in calendars if item.get("primary")), None)
        if primary is not None:
            choices = [CalendarChoice(primary["id"], primary.get("summary") or PRIMARY_FALLBACK_SUMMARY)]
        else:
            choices = [CalendarChoice("primary", PRIMARY_FALLBACK_SUMMARY)]

        for name in self.settings.target_calendar_names:
            if len(choices) >= CALENDAR_CHOICE_LIMIT:
                break
            found = next((item for item in calendars if item.get("summary") == name), None)
            if found and all(choice.id != found["id"] for choice in choices):
                choices.append(CalendarChoice(found["id"], found["summary"]))
        return choices

    async def search(
        self,
        calendar_id: str,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        keyword: str | None = None,
    ) -> SearchResult:
        def _sync() -> dict[str, Any]:
            service = self.get_calendar_client()
            start = time_min or datetime.now(ZoneInfo(self.settings.timezone))
            params: dict[str, Any] = {
                "calendarId": calendar_id,
                "timeMin": start.isoformat(),
                "maxResults": SEARCH_PAGE_SIZE,
                "singleEvents": True,
                "orderBy": "startTime",
            }
            if keyword:
                params["q"] = keyword
            if time_max is not None:
                params["timeMax"] = time_max.isoformat()
            return service.events().list(**params).execute()

        result = await self._call("search", _sync)
        return SearchResult(
            events=[CalendarEvent.from_api(item, calendar_id) for item in result.get("items", [])],
            has_more=bool(result.get("nextPageToken")),
        )

    async def find_in_range(
        self,
        start: datetime,
        end: datetime,
        calendar_id: str,
        keyword: str | None = None,
    ) -> list[CalendarEvent]:
        def _sync() -> dict[str, Any]:
            service = self.get_calendar_client()
            params: dict[str, Any] = {
                "calendarId": calendar_id,
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "singleEvents": True,
                "orderBy": "startTime",
            }
            if keyword:
                params["q"] = keyword
            return service.events().list(**params).execute()

        result = await self._call("range lookup", _sync)
        return [CalendarEvent.from_api(item, calendar_id) for item in result.get("items", [])]

    async def create(self, event: CandidateEvent, calendar_id: str) -> CalendarEvent:
        """Insert ``event`` as-is; duplicate detection lives in :class:`EventGuard`."""
        body = event.to_api(self.settings.timezone)

        def _sync() -> dict[str, Any]:
            service = self.get_calendar_client()
            return service.events().insert(calendarId=calendar_id, body=body).execute()

        created = await self._call("create", _sync)
        logger.info("Google Calendar event created: %s", created.get("htmlLink"))
        return CalendarEvent.from_api(created, calendar_id)

    async def update(self, event_id: str, calendar_id: str, patch: dict[str, Any]) -> CalendarEvent:
        def _sync() -> dict[str, Any]:
            service = self.get_calendar_client()
            return (
                service.events()
                .patch(calendarId=calendar_id, eventId=event_id, body=patch)
                .execute()
            )

        updated = await self._call("update", _sync)
        return CalendarEvent.from_api(updated, calendar_id)

    async def delete(self, event_id: str, calendar_id: str) -> None:
        def _sync() -> None:
            service = self.get_calendar_client()
            service.events().delete(calendarId=calendar_id, eventId=event_id).execute()

        await self._call("delete", _sync)

    async def get_event(self, event_id: str, calendar_id: str) -> CalendarEvent:
        def _sync() -> dict[str, Any]:
            service = self.get_calendar_client()
            return service.events().get(calendarId=calendar_id, eventId=event_id).execute()

        data = await self._call("event lookup", _sync)
        return CalendarEvent.from_api(data, calendar_id)
