from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

DEFAULT_REMINDER_MINUTES = 30
UNTITLED = "無標題"


def parse_datetime(value: Any, tz: tzinfo | None = None) -> datetime | None:
    """Parse an ISO timestamp or a bare ``YYYY-MM-DD`` date; naive values get ``tz``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None and tz is not None:
        dt = dt.replace(tzinfo=tz)
    return dt


@dataclass(slots=True)
class ReminderOverride:
    minutes: int
    method: str = "popup"

    def __post_init__(self) -> None:
        if self.minutes < 0:
            raise ValueError("reminder_minutes_negative")
        if self.method not in {"popup", "email"}:
            raise ValueError("reminder_method_invalid")

    def to_api(self) -> dict[str, Any]:
        return {"method": self.method, "minutes": int(self.minutes)}


@dataclass(frozen=True, slots=True)
class CandidateEvent:
    """An event that is not yet known to exist in the backend; may be partial."""

    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    recurrence: str | None = None
    reminder_minutes: int = DEFAULT_REMINDER_MINUTES
    target_calendar_id: str | None = None
    location: str | None = None
    description: str | None = None

    def merge(self, **changes: Any) -> "CandidateEvent":
        return replace(self, **changes)

    def with_default_end(self) -> "CandidateEvent":
        if self.start is None or self.end is not None:
            return self
        delta = timedelta(days=1) if self.all_day else timedelta(hours=1)
        return replace(self, end=self.start + delta)

    @property
    def has_open_recurrence(self) -> bool:
        rule = self.recurrence or ""
        return bool(rule) and "COUNT" not in rule and "UNTIL" not in rule

    def to_api(self, timezone: str) -> dict[str, Any]:
        if self.start is None or self.end is None:
            raise ValueError("event_time_missing")
        if self.all_day:
            start = {"date": self.start.date().isoformat(), "timeZone": timezone}
            end = {"date": self.end.date().isoformat(), "timeZone": timezone}
        else:
            start = {"dateTime": self.start.isoformat(), "timeZone": timezone}
            end = {"dateTime": self.end.isoformat(), "timeZone": timezone}
        body: dict[str, Any] = {
            "summary": self.title,
            "start": start,
            "end": end,
            "recurrence": [self.recurrence] if self.recurrence else [],
            "reminders": {
                "useDefault": False,
                "overrides": [ReminderOverride(minutes=self.reminder_minutes).to_api()],
            },
        }
        if self.location:
            body["location"] = self.location
        if self.description:
            body["description"] = self.description
        return body

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "allDay": self.all_day,
            "recurrence": self.recurrence,
            "reminder": self.reminder_minutes,
            "calendarId": self.target_calendar_id,
            "location": self.location,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], tz: tzinfo | None = None) -> "CandidateEvent":
        reminder = data.get("reminder", data.get("reminderMinutes"))
        try:
            reminder_minutes = int(reminder) if reminder is not None else DEFAULT_REMINDER_MINUTES
        except (TypeError, ValueError):
            reminder_minutes = DEFAULT_REMINDER_MINUTES
        return cls(
            title=(data.get("title") or None),
            start=parse_datetime(data.get("start"), tz),
            end=parse_datetime(data.get("end"), tz),
            all_day=bool(data.get("allDay", False)),
            recurrence=data.get("recurrence") or None,
            reminder_minutes=reminder_minutes,
            target_calendar_id=data.get("calendarId") or None,
            location=data.get("location") or None,
            description=data.get("description") or None,
        )


@dataclass(slots=True)
class CalendarEvent:
    id: str
    summary: str
    start: dict[str, Any]
    end: dict[str, Any]
    calendar_id: str | None
    location: str | None
    description: str | None
    html_link: str | None
    status: str | None
    raw: dict[str, Any] = field(repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any], calendar_id: str | None = None) -> "CalendarEvent":
        organizer = payload.get("organizer") or {}
        return cls(
            id=payload.get("id", ""),
            summary=payload.get("summary") or UNTITLED,
            start=dict(payload.get("start") or {}),
            end=dict(payload.get("end") or {}),
            calendar_id=calendar_id or organizer.get("email"),
            location=payload.get("location"),
            description=payload.get("description"),
            html_link=payload.get("htmlLink"),
            status=payload.get("status"),
            raw=payload,
        )

    @property
    def is_all_day(self) -> bool:
        return bool(self.start.get("date")) and not self.start.get("dateTime")

    def start_at(self, tz: tzinfo | None = None) -> datetime | None:
        return parse_datetime(self.start.get("dateTime") or self.start.get("date"), tz)

    def end_at(self, tz: tzinfo | None = None) -> datetime | None:
        return parse_datetime(self.end.get("dateTime") or self.end.get("date"), tz)

    def sort_key(self, tz: tzinfo | None = None) -> datetime:
        return self.start_at(tz or ZoneInfo("UTC")) or datetime.min.replace(tzinfo=ZoneInfo("UTC"))


@dataclass(frozen=True, slots=True)
class CalendarChoice:
    id: str
    summary: str


@dataclass(slots=True)
class SearchResult:
    events: list[CalendarEvent] = field(default_factory=list)
    has_more: bool = False


@dataclass(frozen=True, slots=True)
class EventChanges:
    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    location: str | None = None
    description: str | None = None

    def is_empty(self) -> bool:
        return not any((self.title, self.start, self.end, self.location, self.description))

    def to_patch(self, timezone: str) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if self.title:
            patch["summary"] = self.title
        if self.start:
            patch["start"] = {"dateTime": self.start.isoformat(), "timeZone": timezone}
        if self.end:
            patch["end"] = {"dateTime": self.end.isoformat(), "timeZone": timezone}
        if self.location:
            patch["location"] = self.location
        if self.description:
            patch["description"] = self.description
        return patch

    @classmethod
    def from_dict(cls, raw: Any, tz: tzinfo | None = None) -> "EventChanges":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            title=raw.get("title") or None,
            start=parse_datetime(raw.get("start"), tz),
            end=parse_datetime(raw.get("end"), tz),
            location=raw.get("location") or None,
            description=raw.get("description") or None,
        )
