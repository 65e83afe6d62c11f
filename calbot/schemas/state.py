"""Conversation state: one variant per pending step, each carrying only what that step needs."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union
from zoneinfo import ZoneInfo

from calbot.schemas.calendar import CandidateEvent


class Step(str, Enum):
    AWAITING_RECURRENCE_END_CONDITION = "awaiting_recurrence_end_condition"
    AWAITING_EVENT_TITLE = "awaiting_event_title"
    AWAITING_BULK_CONFIRMATION = "awaiting_bulk_confirmation"
    AWAITING_CSV_UPLOAD = "awaiting_csv_upload"
    AWAITING_CALENDAR_CHOICE = "awaiting_calendar_choice"
    AWAITING_CONFLICT_CONFIRMATION = "awaiting_conflict_confirmation"
    AWAITING_MODIFICATION_DETAILS = "awaiting_modification_details"
    AWAITING_DELETE_CONFIRMATION = "awaiting_delete_confirmation"


@dataclass(slots=True, kw_only=True)
class _BaseState:
    step: ClassVar[Step]
    chat_id: str | None = None
    timestamp: float = 0.0

    def _payload(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        data = {"step": self.step.value, "chatId": self.chat_id, "timestamp": self.timestamp}
        data.update(self._payload())
        return data


@dataclass(slots=True, kw_only=True)
class AwaitingEventTitle(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_EVENT_TITLE
    event: CandidateEvent

    def _payload(self) -> dict[str, Any]:
        return {"event": self.event.to_dict()}


@dataclass(slots=True, kw_only=True)
class AwaitingRecurrenceEndCondition(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_RECURRENCE_END_CONDITION
    event: CandidateEvent

    def _payload(self) -> dict[str, Any]:
        return {"event": self.event.to_dict()}


@dataclass(slots=True, kw_only=True)
class AwaitingCalendarChoice(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_CALENDAR_CHOICE
    event: CandidateEvent

    def _payload(self) -> dict[str, Any]:
        return {"event": self.event.to_dict()}


@dataclass(slots=True, kw_only=True)
class AwaitingConflictConfirmation(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_CONFLICT_CONFIRMATION
    event: CandidateEvent
    calendar_id: str

    def _payload(self) -> dict[str, Any]:
        return {"event": self.event.to_dict(), "calendarId": self.calendar_id}


@dataclass(slots=True, kw_only=True)
class AwaitingModificationDetails(_BaseState):
    """``event_id``/``calendar_id`` stay empty until the user picks one of several matches."""

    step: ClassVar[Step] = Step.AWAITING_MODIFICATION_DETAILS
    event_id: str | None = None
    calendar_id: str | None = None

    @property
    def is_resolved(self) -> bool:
        return bool(self.event_id and self.calendar_id)

    def _payload(self) -> dict[str, Any]:
        return {"eventId": self.event_id, "calendarId": self.calendar_id}


@dataclass(slots=True, kw_only=True)
class AwaitingDeleteConfirmation(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_DELETE_CONFIRMATION
    event_id: str
    calendar_id: str

    def _payload(self) -> dict[str, Any]:
        return {"eventId": self.event_id, "calendarId": self.calendar_id}


@dataclass(slots=True, kw_only=True)
class AwaitingCsvUpload(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_CSV_UPLOAD
    person_name: str

    def _payload(self) -> dict[str, Any]:
        return {"personName": self.person_name}


@dataclass(slots=True, kw_only=True)
class AwaitingBulkConfirmation(_BaseState):
    step: ClassVar[Step] = Step.AWAITING_BULK_CONFIRMATION
    events: list[CandidateEvent] = field(default_factory=list)
    person_name: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "personName": self.person_name,
        }


ConversationState = Union[
    AwaitingEventTitle,
    AwaitingRecurrenceEndCondition,
    AwaitingCalendarChoice,
    AwaitingConflictConfirmation,
    AwaitingModificationDetails,
    AwaitingDeleteConfirmation,
    AwaitingCsvUpload,
    AwaitingBulkConfirmation,
]


def state_from_dict(raw: Any, timezone: str = "Asia/Taipei") -> ConversationState | None:
    """Rebuild a state variant; records that break their step's invariants yield ``None``."""
    if not isinstance(raw, dict):
        return None
    try:
        step = Step(raw.get("step"))
    except ValueError:
        return None

    tz = ZoneInfo(timezone)
    common: dict[str, Any] = {
        "chat_id": raw.get("chatId"),
        "timestamp": float(raw.get("timestamp") or 0),
    }
    event_raw = raw.get("event")
    event = CandidateEvent.from_dict(event_raw, tz) if isinstance(event_raw, dict) else None

    if step in (
        Step.AWAITING_EVENT_TITLE,
        Step.AWAITING_RECURRENCE_END_CONDITION,
        Step.AWAITING_CALENDAR_CHOICE,
    ):
        if event is None:
            return None
        cls = {
            Step.AWAITING_EVENT_TITLE: AwaitingEventTitle,
            Step.AWAITING_RECURRENCE_END_CONDITION: AwaitingRecurrenceEndCondition,
            Step.AWAITING_CALENDAR_CHOICE: AwaitingCalendarChoice,
        }[step]
        return cls(event=event, **common)

    if step is Step.AWAITING_CONFLICT_CONFIRMATION:
        if event is None or not raw.get("calendarId"):
            return None
        return AwaitingConflictConfirmation(event=event, calendar_id=raw["calendarId"], **common)

    if step is Step.AWAITING_MODIFICATION_DETAILS:
        return AwaitingModificationDetails(
            event_id=raw.get("eventId") or None,
            calendar_id=raw.get("calendarId") or None,
            **common,
        )

    if step is Step.AWAITING_DELETE_CONFIRMATION:
        if not raw.get("eventId") or not raw.get("calendarId"):
            return None
        return AwaitingDeleteConfirmation(
            event_id=raw["eventId"], calendar_id=raw["calendarId"], **common
        )

    if step is Step.AWAITING_CSV_UPLOAD:
        if not raw.get("personName"):
            return None
        return AwaitingCsvUpload(person_name=raw["personName"], **common)

    events_raw = raw.get("events")
    if not isinstance(events_raw, list) or not events_raw:
        return None
    return AwaitingBulkConfirmation(
        events=[CandidateEvent.from_dict(item, tz) for item in events_raw if isinstance(item, dict)],
        person_name=raw.get("personName"),
        **common,
    )
