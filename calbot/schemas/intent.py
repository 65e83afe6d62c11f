from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from calbot.schemas.calendar import CandidateEvent, EventChanges


class IntentType(str, Enum):
    CREATE_EVENT = "create_event"
    QUERY_EVENT = "query_event"
    UPDATE_EVENT = "update_event"
    DELETE_EVENT = "delete_event"
    CREATE_SCHEDULE = "create_schedule"
    INCOMPLETE = "incomplete"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class Intent:
    type: IntentType
    original_text: str = ""
    event: CandidateEvent | None = None
    time_min: datetime | None = None
    time_max: datetime | None = None
    query: str = ""
    changes: EventChanges = field(default_factory=EventChanges)
    person_name: str | None = None

    @classmethod
    def unknown(cls, text: str) -> "Intent":
        return cls(type=IntentType.UNKNOWN, original_text=text)
