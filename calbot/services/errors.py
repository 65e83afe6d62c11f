from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from calbot.schemas.calendar import CalendarEvent


class CalendarBackendError(Exception):
    """A Google Calendar call failed; the message is safe to log."""


class DuplicateEventError(Exception):
    def __init__(self, existing_event: "CalendarEvent") -> None:
        super().__init__("Event already exists")
        self.existing_event = existing_event

    @property
    def html_link(self) -> str | None:
        return self.existing_event.html_link


class ClassifierError(Exception):
    """The language model call itself failed (not an unparseable answer)."""


class ShiftFileError(Exception):
    pass
