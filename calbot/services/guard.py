from __future__ import annotations

import logging
from datetime import tzinfo
from zoneinfo import ZoneInfo

from calbot.schemas.calendar import CalendarEvent, CandidateEvent
from calbot.services.errors import DuplicateEventError

logger = logging.getLogger(__name__)


class EventGuard:
    """Duplicate and conflict checks, scoped to the single calendar being written.

    Both checks compare exact titles and exact times; nothing here is fuzzy.
    """

    def __init__(self, calendar, timezone: str = "Asia/Taipei") -> None:
        self.calendar = calendar
        self.tz: tzinfo = ZoneInfo(timezone)

    def is_duplicate_of(self, candidate: CandidateEvent, existing: CalendarEvent) -> bool:
        if existing.summary != candidate.title or candidate.start is None:
            return False
        if candidate.all_day:
            return existing.is_all_day and existing.start.get("date") == candidate.start.date().isoformat()
        if existing.is_all_day or candidate.end is None:
            return False
        return existing.start_at(self.tz) == candidate.start and existing.end_at(self.tz) == candidate.end

    def _same_title_and_start(self, candidate: CandidateEvent, existing: CalendarEvent) -> bool:
        if existing.summary != candidate.title or candidate.start is None:
            return False
        if existing.is_all_day:
            return candidate.all_day and existing.start.get("date") == candidate.start.date().isoformat()
        return existing.start_at(self.tz) == candidate.start

    async def find_duplicate(self, candidate: CandidateEvent, calendar_id: str) -> CalendarEvent | None:
        candidate = candidate.with_default_end()
        existing = await self.calendar.find_in_range(
            candidate.start, candidate.end, calendar_id, keyword=candidate.title
        )
        for item in existing:
            if self.is_duplicate_of(candidate, item):
                logger.info("Found duplicate event: %s", item.html_link)
                return item
        return None

    async def find_conflicts(self, candidate: CandidateEvent, calendar_id: str) -> list[CalendarEvent]:
        candidate = candidate.with_default_end()
        overlapping = await self.calendar.find_in_range(candidate.start, candidate.end, calendar_id)
        return [
            item
            for item in overlapping
            if item.status != "cancelled" and not self._same_title_and_start(candidate, item)
        ]

    async def check(self, candidate: CandidateEvent, calendar_id: str) -> list[CalendarEvent]:
        """Raise :class:`DuplicateEventError` on a duplicate, otherwise return the conflicts."""
        duplicate = await self.find_duplicate(candidate, calendar_id)
        if duplicate is not None:
            raise DuplicateEventError(duplicate)
        return await self.find_conflicts(candidate, calendar_id)

    async def create(self, candidate: CandidateEvent, calendar_id: str) -> CalendarEvent:
        """Create after the duplicate check only; conflicts are the caller's concern."""
        candidate = candidate.with_default_end()
        duplicate = await self.find_duplicate(candidate, calendar_id)
        if duplicate is not None:
            raise DuplicateEventError(duplicate)
        return await self.calendar.create(candidate, calendar_id)
