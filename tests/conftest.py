"""Shared fixtures: an in-memory calendar backend, a recording channel and a controllable clock."""
from __future__ import annotations

from datetime import datetime
from itertools import count
from typing import Any, Sequence
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from calbot.bot.context import InboundEvent, InboundEventType, ServiceContainer
from calbot.bot.handlers import Orchestrator
from calbot.bot.messages import ButtonsMessage, CarouselMessage, EventCard, Message, TextMessage
from calbot.config.settings import Settings
from calbot.db.base import build_engine, build_session_factory, init_db
from calbot.schemas.calendar import CalendarChoice, CalendarEvent, CandidateEvent, SearchResult
from calbot.schemas.intent import Intent
from calbot.services.batch_import import BatchImportEngine
from calbot.services.errors import CalendarBackendError
from calbot.services.guard import EventGuard
from calbot.services.session_store import SessionStore
from calbot.services.shift_parser import ShiftFileParser

TZ = ZoneInfo("Asia/Taipei")
USER = "U1"
CHAT = "C1"


def at(day: int, hour: int, minute: int = 0, month: int = 10) -> datetime:
    return datetime(2025, month, day, hour, minute, tzinfo=TZ)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalendar:
    """Calendar backend kept in memory; payloads mirror the Google Calendar v3 shape."""

    def __init__(self, calendars: Sequence[tuple[str, str]] = (("primary", "我的日曆"),)) -> None:
        self.choices = [CalendarChoice(cal_id, name) for cal_id, name in calendars]
        self.items: dict[str, list[dict[str, Any]]] = {cal_id: [] for cal_id, _ in calendars}
        self.create_calls: list[tuple[CandidateEvent, str]] = []
        self.failing_create_calls: set[int] = set()
        self.failing_search_calendars: set[str] = set()
        self.list_failure: Exception | None = None
        self.search_has_more = False
        self._ids = count(1)

    def add(self, calendar_id: str, summary: str, start: datetime, end: datetime, *, all_day: bool = False) -> str:
        event_id = f"evt{next(self._ids)}"
        if all_day:
            start_payload = {"date": start.date().isoformat()}
            end_payload = {"date": end.date().isoformat()}
        else:
            start_payload = {"dateTime": start.isoformat()}
            end_payload = {"dateTime": end.isoformat()}
        self.items.setdefault(calendar_id, []).append(
            {
                "id": event_id,
                "summary": summary,
                "start": start_payload,
                "end": end_payload,
                "status": "confirmed",
                "htmlLink": f"https://calendar.example/{event_id}",
            }
        )
        return event_id

    def events_in(self, calendar_id: str) -> list[CalendarEvent]:
        return [CalendarEvent.from_api(item, calendar_id) for item in self.items.get(calendar_id, [])]

    async def list_eligible_calendars(self) -> list[CalendarChoice]:
        if self.list_failure is not None:
            raise self.list_failure
        return list(self.choices)

    async def find_in_range(self, start, end, calendar_id, keyword=None) -> list[CalendarEvent]:
        found = []
        for item in self.events_in(calendar_id):
            if keyword and keyword not in item.summary:
                continue
            if item.start_at(TZ) < end and item.end_at(TZ) > start:
                found.append(item)
        return found

    async def search(self, calendar_id, time_min=None, time_max=None, keyword=None) -> SearchResult:
        if calendar_id in self.failing_search_calendars:
            raise CalendarBackendError("search failed")
        found = []
        for item in self.events_in(calendar_id):
            if keyword and keyword not in item.summary:
                continue
            if time_min and item.end_at(TZ) <= time_min:
                continue
            if time_max and item.start_at(TZ) >= time_max:
                continue
            found.append(item)
        return SearchResult(events=found[:10], has_more=self.search_has_more or len(found) > 10)

    async def create(self, event: CandidateEvent, calendar_id: str) -> CalendarEvent:
        self.create_calls.append((event, calendar_id))
        if len(self.create_calls) in self.failing_create_calls:
            raise CalendarBackendError("create failed")
        event_id = self.add(calendar_id, event.title, event.start, event.end, all_day=event.all_day)
        return next(item for item in self.events_in(calendar_id) if item.id == event_id)

    async def update(self, event_id: str, calendar_id: str, patch: dict[str, Any]) -> CalendarEvent:
        for item in self.items.get(calendar_id, []):
            if item["id"] == event_id:
                item.update(patch)
                return CalendarEvent.from_api(item, calendar_id)
        raise CalendarBackendError("not found")

    async def delete(self, event_id: str, calendar_id: str) -> None:
        before = len(self.items.get(calendar_id, []))
        self.items[calendar_id] = [item for item in self.items.get(calendar_id, []) if item["id"] != event_id]
        if len(self.items[calendar_id]) == before:
            raise CalendarBackendError("not found")

    async def get_event(self, event_id: str, calendar_id: str) -> CalendarEvent:
        for item in self.events_in(calendar_id):
            if item.id == event_id:
                return item
        raise CalendarBackendError("not found")


class RecordingChannel:
    def __init__(self) -> None:
        self.replies: list[tuple[str, list[Message]]] = []
        self.pushes: list[tuple[str, list[Message]]] = []
        self.files: dict[str, bytes] = {}

    async def reply(self, reply_token: str, messages: Sequence[Message]) -> None:
        self.replies.append((reply_token, list(messages)))

    async def push(self, chat_id: str, messages: Sequence[Message]) -> None:
        self.pushes.append((chat_id, list(messages)))

    async def get_content(self, file_id: str) -> bytes:
        return self.files[file_id]

    @staticmethod
    def _texts(batches: list[tuple[str, list[Message]]]) -> list[str]:
        texts: list[str] = []
        for _, messages in batches:
            for message in messages:
                if isinstance(message, TextMessage):
                    texts.append(message.text)
                elif isinstance(message, ButtonsMessage):
                    texts.append(f"{message.title}\n{message.text}")
                elif isinstance(message, EventCard):
                    texts.append(f"{message.header}\n{message.title}")
                elif isinstance(message, CarouselMessage):
                    texts.extend(f"{card.header}\n{card.title}" for card in message.cards)
        return texts

    @property
    def reply_texts(self) -> list[str]:
        return self._texts(self.replies)

    @property
    def push_texts(self) -> list[str]:
        return self._texts(self.pushes)

    @property
    def last_reply(self) -> list[Message]:
        return self.replies[-1][1]


def text_event(text: str, user: str = USER, chat: str = CHAT) -> InboundEvent:
    return InboundEvent(InboundEventType.MESSAGE, user_id=user, chat_id=chat, reply_token=chat, text=text)


def postback_event(data: str | None, user: str = USER, chat: str = CHAT) -> InboundEvent:
    return InboundEvent(InboundEventType.POSTBACK, user_id=user, chat_id=chat, reply_token=chat, postback_data=data)


def file_event(file_id: str, file_name: str, user: str = USER, chat: str = CHAT) -> InboundEvent:
    return InboundEvent(
        InboundEventType.MESSAGE,
        user_id=user,
        chat_id=chat,
        reply_token=chat,
        file_id=file_id,
        file_name=file_name,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(user_whitelist=(USER, "U2"), timezone="Asia/Taipei", search_concurrency=2)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'state.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock) -> SessionStore:
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def classifier() -> AsyncMock:
    mock = AsyncMock()
    mock.classify.return_value = Intent.unknown("")
    mock.parse_recurrence_end_condition.return_value = None
    return mock


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def services(settings, classifier, calendar, store, channel, sleep) -> ServiceContainer:
    guard = EventGuard(calendar, settings.timezone)
    return ServiceContainer(
        settings=settings,
        classifier=classifier,
        calendar=calendar,
        store=store,
        guard=guard,
        batch_engine=BatchImportEngine(calendar, guard, sleep=sleep),
        shift_parser=ShiftFileParser(settings.timezone, today=datetime(2025, 10, 1).date()),
        channel=channel,
    )


@pytest.fixture
def orchestrator(services) -> Orchestrator:
    return Orchestrator(services)

