from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Sequence
from zoneinfo import ZoneInfo

from calbot.bot.messages import Message, TextMessage
from calbot.config.settings import Settings
from calbot.services.batch_import import BatchImportEngine
from calbot.services.gemini import GeminiService
from calbot.services.google_calendar import GoogleCalendarService
from calbot.services.guard import EventGuard
from calbot.services.session_store import SessionStore
from calbot.services.shift_parser import ShiftFileParser


class InboundEventType(str, Enum):
    MESSAGE = "message"
    POSTBACK = "postback"
    JOIN = "join"


@dataclass(slots=True)
class InboundEvent:
    type: InboundEventType
    user_id: str | None
    chat_id: str
    reply_token: str
    text: str | None = None
    file_id: str | None = None
    file_name: str | None = None
    is_image: bool = False
    postback_data: str | None = None


class MessagingChannel(Protocol):
    async def reply(self, reply_token: str, messages: Sequence[Message]) -> None: ...

    async def push(self, chat_id: str, messages: Sequence[Message]) -> None: ...

    async def get_content(self, file_id: str) -> bytes: ...


@dataclass(slots=True)
class ServiceContainer:
    settings: Settings
    classifier: GeminiService
    calendar: GoogleCalendarService
    store: SessionStore
    guard: EventGuard
    batch_engine: BatchImportEngine
    shift_parser: ShiftFileParser
    channel: MessagingChannel

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.timezone)

    async def reply(self, event: InboundEvent, *messages: Message | str) -> None:
        await self.channel.reply(event.reply_token, _as_messages(messages))

    async def push(self, chat_id: str, *messages: Message | str) -> None:
        await self.channel.push(chat_id, _as_messages(messages))


def _as_messages(messages: Sequence[Message | str]) -> list[Message]:
    return [TextMessage(item) if isinstance(item, str) else item for item in messages]
