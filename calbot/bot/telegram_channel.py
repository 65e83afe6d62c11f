"""Telegram rendering of the neutral message model, and Update -> InboundEvent conversion."""
from __future__ import annotations

import logging
from typing import Sequence

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import InvalidCallbackData

from calbot.bot.context import InboundEvent, InboundEventType
from calbot.bot.messages import (
    Action,
    ButtonsMessage,
    CarouselMessage,
    EventCard,
    LinkAction,
    Message,
    TextMessage,
)

logger = logging.getLogger(__name__)

COMMAND_ALIASES = {"/start": "help", "/help": "help", "/cancel": "cancel"}


class TelegramChannel:
    """Replies go to the chat the update came from, so the reply token is the chat id.

    Button data is handed to the bot as-is. The application is built with
    arbitrary callback data, so python-telegram-bot keeps long postbacks in its
    bounded, persisted cache and sends Telegram a short id instead.
    """

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def reply(self, reply_token: str, messages: Sequence[Message]) -> None:
        await self.push(reply_token, messages)

    async def push(self, chat_id: str, messages: Sequence[Message]) -> None:
        for message in messages:
            for text, markup in self.render(message):
                await self.bot.send_message(chat_id=chat_id, text=text, reply_markup=markup)

    async def get_content(self, file_id: str) -> bytes:
        telegram_file = await self.bot.get_file(file_id)
        return bytes(await telegram_file.download_as_bytearray())

    def render(self, message: Message) -> list[tuple[str, InlineKeyboardMarkup | None]]:
        if isinstance(message, TextMessage):
            return [(message.text, None)]
        if isinstance(message, ButtonsMessage):
            return [(f"{message.title}\n{message.text}", self._keyboard(message.actions))]
        if isinstance(message, EventCard):
            return [self._render_card(message)]
        if isinstance(message, CarouselMessage):
            return [self._render_card(card) for card in message.cards]
        raise TypeError(f"Unsupported message type: {type(message).__name__}")

    def _render_card(self, card: EventCard) -> tuple[str, InlineKeyboardMarkup | None]:
        lines = [card.header, card.title, card.time_text]
        if card.location:
            lines.append(f"地點：{card.location}")
        if card.description:
            lines.append(f"備註：{card.description}")
        return "\n".join(line for line in lines if line), self._keyboard(card.actions)

    def _keyboard(self, actions: Sequence[Action]) -> InlineKeyboardMarkup | None:
        if not actions:
            return None
        return InlineKeyboardMarkup([[self._button(action)] for action in actions])

    def _button(self, action: Action) -> InlineKeyboardButton:
        if isinstance(action, LinkAction):
            return InlineKeyboardButton(action.label, url=action.uri)
        return InlineKeyboardButton(action.label, callback_data=action.data)

    @staticmethod
    def postback_data(data: object) -> str | None:
        """Callback data evicted from the cache, or lost before a restart, resolves to None."""
        if isinstance(data, str):
            return data
        if isinstance(data, InvalidCallbackData):
            logger.warning("Callback data %s is no longer available", data.callback_data)
        return None

    def to_inbound(self, update: Update) -> InboundEvent | None:
        chat = update.effective_chat
        user = update.effective_user
        if chat is None:
            return None
        chat_id = str(chat.id)
        user_id = str(user.id) if user else None

        query = update.callback_query
        if query is not None:
            return InboundEvent(
                type=InboundEventType.POSTBACK,
                user_id=user_id,
                chat_id=chat_id,
                reply_token=chat_id,
                postback_data=self.postback_data(query.data),
            )

        message = update.effective_message
        if message is None:
            return None
        if message.new_chat_members and any(member.id == self.bot.id for member in message.new_chat_members):
            return InboundEvent(type=InboundEventType.JOIN, user_id=user_id, chat_id=chat_id, reply_token=chat_id)

        inbound = InboundEvent(
            type=InboundEventType.MESSAGE, user_id=user_id, chat_id=chat_id, reply_token=chat_id
        )
        if message.document is not None:
            inbound.file_id = message.document.file_id
            inbound.file_name = message.document.file_name or ""
        elif message.photo:
            inbound.is_image = True
        elif message.text is not None:
            command = message.text.split()[0].split("@")[0] if message.text.startswith("/") else ""
            inbound.text = COMMAND_ALIASES.get(command, message.text)
        else:
            return None
        return inbound
