"""Conversation orchestrator: whitelist, timeout sweep, step routing and intent dispatch."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Sequence

from calbot.bot.context import InboundEvent, InboundEventType, ServiceContainer
from calbot.bot.events import apply_changes, process_complete_event
from calbot.bot.postbacks import handle_postback
from calbot.bot.replies import CANCELLED, GENERIC_FAILURE, MODIFY_PROMPT, RECURRENCE_PROMPT_EXAMPLES, WELCOME
from calbot.bot.router import IntentRouter, create_router
from calbot.bot.schedules import handle_file, start_schedule_upload
from calbot.schemas.state import (
    AwaitingEventTitle,
    AwaitingModificationDetails,
    AwaitingRecurrenceEndCondition,
)
from calbot.services.async_executor import KeyedLock
from calbot.services.errors import CalendarBackendError, ClassifierError

logger = logging.getLogger(__name__)

HELP_KEYWORDS = ("help", "幫助", "你會什麼", "你可以做什麼", "功能列表", "功能")
CANCEL_WORDS = ("取消", "cancel")
SCHEDULE_TRIGGER = re.compile(r"幫(?:「|『)?(.+?)(?:」|』)?建立班表")


class Orchestrator:
    """Routes inbound events to step handlers or the intent router.

    Handling is serialised per ``(user, chat)`` inside this process so that
    read-modify-write cycles on the session store do not interleave.
    """

    def __init__(
        self,
        services: ServiceContainer,
        router: IntentRouter | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self.services = services
        self.router = router or create_router()
        self.locks = locks or KeyedLock()

    async def handle_webhook(self, events: Sequence[InboundEvent]) -> list[Any]:
        """Process one delivery; every event runs to completion before the first failure is re-raised."""
        results = await asyncio.gather(*(self.handle_event(event) for event in events), return_exceptions=True)
        failures = [result for result in results if isinstance(result, BaseException)]
        for failure in failures:
            logger.error("Webhook event failed: %r", failure)
        if failures:
            raise failures[0]
        return list(results)

    def is_allowed(self, user_id: str | None) -> bool:
        return bool(user_id) and user_id in self.services.settings.user_whitelist

    async def handle_event(self, event: InboundEvent) -> None:
        if event.type is InboundEventType.JOIN:
            logger.info("Bot joined chat %s. Sending welcome message.", event.chat_id)
            await self.services.push(event.chat_id, WELCOME)
            return

        if not self.is_allowed(event.user_id):
            logger.info("Rejected event from non-whitelisted user: %s", event.user_id)
            return

        async with self.locks.hold((event.user_id, event.chat_id)):
            await self.services.store.expire_stale(event.user_id, event.chat_id)
            try:
                await self._dispatch(event)
            except (CalendarBackendError, ClassifierError):
                logger.exception("Backend failure while handling event for user %s", event.user_id)
                await self.services.store.clear(event.user_id, event.chat_id)
                await self.services.reply(event, GENERIC_FAILURE)
            except Exception:
                logger.exception("Unhandled error in handle_event for user %s", event.user_id)
                raise

    async def _dispatch(self, event: InboundEvent) -> None:
        if event.type is InboundEventType.POSTBACK:
            state = await self.services.store.get(event.user_id, event.chat_id)
            await handle_postback(self.services, event, state)
        elif event.file_id:
            state = await self.services.store.get(event.user_id, event.chat_id)
            await handle_file(self.services, event, state)
        elif event.is_image:
            await self.services.reply(
                event, "圖片班表功能已暫停，請改用「幫 [姓名] 建立班表」指令來上傳 CSV 檔案。"
            )
        elif event.text is not None:
            await self._handle_text(event)
        else:
            logger.info("Ignoring unsupported message in chat %s", event.chat_id)

    async def _handle_text(self, event: InboundEvent) -> None:
        text = event.text.strip()
        lowered = text.lower()
        if any(keyword in lowered for keyword in HELP_KEYWORDS):
            await self.services.reply(event, WELCOME)
            return

        match = SCHEDULE_TRIGGER.search(text)
        if match:
            await start_schedule_upload(self.services, event, match.group(1).strip())
            return

        if lowered in CANCEL_WORDS:
            await self.services.store.clear(event.user_id, event.chat_id)
            await self.services.reply(event, CANCELLED)
            return

        state = await self.services.store.get(event.user_id, event.chat_id)
        if isinstance(state, AwaitingRecurrenceEndCondition):
            await self._handle_recurrence_response(event, state, text)
        elif isinstance(state, AwaitingEventTitle):
            await self._handle_title_response(event, state, text)
        elif isinstance(state, AwaitingModificationDetails):
            await self._handle_modification_details(event, state, text)
        else:
            await self._handle_new_command(event, text)

    async def _handle_new_command(self, event: InboundEvent, text: str) -> None:
        logger.info("Handling new text message with intent classification: %r", text)
        intent = await self.services.classifier.classify(text)
        await self.router.route(self.services, event, intent)

    async def _handle_title_response(self, event: InboundEvent, state: AwaitingEventTitle, text: str) -> None:
        candidate = state.event.merge(title=text)
        await self.services.store.clear(event.user_id, event.chat_id)
        await process_complete_event(self.services, event, candidate)

    async def _handle_recurrence_response(
        self, event: InboundEvent, state: AwaitingRecurrenceEndCondition, text: str
    ) -> None:
        rule = await self.services.classifier.parse_recurrence_end_condition(
            text, state.event.recurrence or "", state.event.start
        )
        if rule is None:
            # Same step, fresh timestamp.
            await self.services.store.set(event.user_id, event.chat_id, state)
            await self.services.reply(
                event,
                "抱歉，我不太理解您的意思。請問您希望這個重複活動什麼時候結束？\n" + RECURRENCE_PROMPT_EXAMPLES,
            )
            return
        updated = state.event.merge(recurrence=rule)
        await process_complete_event(self.services, event, updated, recurrence_confirmed=True)

    async def _handle_modification_details(
        self, event: InboundEvent, state: AwaitingModificationDetails, text: str
    ) -> None:
        if not state.is_resolved:
            await self.services.reply(event, "請先從上方列表點選「修改活動」，選擇您想修改的活動。")
            return

        logger.info("Handling event update for %s in %s with text %r", state.event_id, state.calendar_id, text)
        changes = await self.services.classifier.parse_event_changes(text)
        if changes.is_empty():
            await self.services.store.set(event.user_id, event.chat_id, state)
            await self.services.reply(event, "抱歉，我不太理解您的修改指令，可以請您說得更清楚一點嗎？\n" + MODIFY_PROMPT)
            return

        await self.services.store.clear(event.user_id, event.chat_id)
        await apply_changes(self.services, event, state.event_id, state.calendar_id, changes)
