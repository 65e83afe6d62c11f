from __future__ import annotations

import logging
from typing import Awaitable, Callable

from calbot.bot.context import InboundEvent, ServiceContainer
from calbot.bot.events import calendar_name, create_and_confirm, create_in_calendar, delete_confirmation_message
from calbot.bot.messages import decode_postback
from calbot.bot.replies import CANCELLED, EXPIRED, MISSING_CALENDAR, MODIFY_PROMPT
from calbot.bot.schedules import handle_bulk_confirmation
from calbot.schemas.state import (
    AwaitingCalendarChoice,
    AwaitingConflictConfirmation,
    AwaitingDeleteConfirmation,
    AwaitingModificationDetails,
    ConversationState,
)
from calbot.services.errors import CalendarBackendError

logger = logging.getLogger(__name__)

PostbackHandler = Callable[
    [ServiceContainer, InboundEvent, "ConversationState | None", dict[str, str]],
    Awaitable[None],
]


async def _cancel(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    await services.store.clear(event.user_id, event.chat_id)
    await services.reply(event, CANCELLED)


async def _create_after_choice(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    if not isinstance(state, AwaitingCalendarChoice):
        await services.reply(event, EXPIRED)
        return
    calendar_id = params.get("calendarId")
    if not calendar_id:
        await services.reply(event, MISSING_CALENDAR)
        return
    await create_in_calendar(services, event, state.event, calendar_id)


async def _force_create(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    if not isinstance(state, AwaitingConflictConfirmation):
        await services.reply(event, EXPIRED)
        return
    await create_and_confirm(services, event, state.event, state.calendar_id, check_duplicate=True)


async def _delete(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    event_id, calendar_id = params.get("eventId"), params.get("calendarId")
    if not event_id or not calendar_id:
        await services.reply(event, "抱歉，找不到要刪除的活動資訊。")
        return
    try:
        target = await services.calendar.get_event(event_id, calendar_id)
    except CalendarBackendError:
        logger.exception("Fetching event %s for deletion failed", event_id)
        await services.reply(event, "抱歉，找不到要刪除的活動資訊。")
        return

    await services.store.set(
        event.user_id,
        event.chat_id,
        AwaitingDeleteConfirmation(event_id=event_id, calendar_id=calendar_id),
    )
    label = await calendar_name(services, calendar_id)
    await services.reply(event, delete_confirmation_message(target.summary or "此活動", label))


async def _confirm_delete(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    if not isinstance(state, AwaitingDeleteConfirmation):
        await services.reply(event, "抱歉，您的刪除請求已逾時或無效，請重新操作。")
        return
    await services.store.clear(event.user_id, event.chat_id)
    try:
        await services.calendar.delete(state.event_id, state.calendar_id)
    except CalendarBackendError:
        logger.exception("Deleting event %s failed", state.event_id)
        await services.reply(event, "抱歉，刪除活動時發生錯誤。")
        return
    await services.reply(event, "活動已成功刪除。")


async def _modify(services: ServiceContainer, event: InboundEvent, state, params) -> None:
    event_id, calendar_id = params.get("eventId"), params.get("calendarId")
    if not event_id or not calendar_id:
        await services.reply(event, "抱歉，找不到要修改的活動資訊。")
        return
    await services.store.set(
        event.user_id,
        event.chat_id,
        AwaitingModificationDetails(event_id=event_id, calendar_id=calendar_id),
    )
    await services.reply(event, "好的，" + MODIFY_PROMPT)


POSTBACK_HANDLERS: dict[str, PostbackHandler] = {
    "cancel": _cancel,
    "create_after_choice": _create_after_choice,
    "force_create": _force_create,
    "delete": _delete,
    "confirm_delete": _confirm_delete,
    "modify": _modify,
    "createAllShifts": handle_bulk_confirmation,
}


async def handle_postback(
    services: ServiceContainer,
    event: InboundEvent,
    state: ConversationState | None,
) -> None:
    if not event.postback_data:
        await services.reply(event, EXPIRED)
        return
    params = decode_postback(event.postback_data)
    action = params.get("action", "")
    logger.info("Handling postback %r in chat %s", action, event.chat_id)
    handler = POSTBACK_HANDLERS.get(action)
    if handler is None:
        await services.reply(event, "抱歉，發生了未知的錯誤。")
        return
    await handler(services, event, state, params)
