"""Single-event flows: create (title, recurrence, calendar choice, conflicts), query, update, delete."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from calbot.bot.context import InboundEvent, ServiceContainer
from calbot.bot.messages import (
    ButtonsMessage,
    CarouselMessage,
    LinkAction,
    Message,
    PostbackAction,
    TextMessage,
    cancel_action,
    encode_postback,
    event_card,
    format_event_time,
)
from calbot.bot.replies import (
    CREATE_FAILED,
    MODIFY_PROMPT,
    PARTIAL_RESULTS_WARNING,
    RECURRENCE_PROMPT_EXAMPLES,
    UPDATE_FAILED,
)
from calbot.schemas.calendar import CalendarChoice, CalendarEvent, CandidateEvent, EventChanges
from calbot.schemas.intent import Intent
from calbot.schemas.state import (
    AwaitingCalendarChoice,
    AwaitingConflictConfirmation,
    AwaitingDeleteConfirmation,
    AwaitingEventTitle,
    AwaitingModificationDetails,
    AwaitingRecurrenceEndCondition,
)
from calbot.services.async_executor import gather_bounded
from calbot.services.errors import CalendarBackendError, DuplicateEventError

logger = logging.getLogger(__name__)

QUERY_PAGE_SIZE = 10


@dataclass(slots=True)
class FanOutResult:
    events: list[CalendarEvent] = field(default_factory=list)
    has_more: bool = False
    failed_calendars: list[str] = field(default_factory=list)
    choices: list[CalendarChoice] = field(default_factory=list)


async def search_all_calendars(
    services: ServiceContainer,
    time_min: datetime | None,
    time_max: datetime | None,
    keyword: str,
) -> FanOutResult:
    """Search every eligible calendar with bounded concurrency.

    A calendar whose search fails is logged and skipped; if every calendar
    fails the whole search fails with :class:`CalendarBackendError`.
    """
    choices = await services.calendar.list_eligible_calendars()
    results = await gather_bounded(
        services.settings.search_concurrency,
        (services.calendar.search(choice.id, time_min, time_max, keyword or None) for choice in choices),
    )

    outcome = FanOutResult(choices=list(choices))
    seen: set[tuple[str | None, str]] = set()
    for choice, result in zip(choices, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning("Search in calendar %s failed: %s", choice.id, result)
            outcome.failed_calendars.append(choice.id)
            continue
        outcome.has_more = outcome.has_more or result.has_more
        for item in result.events:
            key = (item.calendar_id, item.id)
            if key not in seen:
                seen.add(key)
                outcome.events.append(item)

    if choices and len(outcome.failed_calendars) == len(choices):
        raise CalendarBackendError("search failed in every calendar")
    outcome.events.sort(key=lambda item: item.sort_key(services.tz))
    return outcome


def with_partial_warning(text: str, result: FanOutResult) -> str:
    if not result.failed_calendars:
        return text
    return f"{text}\n\n{PARTIAL_RESULTS_WARNING}"


async def calendar_name(
    services: ServiceContainer,
    calendar_id: str,
    choices: Sequence[CalendarChoice] | None = None,
) -> str:
    if choices is None:
        try:
            choices = await services.calendar.list_eligible_calendars()
        except CalendarBackendError:
            logger.warning("Calendar names unavailable, showing id %s", calendar_id)
            choices = []
    return next((choice.summary for choice in choices if choice.id == calendar_id), calendar_id)


def duplicate_message(error: DuplicateEventError) -> Message:
    if not error.html_link:
        return TextMessage("這個活動先前已經在日曆中囉！")
    return ButtonsMessage(
        title="🔍 活動已存在",
        text="這個活動先前已經在日曆中囉！",
        actions=(LinkAction("點擊查看", error.html_link),),
    )


def conflict_message(candidate: CandidateEvent) -> Message:
    return ButtonsMessage(
        title="⚠️ 時間衝突",
        text=f"您預計新增的活動「{candidate.title}」與現有活動時間重疊。是否仍要建立？",
        actions=(PostbackAction("仍要建立", encode_postback("force_create")), cancel_action()),
    )


def delete_confirmation_message(title: str, calendar_label: str | None = None) -> Message:
    if calendar_label:
        text = f"您確定要從「{calendar_label}」日曆中刪除「{title}」嗎？此操作無法復原。"
    else:
        text = f"您確定要刪除活動「{title}」嗎？此操作無法復原。"
    return ButtonsMessage(
        title="確認刪除活動",
        text=text,
        actions=(PostbackAction("確定刪除", encode_postback("confirm_delete")), cancel_action()),
    )


# --- create flow ---------------------------------------------------------------


async def handle_create_intent(services: ServiceContainer, event: InboundEvent, intent: Intent) -> None:
    candidate = intent.event
    if candidate is None or candidate.start is None:
        logger.info("create_event without a start time, ignoring: %r", intent.original_text)
        return
    candidate = candidate.with_default_end()

    if not candidate.title:
        await services.store.set(event.user_id, event.chat_id, AwaitingEventTitle(event=candidate))
        when = candidate.start.astimezone(services.tz).strftime("%Y/%m/%d %H:%M")
        await services.reply(event, f"好的，請問「{when}」要安排什麼活動呢？")
        return
    await process_complete_event(services, event, candidate)


async def process_complete_event(
    services: ServiceContainer,
    event: InboundEvent,
    candidate: CandidateEvent,
    *,
    recurrence_confirmed: bool = False,
) -> None:
    candidate = candidate.with_default_end()
    if candidate.has_open_recurrence and not recurrence_confirmed:
        await services.store.set(
            event.user_id, event.chat_id, AwaitingRecurrenceEndCondition(event=candidate)
        )
        await services.reply(
            event,
            f"好的，活動「{candidate.title}」是一個重複性活動，請問您希望它什麼時候結束？\n"
            + RECURRENCE_PROMPT_EXAMPLES,
        )
        return

    choices = await services.calendar.list_eligible_calendars()
    if len(choices) > 1:
        await services.store.set(event.user_id, event.chat_id, AwaitingCalendarChoice(event=candidate))
        time_text = format_event_time(candidate.start, candidate.end, candidate.all_day, services.tz)
        actions = tuple(
            PostbackAction(choice.summary[:20], encode_postback("create_after_choice", calendarId=choice.id))
            for choice in choices
        )
        await services.reply(
            event,
            ButtonsMessage(
                title=f"新增活動：{candidate.title}",
                text=f"時間：{time_text}\n請問您要將這個活動新增至哪個日曆？"[:160],
                actions=actions + (cancel_action(),),
            ),
        )
        return

    calendar_id = choices[0].id if choices else "primary"
    await create_in_calendar(services, event, candidate, calendar_id, choices)


async def create_in_calendar(
    services: ServiceContainer,
    event: InboundEvent,
    candidate: CandidateEvent,
    calendar_id: str,
    choices: Sequence[CalendarChoice] | None = None,
) -> None:
    """Duplicate check, then conflict check, then create; all against ``calendar_id``."""
    try:
        conflicts = await services.guard.check(candidate, calendar_id)
    except DuplicateEventError as exc:
        await services.store.clear(event.user_id, event.chat_id)
        await services.reply(event, duplicate_message(exc))
        return
    except CalendarBackendError:
        logger.exception("Conflict check failed for %r", candidate.title)
        await services.store.clear(event.user_id, event.chat_id)
        await services.reply(event, CREATE_FAILED)
        return

    if conflicts:
        logger.info("Candidate %r overlaps %d events in %s", candidate.title, len(conflicts), calendar_id)
        await services.store.set(
            event.user_id,
            event.chat_id,
            AwaitingConflictConfirmation(event=candidate, calendar_id=calendar_id),
        )
        await services.reply(event, conflict_message(candidate))
        return

    await create_and_confirm(services, event, candidate, calendar_id, choices)


async def create_and_confirm(
    services: ServiceContainer,
    event: InboundEvent,
    candidate: CandidateEvent,
    calendar_id: str,
    choices: Sequence[CalendarChoice] | None = None,
    *,
    check_duplicate: bool = False,
) -> None:
    await services.store.clear(event.user_id, event.chat_id)
    try:
        if check_duplicate:
            created = await services.guard.create(candidate, calendar_id)
        else:
            created = await services.calendar.create(candidate, calendar_id)
    except DuplicateEventError as exc:
        await services.reply(event, duplicate_message(exc))
        return
    except CalendarBackendError:
        logger.exception("Creating %r in %s failed", candidate.title, calendar_id)
        await services.reply(event, CREATE_FAILED)
        return

    name = await calendar_name(services, calendar_id, choices)
    await services.reply(event, event_card(created, f"✅ 已新增至「{name}」", services.tz))


# --- query ---------------------------------------------------------------------


async def handle_query_intent(services: ServiceContainer, event: InboundEvent, intent: Intent) -> None:
    logger.info("Handling query_event %r from %s to %s", intent.query, intent.time_min, intent.time_max)
    result = await search_all_calendars(services, intent.time_min, intent.time_max, intent.query)

    if not result.events:
        text = (
            f"抱歉，找不到與「{intent.query}」相關的未來活動。"
            if intent.query
            else "太好了，這個時段目前沒有安排活動！"
        )
        await services.reply(event, with_partial_warning(text, result))
        return

    names = {choice.id: choice.summary for choice in result.choices}
    cards = tuple(
        event_card(item, f"日曆：{names.get(item.calendar_id or '', item.calendar_id or '未知日曆')}", services.tz)
        for item in result.events[:QUERY_PAGE_SIZE]
    )
    count = len(result.events)
    text = f"為您找到 {count} 個與「{intent.query}」相關的活動" if intent.query else f"為您找到 {count} 個活動"
    if count > len(cards):
        text += f"，顯示前 {len(cards)} 個"
    text += "："
    if result.has_more or count > len(cards):
        text += "\n\n還有更多結果。如果沒找到您要的活動，請提供更精確的日期或關鍵字。"
    await services.reply(
        event,
        with_partial_warning(text, result),
        CarouselMessage(f"顯示 {len(cards)} 個活動", cards),
    )


# --- update --------------------------------------------------------------------


async def apply_changes(
    services: ServiceContainer,
    event: InboundEvent,
    event_id: str,
    calendar_id: str,
    changes: EventChanges,
) -> None:
    try:
        updated = await services.calendar.update(
            event_id, calendar_id, changes.to_patch(services.settings.timezone)
        )
    except CalendarBackendError:
        logger.exception("Updating event %s in %s failed", event_id, calendar_id)
        await services.reply(event, UPDATE_FAILED)
        return
    await services.reply(event, event_card(updated, "✅ 活動已更新", services.tz))


async def handle_update_intent(services: ServiceContainer, event: InboundEvent, intent: Intent) -> None:
    logger.info("Handling update_event %r from %s to %s", intent.query, intent.time_min, intent.time_max)
    result = await search_all_calendars(services, intent.time_min, intent.time_max, intent.query)
    matches = result.events

    if not matches:
        await services.reply(event, with_partial_warning("抱歉，找不到您想修改的活動。", result))
        return

    # a failed calendar may hide other matches
    if len(matches) == 1 and not intent.changes.is_empty() and not result.failed_calendars:
        target = matches[0]
        await apply_changes(services, event, target.id, target.calendar_id, intent.changes)
        return

    if len(matches) > 1:
        # Nothing is resolved until the user picks a card.
        await services.store.set(event.user_id, event.chat_id, AwaitingModificationDetails())
        cards = tuple(event_card(item, item.summary, services.tz) for item in matches[:QUERY_PAGE_SIZE])
        await services.reply(
            event,
            with_partial_warning("我找到了多個符合條件的活動，請選擇您想修改的是哪一個？", result),
            CarouselMessage("請選擇要修改的活動", cards),
        )
        return

    target = matches[0]
    await services.store.set(
        event.user_id,
        event.chat_id,
        AwaitingModificationDetails(event_id=target.id, calendar_id=target.calendar_id),
    )
    await services.reply(
        event,
        event_card(target, "我找到了這個活動", services.tz),
        with_partial_warning(MODIFY_PROMPT, result),
    )


# --- delete --------------------------------------------------------------------


async def handle_delete_intent(services: ServiceContainer, event: InboundEvent, intent: Intent) -> None:
    logger.info("Handling delete_event %r from %s to %s", intent.query, intent.time_min, intent.time_max)
    result = await search_all_calendars(services, intent.time_min, intent.time_max, intent.query)
    matches = result.events

    if not matches:
        await services.reply(event, with_partial_warning("抱歉，找不到您想刪除的活動。", result))
        return

    if len(matches) > 1:
        await services.reply(
            event,
            with_partial_warning(
                "我找到了多個符合條件的活動，請您先用「查詢」功能找到想刪除的活動，"
                "然後再點擊該活動下方的「刪除活動」按鈕。",
                result,
            ),
        )
        return

    target = matches[0]
    await services.store.set(
        event.user_id,
        event.chat_id,
        AwaitingDeleteConfirmation(event_id=target.id, calendar_id=target.calendar_id),
    )
    warning = (PARTIAL_RESULTS_WARNING,) if result.failed_calendars else ()
    await services.reply(event, delete_confirmation_message(target.summary), *warning)
