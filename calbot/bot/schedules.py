"""Shift-schedule import: person name, file upload, destination choice, batch run."""
from __future__ import annotations

import logging

from calbot.bot.context import InboundEvent, ServiceContainer
from calbot.bot.messages import ButtonsMessage, PostbackAction, cancel_action, encode_postback
from calbot.bot.replies import MISSING_CALENDAR
from calbot.schemas.calendar import CandidateEvent
from calbot.schemas.intent import Intent
from calbot.schemas.state import AwaitingBulkConfirmation, AwaitingCsvUpload, ConversationState
from calbot.services.batch_import import ALL_CALENDARS
from calbot.services.errors import ShiftFileError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")
MAX_CALENDAR_ACTIONS = 3


async def start_schedule_upload(services: ServiceContainer, event: InboundEvent, person_name: str) -> None:
    logger.info("Request to create schedule for %r. Awaiting CSV file.", person_name)
    await services.store.set(event.user_id, event.chat_id, AwaitingCsvUpload(person_name=person_name))
    await services.reply(event, f"好的，請現在傳送您要為「{person_name}」分析的班表 CSV 或 XLSX 檔案。")


async def handle_schedule_intent(services: ServiceContainer, event: InboundEvent, intent: Intent) -> None:
    if not intent.person_name:
        await services.reply(event, "請告訴我要為誰建立班表，例如：幫「小明」建立班表。")
        return
    await start_schedule_upload(services, event, intent.person_name)


def _shift_line(services: ServiceContainer, shift: CandidateEvent, person_name: str) -> str:
    start = shift.start.astimezone(services.tz)
    end = shift.end.astimezone(services.tz)
    label = (shift.title or "").replace(person_name, "").strip()
    return f"✅ {start:%Y/%m/%d} {start:%H:%M}-{end:%H:%M} {label}"


async def handle_file(services: ServiceContainer, event: InboundEvent, state: ConversationState | None) -> None:
    if not isinstance(state, AwaitingCsvUpload):
        await services.reply(
            event,
            "感謝您傳送檔案，但我不知道該如何處理它。如果您想建立班表，請先傳送「幫 [姓名] 建立班表」。",
        )
        return

    file_name = (event.file_name or "").lower()
    if not file_name.endswith(SUPPORTED_EXTENSIONS):
        await services.reply(event, "檔案格式錯誤，請上傳 .csv 或 .xlsx 格式的班表檔案。")
        return

    person_name = state.person_name
    kind = "CSV" if file_name.endswith(".csv") else "XLSX"
    logger.info("File received for schedule analysis for %r in chat %s", person_name, event.chat_id)
    content = await services.channel.get_content(event.file_id)
    try:
        shifts = services.shift_parser.parse_file(file_name, content, person_name)
    except ShiftFileError:
        logger.exception("Error parsing %s schedule", kind)
        await services.store.clear(event.user_id, event.chat_id)
        await services.reply(event, f"處理您上傳的 {kind} 檔案時發生錯誤，請檢查並確認檔案是否正確。")
        return

    if not shifts:
        await services.store.clear(event.user_id, event.chat_id)
        await services.reply(event, f"在您上傳的班表檔案中，找不到「{person_name}」的任何班次，或格式不正確。")
        return

    summary = "\n".join(_shift_line(services, shift, person_name) for shift in shifts)
    await services.store.set(
        event.user_id,
        event.chat_id,
        AwaitingBulkConfirmation(events=shifts, person_name=person_name),
    )

    choices = await services.calendar.list_eligible_calendars()
    if len(choices) <= 1:
        calendar_id = choices[0].id if choices else "primary"
        prompt = ButtonsMessage(
            title=f"為 {person_name} 批次新增活動",
            text=f"您要將這 {len(shifts)} 個活動一次全部新增至您的 Google 日曆嗎？",
            actions=(
                PostbackAction("全部新增", encode_postback("createAllShifts", calendarId=calendar_id)),
                cancel_action(),
            ),
        )
    else:
        actions = [
            PostbackAction(choice.summary[:20], encode_postback("createAllShifts", calendarId=choice.id))
            for choice in choices[:MAX_CALENDAR_ACTIONS]
        ]
        actions.append(PostbackAction("全部日曆", encode_postback("createAllShifts", calendarId=ALL_CALENDARS)))
        prompt = ButtonsMessage(
            title=f"為 {person_name} 批次新增活動",
            text=f"偵測到您有多個日曆，請問您要將這 {len(shifts)} 個活動新增至哪個日曆？",
            actions=tuple(actions) + (cancel_action(),),
        )

    await services.reply(
        event,
        f"已為「{person_name}」解析出以下 {len(shifts)} 個班次，請確認：\n\n{summary}",
        prompt,
    )


async def handle_bulk_confirmation(
    services: ServiceContainer,
    event: InboundEvent,
    state: ConversationState | None,
    params: dict[str, str],
) -> None:
    if not isinstance(state, AwaitingBulkConfirmation) or not state.events:
        await services.reply(event, "抱歉，您的批次新增請求已逾時或無效，請重新上傳檔案。")
        return
    destination = params.get("calendarId")
    if not destination:
        await services.reply(event, MISSING_CALENDAR)
        return

    try:
        await services.reply(event, f"收到！正在為您處理 {len(state.events)} 個活動...")
        summary = await services.batch_engine.run(state.events, destination)
        await services.push(event.chat_id, summary.to_message())
    except Exception:
        logger.exception("Error during batch import to %s", destination)
        await services.push(event.chat_id, "批次新增過程中發生未預期的錯誤。")
    finally:
        await services.store.clear(event.user_id, event.chat_id)

