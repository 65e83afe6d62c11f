from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from calbot.bot.context import InboundEvent, InboundEventType
from calbot.bot.handlers import Orchestrator
from calbot.bot.messages import ButtonsMessage, CarouselMessage, EventCard, LinkAction, decode_postback
from calbot.bot.replies import CANCELLED, EXPIRED, GENERIC_FAILURE, WELCOME
from calbot.schemas.calendar import CalendarChoice, CandidateEvent, EventChanges
from calbot.schemas.intent import Intent, IntentType
from calbot.schemas.state import (
    AwaitingBulkConfirmation,
    AwaitingCalendarChoice,
    AwaitingConflictConfirmation,
    AwaitingCsvUpload,
    AwaitingDeleteConfirmation,
    AwaitingEventTitle,
    AwaitingModificationDetails,
    AwaitingRecurrenceEndCondition,
)
from calbot.services.errors import CalendarBackendError, ClassifierError

from conftest import CHAT, TZ, USER, at, file_event, postback_event, text_event

pytestmark = [pytest.mark.unit]


def create_intent(text, **event_fields):
    return Intent(type=IntentType.CREATE_EVENT, original_text=text, event=CandidateEvent(**event_fields))


def add_calendar(calendar, calendar_id, name):
    calendar.choices.append(CalendarChoice(calendar_id, name))
    calendar.items[calendar_id] = []


# --- create ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_time_only_message_asks_for_title_then_creates(orchestrator, classifier, calendar, channel, store):
    """明天下午三點 -> title prompt -> 跟客戶開會 creates the merged event and clears state."""
    classifier.classify.return_value = create_intent("明天下午三點", start=at(6, 15))

    await orchestrator.handle_event(text_event("明天下午三點"))

    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingEventTitle)
    assert channel.reply_texts == ["好的，請問「2025/10/06 15:00」要安排什麼活動呢？"]

    await orchestrator.handle_event(text_event("跟客戶開會"))

    classifier.classify.assert_awaited_once()
    assert len(calendar.create_calls) == 1
    created, calendar_id = calendar.create_calls[0]
    assert calendar_id == "primary"
    assert created.title == "跟客戶開會"
    assert created.start == at(6, 15)
    assert created.end == at(6, 16)
    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts[-1] == "✅ 已新增至「我的日曆」\n跟客戶開會"


@pytest.mark.asyncio
async def test_create_without_start_is_ignored(orchestrator, classifier, calendar, channel, store):
    """A create intent with no start time produces no event and no reply."""
    classifier.classify.return_value = create_intent("開會", title="開會")

    await orchestrator.handle_event(text_event("開會"))

    assert calendar.create_calls == []
    assert channel.replies == []
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_duplicate_create_is_refused_with_link(orchestrator, classifier, calendar, channel):
    """Creating an identical event replies with a link to the existing one and writes nothing."""
    calendar.add("primary", "Team Sync", at(6, 14), at(6, 15))
    classifier.classify.return_value = create_intent("Team Sync", title="Team Sync", start=at(6, 14), end=at(6, 15))

    await orchestrator.handle_event(text_event("明天兩點 Team Sync"))

    assert calendar.create_calls == []
    reply = channel.last_reply[0]
    assert isinstance(reply, ButtonsMessage)
    assert reply.title == "🔍 活動已存在"
    assert reply.actions == (LinkAction("點擊查看", "https://calendar.example/evt1"),)


@pytest.mark.asyncio
async def test_conflict_then_force_create(orchestrator, classifier, calendar, channel, store):
    """An overlap asks for confirmation; confirming creates the event and clears state."""
    calendar.add("primary", "Design Review", at(6, 15), at(6, 16))
    classifier.classify.return_value = create_intent("Team Sync", title="Team Sync", start=at(6, 15, 30))

    await orchestrator.handle_event(text_event("明天三點半 Team Sync"))

    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingConflictConfirmation)
    assert state.calendar_id == "primary"
    assert channel.last_reply[0].title == "⚠️ 時間衝突"
    assert calendar.create_calls == []

    await orchestrator.handle_event(postback_event("action=force_create"))

    assert [event.title for event, _ in calendar.create_calls] == ["Team Sync"]
    assert await store.get(USER, CHAT) is None
    assert isinstance(channel.last_reply[0], EventCard)


@pytest.mark.asyncio
async def test_conflict_then_cancel(orchestrator, classifier, calendar, channel, store):
    """Cancelling a conflict confirmation creates nothing."""
    calendar.add("primary", "Design Review", at(6, 15), at(6, 16))
    classifier.classify.return_value = create_intent("Team Sync", title="Team Sync", start=at(6, 15, 30))

    await orchestrator.handle_event(text_event("明天三點半 Team Sync"))
    await orchestrator.handle_event(postback_event("action=cancel"))

    assert calendar.create_calls == []
    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts[-1] == CANCELLED


@pytest.mark.asyncio
async def test_force_create_without_pending_conflict_is_expired(orchestrator, calendar, channel):
    """A stale confirm button answers with the expiry message."""
    await orchestrator.handle_event(postback_event("action=force_create"))

    assert calendar.create_calls == []
    assert channel.reply_texts == [EXPIRED]


@pytest.mark.asyncio
async def test_several_calendars_ask_for_a_choice(orchestrator, classifier, calendar, channel, store):
    """With more than one eligible calendar the user picks the destination."""
    add_calendar(calendar, "work", "工作")
    classifier.classify.return_value = create_intent("面試", title="面試", start=at(6, 10))

    await orchestrator.handle_event(text_event("明天十點面試"))

    assert isinstance(await store.get(USER, CHAT), AwaitingCalendarChoice)
    prompt = channel.last_reply[0]
    assert [action.label for action in prompt.actions] == ["我的日曆", "工作", "取消"]

    await orchestrator.handle_event(postback_event(prompt.actions[1].data))

    assert calendar.create_calls[0][1] == "work"
    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts[-1] == "✅ 已新增至「工作」\n面試"


@pytest.mark.asyncio
async def test_open_recurrence_asks_for_end_condition(orchestrator, classifier, calendar, store):
    """A weekly rule without COUNT or UNTIL is completed before creation."""
    classifier.classify.return_value = create_intent(
        "每週一站立會議", title="站立會議", start=at(6, 9), recurrence="RRULE:FREQ=WEEKLY;BYDAY=MO"
    )
    classifier.parse_recurrence_end_condition.return_value = "RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=10"

    await orchestrator.handle_event(text_event("每週一早上9點站立會議"))
    assert isinstance(await store.get(USER, CHAT), AwaitingRecurrenceEndCondition)

    await orchestrator.handle_event(text_event("重複10次"))

    assert calendar.create_calls[0][0].recurrence == "RRULE:FREQ=WEEKLY;BYDAY=MO;COUNT=10"
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_forever_recurrence_is_created_without_asking_again(orchestrator, classifier, calendar, store):
    """Keeping the open rule on purpose still creates the event."""
    rule = "RRULE:FREQ=WEEKLY;BYDAY=MO"
    classifier.classify.return_value = create_intent("站立會議", title="站立會議", start=at(6, 9), recurrence=rule)
    classifier.parse_recurrence_end_condition.return_value = rule

    await orchestrator.handle_event(text_event("每週一早上9點站立會議"))
    await orchestrator.handle_event(text_event("永久重複"))

    assert calendar.create_calls[0][0].recurrence == rule
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_unparseable_recurrence_answer_keeps_state(orchestrator, classifier, calendar, channel, store):
    """An answer that cannot be turned into an end condition re-prompts."""
    classifier.classify.return_value = create_intent(
        "站立會議", title="站立會議", start=at(6, 9), recurrence="RRULE:FREQ=DAILY"
    )

    await orchestrator.handle_event(text_event("每天站立會議"))
    await orchestrator.handle_event(text_event("嗯"))

    assert calendar.create_calls == []
    assert isinstance(await store.get(USER, CHAT), AwaitingRecurrenceEndCondition)
    assert channel.reply_texts[-1].startswith("抱歉，我不太理解您的意思")


@pytest.mark.asyncio
async def test_unparseable_recurrence_answer_refreshes_the_timeout(orchestrator, classifier, calendar, store, clock):
    """A re-prompt restarts the inactivity window, so a later answer still completes the event."""
    classifier.classify.return_value = create_intent(
        "站立會議", title="站立會議", start=at(6, 9), recurrence="RRULE:FREQ=DAILY"
    )
    await orchestrator.handle_event(text_event("每天站立會議"))

    clock.advance(500)
    await orchestrator.handle_event(text_event("嗯"))
    clock.advance(300)
    classifier.parse_recurrence_end_condition.return_value = "RRULE:FREQ=DAILY;COUNT=5"
    await orchestrator.handle_event(text_event("重複5次"))

    classifier.classify.assert_awaited_once()
    assert calendar.create_calls[0][0].recurrence == "RRULE:FREQ=DAILY;COUNT=5"
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_chosen_calendar_is_checked_for_conflicts(orchestrator, classifier, calendar, channel, store):
    """Picking a calendar whose events overlap the candidate asks for confirmation instead of creating."""
    add_calendar(calendar, "work", "工作")
    calendar.add("work", "週會", at(6, 10), at(6, 11))
    classifier.classify.return_value = create_intent("面試", title="面試", start=at(6, 10, 30))

    await orchestrator.handle_event(text_event("明天十點半面試"))
    prompt = channel.last_reply[0]
    await orchestrator.handle_event(postback_event(prompt.actions[1].data))

    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingConflictConfirmation)
    assert state.calendar_id == "work"
    assert calendar.create_calls == []
    assert channel.last_reply[0].title == "⚠️ 時間衝突"


# --- query -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_query_lists_events_from_all_calendars(orchestrator, classifier, calendar, channel):
    """Results from every calendar are merged in start order with calendar headers."""
    add_calendar(calendar, "work", "工作")
    calendar.add("work", "週會", at(6, 9), at(6, 10))
    calendar.add("primary", "晨跑", at(6, 7), at(6, 8))
    classifier.classify.return_value = Intent(type=IntentType.QUERY_EVENT, original_text="明天有什麼事")

    await orchestrator.handle_event(text_event("明天有什麼事"))

    text, carousel = channel.last_reply
    assert text.text == "為您找到 2 個活動："
    assert isinstance(carousel, CarouselMessage)
    assert [(card.header, card.title) for card in carousel.cards] == [("日曆：我的日曆", "晨跑"), ("日曆：工作", "週會")]


@pytest.mark.asyncio
async def test_query_warns_when_a_calendar_fails(orchestrator, classifier, calendar, channel):
    """One failing calendar still returns the others with a warning."""
    add_calendar(calendar, "work", "工作")
    calendar.failing_search_calendars = {"work"}
    calendar.add("primary", "晨跑", at(6, 7), at(6, 8))
    classifier.classify.return_value = Intent(type=IntentType.QUERY_EVENT, original_text="明天有什麼事")

    await orchestrator.handle_event(text_event("明天有什麼事"))

    assert "部分日曆暫時無法查詢" in channel.reply_texts[0]
    assert channel.reply_texts[1] == "日曆：我的日曆\n晨跑"


@pytest.mark.asyncio
async def test_query_fails_when_every_calendar_fails(orchestrator, classifier, calendar, channel):
    """If no calendar answers the user gets the generic failure."""
    calendar.failing_search_calendars = {"primary"}
    classifier.classify.return_value = Intent(type=IntentType.QUERY_EVENT, original_text="明天有什麼事")

    await orchestrator.handle_event(text_event("明天有什麼事"))

    assert channel.reply_texts == [GENERIC_FAILURE]


@pytest.mark.asyncio
async def test_empty_query_result(orchestrator, classifier, channel):
    """A keyword search without hits says so."""
    classifier.classify.return_value = Intent(type=IntentType.QUERY_EVENT, original_text="面試", query="面試")

    await orchestrator.handle_event(text_event("我什麼時候要面試"))

    assert channel.reply_texts == ["抱歉，找不到與「面試」相關的未來活動。"]


@pytest.mark.asyncio
async def test_query_reports_how_many_results_are_shown(orchestrator, classifier, calendar, channel):
    """When the merged results exceed one page the reply says only the first ten are shown."""
    add_calendar(calendar, "work", "工作")
    for hour in range(7, 14):
        calendar.add("primary", f"任務{hour}", at(6, hour), at(6, hour, 30))
    for hour in range(14, 20):
        calendar.add("work", f"會議{hour}", at(6, hour), at(6, hour, 30))
    classifier.classify.return_value = Intent(type=IntentType.QUERY_EVENT, original_text="明天有什麼事")

    await orchestrator.handle_event(text_event("明天有什麼事"))

    text, carousel = channel.last_reply
    assert text.text.startswith("為您找到 13 個活動，顯示前 10 個：")
    assert "還有更多結果" in text.text
    assert len(carousel.cards) == 10
    assert carousel.alt_text == "顯示 10 個活動"


# --- update ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_with_two_matches_never_auto_applies(orchestrator, classifier, calendar, channel, store):
    """Two matching events require an explicit pick before any change is made."""
    first = calendar.add("primary", "會議", at(6, 15), at(6, 16))
    calendar.add("primary", "會議", at(7, 15), at(7, 16))
    classifier.classify.return_value = Intent(
        type=IntentType.UPDATE_EVENT,
        original_text="把會議改成檢討會",
        query="會議",
        changes=EventChanges(title="檢討會"),
    )

    await orchestrator.handle_event(text_event("把會議改成檢討會"))

    assert [item["summary"] for item in calendar.items["primary"]] == ["會議", "會議"]
    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingModificationDetails)
    assert not state.is_resolved
    carousel = channel.last_reply[1]
    assert len(carousel.cards) == 2

    await orchestrator.handle_event(text_event("改成檢討會"))

    classifier.parse_event_changes.assert_not_awaited()
    assert channel.reply_texts[-1].startswith("請先從上方列表點選")

    card = carousel.cards[0]
    modify = decode_postback(card.actions[0].data)
    assert modify == {"action": "modify", "eventId": first, "calendarId": "primary"}

    await orchestrator.handle_event(postback_event(card.actions[0].data))
    classifier.parse_event_changes.return_value = EventChanges(title="檢討會")
    await orchestrator.handle_event(text_event("標題改成檢討會"))

    assert [item["summary"] for item in calendar.items["primary"]] == ["檢討會", "會議"]
    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts[-1] == "✅ 活動已更新\n檢討會"


@pytest.mark.asyncio
async def test_update_with_single_match_and_changes_applies(orchestrator, classifier, calendar, channel):
    """One match plus understood changes is patched straight away."""
    calendar.add("primary", "會議", at(6, 15), at(6, 16))
    classifier.classify.return_value = Intent(
        type=IntentType.UPDATE_EVENT,
        original_text="會議改到四點",
        query="會議",
        changes=EventChanges(start=at(6, 16), end=at(6, 17)),
    )

    await orchestrator.handle_event(text_event("會議改到四點"))

    updated = calendar.events_in("primary")[0]
    assert updated.start_at(TZ) == at(6, 16)
    assert updated.end_at(TZ) == at(6, 17)


@pytest.mark.asyncio
async def test_update_with_single_match_without_changes_asks_what_to_change(
    orchestrator, classifier, calendar, channel, store
):
    """One match but no changes pre-selects the event and asks for details."""
    event_id = calendar.add("primary", "會議", at(6, 15), at(6, 16))
    classifier.classify.return_value = Intent(type=IntentType.UPDATE_EVENT, original_text="修改會議", query="會議")

    await orchestrator.handle_event(text_event("修改會議"))

    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingModificationDetails)
    assert (state.event_id, state.calendar_id) == (event_id, "primary")

    classifier.parse_event_changes.return_value = EventChanges()
    await orchestrator.handle_event(text_event("嗯"))

    assert isinstance(await store.get(USER, CHAT), AwaitingModificationDetails)
    assert channel.reply_texts[-1].startswith("抱歉，我不太理解您的修改指令")


@pytest.mark.asyncio
async def test_update_with_a_failed_calendar_asks_before_changing(orchestrator, classifier, calendar, channel, store):
    """A lone visible match is not patched while another calendar could not be searched."""
    add_calendar(calendar, "work", "工作")
    visible = calendar.add("primary", "會議", at(6, 15), at(6, 16))
    calendar.add("work", "會議", at(6, 15), at(6, 16))
    calendar.failing_search_calendars = {"work"}
    classifier.classify.return_value = Intent(
        type=IntentType.UPDATE_EVENT,
        original_text="把會議改成檢討會",
        query="會議",
        changes=EventChanges(title="檢討會"),
    )

    await orchestrator.handle_event(text_event("把會議改成檢討會"))

    assert [item["summary"] for item in calendar.items["primary"]] == ["會議"]
    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingModificationDetails)
    assert (state.event_id, state.calendar_id) == (visible, "primary")
    assert "部分日曆暫時無法查詢" in channel.reply_texts[-1]


@pytest.mark.asyncio
async def test_update_not_found_mentions_failed_calendar(orchestrator, classifier, calendar, channel):
    """An empty result with a failed calendar carries the incomplete-results warning."""
    add_calendar(calendar, "work", "工作")
    calendar.failing_search_calendars = {"work"}
    classifier.classify.return_value = Intent(type=IntentType.UPDATE_EVENT, original_text="改會議", query="會議")

    await orchestrator.handle_event(text_event("改會議"))

    assert channel.reply_texts == ["抱歉，找不到您想修改的活動。\n\n⚠️ 部分日曆暫時無法查詢，結果可能不完整。"]


# --- delete ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_single_match_after_confirmation(orchestrator, classifier, calendar, channel, store):
    """A single match is deleted only after the confirm button."""
    calendar.add("primary", "看牙醫", at(6, 10), at(6, 11))
    classifier.classify.return_value = Intent(type=IntentType.DELETE_EVENT, original_text="取消看牙醫", query="牙醫")

    await orchestrator.handle_event(text_event("取消明天看牙醫"))

    assert isinstance(await store.get(USER, CHAT), AwaitingDeleteConfirmation)
    assert channel.last_reply[0].title == "確認刪除活動"
    assert len(calendar.items["primary"]) == 1

    await orchestrator.handle_event(postback_event("action=confirm_delete"))

    assert calendar.items["primary"] == []
    assert channel.reply_texts[-1] == "活動已成功刪除。"
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_delete_with_two_matches_never_deletes(orchestrator, classifier, calendar, channel, store):
    """Two matches point the user at the query buttons instead of deleting."""
    calendar.add("primary", "會議", at(6, 15), at(6, 16))
    calendar.add("primary", "會議", at(7, 15), at(7, 16))
    classifier.classify.return_value = Intent(type=IntentType.DELETE_EVENT, original_text="刪除會議", query="會議")

    await orchestrator.handle_event(text_event("刪除會議"))

    assert len(calendar.items["primary"]) == 2
    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts[-1].startswith("我找到了多個符合條件的活動")


@pytest.mark.asyncio
async def test_delete_button_asks_for_confirmation_with_calendar_name(orchestrator, calendar, channel, store):
    """The card's delete button names the calendar in the confirmation."""
    event_id = calendar.add("primary", "看牙醫", at(6, 10), at(6, 11))

    await orchestrator.handle_event(postback_event(f"action=delete&eventId={event_id}&calendarId=primary"))

    assert isinstance(await store.get(USER, CHAT), AwaitingDeleteConfirmation)
    assert "從「我的日曆」日曆中刪除「看牙醫」" in channel.last_reply[0].text


@pytest.mark.asyncio
async def test_confirm_delete_without_state_is_expired(orchestrator, calendar, channel):
    """A confirm button outside the delete step deletes nothing."""
    calendar.add("primary", "看牙醫", at(6, 10), at(6, 11))

    await orchestrator.handle_event(postback_event("action=confirm_delete"))

    assert len(calendar.items["primary"]) == 1
    assert channel.reply_texts == ["抱歉，您的刪除請求已逾時或無效，請重新操作。"]


@pytest.mark.asyncio
async def test_delete_with_a_failed_calendar_warns_before_confirming(orchestrator, classifier, calendar, channel, store):
    """The delete confirmation says other calendars could not be searched."""
    add_calendar(calendar, "work", "工作")
    calendar.add("primary", "會議", at(6, 15), at(6, 16))
    calendar.failing_search_calendars = {"work"}
    classifier.classify.return_value = Intent(type=IntentType.DELETE_EVENT, original_text="取消會議", query="會議")

    await orchestrator.handle_event(text_event("刪除明天的會議"))

    assert isinstance(await store.get(USER, CHAT), AwaitingDeleteConfirmation)
    assert len(calendar.items["primary"]) == 1
    assert channel.reply_texts[-1] == "⚠️ 部分日曆暫時無法查詢，結果可能不完整。"


# --- shift schedule ----------------------------------------------------------

SCHEDULE_CSV = "姓名,日期,時間,班別\n小明,10/6,0900-1700,\n小明,10/7,休,\n小華,10/6,1400-2200,\n小明,10/8,,晚班\n"


@pytest.mark.asyncio
async def test_schedule_upload_and_bulk_import(orchestrator, calendar, channel, store):
    """Trigger phrase, CSV upload and confirmation import every shift and clear state."""
    channel.files["f1"] = SCHEDULE_CSV.encode("utf-8")

    await orchestrator.handle_event(text_event("幫小明建立班表"))
    assert isinstance(await store.get(USER, CHAT), AwaitingCsvUpload)

    await orchestrator.handle_event(file_event("f1", "班表.csv"))

    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingBulkConfirmation)
    assert [event.title for event in state.events] == ["小明 早班", "小明 晚班"]
    summary_text, prompt = channel.last_reply
    assert "解析出以下 2 個班次" in summary_text.text
    assert prompt.actions[0].label == "全部新增"

    await orchestrator.handle_event(postback_event(prompt.actions[0].data))

    assert len(calendar.create_calls) == 2
    assert channel.reply_texts[-1] == "收到！正在為您處理 2 個活動..."
    assert "新增成功 2 件" in channel.push_texts[-1]
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_bulk_import_with_failure_still_clears_state(orchestrator, calendar, channel, store):
    """Three shifts where the second create fails report 2/0/1 and clear state."""
    shifts = [CandidateEvent(title="小明 早班", start=at(day, 9), end=at(day, 17)) for day in (6, 7, 8)]
    await store.set(USER, CHAT, AwaitingBulkConfirmation(events=shifts, person_name="小明"))
    calendar.failing_create_calls = {2}

    await orchestrator.handle_event(postback_event("action=createAllShifts&calendarId=primary"))

    assert channel.push_texts[-1] == "批次匯入完成：\n- 新增成功 2 件\n- 已存在 0 件\n- 失敗 1 件"
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_bulk_import_crash_is_reported_and_state_cleared(orchestrator, calendar, channel, store):
    """An unexpected engine error is pushed to the chat and state is still cleared."""
    shifts = [CandidateEvent(title="小明 早班", start=at(6, 9), end=at(6, 17))]
    await store.set(USER, CHAT, AwaitingBulkConfirmation(events=shifts, person_name="小明"))
    calendar.list_failure = CalendarBackendError("listing failed")

    await orchestrator.handle_event(postback_event("action=createAllShifts&calendarId=all"))

    assert channel.push_texts[-1] == "批次新增過程中發生未預期的錯誤。"
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_bulk_import_clears_state_when_acknowledgement_fails(orchestrator, calendar, channel, store):
    """A channel failure on the 'working on it' reply still releases the pending import."""
    shifts = [CandidateEvent(title="小明 早班", start=at(6, 9), end=at(6, 17))]
    await store.set(USER, CHAT, AwaitingBulkConfirmation(events=shifts, person_name="小明"))
    channel.reply = AsyncMock(side_effect=RuntimeError("send failed"))

    await orchestrator.handle_event(postback_event("action=createAllShifts&calendarId=primary"))

    assert calendar.create_calls == []
    assert channel.push_texts == ["批次新增過程中發生未預期的錯誤。"]
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_file_without_schedule_request_is_explained(orchestrator, channel):
    """A file outside the upload step is not parsed."""
    channel.files["f1"] = SCHEDULE_CSV.encode("utf-8")

    await orchestrator.handle_event(file_event("f1", "班表.csv"))

    assert channel.reply_texts[0].startswith("感謝您傳送檔案")


@pytest.mark.asyncio
async def test_wrong_file_type_keeps_waiting_for_upload(orchestrator, channel, store):
    """A PDF is rejected and the upload step stays open."""
    await orchestrator.handle_event(text_event("幫「小明」建立班表"))
    await orchestrator.handle_event(file_event("f1", "班表.pdf"))

    assert channel.reply_texts[-1] == "檔案格式錯誤，請上傳 .csv 或 .xlsx 格式的班表檔案。"
    state = await store.get(USER, CHAT)
    assert isinstance(state, AwaitingCsvUpload)
    assert state.person_name == "小明"


# --- orchestration -----------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_always_clears_and_acknowledges(orchestrator, channel, store):
    """取消 clears any pending step and is acknowledged even with nothing pending."""
    await store.set(USER, CHAT, AwaitingCsvUpload(person_name="小明"))

    await orchestrator.handle_event(text_event("取消"))
    await orchestrator.handle_event(text_event("cancel"))

    assert await store.get(USER, CHAT) is None
    assert channel.reply_texts == [CANCELLED, CANCELLED]


@pytest.mark.asyncio
async def test_help_keyword_replies_with_welcome(orchestrator, classifier, channel):
    """Help keywords skip classification."""
    await orchestrator.handle_event(text_event("你會什麼"))

    assert channel.reply_texts == [WELCOME]
    classifier.classify.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_whitelisted_user_is_ignored(orchestrator, classifier, channel):
    """Events from users outside the whitelist produce nothing."""
    await orchestrator.handle_event(text_event("明天有什麼事", user="U9"))

    classifier.classify.assert_not_awaited()
    assert channel.replies == []


@pytest.mark.asyncio
async def test_empty_whitelist_rejects_everyone(services, classifier, channel):
    """No configured users means nobody is served."""
    services.settings = replace(services.settings, user_whitelist=())
    orchestrator = Orchestrator(services)

    await orchestrator.handle_event(text_event("help"))

    assert channel.replies == []


@pytest.mark.asyncio
async def test_join_sends_welcome_to_chat(orchestrator, channel):
    """Joining a group pushes the welcome text there."""
    await orchestrator.handle_event(
        InboundEvent(InboundEventType.JOIN, user_id=None, chat_id="G1", reply_token="G1")
    )

    assert [chat for chat, _ in channel.pushes] == ["G1"]
    assert channel.push_texts == [WELCOME]


@pytest.mark.asyncio
async def test_timed_out_step_is_swept_before_routing(orchestrator, classifier, calendar, store, clock):
    """After the conversation timeout a title reply is treated as a new command."""
    classifier.classify.return_value = create_intent("明天下午三點", start=at(6, 15))
    await orchestrator.handle_event(text_event("明天下午三點"))
    classifier.classify.return_value = Intent.unknown("跟客戶開會")

    clock.advance(store.timeout_seconds + 1)
    await orchestrator.handle_event(text_event("跟客戶開會"))

    assert classifier.classify.await_count == 2
    assert classifier.classify.await_args.args == ("跟客戶開會",)
    assert calendar.create_calls == []
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_unknown_intent_gets_no_reply(orchestrator, channel):
    """Chatter the classifier cannot place is left unanswered."""
    await orchestrator.handle_event(text_event("今天天氣真好"))

    assert channel.replies == []


@pytest.mark.asyncio
async def test_image_points_to_file_upload(orchestrator, channel):
    """Images are not analysed any more."""
    await orchestrator.handle_event(
        InboundEvent(InboundEventType.MESSAGE, user_id=USER, chat_id=CHAT, reply_token=CHAT, is_image=True)
    )

    assert channel.reply_texts[0].startswith("圖片班表功能已暫停")


@pytest.mark.asyncio
async def test_unknown_postback_action(orchestrator, channel):
    """Unrecognised button data gets an error reply."""
    await orchestrator.handle_event(postback_event("action=launch_rockets"))

    assert channel.reply_texts == ["抱歉，發生了未知的錯誤。"]


@pytest.mark.asyncio
async def test_button_without_data_is_expired_and_keeps_state(orchestrator, channel, store):
    """A button whose data is gone asks the user to start over without touching the pending step."""
    await store.set(USER, CHAT, AwaitingCsvUpload(person_name="小明"))

    await orchestrator.handle_event(postback_event(None))

    assert channel.reply_texts == [EXPIRED]
    assert isinstance(await store.get(USER, CHAT), AwaitingCsvUpload)


@pytest.mark.asyncio
async def test_classifier_failure_clears_state_and_apologises(orchestrator, classifier, channel, store):
    """A failed model call resets the conversation with a generic apology."""
    classifier.classify.side_effect = ClassifierError("boom")

    await orchestrator.handle_event(text_event("明天有什麼事"))

    assert channel.reply_texts == [GENERIC_FAILURE]
    assert await store.get(USER, CHAT) is None


@pytest.mark.asyncio
async def test_webhook_processes_every_event_before_reraising(orchestrator, classifier, channel):
    """One failing event does not stop the others; the failure is re-raised afterwards."""

    async def classify(text):
        if text == "boom":
            raise RuntimeError("unexpected")
        return Intent.unknown(text)

    classifier.classify.side_effect = classify

    with pytest.raises(RuntimeError, match="unexpected"):
        await orchestrator.handle_webhook([text_event("boom"), text_event("help", user="U2")])

    assert [chat for chat, _ in channel.replies] == [CHAT]
    assert channel.reply_texts == [WELCOME]


@pytest.mark.asyncio
async def test_per_conversation_lock_is_released(orchestrator):
    """Locks for finished conversations are dropped."""
    await orchestrator.handle_webhook([text_event("help"), text_event("help", user="U2")])

    assert len(orchestrator.locks) == 0
