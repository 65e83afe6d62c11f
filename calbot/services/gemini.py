from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

import google.generativeai as genai

from calbot.config.settings import Settings, get_settings
from calbot.schemas.calendar import CandidateEvent, EventChanges, parse_datetime
from calbot.schemas.intent import Intent, IntentType
from calbot.services.async_executor import run_in_executor
from calbot.services.errors import ClassifierError

logger = logging.getLogger(__name__)

ALL_DAY_MARKERS = ("全天", "整天")

INTENT_PROMPT = (
    "You are a calendar assistant for a Traditional Chinese speaking user. "
    "Classify the user's message and extract fields. Answer with ONE JSON object only, no markdown. "
    "Timezone is {timezone}; every timestamp must be ISO 8601 with an explicit offset. "
    "Today is {today} ({weekday}), current time {now}. Resolve relative dates against it.\n"
    "Types:\n"
    "- create_event: the message describes an event with a time. Fill `event`. "
    "If there is a time but no clear title, set event.title to null. "
    "Recurrence uses RRULE syntax (e.g. RRULE:FREQ=WEEKLY;BYDAY=MO); do NOT add COUNT or UNTIL unless the user said so. "
    "All-day events use local midnight for start and the following midnight for end.\n"
    "- query_event: the user asks what is scheduled. Fill timeMin/timeMax and an optional keyword `query`.\n"
    "- update_event: the user wants to change an event. Fill timeMin/timeMax/query to find it and `changes` with new values.\n"
    "- delete_event: the user wants to cancel/remove an event. Fill timeMin/timeMax/query.\n"
    "- create_schedule: the user asks to build a work schedule (班表) for a person. Fill personName.\n"
    "- incomplete: a title without any time.\n"
    "- unknown: anything else.\n"
    "JSON shape: {schema}"
)

INTENT_SCHEMA = {
    "type": "create_event | query_event | update_event | delete_event | create_schedule | incomplete | unknown",
    "event": {
        "title": "string or null",
        "start": "YYYY-MM-DDTHH:mm:ss+08:00",
        "end": "YYYY-MM-DDTHH:mm:ss+08:00 or null",
        "allDay": "bool",
        "recurrence": "RRULE:... or null",
        "reminder": "minutes, default 30",
        "location": "string or null",
        "description": "string or null",
    },
    "timeMin": "ISO timestamp or null",
    "timeMax": "ISO timestamp or null",
    "query": "keyword or empty string",
    "changes": {
        "title": "string or null",
        "start": "ISO timestamp or null",
        "end": "ISO timestamp or null",
        "location": "string or null",
        "description": "string or null",
    },
    "personName": "string or null",
}

RECURRENCE_END_PROMPT = (
    "You are an expert in the iCalendar RRULE format. Append the user's end condition to an existing rule.\n"
    "Base RRULE: {rrule}\nEvent start: {start}\nToday: {today}\n"
    "Convert the request into COUNT=N or UNTIL=YYYYMMDDTHHMMSSZ and append it to the base rule. "
    "If the user wants the event to repeat forever (永久重複, 不用設定, 一直持續) return the base rule unchanged. "
    'Answer with JSON only: {{"updatedRrule": "RRULE:..."}}. '
    'If the request is unclear answer {{"error": "Cannot parse end condition."}}'
)

CHANGES_PROMPT = (
    "The user wants to modify an existing calendar event. Today is {today}, timezone {timezone}. "
    "Extract only the fields the user wants to change. Timestamps are ISO 8601 with offset. "
    'Answer with JSON only: {{"title": ..., "start": ..., "end": ..., "location": ..., "description": ...}}; '
    "omit or null fields that do not change. "
    'If nothing can be understood answer {{"error": "Cannot parse changes."}}'
)


class GeminiService:
    """Intent classification and small parsing tasks backed by Gemini."""

    def __init__(self, settings: Optional[Settings] = None, model: Any | None = None) -> None:
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.timezone)
        if model is not None:
            self.model = model
            return
        if not self.settings.gemini_api_key:
            raise RuntimeError("Gemini API key is missing")
        genai.configure(api_key=self.settings.gemini_api_key)
        self.model = genai.GenerativeModel(
            self.settings.gemini_model,
            generation_config={"temperature": 0, "response_mime_type": "application/json"},
        )

    async def classify(self, text: str) -> Intent:
        now = datetime.now(self.tz)
        prompt = INTENT_PROMPT.format(
            timezone=self.settings.timezone,
            today=now.date().isoformat(),
            weekday=now.strftime("%A"),
            now=now.strftime("%H:%M"),
            schema=json.dumps(INTENT_SCHEMA, ensure_ascii=False),
        )
        payload = await self._ask(prompt, text)
        if payload is None:
            return Intent.unknown(text)
        return self.intent_from_payload(payload, text)

    async def parse_recurrence_end_condition(
        self, text: str, rrule: str, start: datetime | None
    ) -> str | None:
        now = datetime.now(self.tz)
        prompt = RECURRENCE_END_PROMPT.format(
            rrule=rrule,
            start=start.isoformat() if start else "unknown",
            today=now.date().isoformat(),
        )
        payload = await self._ask(prompt, text)
        if not payload or "error" in payload:
            return None
        updated = payload.get("updatedRrule")
        if not isinstance(updated, str) or not updated.startswith("RRULE:"):
            return None
        return updated

    async def parse_event_changes(self, text: str) -> EventChanges:
        now = datetime.now(self.tz)
        prompt = CHANGES_PROMPT.format(today=now.date().isoformat(), timezone=self.settings.timezone)
        payload = await self._ask(prompt, text)
        if not payload or "error" in payload:
            return EventChanges()
        return EventChanges.from_dict(payload, self.tz)

    def intent_from_payload(self, payload: dict[str, Any], text: str) -> Intent:
        try:
            intent_type = IntentType(payload.get("type"))
        except ValueError:
            logger.warning("Classifier returned unsupported type %r", payload.get("type"))
            return Intent.unknown(text)

        event = None
        if intent_type is IntentType.CREATE_EVENT and isinstance(payload.get("event"), dict):
            event = self._normalise_all_day(CandidateEvent.from_dict(payload["event"], self.tz), text)

        return Intent(
            type=intent_type,
            original_text=text,
            event=event,
            time_min=parse_datetime(payload.get("timeMin"), self.tz),
            time_max=parse_datetime(payload.get("timeMax"), self.tz),
            query=(payload.get("query") or "").strip(),
            changes=EventChanges.from_dict(payload.get("changes"), self.tz),
            person_name=(payload.get("personName") or "").strip() or None,
        )

    def _normalise_all_day(self, event: CandidateEvent, text: str) -> CandidateEvent:
        if event.start is None or not any(marker in text for marker in ALL_DAY_MARKERS):
            return event
        local = event.start.astimezone(self.tz)
        start = datetime(local.year, local.month, local.day, tzinfo=self.tz)
        return event.merge(all_day=True, start=start, end=start + timedelta(days=1))

    async def _ask(self, prompt: str, text: str) -> dict[str, Any] | None:
        full_prompt = f'{prompt}\n\n# User Input:\n"{text}"'
        try:
            response = await run_in_executor(self.model.generate_content, full_prompt)
            raw_text = response.text or ""
        except Exception as exc:
            logger.exception("Gemini request failed")
            raise ClassifierError("Gemini request failed") from exc
        logger.debug("Gemini raw response: %s", raw_text)
        payload = self._extract_json(raw_text)
        if payload is None:
            logger.warning("Gemini returned a non-JSON answer, treating it as unknown")
        return payload

    @staticmethod
    def _extract_json(raw_text: str) -> dict[str, Any] | None:
        raw_text = raw_text.strip()
        if not raw_text:
            return None
        start = raw_text.find("{")
        end = raw_text.rfind("}")
        if start == -1 or end == -1:
            return None
        snippet = raw_text[start : end + 1]
        try:
            data = json.loads(snippet)
        except json.JSONDecodeError:
            logger.exception("Could not parse Gemini JSON: %s", snippet)
            return None
        return data if isinstance(data, dict) else None
