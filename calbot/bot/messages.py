"""Channel-neutral outbound messages; channels decide how to render them."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Union
from urllib.parse import parse_qsl, urlencode

from calbot.schemas.calendar import CalendarEvent


@dataclass(frozen=True, slots=True)
class PostbackAction:
    label: str
    data: str


@dataclass(frozen=True, slots=True)
class LinkAction:
    label: str
    uri: str


Action = Union[PostbackAction, LinkAction]


@dataclass(frozen=True, slots=True)
class TextMessage:
    text: str


@dataclass(frozen=True, slots=True)
class ButtonsMessage:
    title: str
    text: str
    actions: tuple[Action, ...] = ()


@dataclass(frozen=True, slots=True)
class EventCard:
    header: str
    title: str
    time_text: str
    location: str | None = None
    description: str | None = None
    actions: tuple[Action, ...] = ()


@dataclass(frozen=True, slots=True)
class CarouselMessage:
    alt_text: str
    cards: tuple[EventCard, ...] = field(default_factory=tuple)


Message = Union[TextMessage, ButtonsMessage, EventCard, CarouselMessage]


def encode_postback(action: str, **params: str) -> str:
    payload = {"action": action}
    payload.update({key: value for key, value in params.items() if value is not None})
    return urlencode(payload)


def decode_postback(data: str) -> dict[str, str]:
    return dict(parse_qsl(data or "", keep_blank_values=True))


def cancel_action(label: str = "取消") -> PostbackAction:
    return PostbackAction(label, encode_postback("cancel"))


def _date_text(value: datetime) -> str:
    return value.strftime("%Y/%m/%d")


def format_event_time(
    start: datetime | None,
    end: datetime | None,
    all_day: bool,
    tz: tzinfo,
) -> str:
    if start is None or end is None:
        return ""
    if all_day:
        # All-day ends are exclusive; show the last covered day.
        last_day = end - timedelta(days=1) if end.date() != start.date() else end
        if last_day.date() <= start.date():
            return f"{_date_text(start)} (全天)"
        return f"{_date_text(start)} 至 {_date_text(last_day)}"

    start, end = start.astimezone(tz), end.astimezone(tz)
    if start.date() == end.date():
        return f"{_date_text(start)} {start:%H:%M} - {end:%H:%M}"
    return f"{_date_text(start)} {start:%H:%M} - {_date_text(end)} {end:%H:%M}"


def event_card(event: CalendarEvent, header: str, tz: tzinfo) -> EventCard:
    """Card for an existing event with modify/delete buttons and a link when known."""
    actions: list[Action] = []
    if event.id and event.calendar_id:
        actions.append(
            PostbackAction(
                "修改活動",
                encode_postback("modify", eventId=event.id, calendarId=event.calendar_id),
            )
        )
        actions.append(
            PostbackAction(
                "刪除活動",
                encode_postback("delete", eventId=event.id, calendarId=event.calendar_id),
            )
        )
    if event.html_link:
        actions.append(LinkAction("在日曆中查看", event.html_link))
    return EventCard(
        header=header[:100],
        title=event.summary,
        time_text=format_event_time(event.start_at(tz), event.end_at(tz), event.is_all_day, tz),
        location=event.location,
        description=event.description,
        actions=tuple(actions),
    )
