"""Turns work-schedule spreadsheets into candidate calendar events for one person.

Three layouts are recognised:

* long: the first row is a header with a name column (姓名/名字/員工) and 日期;
  every following row is one shift of one person.
* vertical: the first row is a title, the second row is a header with 日期 and
  班別/班次; the whole sheet belongs to the requested person.
* wide: any other sheet. A row containing the person's name holds the shifts,
  the row above it holds ``m/d`` dates in the same columns.

A shift cell is either a time range in one of the loose notations normalised by
:func:`normalize_time_range` or one of the named shifts in ``NAMED_SHIFTS``.
"""
from __future__ import annotations

import csv
import io
import logging
import re
import unicodedata
from datetime import date, datetime, time, timedelta
from typing import Any, Sequence
from zoneinfo import ZoneInfo

from openpyxl import load_workbook

from calbot.schemas.calendar import CandidateEvent
from calbot.services.errors import ShiftFileError

logger = logging.getLogger(__name__)

NAME_HEADERS = ("姓名", "名字", "員工")
DATE_HEADERS = ("日期",)
TIME_HEADERS = ("時間", "時段")
SHIFT_HEADERS = ("班別", "班次")
DAY_OFF_MARKS = {"休", "假", "0", "-"}
NAMED_SHIFTS = {
    "早班": ("09:00", "17:00"),
    "晚班": ("14:00", "22:00"),
    "早接菜": ("07:00", "15:00"),
}

_CLOCK_RANGE = re.compile(r"^\d{1,2}:\d{2}-\d{1,2}:\d{2}$")

Grid = list[list[Any]]


def normalize_time_range(raw: Any) -> str | None:
    """``"1430-22"`` -> ``"14:30-22:00"``; ``None`` when the value is not a time range."""
    text = re.sub(r"[–—]", "-", str(raw if raw is not None else "")).strip()
    if _CLOCK_RANGE.match(text):
        return text

    digits = re.sub(r"[-\s]", "", text)
    if re.fullmatch(r"\d{7}", digits):
        return f"0{digits[0]}:{digits[1:3]}-{digits[3:5]}:{digits[5:7]}"
    if re.fullmatch(r"\d{8}", digits):
        return f"{digits[0:2]}:{digits[2:4]}-{digits[4:6]}:{digits[6:8]}"

    if "-" not in text:
        return None
    parts = [part.strip() for part in text.split("-")]
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        return None

    def _part(value: str) -> str:
        if len(value) > 2:
            return f"{value[:-2].zfill(2)}:{value[-2:]}"
        return f"{value.zfill(2)}:00"

    return f"{_part(parts[0])}-{_part(parts[1])}"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return unicodedata.normalize("NFC", str(value).strip())


def _find_header(headers: Sequence[str], aliases: Sequence[str]) -> int:
    for alias in aliases:
        if alias in headers:
            return headers.index(alias)
    for alias in aliases:
        for index, header in enumerate(headers):
            if alias in header:
                return index
    return -1


class ShiftFileParser:
    def __init__(self, timezone: str = "Asia/Taipei", today: date | None = None) -> None:
        self.tz = ZoneInfo(timezone)
        self._today = today

    @property
    def today(self) -> date:
        return self._today or datetime.now(self.tz).date()

    def parse_file(self, filename: str, content: bytes, person_name: str) -> list[CandidateEvent]:
        lowered = filename.lower()
        if lowered.endswith(".csv"):
            return self.parse_csv(content, person_name)
        if lowered.endswith(".xlsx"):
            return self.parse_xlsx(content, person_name)
        raise ShiftFileError(f"Unsupported schedule file: {filename}")

    def parse_csv(self, content: bytes | str, person_name: str) -> list[CandidateEvent]:
        try:
            text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
            grid: Grid = [list(row) for row in csv.reader(io.StringIO(text))]
        except (UnicodeDecodeError, csv.Error) as exc:
            logger.error("Failed to read CSV schedule: %s", exc)
            raise ShiftFileError("Failed to process CSV file.") from exc
        return self.parse_grid(grid, person_name)

    def parse_xlsx(self, content: bytes, person_name: str) -> list[CandidateEvent]:
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except Exception as exc:
            logger.error("Failed to open XLSX schedule: %s", exc)
            raise ShiftFileError("Failed to process XLSX file.") from exc
        try:
            if not workbook.worksheets:
                raise ShiftFileError("Invalid file: No sheets found.")
            sheet = workbook.worksheets[0]
            grid = [list(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
        return self.parse_grid(grid, person_name)

    def parse_grid(self, grid: Grid, person_name: str) -> list[CandidateEvent]:
        rows = [row for row in grid if row is not None]
        if not rows:
            return []
        name = unicodedata.normalize("NFC", person_name.strip())
        if self._is_long_format(rows):
            logger.info("Detected long format schedule for %s", name)
            return self._parse_records(rows, name, with_names=True)
        if self._is_vertical_format(rows):
            logger.info("Detected vertical format schedule for %s", name)
            return self._parse_records(rows[1:], name, with_names=False)
        logger.info("Detected wide format schedule for %s", name)
        return self._parse_wide(rows, name)

    @staticmethod
    def _is_long_format(rows: Grid) -> bool:
        headers = [_cell_text(cell) for cell in rows[0]]
        return any(h in NAME_HEADERS for h in headers) and any(h in DATE_HEADERS for h in headers)

    @staticmethod
    def _is_vertical_format(rows: Grid) -> bool:
        if len(rows) < 2:
            return False
        first = rows[0]
        title_row = bool(first) and all(
            _cell_text(first[i]) == "" for i in (1, 2) if i < len(first)
        )
        headers = [_cell_text(cell) for cell in rows[1]]
        has_date = any(h in DATE_HEADERS for h in headers)
        has_shift = any(h in SHIFT_HEADERS for h in headers)
        return title_row and has_date and has_shift

    def _parse_records(self, rows: Grid, name: str, *, with_names: bool) -> list[CandidateEvent]:
        headers = [_cell_text(cell) for cell in rows[0]]
        name_index = _find_header(headers, NAME_HEADERS) if with_names else -1
        date_index = _find_header(headers, DATE_HEADERS)
        time_index = _find_header(headers, TIME_HEADERS)
        shift_index = _find_header(headers, SHIFT_HEADERS)
        if date_index == -1 or (with_names and name_index == -1):
            logger.warning("Schedule headers not found: name=%d date=%d", name_index, date_index)
            return []

        def _at(row: list[Any], index: int) -> Any:
            return row[index] if 0 <= index < len(row) else None

        events: list[CandidateEvent] = []
        for row in rows[1:]:
            if not any(_cell_text(cell) for cell in row):
                continue
            if with_names and _cell_text(_at(row, name_index)) != name:
                continue
            time_value = _cell_text(_at(row, time_index))
            shift_value = _cell_text(_at(row, shift_index))
            if not time_value and not shift_value:
                continue
            day = self._parse_date(_at(row, date_index))
            if day is None:
                continue
            event = self._build_event(name, day, time_value, shift_value)
            if event is not None:
                events.append(event)
        return events

    def _parse_wide(self, rows: Grid, name: str) -> list[CandidateEvent]:
        events: list[CandidateEvent] = []
        for row_index, row in enumerate(rows):
            if row_index == 0 or not any(_cell_text(cell) == name for cell in row):
                continue
            date_row = rows[row_index - 1]
            for col, cell in enumerate(row):
                value = _cell_text(cell)
                if not value or value == name or value in DAY_OFF_MARKS:
                    continue
                date_cell = date_row[col] if col < len(date_row) else None
                if not isinstance(date_cell, (date, datetime)) and "/" not in _cell_text(date_cell):
                    continue
                day = self._parse_date(date_cell)
                if day is None:
                    continue
                event = self._build_event(name, day, value, value)
                if event is not None:
                    events.append(event)
        return events

    def _parse_date(self, value: Any) -> date | None:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        parts = _cell_text(value).split("/")
        try:
            numbers = [int(part) for part in parts]
        except ValueError:
            return None
        today = self.today
        if len(numbers) == 3:
            year, month, day = numbers
        elif len(numbers) == 2:
            month, day = numbers
            # A month earlier than the current one belongs to next year's schedule.
            year = today.year + 1 if month < today.month else today.year
        else:
            return None
        try:
            return date(year, month, day)
        except ValueError:
            return None

    def _build_event(
        self, name: str, day: date, time_value: str, shift_value: str
    ) -> CandidateEvent | None:
        if time_value in DAY_OFF_MARKS:
            return None
        normalized = normalize_time_range(time_value)
        if normalized:
            start_text, end_text = normalized.split("-")
        elif shift_value in NAMED_SHIFTS:
            start_text, end_text = NAMED_SHIFTS[shift_value]
        else:
            return None
        try:
            start_time = time.fromisoformat(start_text.zfill(5))
            end_time = time.fromisoformat(end_text.zfill(5))
        except ValueError:
            logger.warning("Skipping unreadable shift %r on %s", time_value, day)
            return None

        start = datetime.combine(day, start_time, tzinfo=self.tz)
        end = datetime.combine(day, end_time, tzinfo=self.tz)
        if end <= start:
            end += timedelta(days=1)

        if start_time.hour < 9:
            label = "早接菜"
        elif shift_value == "晚班" or start_time.hour >= 12:
            label = "晚班"
        else:
            label = "早班"
        return CandidateEvent(title=f"{name} {label}", start=start, end=end)
