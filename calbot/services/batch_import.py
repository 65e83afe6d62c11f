from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from calbot.schemas.calendar import CandidateEvent
from calbot.services.errors import DuplicateEventError

logger = logging.getLogger(__name__)

ALL_CALENDARS = "all"
BATCH_SIZE = 10
BATCH_DELAY_SECONDS = 0.5


@dataclass(slots=True)
class BatchImportSummary:
    success: int = 0
    duplicate: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.duplicate + self.failure

    def to_message(self) -> str:
        return (
            "批次匯入完成：\n"
            f"- 新增成功 {self.success} 件\n"
            f"- 已存在 {self.duplicate} 件\n"
            f"- 失敗 {self.failure} 件"
        )


class BatchImportEngine:
    """Creates many candidate events in throttled batches and counts the outcomes."""

    def __init__(
        self,
        calendar,
        guard,
        *,
        batch_size: int = BATCH_SIZE,
        delay_seconds: float = BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.calendar = calendar
        self.guard = guard
        self.batch_size = max(1, batch_size)
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    async def expand(self, events: Sequence[CandidateEvent], destination: str) -> list[CandidateEvent]:
        if destination == ALL_CALENDARS:
            choices = await self.calendar.list_eligible_calendars()
            return [
                event.merge(target_calendar_id=choice.id)
                for event in events
                for choice in choices
            ]
        return [event.merge(target_calendar_id=destination) for event in events]

    async def run(self, events: Sequence[CandidateEvent], destination: str) -> BatchImportSummary:
        targets = await self.expand(events, destination)
        summary = BatchImportSummary()
        batches = [targets[i : i + self.batch_size] for i in range(0, len(targets), self.batch_size)]

        for index, batch in enumerate(batches, start=1):
            logger.info("Processing batch: %d / %d", index, len(batches))
            results = await asyncio.gather(
                *(self.guard.create(event, event.target_calendar_id) for event in batch),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, DuplicateEventError):
                    summary.duplicate += 1
                elif isinstance(result, BaseException):
                    summary.failure += 1
                    logger.error("Failed to create bulk event: %s", result)
                else:
                    summary.success += 1
            if index < len(batches):
                await self.sleep(self.delay_seconds)

        logger.info(
            "Batch import finished: %d created, %d duplicates, %d failed",
            summary.success,
            summary.duplicate,
            summary.failure,
        )
        return summary
