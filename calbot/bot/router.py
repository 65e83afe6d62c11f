"""Intent router: one handler per classified intent type."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from calbot.bot.context import InboundEvent, ServiceContainer
from calbot.schemas.intent import Intent, IntentType

logger = logging.getLogger(__name__)


IntentHandler = Callable[[ServiceContainer, InboundEvent, Intent], Awaitable[None]]


class IntentRouter:

    def __init__(self) -> None:
        self.handlers: dict[IntentType, IntentHandler] = {}

    def register(self, intent: IntentType, handler: IntentHandler) -> None:
        self.handlers[intent] = handler
        logger.debug("Registered handler for intent: %s", intent.value)

    async def route(self, services: ServiceContainer, event: InboundEvent, intent: Intent) -> bool:
        handler = self.handlers.get(intent.type)
        if not handler:
            # incomplete/unknown intents get no reply
            logger.info("Intent was %s for text: %r", intent.type.value, intent.original_text)
            return False
        await handler(services, event, intent)
        return True


def create_router() -> IntentRouter:
    from calbot.bot import events, schedules

    router = IntentRouter()
    router.register(IntentType.CREATE_EVENT, events.handle_create_intent)
    router.register(IntentType.QUERY_EVENT, events.handle_query_intent)
    router.register(IntentType.UPDATE_EVENT, events.handle_update_intent)
    router.register(IntentType.DELETE_EVENT, events.handle_delete_intent)
    router.register(IntentType.CREATE_SCHEDULE, schedules.handle_schedule_intent)

    logger.info("IntentRouter configured with %d handlers", len(router.handlers))
    return router
