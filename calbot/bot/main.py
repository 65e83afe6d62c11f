"""Telegram entry point for the calendar assistant."""
from __future__ import annotations

import logging
import sys

from telegram import BotCommand, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    PersistenceInput,
    PicklePersistence,
    filters,
)

from calbot.bot.context import ServiceContainer
from calbot.bot.handlers import Orchestrator
from calbot.bot.telegram_channel import TelegramChannel
from calbot.config.settings import Settings, get_settings
from calbot.db.base import build_engine, build_session_factory, init_db
from calbot.services.async_executor import shutdown_executor
from calbot.services.batch_import import BatchImportEngine
from calbot.services.gemini import GeminiService
from calbot.services.google_calendar import GoogleCalendarService
from calbot.services.guard import EventGuard
from calbot.services.session_store import SessionStore
from calbot.services.shift_parser import ShiftFileParser

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def get_orchestrator(context: ContextTypes.DEFAULT_TYPE) -> Orchestrator:
    return context.application.bot_data["orchestrator"]


async def on_update(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    orchestrator = get_orchestrator(context)
    channel: TelegramChannel = orchestrator.services.channel
    if update.callback_query is not None:
        await update.callback_query.answer()
    event = channel.to_inbound(update)
    if event is None:
        return
    await orchestrator.handle_webhook([event])


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing update %s", update, exc_info=context.error)


async def _post_init(application: Application) -> None:
    services: ServiceContainer = application.bot_data["orchestrator"].services
    await services.store.purge_expired()
    await application.bot.set_my_commands(
        [
            BotCommand("start", "顯示功能列表"),
            BotCommand("help", "顯示功能列表"),
            BotCommand("cancel", "取消目前的操作"),
        ]
    )


async def _post_shutdown(application: Application) -> None:
    shutdown_executor()


def build_services(settings: Settings, channel: TelegramChannel) -> ServiceContainer:
    engine = build_engine(settings.database_url)
    init_db(engine)
    store = SessionStore(
        build_session_factory(engine),
        timezone=settings.timezone,
        ttl_seconds=settings.state_ttl_seconds,
        timeout_seconds=settings.conversation_timeout_seconds,
    )
    calendar_service = GoogleCalendarService(settings=settings)
    guard = EventGuard(calendar_service, settings.timezone)
    batch_engine = BatchImportEngine(
        calendar_service,
        guard,
        batch_size=settings.batch_size,
        delay_seconds=settings.batch_delay_seconds,
    )
    return ServiceContainer(
        settings=settings,
        classifier=GeminiService(settings),
        calendar=calendar_service,
        store=store,
        guard=guard,
        batch_engine=batch_engine,
        shift_parser=ShiftFileParser(settings.timezone),
        channel=channel,
    )


def build_bot_application(settings: Settings) -> Application:
    """Bare application; button data lives in a bounded cache that is pickled across restarts."""
    persistence = PicklePersistence(
        filepath=settings.persistence_path,
        store_data=PersistenceInput(bot_data=False, chat_data=False, user_data=False, callback_data=True),
    )
    return (
        ApplicationBuilder()
        .token(settings.telegram_bot_token)
        .arbitrary_callback_data(settings.callback_cache_size)
        .persistence(persistence)
        .concurrent_updates(True)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )


def build_application(settings: Settings | None = None) -> Application:
    settings = settings or get_settings()
    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is missing from the environment")
    if not settings.user_whitelist:
        logger.warning("USER_WHITELIST is empty; every message will be ignored")

    application = build_bot_application(settings)
    services = build_services(settings, TelegramChannel(application.bot))
    application.bot_data["orchestrator"] = Orchestrator(services)

    application.add_handler(CallbackQueryHandler(on_update))
    application.add_handler(
        MessageHandler(
            filters.TEXT
            | filters.Document.ALL
            | filters.PHOTO
            | filters.StatusUpdate.NEW_CHAT_MEMBERS,
            on_update,
        )
    )
    application.add_error_handler(on_error)
    return application


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    application = build_application(settings)
    logger.info("Starting Telegram bot")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
