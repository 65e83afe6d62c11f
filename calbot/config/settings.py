from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parents[2]
ENV_FILE = BASE_DIR / ".env"

if ENV_FILE.exists():
    load_dotenv(ENV_FILE)
else:
    load_dotenv(BASE_DIR / "calbot" / "config" / "env.example")


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str = ""
    gemini_api_key: str = ""
    gemini_model: str = "models/gemini-2.5-flash"
    google_client_id: str = ""
    google_client_secret: str = ""
    google_refresh_token: str = ""
    google_oauth_port: int = 8080
    database_url: str = "sqlite:///calbot.db"
    timezone: str = "Asia/Taipei"
    user_whitelist: tuple[str, ...] = ()
    target_calendar_names: tuple[str, ...] = ()
    conversation_timeout_seconds: int = 600
    state_ttl_seconds: int = 3600
    batch_size: int = 10
    batch_delay_seconds: float = 0.5
    search_concurrency: int = 4
    callback_cache_size: int = 1024
    persistence_path: str = "calbot_callbacks.pickle"
    log_level: str = "INFO"


def _split_csv(raw: str | None) -> tuple[str, ...]:
    return tuple(item.strip() for item in (raw or "").split(",") if item.strip())


def get_settings() -> Settings:
    return Settings(
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "models/gemini-2.5-flash"),
        google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
        google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
        google_refresh_token=os.getenv("GOOGLE_REFRESH_TOKEN", ""),
        google_oauth_port=int(os.getenv("GOOGLE_OAUTH_PORT", "8080")),
        database_url=os.getenv("DATABASE_URL", "sqlite:///calbot.db"),
        timezone=os.getenv("TZ", "Asia/Taipei"),
        user_whitelist=_split_csv(os.getenv("USER_WHITELIST")),
        target_calendar_names=_split_csv(os.getenv("TARGET_CALENDAR_NAME")),
        conversation_timeout_seconds=int(os.getenv("CONVERSATION_TIMEOUT_SECONDS", "600")),
        state_ttl_seconds=int(os.getenv("STATE_TTL_SECONDS", "3600")),
        batch_size=int(os.getenv("BATCH_SIZE", "10")),
        batch_delay_seconds=float(os.getenv("BATCH_DELAY_SECONDS", "0.5")),
        search_concurrency=int(os.getenv("SEARCH_CONCURRENCY", "4")),
        callback_cache_size=int(os.getenv("CALLBACK_CACHE_SIZE", "1024")),
        persistence_path=os.getenv("PERSISTENCE_PATH", "calbot_callbacks.pickle"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
