from __future__ import annotations

import json
import logging
import time
from dataclasses import replace
from typing import Callable

from sqlalchemy.orm import sessionmaker

from calbot.db.repository import ConversationStateRepository, get_session
from calbot.schemas.state import ConversationState, state_from_dict
from calbot.services.async_executor import run_in_executor

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 3600
CONVERSATION_TIMEOUT_SECONDS = 600


def composite_key(user_id: str, chat_id: str) -> str:
    return f"state:{user_id}:{chat_id}"


def legacy_key(user_id: str) -> str:
    return user_id


class SessionStore:
    """Conversation state per (user, chat), persisted through SQLAlchemy.

    Writes always go to the composite key. The bare ``{userId}`` key is a
    read-through fallback for conversations started before chats were part of
    the key; it is only honoured (and only deleted) when the stored state
    belongs to the same chat or records no chat at all.

    Two expiry horizons apply: the hard TTL written with every record and the
    soft conversation timeout measured from ``timestamp``. A record past either
    is invisible to ``get``.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        timezone: str = "Asia/Taipei",
        ttl_seconds: int = STATE_TTL_SECONDS,
        timeout_seconds: int = CONVERSATION_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        repository: ConversationStateRepository | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.timezone = timezone
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.repository = repository or ConversationStateRepository()

    async def get(self, user_id: str, chat_id: str) -> ConversationState | None:
        return await run_in_executor(self._get_sync, user_id, chat_id)

    async def set(self, user_id: str, chat_id: str, state: ConversationState) -> ConversationState:
        return await run_in_executor(self._set_sync, user_id, chat_id, state)

    async def clear(self, user_id: str, chat_id: str) -> None:
        await run_in_executor(self._clear_sync, user_id, chat_id, False)

    async def expire_stale(self, user_id: str, chat_id: str) -> bool:
        """Delete timed-out state for this conversation; ``True`` if anything was removed."""
        return await run_in_executor(self._clear_sync, user_id, chat_id, True)

    async def purge_expired(self) -> int:
        return await run_in_executor(self._purge_sync)

    def is_stale(self, state: ConversationState) -> bool:
        return self.clock() - state.timestamp > self.timeout_seconds

    def _load(self, session, key: str) -> ConversationState | None:
        record = self.repository.get(session, key)
        if record is None or record.expires_at < self.clock():
            return None
        try:
            raw = json.loads(record.payload)
        except json.JSONDecodeError:
            logger.warning("Corrupted conversation state under %s, ignoring", key)
            return None
        return state_from_dict(raw, self.timezone)

    @staticmethod
    def _owned_by(state: ConversationState, chat_id: str) -> bool:
        return state.chat_id is None or state.chat_id == chat_id

    def _get_sync(self, user_id: str, chat_id: str) -> ConversationState | None:
        with get_session(self.session_factory) as session:
            state = self._load(session, composite_key(user_id, chat_id))
            if state is None:
                legacy = self._load(session, legacy_key(user_id))
                if legacy is not None and self._owned_by(legacy, chat_id):
                    state = legacy
        if state is None or self.is_stale(state):
            return None
        return state

    def _set_sync(self, user_id: str, chat_id: str, state: ConversationState) -> ConversationState:
        now = self.clock()
        stamped = replace(state, chat_id=chat_id, timestamp=now)
        with get_session(self.session_factory) as session:
            self.repository.upsert(
                session,
                composite_key(user_id, chat_id),
                json.dumps(stamped.to_dict(), ensure_ascii=False),
                expires_at=now + self.ttl_seconds,
            )
        logger.debug("State for %s/%s -> %s", user_id, chat_id, stamped.step.value)
        return stamped

    def _clear_sync(self, user_id: str, chat_id: str, only_stale: bool) -> bool:
        removed = False
        with get_session(self.session_factory) as session:
            key = composite_key(user_id, chat_id)
            record = self.repository.get(session, key)
            if record is not None:
                state = self._load(session, key)
                if not only_stale or state is None or self.is_stale(state):
                    removed |= self.repository.delete(session, key)

            old_key = legacy_key(user_id)
            if self.repository.get(session, old_key) is not None:
                legacy = self._load(session, old_key)
                if legacy is None:
                    # Past its TTL or unreadable; nobody can own it any more.
                    removed |= self.repository.delete(session, old_key)
                elif self._owned_by(legacy, chat_id) and (not only_stale or self.is_stale(legacy)):
                    removed |= self.repository.delete(session, old_key)
        if removed and only_stale:
            logger.info("State for user %s in chat %s has expired.", user_id, chat_id)
        return removed

    def _purge_sync(self) -> int:
        with get_session(self.session_factory) as session:
            count = self.repository.delete_expired(session, self.clock())
        if count:
            logger.info("Purged %d expired conversation states", count)
        return count
