from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from calbot.db.models import ConversationStateRecord


@contextmanager
def get_session(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class ConversationStateRepository:

    def get(self, session: Session, key: str) -> ConversationStateRecord | None:
        return session.get(ConversationStateRecord, key)

    def upsert(
        self,
        session: Session,
        key: str,
        payload: str,
        expires_at: float,
    ) -> ConversationStateRecord:
        record = self.get(session, key)
        if record is None:
            record = ConversationStateRecord(key=key, payload=payload, expires_at=expires_at)
            session.add(record)
        else:
            record.payload = payload
            record.expires_at = expires_at
        session.flush()
        return record

    def delete(self, session: Session, key: str) -> bool:
        result = session.execute(
            delete(ConversationStateRecord).where(ConversationStateRecord.key == key)
        )
        return bool(result.rowcount)

    def delete_expired(self, session: Session, now: float) -> int:
        result = session.execute(
            delete(ConversationStateRecord).where(ConversationStateRecord.expires_at < now)
        )
        return result.rowcount or 0

