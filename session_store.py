"""
Хранилище истории чатов (in-memory).

Фронтенд сохраняет переписку через /api/chat/session, а потоковый
ответ дописывает в сессию итоговое (или прерванное) сообщение ассистента.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from config import SESSION_IDLE_TTL, SESSION_MAX_MESSAGES
from logger import get_logger
from models import ChatMessage

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatSession:
    session_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    user_email: Optional[str] = None
    is_active: bool = True
    last_activity: datetime = field(default_factory=_now)


class SessionStore:
    def __init__(self, max_messages: int = SESSION_MAX_MESSAGES) -> None:
        self.max_messages = max_messages
        self._sessions: dict[str, ChatSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def save(
        self,
        session_id: str,
        messages: Iterable[ChatMessage],
        user_email: Optional[str] = None,
    ) -> ChatSession:
        """Заменяет переписку сессии целиком; создаёт сессию при первом сохранении."""
        session = self._sessions.get(session_id)
        if session is None:
            session = ChatSession(session_id=session_id, user_email=user_email)
            self._sessions[session_id] = session
            log.debug("Новая сессия чата %s", session_id)
        elif user_email and not session.user_email:
            session.user_email = user_email

        session.messages = list(messages)[-self.max_messages:]
        session.is_active = True
        session.last_activity = _now()
        return session

    def append(self, session_id: str, *messages: ChatMessage) -> ChatSession:
        """Дописывает сообщения в конец истории."""
        existing = self._sessions.get(session_id)
        history = existing.messages if existing else []
        return self.save(session_id, [*history, *messages])

    def cleanup(self, max_idle: float = SESSION_IDLE_TTL) -> int:
        """Удаляет сессии без активности дольше max_idle секунд."""
        border = _now() - timedelta(seconds=max_idle)
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < border]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            log.info("Удалено неактивных сессий чата: %d", len(stale))
        return len(stale)
