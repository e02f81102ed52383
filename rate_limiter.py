"""
Ограничение частоты запросов к чату (in-memory, фиксированное окно).

Для нескольких экземпляров сервиса счётчики нужно выносить во внешнее
хранилище; здесь процесс один, и словаря достаточно.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

from config import RATE_LIMITS
from logger import get_logger

log = get_logger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimitResult(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    reset_in: float

    @property
    def retry_after(self) -> int:
        """Через сколько секунд окно откроется снова."""
        return math.ceil(self.reset_in)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after),
        }


class RateLimiter:
    """
    Счётчик запросов на клиента в пределах окна.

    Каждый тип лимита (chat, ai_stream, api, auth) считается отдельно.
    """

    def __init__(
        self,
        limits: Optional[dict[str, dict[str, int]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits or RATE_LIMITS
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def check(self, client_id: str, limit_type: str = "api") -> RateLimitResult:
        """Учитывает запрос и сообщает, укладывается ли клиент в лимит."""
        try:
            preset = self.limits[limit_type]
        except KeyError:
            raise ValueError(f"Неизвестный тип лимита: {limit_type}") from None

        window_size, max_requests = preset["window"], preset["max_requests"]
        now = self._clock()
        key = f"{limit_type}:{client_id}"
        window = self._windows.get(key)

        if window is None or window.reset_at <= now:
            self._windows[key] = _Window(count=1, reset_at=now + window_size)
            return RateLimitResult(True, max_requests, max_requests - 1, window_size)

        if window.count >= max_requests:
            log.info("Лимит '%s' исчерпан для клиента %s", limit_type, client_id)
            return RateLimitResult(False, max_requests, 0, window.reset_at - now)

        window.count += 1
        return RateLimitResult(True, max_requests, max_requests - window.count, window.reset_at - now)

    def cleanup(self) -> int:
        """Удаляет закрытые окна; возвращает их количество."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def get_stats(self) -> dict:
        return {
            "active_keys": len(self._windows),
            "total_requests": sum(w.count for w in self._windows.values()),
        }
