"""
Семантический кеш ответов AI.

Хранит пары «вопрос → ответ» и отдаёт сохранённый ответ на тот же
или похожий вопрос, экономя обращения к LLM. Похожесть считается
по совпадению слов (Jaccard) и ключевых терминов.
"""

from __future__ import annotations

import math
import re
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional

from logger import get_logger

log = get_logger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")
_SPACES_RE = re.compile(r"\s+")

STOP_WORDS: frozenset[str] = frozenset({
    "что", "как", "где", "когда", "почему", "какой", "какая", "какие",
    "это", "для", "при", "без", "или", "если", "то", "не", "да", "нет",
    "мне", "меня", "вам", "вас", "нам", "нас", "ему", "ей", "им",
    "the", "a", "an", "is", "are", "was", "were", "be", "been",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "can", "may", "might", "must", "shall", "should",
})

# Примерная стоимость токена для статистики экономии
_TOKEN_COST = 0.00001


def normalize_text(text: str) -> str:
    """Нижний регистр, только буквы/цифры/пробелы, схлопнутые пробелы."""
    cleaned = _NON_WORD_RE.sub("", text.lower())
    return _SPACES_RE.sub(" ", cleaned).strip()


def word_similarity(first: str, second: str) -> float:
    """Коэффициент Жаккара по множествам слов."""
    words_a = set(normalize_text(first).split())
    words_b = set(normalize_text(second).split())
    if not words_a or not words_b:
        return 0.0
    common = len(words_a & words_b)
    return common / (len(words_a) + len(words_b) - common)


def extract_key_terms(text: str) -> list[str]:
    return [
        word for word in normalize_text(text).split()
        if len(word) > 2 and word not in STOP_WORDS
    ]


def term_overlap(first: list[str], second: list[str]) -> float:
    longest = max(len(first), len(second))
    if longest == 0:
        return 0.0
    return sum(1 for term in first if term in second) / longest


@dataclass
class CachedResponse:
    question: str
    response: str
    timestamp: float
    hit_count: int = 0
    tokens: int = 500


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    saved_tokens: int = 0
    saved_cost: float = 0.0


class SemanticResponseCache:
    """
    Кеш ответов с нечётким поиском.

    Параметры:
        max_size: ёмкость; при заполнении вытесняется ~10% «застоявшихся» записей
        ttl_minutes: время жизни записи
        similarity_threshold: минимальный комбинированный балл похожести
        clock: источник времени в секундах (подменяется в тестах)
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_minutes: float = 60,
        similarity_threshold: float = 0.7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size = max_size
        self.ttl = ttl_minutes * 60
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._entries: dict[str, CachedResponse] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CachedResponse, now: float) -> bool:
        return now - entry.timestamp >= self.ttl

    def _register_hit(self, entry: CachedResponse) -> CachedResponse:
        entry.hit_count += 1
        self.stats.hits += 1
        self.stats.saved_tokens += entry.tokens
        self.stats.saved_cost += entry.tokens * _TOKEN_COST
        return entry

    def get(self, question: str) -> Optional[CachedResponse]:
        """Ответ на тот же или достаточно похожий вопрос; None при промахе."""
        now = self._clock()
        key = normalize_text(question)

        entry = self._entries.get(key)
        if entry is not None:
            if not self._is_expired(entry, now):
                return self._register_hit(entry)
            del self._entries[key]

        key_terms = extract_key_terms(question)
        best: Optional[CachedResponse] = None
        best_score = 0.0

        # Обход в порядке вставки: при равенстве баллов выигрывает более ранняя запись
        for candidate in self._entries.values():
            if self._is_expired(candidate, now):
                continue
            score = (
                word_similarity(question, candidate.question) * 0.6
                + term_overlap(key_terms, extract_key_terms(candidate.question)) * 0.4
            )
            if score > best_score and score >= self.similarity_threshold:
                best, best_score = candidate, score

        if best is not None:
            log.debug("Семантический кеш: похожий вопрос (%.2f) '%s'", best_score, best.question[:60])
            return self._register_hit(best)

        self.stats.misses += 1
        return None

    def set(self, question: str, response: str, tokens: int = 500) -> None:
        key = normalize_text(question)
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_stale()
        self._entries[key] = CachedResponse(
            question=question,
            response=response,
            timestamp=self._clock(),
            tokens=tokens,
        )

    def _evict_stale(self) -> None:
        """Удаляет ~10% записей: старые и редко используемые — первыми."""
        now = self._clock()

        def staleness(item: tuple[str, CachedResponse]) -> float:
            entry = item[1]
            return (now - entry.timestamp) - entry.hit_count * 100

        ranked = sorted(self._entries.items(), key=staleness, reverse=True)
        to_remove = max(1, math.floor(len(ranked) * 0.1))
        for key, _ in ranked[:to_remove]:
            del self._entries[key]
        log.info("Семантический кеш: вытеснено %d записей", to_remove)

    def cleanup(self) -> int:
        """Удаляет просроченные записи; возвращает их количество."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("Семантический кеш: удалено просроченных записей: %d", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def pre_warm(self, pairs: Iterable[dict]) -> int:
        """Заполняет кеш заранее известными вопросами и ответами."""
        count = 0
        for pair in pairs:
            self.set(pair["question"], pair["answer"], pair.get("tokens", 500))
            count += 1
        return count

    def get_stats(self) -> dict:
        total = self.stats.hits + self.stats.misses
        hit_rate = self.stats.hits / total if total else 0.0
        return {
            **asdict(self.stats),
            "hit_rate": round(hit_rate * 100),
            "cache_size": len(self._entries),
            "max_size": self.max_size,
        }
