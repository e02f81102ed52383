"""
Источник данных для чата: элементы базы знаний и товары из XML-фидов.

Данные читаются из JSON-снимка (data/knowledge_base.json), который
выгружает админ-часть портала. Формат:

    {"items": [{"title": ..., "type": "YANDEX_DISK", "url": ..., ...},
               {"title": "Фид", "type": "XML_FEED", "xmlData": {"products": [...]}}]}

Чтения кешируются на KNOWLEDGE_CACHE_TTL, чтобы каждый запрос чата
не перечитывал файл.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from config import KNOWLEDGE_BASE_PATH, KNOWLEDGE_CACHE_TTL
from logger import get_logger
from models import KnowledgeItem, KnowledgeType, Product

log = get_logger(__name__)

_SNAPSHOT_KEY = "snapshot"


class TTLCache:
    """Простой словарь с временем жизни записей."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(key, value)
        return value


class JsonKnowledgeStore:
    """Снимок базы знаний из JSON-файла с кешированием чтений."""

    def __init__(
        self,
        path: Path = KNOWLEDGE_BASE_PATH,
        cache_ttl: float = KNOWLEDGE_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path)
        self._cache = TTLCache(cache_ttl, clock)

    async def _snapshot(self) -> list[KnowledgeItem]:
        return await self._cache.get_or_load(_SNAPSHOT_KEY, self._load)

    async def _load(self) -> list[KnowledgeItem]:
        raw = await asyncio.to_thread(self._read_file)
        items: list[KnowledgeItem] = []
        for entry in raw:
            try:
                items.append(KnowledgeItem.model_validate(entry))
            except ValidationError as exc:
                log.warning("Пропущен элемент базы знаний '%s': %s", entry.get("title", "?"), exc)
        log.info("База знаний загружена: %d элементов из %s", len(items), self.path)
        return items

    def _read_file(self) -> list[dict]:
        if not self.path.exists():
            log.warning("Файл базы знаний не найден: %s", self.path)
            return []
        with self.path.open(encoding="utf-8") as fh:
            data = json.load(fh)
        return data.get("items", []) if isinstance(data, dict) else data

    async def list_knowledge_items(self) -> list[KnowledgeItem]:
        """Элементы, отмеченные как источник для AI (без XML-фидов)."""
        return [
            item for item in await self._snapshot()
            if item.is_ai_source and item.type is not KnowledgeType.XML_FEED
        ]

    async def list_products(self) -> list[Product]:
        """Все товары из XML-фидов; битые записи пропускаются."""
        products: list[Product] = []
        for item in await self._snapshot():
            if item.type is not KnowledgeType.XML_FEED or not item.xml_data:
                continue
            for raw in item.xml_data.get("products") or []:
                try:
                    products.append(Product.model_validate(raw))
                except ValidationError as exc:
                    log.warning("Пропущен товар из фида '%s': %s", item.title, exc)
        return products

    async def reload(self) -> int:
        """Сбрасывает кеш и перечитывает снимок; возвращает число элементов."""
        self._cache.clear()
        return len(await self._snapshot())
