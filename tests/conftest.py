"""Общие фикстуры: поддельные LLM и база знаний, управляемые часы, сборка сервиса."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from article_service import ArticleResponseCache, ProductIndexCache  # noqa: E402
from chat_service import ChatService  # noqa: E402
from llm_factory import LLMSettings  # noqa: E402
from models import KnowledgeItem, KnowledgeType, Product  # noqa: E402
from rate_limiter import RateLimiter  # noqa: E402
from request_queue import RequestQueue  # noqa: E402
from response_cache import SemanticResponseCache  # noqa: E402
from session_store import SessionStore  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    def __init__(self, items=(), products=()) -> None:
        self.items = list(items)
        self.products = list(products)
        self.reloads = 0

    async def list_knowledge_items(self) -> list[KnowledgeItem]:
        return list(self.items)

    async def list_products(self) -> list[Product]:
        return list(self.products)

    async def reload(self) -> int:
        self.reloads += 1
        return len(self.items)


class FakeLLM:
    """Подмена LLMClient: запоминает вызовы и отвечает заготовками."""

    def __init__(
        self,
        answer: str = "Ответ ассистента",
        relevant_titles=(),
        chunks=("Раз", "два"),
        error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        stream_hang: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.settings = LLMSettings(
            provider="openai",
            api_key="test-key",
            model="model-standard",
            fast_model="model-fast",
            advanced_model="model-advanced",
        )
        self.answer = answer
        self.relevant_titles = list(relevant_titles)
        self.chunks = list(chunks)
        self.error = error
        self.stream_error = stream_error
        self.stream_hang = stream_hang
        self.delay = delay
        self.calls: list[dict] = []

    @property
    def configured(self) -> bool:
        return True

    @property
    def completions(self) -> list[dict]:
        return [c for c in self.calls if c["kind"] == "complete" and not c["json_schema"]]

    async def complete(self, prompt, system_prompt=None, settings=None, json_schema=None, model=None):
        self.calls.append({
            "kind": "complete",
            "prompt": prompt,
            "system_prompt": system_prompt,
            "json_schema": json_schema,
            "model": model,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if json_schema:
            return {"relevant_titles": list(self.relevant_titles)}
        return self.answer

    async def stream(self, prompt, system_prompt=None, settings=None, model=None):
        self.calls.append({
            "kind": "stream",
            "prompt": prompt,
            "system_prompt": system_prompt,
            "json_schema": None,
            "model": model,
        })
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error
        if self.stream_hang:
            await asyncio.Event().wait()

    async def test_connection(self, settings=None) -> dict:
        settings = settings or self.settings
        return {"success": True, "message": settings.model}


def make_product(vendor_code: str, name: str = "Ламинат Дуб", price=990, **extra) -> Product:
    return Product(vendor_code=vendor_code, name=name, price=price, **extra)


def make_item(title: str, type_: KnowledgeType = KnowledgeType.DOCUMENT, **extra) -> KnowledgeItem:
    return KnowledgeItem(title=title, type=type_, **extra)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_service(fake_llm, fake_store):
    """Собирает ChatService; любую зависимость можно подменить именованным аргументом."""

    def _build(**overrides) -> ChatService:
        store = overrides.pop("store", fake_store)
        deps = {
            "llm": fake_llm,
            "store": store,
            "queue": RequestQueue(max_concurrent=2, max_queue_size=10, retry_delay=0.01),
            "response_cache": SemanticResponseCache(),
            "article_cache": ArticleResponseCache(),
            "product_index": ProductIndexCache(store.list_products),
            "rate_limiter": RateLimiter(),
            "sessions": SessionStore(),
        }
        deps.update(overrides)
        return ChatService(**deps)

    return _build


@pytest.fixture
def service(make_service) -> ChatService:
    return make_service()
