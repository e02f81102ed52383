"""
Оркестратор чата AI-ассистента.

Последовательность обработки сообщения (первая сработавшая ступень
формирует ответ, возврата к предыдущим ступеням нет):

1. лимит частоты запросов клиента;
2. свободное место в очереди LLM;
3. мгновенный ответ на приветствие/благодарность;
4. семантический кеш похожих вопросов;
5. маршрутизатор (выбирает уровень модели, ступени не пропускает);
6. артикул в сообщении → карточка товара / похожие / «не найден» без LLM;
7. выбор релевантных материалов базы знаний через LLM + фильтр по ключевым словам;
8. материалы с Яндекс.Диска → сразу ссылки на скачивание;
9. ответ LLM по контексту из базы знаний (через очередь);
10. ничего не нашлось → уточняющий вопрос со списком тем;
11. удачный ответ LLM без товара в контексте попадает в семантический кеш.

Любая ошибка превращается в безопасный текст для пользователя,
кеши при этом не пополняются.
"""

from __future__ import annotations

import asyncio
import json
import math
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Sequence, Union

from article_service import (
    ArticleResponseCache,
    ArticleResultType,
    ProductIndexCache,
    extract_article_code,
    generate_article_response,
    is_document_request,
    is_knowledge_base_request,
    process_article_request,
    product_stock,
)
from config import (
    CHAT_REQUEST_TIMEOUT,
    CLARIFICATION_PROMPT,
    DEFAULT_SYSTEM_PROMPT,
    KNOWLEDGE_ANSWER_RULES,
    KNOWLEDGE_SEARCH_PROMPT,
    KNOWLEDGE_SEARCH_SCHEMA,
    MSG_ERROR,
    MSG_OVERLOADED,
    MSG_STREAM_ERROR,
    MSG_STREAM_OVERLOADED,
    MSG_TIMEOUT,
    STREAM_MAX_CONNECTIONS,
)
from knowledge_store import JsonKnowledgeStore
from llm_factory import LLMClient
from logger import get_logger
from models import (
    Attachment,
    ChatMessage,
    ChatResponse,
    ChatRole,
    DownloadItem,
    DownloadLinkData,
    DownloadLinkPayload,
    KnowledgeItem,
    KnowledgeType,
    MultiDownloadLinksData,
    MultiDownloadLinksPayload,
    Product,
    encode_payload,
)
from rate_limiter import RateLimiter, RateLimitResult
from request_queue import QueueFullError, QueueTimeoutError, RequestQueue
from response_cache import SemanticResponseCache
from session_store import SessionStore
from smart_router import analyze_question, get_instant_response, get_model_for_route

log = get_logger(__name__)

HISTORY_WINDOW = 5
MAX_QUICK_DOWNLOADS = 3

DOWNLOAD_KEYWORDS = (
    "скачать", "документ", "файл", "лого", "каталог",
    "инструкци", "сертификат", "брендбук", "презентац",
)

# Проверяются по порядку, применяется только первый найденный в сообщении.
# TODO: сообщение с двумя ключевыми словами («каталог и сертификат») сужается
# только по первому; решить, нужно ли объединять фильтры.
KEYWORD_FILTERS = ("логотип", "презентац", "каталог", "сертификат", "брендбук")

_ROLE_LABELS = {ChatRole.USER: "Пользователь", ChatRole.ASSISTANT: "Ассистент"}

_STREAM_DONE = object()


# ─── Ошибки допуска ────────────────────────────────────────────────────────────

class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult) -> None:
        super().__init__("Превышен лимит запросов")
        self.retry_after = result.retry_after
        self.headers = result.headers


class ServiceOverloaded(Exception):
    def __init__(
        self,
        message: str = MSG_OVERLOADED,
        estimated_wait: Optional[int] = None,
        active_connections: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.estimated_wait = estimated_wait
        self.active_connections = active_connections


class StreamInterrupted(Exception):
    """Поток оборвался после того, как часть ответа уже ушла клиенту."""


# ─── Ответ оркестратора ────────────────────────────────────────────────────────

@dataclass
class ChatReply:
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    cached: bool = False
    source: str = "llm"

    def to_response(self) -> ChatResponse:
        return ChatResponse(
            content=self.content,
            attachments=self.attachments,
            cached=True if self.cached else None,
        )


# ─── Сборка промптов и ответов ─────────────────────────────────────────────────

def apply_keyword_filter(message: str, items: list[KnowledgeItem]) -> list[KnowledgeItem]:
    """Сужает выбор LLM по явному ключевому слову в сообщении (только первому)."""
    lower = message.lower()
    for keyword in KEYWORD_FILTERS:
        if keyword in lower:
            return [item for item in items if keyword in item.title.lower()]
    return items


def build_download_payload(
    message: str,
    relevant: list[KnowledgeItem],
) -> Optional[Union[DownloadLinkPayload, MultiDownloadLinksPayload]]:
    """
    Ссылки на скачивание вместо ответа LLM.

    Срабатывает, если среди релевантных есть материалы с Яндекс.Диска и
    пользователь явно просит файл, либо все релевантные — файлы и их немного.
    """
    downloads = [item for item in relevant if item.type is KnowledgeType.YANDEX_DISK]
    if not downloads:
        return None

    lower = message.lower()
    explicit = any(kw in lower for kw in DOWNLOAD_KEYWORDS)
    only_files = len(downloads) == len(relevant) and len(downloads) <= MAX_QUICK_DOWNLOADS
    if not (explicit or only_files):
        return None

    if len(downloads) == 1:
        item = downloads[0]
        return DownloadLinkPayload(
            data=DownloadLinkData(
                text=f'Вы можете скачать "{item.title}" по следующей ссылке',
                url=item.url,
            )
        )
    return MultiDownloadLinksPayload(
        data=MultiDownloadLinksData(
            items=[
                DownloadItem(text=f'Скачать "{item.title}"', url=item.url, title=item.title)
                for item in downloads
            ]
        )
    )


def describe_product(product: Product) -> str:
    lines = [f"Продукт по артикулу {product.vendor_code}: {product.name}"]
    if product.description:
        lines.append(f"Описание: {product.description}")
    if product.params:
        lines.append("Характеристики: " + ", ".join(f"{k}: {v}" for k, v in product.params.items()))
    stock = product_stock(product)
    if stock is not None:
        lines.append(f"Наличие: {stock.display_text}")
    if product.url:
        lines.append(f"Ссылка на ресурс: {product.url}")
    return "\n".join(lines)


def build_knowledge_context(items: Sequence[KnowledgeItem], product: Optional[Product] = None) -> str:
    blocks = [describe_product(product)] if product is not None else []
    for item in items:
        block = (
            f"Источник: {item.title}\n"
            f"Описание: {item.description or ''}\n"
            f"Содержимое: {item.content or ''}"
        )
        if item.url:
            block += f"\nСсылка на ресурс: {item.url}"
        if item.file_url:
            block += f"\nСсылка на файл: {item.file_url}"
        blocks.append(block)
    return "\n\n---\n\n".join(blocks)


def build_knowledge_prompt(message: str, context: str, history: Sequence[ChatMessage]) -> str:
    recent = "\n".join(f"{m.role.value}: {m.content}" for m in history[-HISTORY_WINDOW:])
    return (
        f"Контекст из базы знаний:\n{context}\n\n"
        f"История чата:\n{recent}\n\n"
        f"Запрос пользователя: {message}"
    )


def build_stream_prompts(
    message: str,
    history: Sequence[ChatMessage],
    context: Optional[str],
    base_system_prompt: Optional[str],
) -> tuple[str, str]:
    """Промпт и системный промпт для потокового ответа: история уходит в системный."""
    prompt = f"Контекст:\n{context}\n\nЗапрос: {message}" if context else message
    system_prompt = base_system_prompt or DEFAULT_SYSTEM_PROMPT
    if history:
        dialog = "\n".join(
            f"{_ROLE_LABELS[m.role]}: {m.content}" for m in history[-HISTORY_WINDOW:]
        )
        system_prompt += f"\n\nПредыдущий диалог:\n{dialog}"
    return prompt, system_prompt


# ─── Оркестратор ───────────────────────────────────────────────────────────────

class ChatService:
    """
    Конвейер обработки сообщений чата.

    Все зависимости (кеши, очередь, индекс, LLM) создаются один раз
    при старте приложения и передаются сюда явно.
    """

    def __init__(
        self,
        llm: LLMClient,
        store: JsonKnowledgeStore,
        queue: RequestQueue,
        response_cache: SemanticResponseCache,
        article_cache: ArticleResponseCache,
        product_index: ProductIndexCache,
        rate_limiter: RateLimiter,
        sessions: Optional[SessionStore] = None,
        request_timeout: float = CHAT_REQUEST_TIMEOUT,
        max_streams: int = STREAM_MAX_CONNECTIONS,
    ) -> None:
        self.llm = llm
        self.store = store
        self.queue = queue
        self.response_cache = response_cache
        self.article_cache = article_cache
        self.product_index = product_index
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.request_timeout = request_timeout
        self.max_streams = max_streams
        self.active_streams = 0

    # ─── Допуск ────────────────────────────────────────────────────────────────

    def _check_rate_limit(self, client_id: str, limit_type: str) -> dict[str, str]:
        result = self.rate_limiter.check(client_id, limit_type)
        if not result.allowed:
            raise RateLimitExceeded(result)
        return result.headers

    def _check_queue_capacity(self, message: str = MSG_OVERLOADED) -> None:
        if not self.queue.has_capacity():
            wait = math.ceil(self.queue.get_estimated_wait_time())
            log.warning("Очередь LLM заполнена, ожидание ~%d с", wait)
            raise ServiceOverloaded(message, estimated_wait=wait)

    def admit_chat(self, client_id: str) -> dict[str, str]:
        """Лимит частоты + место в очереди; возвращает заголовки X-RateLimit-*."""
        headers = self._check_rate_limit(client_id, "chat")
        self._check_queue_capacity()
        return headers

    def admit_stream(self, client_id: str) -> dict[str, str]:
        headers = self._check_rate_limit(client_id, "ai_stream")
        if self.active_streams >= self.max_streams:
            raise ServiceOverloaded(MSG_STREAM_OVERLOADED, active_connections=self.active_streams)
        self._check_queue_capacity()
        return headers

    # ─── Обычный ответ ─────────────────────────────────────────────────────────

    async def process_message(
        self,
        message: str,
        session_id: str = "",
        chat_history: Sequence[ChatMessage] = (),
        client_id: str = "anonymous",
    ) -> ChatReply:
        """Полный конвейер для одного сообщения. Никогда не пробрасывает сбои LLM наружу."""
        self.admit_chat(client_id)
        try:
            reply = await self._answer(message, list(chat_history))
        except QueueFullError:
            raise ServiceOverloaded(
                estimated_wait=math.ceil(self.queue.get_estimated_wait_time())
            ) from None
        except QueueTimeoutError:
            log.warning("Ответ на '%s' не уложился в %.0f с", message[:60], self.request_timeout)
            reply = ChatReply(MSG_TIMEOUT, source="timeout")
        except Exception:
            log.exception("Ошибка обработки сообщения '%s'", message[:60])
            reply = ChatReply(MSG_ERROR, source="error")

        log.info("Ответ [%s] session=%s: %s", reply.source, session_id[:8], reply.content[:80])
        self._remember(session_id, message, reply.content, reply.attachments)
        return reply

    async def _answer(self, message: str, history: list[ChatMessage]) -> ChatReply:
        instant = get_instant_response(message)
        if instant:
            return ChatReply(instant, cached=True, source="instant")

        cached = self.response_cache.get(message)
        if cached is not None:
            return ChatReply(cached.response, cached=True, source="semantic_cache")

        settings = self.llm.settings
        decision = analyze_question(message)
        model = get_model_for_route(
            decision, settings.model, settings.fast_model, settings.advanced_model
        )
        log.info(
            "Маршрут: %s (%.2f), модель %s", decision.reason, decision.confidence, model
        )

        product: Optional[Product] = None
        article_code = extract_article_code(message)
        if article_code:
            # В кеше только карточки товара, запросы документов идут мимо него
            card_request = not (is_knowledge_base_request(message) or is_document_request(message))
            if card_request:
                hit = self.article_cache.get(article_code)
                if hit is not None:
                    return ChatReply(hit.content, hit.attachments, cached=True, source="article_cache")

            result = process_article_request(message, await self.product_index.get())
            response = generate_article_response(result)
            if response is not None:
                if card_request and result.type is ArticleResultType.EXACT_MATCH:
                    self.article_cache.set(article_code, response)
                return ChatReply(response.content, response.attachments, source="article")
            product = result.product

        knowledge_items = [
            item for item in await self.store.list_knowledge_items()
            if item.type is not KnowledgeType.XML_FEED
        ]
        relevant = await self._select_relevant(message, knowledge_items)

        if relevant:
            payload = build_download_payload(message, relevant)
            if payload is not None:
                return ChatReply(encode_payload(payload), source="download")
            return await self._answer_from_context(message, history, relevant, product, model)

        if product is not None:
            return await self._answer_from_context(message, history, [], product, model)

        prompt = CLARIFICATION_PROMPT.format(
            message=message,
            topics=json.dumps([item.title for item in knowledge_items], ensure_ascii=False),
        )
        text = await self._complete(prompt, model=model)
        return ChatReply(text, source="clarification")

    async def _select_relevant(
        self,
        message: str,
        items: list[KnowledgeItem],
    ) -> list[KnowledgeItem]:
        if not items:
            return []
        listing = [
            {"title": i.title, "description": i.description, "article_code": i.article_code}
            for i in items
        ]
        prompt = KNOWLEDGE_SEARCH_PROMPT.format(
            message=message,
            items=json.dumps(listing, ensure_ascii=False, indent=2),
        )
        result = await self._complete(
            prompt,
            model=self.llm.settings.fast_model,
            json_schema=KNOWLEDGE_SEARCH_SCHEMA,
        )
        titles = result.get("relevant_titles") if isinstance(result, dict) else None
        if not titles or not isinstance(titles, list):
            return []
        relevant = [item for item in items if item.title in titles]
        return apply_keyword_filter(message, relevant)

    async def _answer_from_context(
        self,
        message: str,
        history: list[ChatMessage],
        items: list[KnowledgeItem],
        product: Optional[Product],
        model: str,
    ) -> ChatReply:
        system_prompt = f"{self.llm.settings.system_prompt or DEFAULT_SYSTEM_PROMPT}\n\n{KNOWLEDGE_ANSWER_RULES}"
        prompt = build_knowledge_prompt(message, build_knowledge_context(items, product), history)
        text = await self._complete(prompt, system_prompt=system_prompt, model=model)

        attachments = [
            Attachment(name=item.title, url=item.image_url, type="image")
            for item in items if item.image_url
        ]
        if product is not None and product.picture:
            attachments.insert(0, Attachment(name=product.name, url=product.picture, type="image"))

        # Ответы с контекстом товара в семантический кеш не пишутся
        if product is None:
            self.response_cache.set(message, text)
        return ChatReply(text, attachments, source="llm")

    async def _complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        json_schema: Optional[dict] = None,
    ) -> Union[str, dict]:
        return await self.queue.enqueue(
            lambda: self.llm.complete(
                prompt,
                system_prompt=system_prompt,
                json_schema=json_schema,
                model=model,
            ),
            timeout=self.request_timeout,
        )

    # ─── Потоковый ответ ───────────────────────────────────────────────────────

    async def stream_message(
        self,
        message: str,
        chat_history: Sequence[ChatMessage] = (),
        context: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Ответ LLM по частям для SSE.

        Отключение клиента не считается ошибкой: потребление прекращается,
        а уже полученная часть сохраняется в сессию как ответ ассистента.
        """
        settings = self.llm.settings
        model = get_model_for_route(
            analyze_question(message), settings.model, settings.fast_model, settings.advanced_model
        )
        prompt, system_prompt = build_stream_prompts(
            message, chat_history, context, settings.system_prompt
        )

        parts: list[str] = []
        self.active_streams += 1
        try:
            async with aclosing(self._stream_through_queue(prompt, system_prompt, model)) as chunks:
                async for chunk in chunks:
                    parts.append(chunk)
                    yield chunk
        except asyncio.CancelledError:
            log.info("Клиент прервал поток, сохранено символов: %d", sum(map(len, parts)))
            raise
        except QueueTimeoutError:
            log.warning("Потоковый ответ не уложился в %.0f с", self.request_timeout)
            parts.append(MSG_TIMEOUT)
            yield MSG_TIMEOUT
        except Exception:
            log.exception("Ошибка потокового ответа")
            parts.append(MSG_STREAM_ERROR)
            yield MSG_STREAM_ERROR
        finally:
            self.active_streams -= 1
            if session_id:
                self._remember(session_id, message, "".join(parts))

    async def _stream_through_queue(
        self,
        prompt: str,
        system_prompt: str,
        model: str,
    ) -> AsyncIterator[str]:
        """Поток провайдера занимает слот очереди, пока не закончится."""
        chunks: asyncio.Queue = asyncio.Queue()

        async def pump() -> None:
            emitted = False
            try:
                async for chunk in self.llm.stream(prompt, system_prompt=system_prompt, model=model):
                    emitted = True
                    chunks.put_nowait(chunk)
            except Exception as exc:
                # Повтор после частично отданного ответа продублировал бы текст
                if emitted:
                    raise StreamInterrupted("Поток ответа прерван провайдером") from exc
                raise

        job = asyncio.ensure_future(self.queue.enqueue(pump, timeout=self.request_timeout))
        job.add_done_callback(lambda _: chunks.put_nowait(_STREAM_DONE))
        try:
            while True:
                chunk = await chunks.get()
                if chunk is _STREAM_DONE:
                    break
                yield chunk
            await job
        finally:
            if not job.done():
                job.cancel()

    # ─── История ───────────────────────────────────────────────────────────────

    def _remember(
        self,
        session_id: Optional[str],
        message: str,
        answer: str,
        attachments: Sequence[Attachment] = (),
    ) -> None:
        if not session_id or self.sessions is None:
            return
        self.sessions.append(
            session_id,
            ChatMessage(role=ChatRole.USER, content=message),
            ChatMessage(role=ChatRole.ASSISTANT, content=answer, attachments=list(attachments)),
        )

    # ─── Обслуживание ──────────────────────────────────────────────────────────

    async def warm_caches(self, common_questions: Sequence[dict]) -> dict[str, Any]:
        """Прогрев: частые вопросы в семантический кеш, перечитать снимок и индекс."""
        warmed = self.response_cache.pre_warm(common_questions)
        items = await self.store.reload()
        index = await self.product_index.refresh()
        log.info("Кеши прогреты: вопросов %d, элементов базы %d", warmed, items)
        return {
            "ai_cache": {"pre_warmed": warmed, "stats": self.response_cache.get_stats()},
            "knowledge_base": {"items_loaded": items},
            "product_index": {"article_codes": len(index)},
        }

    def sweep_caches(self) -> dict[str, int]:
        return {
            "response_cache": self.response_cache.cleanup(),
            "article_cache": self.article_cache.cleanup(),
        }

    def get_cache_stats(self) -> dict[str, Any]:
        return {
            "ai_response_cache": self.response_cache.get_stats(),
            "article_cache": {
                "size": len(self.article_cache),
                "max_size": self.article_cache.max_size,
            },
        }
