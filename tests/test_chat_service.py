import asyncio
import json

import pytest

from article_service import format_not_found_message
from chat_service import (
    ChatReply,
    RateLimitExceeded,
    ServiceOverloaded,
    apply_keyword_filter,
    build_download_payload,
    build_stream_prompts,
)
from config import (
    COMMON_QUESTIONS,
    KNOWLEDGE_ANSWER_RULES,
    MSG_ERROR,
    MSG_STREAM_ERROR,
    MSG_TIMEOUT,
)
from models import (
    ChatMessage,
    ChatRole,
    DownloadLinkPayload,
    KnowledgeType,
    MultiDownloadLinksPayload,
    ProductInfoPayload,
    decode_content,
)
from rate_limiter import RateLimiter
from request_queue import RequestQueue
from smart_router import INSTANT_RESPONSES

from conftest import FakeStore, make_item, make_product

CATALOG = make_item("Каталог ламината 2024", KnowledgeType.YANDEX_DISK, url="https://disk.yandex.ru/d/cat")
LOGO = make_item("Логотип компании", KnowledgeType.YANDEX_DISK, url="https://disk.yandex.ru/d/logo")
WARRANTY = make_item(
    "Гарантия",
    content="Гарантия на ламинат 12 лет",
    url="https://portal.local/warranty",
    image_url="https://portal.local/warranty.png",
)
FEED = make_item("Фид товаров", KnowledgeType.XML_FEED)


class TestHelpers:
    def test_keyword_filter_uses_first_keyword_only(self):
        items = [LOGO, CATALOG]
        assert apply_keyword_filter("нужен логотип и каталог", items) == [LOGO]
        assert apply_keyword_filter("что у вас есть", items) == items

    def test_single_download_link(self):
        payload = build_download_payload("Скачать каталог", [CATALOG])
        assert isinstance(payload, DownloadLinkPayload)
        assert payload.data.url == "https://disk.yandex.ru/d/cat"

    def test_mixed_items_without_download_request(self):
        assert build_download_payload("Какая гарантия?", [CATALOG, WARRANTY]) is None

    def test_history_goes_into_system_prompt_for_streams(self):
        history = [
            ChatMessage(role=ChatRole.USER, content="Привет"),
            ChatMessage(role=ChatRole.ASSISTANT, content="Здравствуйте"),
        ]
        prompt, system = build_stream_prompts("А доставка?", history, "Контекст заказа", "База")

        assert prompt == "Контекст:\nКонтекст заказа\n\nЗапрос: А доставка?"
        assert system.startswith("База")
        assert "Пользователь: Привет" in system
        assert "Ассистент: Здравствуйте" in system


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_greeting_is_answered_without_llm(self, service, fake_llm):
        reply = await service.process_message("Привет")

        assert reply.content in INSTANT_RESPONSES.values()
        assert reply.cached is True
        assert fake_llm.calls == []
        assert service.queue.stats.total_processed == 0

    @pytest.mark.asyncio
    async def test_exact_article_returns_product_card(self, make_service, fake_llm):
        store = FakeStore(products=[make_product("AB123")])
        service = make_service(store=store)

        reply = await service.process_message("артикул AB123")

        payload = decode_content(reply.content)
        assert isinstance(payload, ProductInfoPayload)
        assert payload.data.vendor_code == "AB123"
        assert json.loads(reply.content)["type"] == "product_info"
        assert fake_llm.calls == []

        again = await service.process_message("Покажи AB123")
        assert again.source == "article_cache"
        assert again.cached is True
        assert again.content == reply.content

    @pytest.mark.asyncio
    async def test_document_request_returns_link_and_skips_article_cache(self, make_service, fake_llm):
        product = make_product(
            "AB123",
            documents=[{"url": "https://docs/ab123-install.pdf", "name": "Инструкция по укладке"}],
        )
        service = make_service(store=FakeStore(products=[product]))

        reply = await service.process_message("инструкция AB123")

        payload = decode_content(reply.content)
        assert isinstance(payload, DownloadLinkPayload)
        assert payload.data.url == "https://docs/ab123-install.pdf"
        assert len(service.article_cache) == 0
        assert fake_llm.calls == []

    @pytest.mark.asyncio
    async def test_unknown_article_is_not_found(self, service, fake_llm):
        reply = await service.process_message("артикул ZZZ999")

        assert reply.content == format_not_found_message("ZZZ999")
        assert fake_llm.calls == []

    @pytest.mark.asyncio
    async def test_download_request_short_circuits_llm_answer(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[CATALOG, WARRANTY, FEED]))
        fake_llm.relevant_titles = ["Каталог ламината 2024"]

        reply = await service.process_message("Скачать каталог")

        assert isinstance(decode_content(reply.content), DownloadLinkPayload)
        assert json.loads(reply.content)["data"]["url"] == "https://disk.yandex.ru/d/cat"
        assert fake_llm.completions == []

    @pytest.mark.asyncio
    async def test_several_files_become_multi_download(self, make_service, fake_llm):
        certificates = [
            make_item("Сертификат соответствия", KnowledgeType.YANDEX_DISK, url="https://d/1"),
            make_item("Сертификат пожарной безопасности", KnowledgeType.YANDEX_DISK, url="https://d/2"),
        ]
        service = make_service(store=FakeStore(items=[*certificates, CATALOG]))
        fake_llm.relevant_titles = [c.title for c in certificates] + [CATALOG.title]

        reply = await service.process_message("Где взять сертификат на продукцию?")

        payload = decode_content(reply.content)
        assert isinstance(payload, MultiDownloadLinksPayload)
        assert [i.title for i in payload.data.items] == [c.title for c in certificates]

    @pytest.mark.asyncio
    async def test_relevance_is_selected_with_fast_model_and_feeds_are_hidden(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[WARRANTY, FEED]))
        fake_llm.relevant_titles = ["Гарантия"]

        await service.process_message("Какая гарантия на ламинат?")

        selection = fake_llm.calls[0]
        assert selection["json_schema"] is not None
        assert selection["model"] == "model-fast"
        assert "Гарантия" in selection["prompt"]
        assert "Фид товаров" not in selection["prompt"]

    @pytest.mark.asyncio
    async def test_knowledge_answer_is_cached(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[WARRANTY]))
        fake_llm.relevant_titles = ["Гарантия"]

        reply = await service.process_message("Какая гарантия на ламинат?")

        assert reply.content == "Ответ ассистента"
        assert [a.url for a in reply.attachments] == ["https://portal.local/warranty.png"]
        answer_call = fake_llm.completions[0]
        assert KNOWLEDGE_ANSWER_RULES in answer_call["system_prompt"]
        assert "Источник: Гарантия" in answer_call["prompt"]
        assert "Ссылка на ресурс: https://portal.local/warranty" in answer_call["prompt"]

        calls_before = len(fake_llm.calls)
        again = await service.process_message("Какая гарантия на ламинат?")
        assert again.cached is True
        assert again.source == "semantic_cache"
        assert len(fake_llm.calls) == calls_before

    @pytest.mark.asyncio
    async def test_nothing_relevant_asks_to_clarify(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[WARRANTY, CATALOG]))
        fake_llm.answer = "Уточните, пожалуйста, вопрос"

        reply = await service.process_message("Расскажите про ваши условия")

        assert reply.source == "clarification"
        assert reply.content == "Уточните, пожалуйста, вопрос"
        assert "Каталог ламината 2024" in fake_llm.completions[0]["prompt"]
        assert len(service.response_cache) == 0

    @pytest.mark.asyncio
    async def test_product_context_for_knowledge_request(self, make_service, fake_llm):
        store = FakeStore(products=[make_product("AB123", picture="https://img/ab123.jpg")])
        service = make_service(store=store)

        reply = await service.process_message("Как выглядит AB123 в интерьере?")

        assert reply.source == "llm"
        assert "Продукт по артикулу AB123" in fake_llm.completions[0]["prompt"]
        assert [a.url for a in reply.attachments] == ["https://img/ab123.jpg"]

    @pytest.mark.asyncio
    async def test_product_answer_is_not_reused_for_other_article(self, make_service, fake_llm):
        store = FakeStore(products=[make_product("AB123"), make_product("AB124", "Ламинат Ясень")])
        service = make_service(store=store)

        first = await service.process_message("покажите фото укладки в интерьере для артикула AB123")
        second = await service.process_message("покажите фото укладки в интерьере для артикула AB124")

        assert first.source == "llm"
        assert second.source == "llm"
        assert len(service.response_cache) == 0
        assert "Продукт по артикулу AB124" in fake_llm.completions[-1]["prompt"]

    @pytest.mark.asyncio
    async def test_llm_failure_returns_safe_text_and_skips_cache(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[WARRANTY]))
        fake_llm.relevant_titles = ["Гарантия"]
        fake_llm.error = ValueError("invalid api key")

        reply = await service.process_message("Какая гарантия на ламинат?")

        assert reply.content == MSG_ERROR
        assert len(service.response_cache) == 0

    @pytest.mark.asyncio
    async def test_slow_llm_returns_timeout_text(self, make_service, fake_llm):
        service = make_service(store=FakeStore(items=[WARRANTY]), request_timeout=0.05)
        fake_llm.delay = 1

        reply = await service.process_message("Какая гарантия на ламинат?")

        assert reply.content == MSG_TIMEOUT
        assert reply.source == "timeout"

    @pytest.mark.asyncio
    async def test_rate_limit(self, make_service):
        limiter = RateLimiter({"chat": {"window": 60, "max_requests": 1}})
        service = make_service(rate_limiter=limiter)

        await service.process_message("Привет", client_id="10.0.0.1")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await service.process_message("Привет", client_id="10.0.0.1")
        assert exc_info.value.retry_after > 0
        assert exc_info.value.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_full_queue_is_overload(self, make_service):
        service = make_service(queue=RequestQueue(max_queue_size=0))

        with pytest.raises(ServiceOverloaded) as exc_info:
            await service.process_message("Привет")
        assert exc_info.value.estimated_wait == 0

    @pytest.mark.asyncio
    async def test_exchange_is_saved_to_session(self, service):
        await service.process_message("Привет", session_id="s1")

        session = service.sessions.get("s1")
        assert [m.role for m in session.messages] == [ChatRole.USER, ChatRole.ASSISTANT]
        assert session.messages[0].content == "Привет"


class TestStreamMessage:
    @pytest.mark.asyncio
    async def test_chunks_and_session(self, service, fake_llm):
        chunks = [c async for c in service.stream_message("Расскажи о ламинате", session_id="s1")]

        assert chunks == ["Раз", "два"]
        assert service.sessions.get("s1").messages[-1].content == "Раздва"
        assert service.active_streams == 0
        assert service.queue.stats.total_processed == 1

    @pytest.mark.asyncio
    async def test_provider_failure_after_output_ends_with_error_text(self, service, fake_llm):
        fake_llm.stream_error = RuntimeError("503 upstream reset")

        chunks = [c async for c in service.stream_message("Расскажи о ламинате")]

        assert chunks == ["Раз", "два", MSG_STREAM_ERROR]
        stream_calls = [c for c in fake_llm.calls if c["kind"] == "stream"]
        assert len(stream_calls) == 1

    @pytest.mark.asyncio
    async def test_client_disconnect_keeps_partial_answer(self, service, fake_llm):
        fake_llm.chunks = ["Раз"]
        fake_llm.stream_hang = True
        received = []

        async def consume():
            async for chunk in service.stream_message("Расскажи о ламинате", session_id="s2"):
                received.append(chunk)

        task = asyncio.create_task(consume())
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received == ["Раз"]
        assert service.sessions.get("s2").messages[-1].content == "Раз"
        assert service.active_streams == 0

        await asyncio.sleep(0.01)
        assert service.queue.active_requests == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_warm_caches(self, make_service, fake_store):
        fake_store.products = [make_product("AB123")]
        service = make_service()

        results = await service.warm_caches(COMMON_QUESTIONS)

        assert results["ai_cache"]["pre_warmed"] == len(COMMON_QUESTIONS)
        assert results["product_index"] == {"article_codes": 1}
        assert fake_store.reloads == 1
        reply = await service.process_message(COMMON_QUESTIONS[0]["question"])
        assert reply.content == COMMON_QUESTIONS[0]["answer"]

    def test_reply_response_hides_cached_flag_for_fresh_answers(self):
        assert ChatReply("текст").to_response().cached is None
        assert ChatReply("текст", cached=True).to_response().cached is True
