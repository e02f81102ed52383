"""
Фабрика LLM-провайдеров и клиент для конвейера чата.

Провайдер выбирается по LLMSettings.provider:
- openai / openrouter / anthropic / gemini и любой base_url — OpenAI-совместимый API;
- gigachat — GigaChat (Сбер) через langchain-community;
- yandex — Yandex GPT через langchain-community.

Единый интерфейс: get_chat_model() возвращает BaseChatModel, а LLMClient
поверх него даёт complete() / stream() в том виде, в каком их ждёт
оркестратор чата.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Optional, Union

from langchain_core.exceptions import OutputParserException
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.output_parsers import JsonOutputParser

from config import (
    DEFAULT_SYSTEM_PROMPT,
    LLM_ADVANCED_MODEL,
    LLM_API_KEY,
    LLM_BASE_URL,
    LLM_FAST_MODEL,
    LLM_MAX_TOKENS,
    LLM_MODEL,
    LLM_PROVIDER,
    LLM_TEMPERATURE,
    MSG_LLM_NOT_CONFIGURED,
    PROVIDER_BASE_URLS,
)
from logger import get_logger

log = get_logger(__name__)

_JSON_HINT = "\n\nRespond with a valid JSON object matching this schema: {schema}"


class LLMNotConfiguredError(RuntimeError):
    """Нет ключа API для выбранного провайдера."""


@dataclass(frozen=True)
class LLMSettings:
    provider: str = LLM_PROVIDER
    api_key: Optional[str] = LLM_API_KEY or None
    base_url: Optional[str] = LLM_BASE_URL or None
    model: str = LLM_MODEL
    fast_model: str = LLM_FAST_MODEL
    advanced_model: str = LLM_ADVANCED_MODEL
    temperature: float = LLM_TEMPERATURE
    max_tokens: int = LLM_MAX_TOKENS
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def resolve_base_url(self) -> str:
        """Явный base_url → адрес известного провайдера → OpenAI."""
        if self.base_url:
            return self.base_url
        return PROVIDER_BASE_URLS.get(self.provider, PROVIDER_BASE_URLS["openai"])


# ─── Провайдеры ────────────────────────────────────────────────────────────────

def _openai_compatible(settings: LLMSettings, model: str) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    # Повторы делает очередь запросов, клиент не должен повторять сам
    return ChatOpenAI(
        api_key=settings.api_key,
        base_url=settings.resolve_base_url(),
        model=model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        max_retries=0,
    )


def _gigachat(settings: LLMSettings, model: str) -> BaseChatModel:
    from langchain_community.chat_models.gigachat import GigaChat

    return GigaChat(
        credentials=settings.api_key,
        scope=os.getenv("GIGACHAT_SCOPE", "GIGACHAT_API_PERS"),
        model=model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        verify_ssl_certs=False,
    )


def _yandex_gpt(settings: LLMSettings, model: str) -> BaseChatModel:
    from langchain_community.chat_models.yandex import ChatYandexGPT

    return ChatYandexGPT(
        api_key=settings.api_key,
        folder_id=os.getenv("YANDEX_FOLDER_ID", ""),
        model_name=model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )


_PROVIDERS: dict[str, Callable[[LLMSettings, str], BaseChatModel]] = {
    "gigachat": _gigachat,
    "yandex": _yandex_gpt,
}

_model_cache: dict[tuple[LLMSettings, str], BaseChatModel] = {}


def get_chat_model(settings: LLMSettings, model: Optional[str] = None) -> BaseChatModel:
    """
    Экземпляр чат-модели для настроек и имени модели.

    Экземпляры кешируются: повторные вызовы с теми же настройками
    не создают новых HTTP-клиентов.
    """
    if not settings.configured:
        raise LLMNotConfiguredError("Не задан API-ключ LLM-провайдера")

    model_name = model or settings.model
    key = (settings, model_name)
    if key not in _model_cache:
        factory = _PROVIDERS.get(settings.provider, _openai_compatible)
        _model_cache[key] = factory(settings, model_name)
        log.info("LLM-провайдер: %s (model=%s)", settings.provider, model_name)
    return _model_cache[key]


def reset_llm_cache() -> None:
    """Сбросить кеш моделей (после смены ключей в рантайме)."""
    _model_cache.clear()


# ─── Клиент ────────────────────────────────────────────────────────────────────

def _text_of(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Некоторые провайдеры отдают content списком частей
    return "".join(
        part if isinstance(part, str) else part.get("text", "")
        for part in content
    )


class LLMClient:
    """
    Обёртка над чат-моделью с поведением, которое ждёт конвейер чата.

    Без API-ключа не падает, а возвращает уведомление «AI не настроен»
    (для JSON-запросов — пустой список релевантных элементов).
    """

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        model_factory: Callable[[LLMSettings, Optional[str]], BaseChatModel] = get_chat_model,
    ) -> None:
        self.settings = settings or LLMSettings()
        self._model_factory = model_factory

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def _messages(
        self,
        prompt: str,
        system_prompt: Optional[str],
        settings: LLMSettings,
    ) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        effective = system_prompt or settings.system_prompt
        if effective:
            messages.append(SystemMessage(content=effective))
        messages.append(HumanMessage(content=prompt))
        return messages

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        settings: Optional[LLMSettings] = None,
        json_schema: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> Union[str, dict]:
        """
        Один запрос — один ответ.

        С json_schema к промпту добавляется подсказка о формате, а ответ
        разбирается как JSON; при неразборчивом ответе возвращается {}.
        """
        settings = settings or self.settings
        if not settings.configured:
            log.warning("LLM не настроен, возвращаю заглушку")
            return {"relevant_titles": []} if json_schema else MSG_LLM_NOT_CONFIGURED

        if json_schema:
            prompt += _JSON_HINT.format(schema=json.dumps(json_schema, ensure_ascii=False))

        chat = self._model_factory(settings, model)
        response = await chat.ainvoke(self._messages(prompt, system_prompt, settings))
        text = _text_of(response)

        if not json_schema:
            return text
        try:
            parsed = JsonOutputParser().parse(text)
        except OutputParserException as exc:
            log.error("Не удалось разобрать JSON-ответ LLM: %s", exc)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        settings: Optional[LLMSettings] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Ответ по частям по мере генерации."""
        settings = settings or self.settings
        if not settings.configured:
            yield MSG_LLM_NOT_CONFIGURED
            return

        chat = self._model_factory(settings, model)
        async for chunk in chat.astream(self._messages(prompt, system_prompt, settings)):
            text = _text_of(chunk)
            if text:
                yield text

    async def test_connection(self, settings: Optional[LLMSettings] = None) -> dict:
        """Короткий пробный запрос к провайдеру для админ-панели."""
        settings = settings or self.settings
        if not settings.configured:
            return {"success": False, "message": "API ключ не настроен"}

        probe = replace(settings, max_tokens=5, system_prompt=None)
        try:
            response = await self._model_factory(probe, None).ainvoke([HumanMessage(content="Hello")])
        except Exception as exc:
            log.warning("Проверка подключения к LLM не прошла: %s", exc)
            return {"success": False, "message": f"Ошибка: {exc}"}

        if _text_of(response):
            return {"success": True, "message": "Подключение успешно!"}
        return {"success": False, "message": "Пустой ответ от провайдера"}
