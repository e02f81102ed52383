"""
FastAPI-бэкенд AI-ассистента дилерского портала.

Реализует:
- POST /api/chat — ответ на сообщение целиком (карточка товара, ссылки
  на скачивание или текст LLM по базе знаний);
- POST /api/chat/stream — тот же ассистент потоком SSE;
- GET/POST /api/chat/session — сохранённая история переписки;
- /api/admin/* — прогрев и статистика кешей, проверка подключения к LLM;
- GET /health — состояние очереди, лимитов и кешей.

Запуск:
    uvicorn main:app --host 127.0.0.1 --port 8000 --reload
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from article_service import ArticleResponseCache, ProductIndexCache
from chat_service import ChatService, RateLimitExceeded, ServiceOverloaded
from config import (
    COMMON_QUESTIONS,
    MSG_RATE_LIMITED,
    RESPONSE_CACHE_MAX_SIZE,
    RESPONSE_CACHE_SIMILARITY,
    RESPONSE_CACHE_TTL_MINUTES,
)
from knowledge_store import JsonKnowledgeStore
from llm_factory import LLMClient
from logger import get_logger
from models import (
    ChatRequest,
    ChatResponse,
    ChatSessionRequest,
    ChatSessionResponse,
    LLMTestRequest,
    StreamChatRequest,
)
from rate_limiter import RateLimiter
from request_queue import RequestQueue
from response_cache import SemanticResponseCache
from scheduler import start_scheduler
from session_store import ChatSession, SessionStore

log = get_logger(__name__)

_STARTED_AT = time.monotonic()


def build_chat_service() -> ChatService:
    """Создаёт оркестратор со всеми зависимостями процесса."""
    store = JsonKnowledgeStore()
    return ChatService(
        llm=LLMClient(),
        store=store,
        queue=RequestQueue(),
        response_cache=SemanticResponseCache(
            max_size=RESPONSE_CACHE_MAX_SIZE,
            ttl_minutes=RESPONSE_CACHE_TTL_MINUTES,
            similarity_threshold=RESPONSE_CACHE_SIMILARITY,
        ),
        article_cache=ArticleResponseCache(),
        product_index=ProductIndexCache(store.list_products),
        rate_limiter=RateLimiter(),
        sessions=SessionStore(),
    )


# ─── Lifespan (запуск/остановка) ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Запуск FastAPI-бэкенда …")

    service = build_chat_service()
    app.state.chat_service = service

    if not service.llm.configured:
        log.critical("LLM не настроен: задайте LLM_API_KEY в .env")

    await service.warm_caches(COMMON_QUESTIONS)
    sched = start_scheduler(service)

    yield

    sched.shutdown(wait=False)
    log.info("FastAPI-бэкенд остановлен.")


# ─── Приложение ────────────────────────────────────────────────────────────────

app = FastAPI(
    title="AI-ассистент дилерского портала",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def client_id_of(request: Request) -> str:
    """Ключ rate limiting: сессия чата, затем IP клиента."""
    return (
        request.headers.get("x-session-id")
        or request.headers.get("x-forwarded-for")
        or (request.client.host if request.client else None)
        or "anonymous"
    )


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": message})


# ─── Обработчики ошибок ────────────────────────────────────────────────────────

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"message": MSG_RATE_LIMITED, "retryAfter": exc.retry_after},
        headers={**exc.headers, "Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(ServiceOverloaded)
async def overloaded_handler(request: Request, exc: ServiceOverloaded) -> JSONResponse:
    content: dict = {"message": exc.message}
    if exc.estimated_wait is not None:
        content["estimatedWait"] = exc.estimated_wait
    if exc.active_connections is not None:
        content["activeConnections"] = exc.active_connections
    return JSONResponse(status_code=503, content=content)


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Необработанная ошибка %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# ─── Чат ───────────────────────────────────────────────────────────────────────

@app.post("/api/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat_endpoint(
    body: ChatRequest,
    request: Request,
    service: ChatService = Depends(get_chat_service),
):
    """Ответ ассистента на сообщение пользователя."""
    if not body.message.strip():
        return _bad_request("message is required")

    log.info("Запрос session=%s: %s", body.session_id[:8], body.message[:100])
    reply = await service.process_message(
        body.message,
        session_id=body.session_id,
        chat_history=body.chat_history,
        client_id=client_id_of(request),
    )
    return reply.to_response()


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@app.post("/api/chat/stream")
async def chat_stream_endpoint(
    body: StreamChatRequest,
    request: Request,
    service: ChatService = Depends(get_chat_service),
):
    """Потоковый ответ: data: {"content": "..."} … data: [DONE]."""
    if not body.message.strip():
        return _bad_request("message is required")

    rate_headers = service.admit_stream(client_id_of(request))

    async def events():
        async for chunk in service.stream_message(
            body.message,
            chat_history=body.chat_history,
            context=body.context,
            session_id=body.session_id,
        ):
            yield _sse({"content": chunk})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Active-Connections": str(service.active_streams),
            **rate_headers,
        },
    )


# ─── История переписки ────────────────────────────────────────────────────────

def _session_response(session: ChatSession) -> ChatSessionResponse:
    return ChatSessionResponse(
        session_id=session.session_id,
        messages=session.messages,
        user_email=session.user_email,
        is_active=session.is_active,
        last_activity=session.last_activity,
    )


@app.get("/api/chat/session", response_model=ChatSessionResponse)
async def get_chat_session(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    service: ChatService = Depends(get_chat_service),
):
    if not session_id:
        return _bad_request("sessionId is required")
    session = service.sessions.get(session_id) if service.sessions else None
    if session is None:
        return JSONResponse(status_code=404, content={"message": "Session not found"})
    return _session_response(session)


@app.post("/api/chat/session", response_model=ChatSessionResponse)
async def save_chat_session(
    body: ChatSessionRequest,
    service: ChatService = Depends(get_chat_service),
):
    if not body.session_id:
        return _bad_request("sessionId is required")
    if service.sessions is None:
        return JSONResponse(status_code=503, content={"message": "Хранилище сессий отключено"})
    session = service.sessions.save(body.session_id, body.messages, body.user_email)
    return _session_response(session)


# ─── Администрирование ────────────────────────────────────────────────────────

@app.post("/api/admin/cache/warm")
async def warm_cache(service: ChatService = Depends(get_chat_service)) -> dict:
    """Прогрев кешей: частые вопросы, снимок базы знаний, индекс товаров."""
    started = time.monotonic()
    results = await service.warm_caches(COMMON_QUESTIONS)
    return {
        "success": True,
        "warmed_at": datetime.now(timezone.utc).isoformat(),
        "duration_ms": round((time.monotonic() - started) * 1000),
        "results": results,
    }


@app.get("/api/admin/cache")
async def cache_stats(service: ChatService = Depends(get_chat_service)) -> dict:
    return {
        **service.get_cache_stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/admin/llm/test")
async def test_llm_connection(
    body: LLMTestRequest,
    service: ChatService = Depends(get_chat_service),
) -> dict:
    """Пробный запрос к провайдеру с переданными или текущими настройками."""
    overrides = {k: v for k, v in body.model_dump().items() if v}
    settings = replace(service.llm.settings, **overrides)
    return await service.llm.test_connection(settings)


# ─── Состояние ─────────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check(service: ChatService = Depends(get_chat_service)) -> dict:
    """Проверка статуса системы."""
    settings = service.llm.settings
    return {
        "status": "ok" if service.llm.configured else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _STARTED_AT, 1),
        "llm": {
            "available": service.llm.configured,
            "provider": settings.provider,
            "model": settings.model,
        },
        "ai_queue": service.queue.get_status(),
        "rate_limiter": service.rate_limiter.get_stats(),
        "cache": service.get_cache_stats(),
        "streams": {"active": service.active_streams, "max": service.max_streams},
    }


# ─── Точка входа ──────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
