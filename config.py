"""
Конфигурация AI-ассистента дилерского портала.

Лимиты очереди, параметры кешей, настройки LLM и тексты промптов
собраны здесь, чтобы поведение конвейера чата можно было менять без правки кода.
"""

from __future__ import annotations

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ─── Пути проекта ──────────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

KNOWLEDGE_BASE_PATH = Path(
    os.getenv("KNOWLEDGE_BASE_PATH", str(DATA_DIR / "knowledge_base.json"))
)

# ─── Логирование ───────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = LOGS_DIR / "portal_chat.log"

# ─── LLM (значения по умолчанию, если настройки не переданы явно) ─────────────
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_FAST_MODEL = os.getenv("LLM_FAST_MODEL", "gpt-4o-mini")
LLM_ADVANCED_MODEL = os.getenv("LLM_ADVANCED_MODEL", "gpt-4o")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2048"))

PROVIDER_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
}

# ─── Очередь запросов к LLM ────────────────────────────────────────────────────
QUEUE_MAX_CONCURRENT = int(os.getenv("QUEUE_MAX_CONCURRENT", "10"))
QUEUE_MAX_SIZE = int(os.getenv("QUEUE_MAX_SIZE", "100"))
QUEUE_REQUEST_TIMEOUT = float(os.getenv("QUEUE_REQUEST_TIMEOUT", "60"))  # секунды
CHAT_REQUEST_TIMEOUT = float(os.getenv("CHAT_REQUEST_TIMEOUT", "90"))    # чат и поток
QUEUE_RETRY_ATTEMPTS = int(os.getenv("QUEUE_RETRY_ATTEMPTS", "2"))
QUEUE_RETRY_DELAY = float(os.getenv("QUEUE_RETRY_DELAY", "1.0"))         # секунды

# ─── Кеши ──────────────────────────────────────────────────────────────────────
RESPONSE_CACHE_MAX_SIZE = int(os.getenv("RESPONSE_CACHE_MAX_SIZE", "1000"))
RESPONSE_CACHE_TTL_MINUTES = int(os.getenv("RESPONSE_CACHE_TTL_MINUTES", "60"))
RESPONSE_CACHE_SIMILARITY = float(os.getenv("RESPONSE_CACHE_SIMILARITY", "0.7"))

ARTICLE_CACHE_MAX_SIZE = 1000
ARTICLE_CACHE_TTL = 60 * 60           # 1 час
PRODUCT_INDEX_TTL = 10 * 60           # 10 минут
KNOWLEDGE_CACHE_TTL = 5 * 60          # 5 минут

# ─── Rate limiting (окно в секундах, максимум запросов) ───────────────────────
RATE_LIMITS: dict[str, dict[str, int]] = {
    "chat": {"window": 60, "max_requests": 30},
    "ai_stream": {"window": 60, "max_requests": 20},
    "api": {"window": 60, "max_requests": 100},
    "auth": {"window": 15 * 60, "max_requests": 10},
}

STREAM_MAX_CONNECTIONS = int(os.getenv("STREAM_MAX_CONNECTIONS", "100"))

# ─── Сессии чата ───────────────────────────────────────────────────────────────
SESSION_MAX_MESSAGES = int(os.getenv("SESSION_MAX_MESSAGES", "200"))
SESSION_IDLE_TTL = 24 * 60 * 60       # неактивные сессии живут сутки

# ─── Планировщик обслуживания (интервалы в секундах) ─────────────────────────
CACHE_SWEEP_INTERVAL = 5 * 60
RATE_LIMIT_SWEEP_INTERVAL = 60
INDEX_REFRESH_INTERVAL = PRODUCT_INDEX_TTL
SESSION_SWEEP_INTERVAL = 60 * 60

# ─── Тексты ответов ────────────────────────────────────────────────────────────
MSG_RATE_LIMITED = "Слишком много запросов. Подождите немного."
MSG_OVERLOADED = "Сервис перегружен. Попробуйте через несколько секунд."
MSG_STREAM_OVERLOADED = "Сервер перегружен. Попробуйте позже."
MSG_ERROR = "Извините, произошла ошибка. Попробуйте ещё раз чуть позже."
MSG_TIMEOUT = (
    "Извините, ответ занял слишком много времени. "
    "Попробуйте переформулировать вопрос или повторить попытку."
)
MSG_LLM_NOT_CONFIGURED = (
    "⚠️ AI сервис не настроен. Пожалуйста, добавьте API ключ "
    "в разделе \"Настройки ИИ\" админ-панели."
)
MSG_STREAM_ERROR = "\n\n⚠️ Ошибка при получении ответа."

# ─── Промпты ───────────────────────────────────────────────────────────────────
DEFAULT_SYSTEM_PROMPT = os.getenv("LLM_SYSTEM_PROMPT", "Вы - полезный ИИ-ассистент.")

KNOWLEDGE_ANSWER_RULES = """Твоя главная задача — предоставлять пользователю точную информацию и прямые ссылки на материалы из базы знаний. Внимательно изучи предоставленный контекст.

ПРАВИЛА ОТВЕТА:
1. Отвечай СТРОГО на основе предоставленного контекста из базы знаний.
2. Если в контексте для какого-либо материала есть "Ссылка на ресурс" или "Ссылка на файл", ты ОБЯЗАН включить эту ссылку в свой ответ. Форматируй ссылки как кликабельные, например: [Название ссылки](URL).
3. Если ссылок несколько, предоставь их все.
4. Не придумывай информацию. Если ответа нет в контексте, сообщи об этом."""

KNOWLEDGE_SEARCH_PROMPT = """Проанализируй запрос пользователя: "{message}".
Найди наиболее релевантные элементы из этого списка:
{items}
Верни ТОЛЬКО названия (title) самых подходящих элементов. Если ничего не подходит, верни пустой массив."""

KNOWLEDGE_SEARCH_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "relevant_titles": {
            "type": "array",
            "items": {"type": "string"},
        },
    },
    "required": ["relevant_titles"],
}

CLARIFICATION_PROMPT = """Я не смог найти точный ответ на запрос пользователя: "{message}".
Проанализируй этот запрос и список тем, которые я знаю:
{topics}

Сформируй дружелюбный уточняющий вопрос. Предложи 3-4 наиболее вероятные темы из списка, которые могли бы заинтересовать пользователя.
Например: "Я не совсем уверен, что вы ищете. Возможно, вас интересует что-то из этого: ...?\""""

# ─── Частые вопросы для прогрева семантического кеша ─────────────────────────
COMMON_QUESTIONS: list[dict] = [
    {
        "question": "Как связаться с поддержкой?",
        "answer": (
            "Вы можете связаться с нашей поддержкой по телефону или написать на "
            "email support@floor-svs.ru. Мы работаем с 9:00 до 18:00 по московскому времени."
        ),
        "tokens": 100,
    },
    {
        "question": "Какие способы оплаты вы принимаете?",
        "answer": (
            "Мы принимаем оплату банковскими картами, безналичный расчёт "
            "для юридических лиц, а также наличными при самовывозе."
        ),
        "tokens": 80,
    },
    {
        "question": "Как оформить возврат?",
        "answer": (
            "Для оформления возврата свяжитесь с нашей поддержкой в течение 14 дней "
            "с момента получения товара. Товар должен сохранить товарный вид "
            "и оригинальную упаковку."
        ),
        "tokens": 90,
    },
]
