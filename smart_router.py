"""
Маршрутизатор вопросов по сложности.

Определяет, нужен ли LLM и какого уровня модель:
- простые приветствия → без AI;
- запросы по артикулу → из структурированных данных;
- сложные сравнения и длинные вопросы → продвинутая модель.

Правила проверяются строго по порядку, первое совпадение выигрывает.
Наборы паттернов пересекаются, поэтому порядок менять нельзя.
"""

from __future__ import annotations

import re
from typing import Callable, NamedTuple, Optional

from config import LLM_ADVANCED_MODEL, LLM_FAST_MODEL, LLM_MODEL
from models import ModelTier, RoutingDecision

SIMPLE_PATTERNS = [
    re.compile(r"^(привет|здравствуй|добрый день|доброе утро|добрый вечер)", re.I),
    re.compile(r"^(спасибо|благодарю|благодарность)", re.I),
    re.compile(r"^(пока|до свидания|всего хорошего)", re.I),
    re.compile(r"^(да|нет|ок|окей|хорошо|понятно)$", re.I),
    re.compile(r"как (связаться|позвонить|написать)", re.I),
    re.compile(r"ваш (телефон|адрес|email|почта|контакт)", re.I),
    re.compile(r"режим работы", re.I),
    re.compile(r"способ (оплаты|доставки)", re.I),
    re.compile(r"срок (доставки|гарантии)", re.I),
]

PRODUCT_PATTERNS = [
    re.compile(r"артикул\s*[:\s]?\s*([a-zA-Z0-9\-]+)", re.I),
    re.compile(r"\b([a-zA-Z]{2,}\d{2,}[a-zA-Z0-9\-]*)\b", re.I),
    re.compile(r"цена\s+(на\s+)?[a-zA-Z0-9]", re.I),
    re.compile(r"наличи[еи]\s+[a-zA-Z0-9]", re.I),
    re.compile(r"характеристик[иа]\s+[a-zA-Z0-9]", re.I),
    re.compile(r"остат(ок|ки)\s+[a-zA-Z0-9]", re.I),
]

FILE_PATTERNS = [
    re.compile(pattern, re.I)
    for pattern in (
        r"скачать", r"документ", r"сертификат", r"каталог", r"прайс",
        r"инструкци", r"презентац", r"логотип", r"брендбук",
    )
]

COMPLEX_PATTERNS = [
    re.compile(r"сравн[иите]", re.I),
    re.compile(r"порекоменд", re.I),
    re.compile(r"подобр(ать|и)", re.I),
    re.compile(r"какой лучше", re.I),
    re.compile(r"разница между", re.I),
    re.compile(r"объясн[ии]", re.I),
    re.compile(r"почему", re.I),
    re.compile(r"в чём отличи", re.I),
    re.compile(r"для (какого|каких) (помещени|интерьер)", re.I),
]

SHORT_MESSAGE_WORDS = 3
LONG_QUESTION_WORDS = 20


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


class RoutingRule(NamedTuple):
    predicate: Callable[[str, int], bool]
    decision: RoutingDecision


def _decision(use_ai: bool, model: ModelTier, reason: str, confidence: float) -> RoutingDecision:
    return RoutingDecision(use_ai=use_ai, model=model, reason=reason, confidence=confidence)


ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(
        lambda text, words: words <= SHORT_MESSAGE_WORDS and _matches_any(SIMPLE_PATTERNS, text),
        _decision(False, ModelTier.FAST, "simple_greeting", 0.95),
    ),
    RoutingRule(
        lambda text, words: _matches_any(PRODUCT_PATTERNS, text),
        _decision(False, ModelTier.FAST, "product_lookup", 0.9),
    ),
    RoutingRule(
        lambda text, words: _matches_any(FILE_PATTERNS, text),
        _decision(True, ModelTier.FAST, "file_request", 0.85),
    ),
    RoutingRule(
        lambda text, words: _matches_any(COMPLEX_PATTERNS, text),
        _decision(True, ModelTier.ADVANCED, "complex_analysis", 0.8),
    ),
    RoutingRule(
        lambda text, words: words > LONG_QUESTION_WORDS,
        _decision(True, ModelTier.ADVANCED, "long_question", 0.7),
    ),
    RoutingRule(
        lambda text, words: _matches_any(SIMPLE_PATTERNS, text),
        _decision(True, ModelTier.FAST, "simple_question", 0.85),
    ),
)

DEFAULT_DECISION = _decision(True, ModelTier.STANDARD, "general_question", 0.6)


def analyze_question(question: str) -> RoutingDecision:
    """Классифицирует вопрос и выбирает уровень модели."""
    text = question.lower().strip()
    word_count = len(text.split())
    for rule in ROUTING_RULES:
        if rule.predicate(text, word_count):
            return rule.decision
    return DEFAULT_DECISION


def get_model_for_route(
    decision: RoutingDecision,
    model: Optional[str] = None,
    fast_model: Optional[str] = None,
    advanced_model: Optional[str] = None,
) -> str:
    """Имя модели для уровня из решения маршрутизатора."""
    if decision.model is ModelTier.FAST:
        return fast_model or LLM_FAST_MODEL
    if decision.model is ModelTier.ADVANCED:
        return advanced_model or model or LLM_ADVANCED_MODEL
    return model or LLM_MODEL


# ─── Мгновенные ответы без AI ─────────────────────────────────────────────────

INSTANT_RESPONSES: dict[str, str] = {
    "привет": "Здравствуйте! Чем могу помочь?",
    "здравствуйте": "Здравствуйте! Готов ответить на ваши вопросы.",
    "добрый день": "Добрый день! Чем могу быть полезен?",
    "доброе утро": "Доброе утро! Готов помочь вам.",
    "добрый вечер": "Добрый вечер! Чем могу помочь?",
    "спасибо": "Пожалуйста! Если будут ещё вопросы — обращайтесь.",
    "благодарю": "Рад помочь! Обращайтесь, если понадобится.",
    "пока": "До свидания! Хорошего дня!",
    "до свидания": "До свидания! Будем рады видеть вас снова.",
}


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)")


_INSTANT_PATTERNS = [(_phrase_pattern(phrase), reply) for phrase, reply in INSTANT_RESPONSES.items()]


def get_instant_response(message: str) -> Optional[str]:
    """
    Готовый ответ на приветствие/благодарность/прощание или None.

    Сначала точное совпадение, затем фраза целыми словами в начале
    или внутри сообщения («покажите» не считается за «пока»).
    """
    normalized = message.lower().strip()
    if normalized in INSTANT_RESPONSES:
        return INSTANT_RESPONSES[normalized]
    for pattern, reply in _INSTANT_PATTERNS:
        if pattern.search(normalized):
            return reply
    return None
