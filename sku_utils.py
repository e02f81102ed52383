"""
Утилиты для карточек товаров: разбор остатков и цветов.

Чистые функции без состояния. Используются при отображении товаров
и при подборе похожих по цвету позиций.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Iterable, NamedTuple, Optional, TypeVar

T = TypeVar("T")


class StockInfo(NamedTuple):
    in_stock: bool
    display_text: str
    qty: Optional[int]


class RGB(NamedTuple):
    r: int
    g: int
    b: int


# ─── Остатки ───────────────────────────────────────────────────────────────────

_OUT_OF_STOCK_TEXT = "Нет в наличии"

_SPACES_RE = re.compile(r"[\s\u00a0\u2000-\u200f\u2028-\u202f]")
_MORE_THAN_RE = re.compile(r"(?:более|больше|>|≥)\s*(\d+)")
_ANY_DIGITS_RE = re.compile(r"\d+")
_BARE_NUMBER_RE = re.compile(r"^(\d+)(?:\s*(?:шт|уп|ед|pcs|упак))?\.?$")


def _out_of_stock(qty: Optional[int] = None) -> StockInfo:
    return StockInfo(False, _OUT_OF_STOCK_TEXT, qty)


def _in_stock(qty: int) -> StockInfo:
    return StockInfo(True, f"В наличии ({qty} уп.)", qty)


def _rule_explicit_absence(text: str) -> Optional[StockInfo]:
    if text in ("", "0", "null") or "нет" in text or "отсутствует" in text:
        return _out_of_stock()
    return None


def _rule_more_than(text: str) -> Optional[StockInfo]:
    match = _MORE_THAN_RE.search(text)
    if match:
        return StockInfo(True, f"В наличии (≥{int(match.group(1))} уп.)", None)
    return None


def _rule_available_without_number(text: str) -> Optional[StockInfo]:
    if "в наличии" in text and not _ANY_DIGITS_RE.search(text):
        return StockInfo(True, "В наличии", None)
    return None


def _rule_bare_number(text: str) -> Optional[StockInfo]:
    match = _BARE_NUMBER_RE.match(text)
    if not match:
        return None
    qty = int(match.group(1))
    return _in_stock(qty) if qty > 0 else _out_of_stock(0)


def _rule_any_number(text: str) -> Optional[StockInfo]:
    match = _ANY_DIGITS_RE.search(text)
    if match and int(match.group()) > 0:
        return _in_stock(int(match.group()))
    return None


# Порядок важен: «более 5» не должно попасть в правило голого числа.
STOCK_RULES: tuple[Callable[[str], Optional[StockInfo]], ...] = (
    _rule_explicit_absence,
    _rule_more_than,
    _rule_available_without_number,
    _rule_bare_number,
    _rule_any_number,
)


def parse_stock(text: Any) -> StockInfo:
    """
    Разбирает строку остатка из фида.

    Примеры: «более 12» → в наличии, qty=None; «7 шт» → qty=7;
    «нет» / «0» / пусто → нет в наличии.
    """
    if text is None:
        return _out_of_stock()

    normalized = _SPACES_RE.sub(" ", str(text).lower()).strip()
    for rule in STOCK_RULES:
        result = rule(normalized)
        if result is not None:
            return result
    return _out_of_stock()


# ─── Цвета ─────────────────────────────────────────────────────────────────────

COLOR_DICTIONARY: dict[str, str] = {
    # основные цвета фида (приоритетные)
    "натуральный": "#d8b47a",
    "светло-серый": "#d3d3d3",
    "серый": "#808080",
    "бежевый": "#f5f5dc",
    "дуб": "#c8a165",
    "белёный дуб": "#f5f0e8",
    "выбеленный дуб": "#f0ead6",
    "белый": "#ffffff",
    "чёрный": "#000000",
    "черный": "#000000",
    # расширенная палитра
    "светлый дуб": "#d4b896",
    "тёмный дуб": "#8b6f47",
    "дуб натуральный": "#c19a6b",
    "дуб рустик": "#a67c52",
    "дуб винтаж": "#9d7a56",
    "дуб кантри": "#b8956f",
    "дуб классик": "#c8a165",
    # коричневые
    "коричневый": "#964b00",
    "светло-коричневый": "#c4a484",
    "тёмно-коричневый": "#654321",
    "шоколадный": "#d2691e",
    "орех": "#773f1a",
    "тёмный орех": "#5d2f0a",
    "светлый орех": "#8b5a2b",
    "венге": "#645452",
    "махагон": "#c04000",
    # серые
    "антрацит": "#36454f",
    "графитовый": "#4c4e52",
    "платиновый": "#e5e4e2",
    "серебристый": "#c0c0c0",
    "пепельный": "#b2beb5",
    "стальной": "#71797e",
    # бежевые / кремовые
    "кремовый": "#fffdd0",
    "слоновая кость": "#fffff0",
    "молочный": "#fdfbf4",
    "песочный": "#f4a460",
    "пшеничный": "#f5deb3",
    "льняной": "#faf0e6",
    # красные
    "красный": "#ff0000",
    "вишнёвый": "#911e42",
    "бордовый": "#800000",
    "алый": "#ff2400",
    "терракотовый": "#e2725b",
    # прочие
    "зелёный": "#008000",
    "синий": "#0000ff",
    "жёлтый": "#ffff00",
    "оранжевый": "#ffa500",
    "фиолетовый": "#8b00ff",
    "розовый": "#ffc0cb",
    "голубой": "#add8e6",
}

_HEX_FULL_RE = re.compile(r"^#?([a-f\d]{2})([a-f\d]{2})([a-f\d]{2})$", re.IGNORECASE)
_HEX_SHORT_RE = re.compile(r"^#?([a-f\d])([a-f\d])([a-f\d])$", re.IGNORECASE)
_HEX_IN_TEXT_RE = re.compile(r"#(?:[a-f0-9]{6}|[a-f0-9]{3})(?![a-f0-9])", re.IGNORECASE)
_FIRST_TOKEN_RE = re.compile(r"[\s/-]")


def hex_to_rgb(value: str) -> Optional[RGB]:
    """#rrggbb или #rgb → RGB."""
    match = _HEX_FULL_RE.match(value)
    if match:
        return RGB(*(int(part, 16) for part in match.groups()))
    match = _HEX_SHORT_RE.match(value)
    if match:
        return RGB(*(int(part * 2, 16) for part in match.groups()))
    return None


def parse_color_text(text: Any) -> Optional[RGB]:
    """
    Определяет RGB по текстовому названию цвета.

    Порядок: HEX в тексте → точное совпадение со словарём →
    вхождение в обе стороны (для составных названий вроде «дуб светлый») →
    первое слово → None.
    """
    if not text or not isinstance(text, str):
        return None

    cleaned = " ".join(text.lower().split())
    if not cleaned:
        return None

    hex_match = _HEX_IN_TEXT_RE.search(cleaned)
    if hex_match:
        return hex_to_rgb(hex_match.group())

    if cleaned in COLOR_DICTIONARY:
        return hex_to_rgb(COLOR_DICTIONARY[cleaned])

    for key, hex_value in COLOR_DICTIONARY.items():
        if key in cleaned or cleaned in key:
            return hex_to_rgb(hex_value)

    first_word = _FIRST_TOKEN_RE.split(cleaned)[0]
    if first_word in COLOR_DICTIONARY:
        return hex_to_rgb(COLOR_DICTIONARY[first_word])

    return None


def color_distance(first: Optional[RGB], second: Optional[RGB]) -> float:
    """Евклидово расстояние в RGB; inf, если у одного из цветов нет значения."""
    if first is None or second is None:
        return math.inf
    return math.sqrt(
        (first.r - second.r) ** 2
        + (first.g - second.g) ** 2
        + (first.b - second.b) ** 2
    )


def find_nearest_by_color(
    target: Optional[RGB],
    items: Iterable[T],
    color_of: Callable[[T], Optional[RGB]],
    limit: int = 5,
) -> list[T]:
    """Ближайшие по цвету позиции; позиции без цвета (inf) отбрасываются."""
    ranked = sorted(
        ((color_distance(target, color_of(item)), idx, item) for idx, item in enumerate(items)),
        key=lambda entry: (entry[0], entry[1]),
    )
    return [item for distance, _, item in ranked if distance != math.inf][:limit]
