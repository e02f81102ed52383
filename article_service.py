"""
Обработка артикулов в сообщениях чата.

1. Поиск артикула в тексте сообщения.
2. Точное совпадение в индексе товаров (артикул → список товаров).
3. Похожие артикулы (префикс / вхождение), если точного нет.
4. Формирование ответа product_info без обращения к LLM
   (или ссылок на документы товара, если спрашивают инструкцию/сертификат).
5. Запросы про текстуры/фото/укладку уходят в базу знаний с товаром в контексте.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from config import ARTICLE_CACHE_MAX_SIZE, ARTICLE_CACHE_TTL, PRODUCT_INDEX_TTL
from logger import get_logger
from models import (
    Attachment,
    DownloadItem,
    DownloadLinkData,
    DownloadLinkPayload,
    MultiDownloadLinksData,
    MultiDownloadLinksPayload,
    Product,
    ProductInfoData,
    ProductInfoPayload,
    encode_payload,
)
from sku_utils import StockInfo, parse_stock

log = get_logger(__name__)

ProductIndex = dict[str, list[Product]]

# Буквенно-цифровой код: хотя бы одна цифра и одна латинская буква, длина от 3
_ARTICLE_RE = re.compile(r"\b((?=\w*\d)(?=\w*[a-zA-Z])\w{3,})\b", re.ASCII)

KNOWLEDGE_KEYWORDS = (
    "текстур", "интерьер", "фото", "изображен", "картинк", "выглядит",
    "смотрится", "дизайн", "применен", "пример", "сочетан", "комбинир",
)

DOCUMENT_KEYWORDS = ("укладк", "монтаж", "инструкци", "сертификат", "документ")

# Ключи параметров фида, в которых приходит остаток (первый найденный)
STOCK_PARAM_KEYS = ("Остаток", "остаток", "наличие", "quantity", "Количество на складе", "склад")

SUGGESTIONS_SHOWN = 15
PRICE_NOT_SET = "не указана"


def extract_article_code(message: str) -> Optional[str]:
    """Первый токен, похожий на артикул (например AB123), или None."""
    match = _ARTICLE_RE.search(message)
    return match.group(1) if match else None


def is_knowledge_base_request(message: str) -> bool:
    """Пользователь спрашивает про текстуру, фото, дизайн — нужна база знаний."""
    lower = message.lower()
    return any(kw in lower for kw in KNOWLEDGE_KEYWORDS)


def is_document_request(message: str) -> bool:
    lower = message.lower()
    return any(kw in lower for kw in DOCUMENT_KEYWORDS)


# ─── Индекс товаров ────────────────────────────────────────────────────────────

def build_product_index(products: Iterable[Product]) -> ProductIndex:
    """Строит индекс «артикул в нижнем регистре → товары». Артикулы не уникальны."""
    index: ProductIndex = {}
    for product in products:
        if product.vendor_code:
            index.setdefault(product.vendor_code.lower(), []).append(product)
    return index


class ProductIndexCache:
    """
    Индекс товаров с временем жизни.

    Индекс всегда пересобирается целиком из снимка фидов;
    устаревшие записи уходят вместе с ним, а не по одной.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[list[Product]]],
        ttl: float = PRODUCT_INDEX_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._index: Optional[ProductIndex] = None
        self._built_at = 0.0

    async def get(self) -> ProductIndex:
        if self._index is None or self._clock() - self._built_at >= self._ttl:
            await self.refresh()
        return self._index

    async def refresh(self) -> ProductIndex:
        products = await self._loader()
        self._index = build_product_index(products)
        self._built_at = self._clock()
        log.info(
            "Индекс товаров пересобран: артикулов %d, товаров %d",
            len(self._index),
            len(products),
        )
        return self._index

    def invalidate(self) -> None:
        self._index = None


def find_exact_product(index: ProductIndex, article_code: str) -> Optional[Product]:
    matches = index.get(article_code.lower())
    return matches[0] if matches else None


def find_similar_products(
    index: ProductIndex,
    article_code: str,
    limit: Optional[int] = 10,
) -> list[Product]:
    """
    Товары, чей артикул начинается с кода или содержит его (кроме точного).

    Результат без повторов по vendorCode, отсортирован по артикулу.
    limit=None — без ограничения.
    """
    code = article_code.lower()
    unique: dict[str, Product] = {}
    for key, products in index.items():
        if key == code or code not in key:
            continue
        for product in products:
            unique.setdefault(product.vendor_code, product)

    similar = sorted(unique.values(), key=lambda p: p.vendor_code)
    return similar if limit is None else similar[:limit]


# ─── Формирование ответов ──────────────────────────────────────────────────────

class ArticleResultType(str, Enum):
    EXACT_MATCH = "exact_match"
    SIMILAR_MATCHES = "similar_matches"
    NOT_FOUND = "not_found"
    KNOWLEDGE_BASE = "knowledge_base"


@dataclass
class ArticleSearchResult:
    type: ArticleResultType
    article_code: str
    product: Optional[Product] = None
    similar_products: list[Product] = field(default_factory=list)
    documents_requested: bool = False


@dataclass
class ArticleResponse:
    content: str
    attachments: list[Attachment] = field(default_factory=list)


def product_stock(product: Product) -> Optional[StockInfo]:
    """Остаток из параметров фида; None, если фид его не передаёт."""
    for key in STOCK_PARAM_KEYS:
        if product.params.get(key) is not None:
            return parse_stock(product.params[key])
    return None


def format_product_info_payload(product: Product) -> ProductInfoPayload:
    stock = product_stock(product)
    return ProductInfoPayload(
        data=ProductInfoData(
            name=product.name,
            vendor_code=product.vendor_code,
            description=product.description,
            picture=product.picture,
            price=_format_price(product.price),
            params=product.params,
            stock=stock.display_text if stock else None,
            in_stock=stock.in_stock if stock else None,
        )
    )


def format_documents_payload(
    product: Product,
) -> DownloadLinkPayload | MultiDownloadLinksPayload:
    """Ссылки на документы товара (инструкции, сертификаты) вместо карточки."""
    if len(product.documents) == 1:
        doc = product.documents[0]
        return DownloadLinkPayload(
            data=DownloadLinkData(
                text=f'Вы можете скачать "{doc.name}" по следующей ссылке',
                url=doc.url,
            )
        )
    return MultiDownloadLinksPayload(
        data=MultiDownloadLinksData(
            items=[
                DownloadItem(text=f'Скачать "{doc.name}"', url=doc.url, title=doc.name)
                for doc in product.documents
            ]
        )
    )


def _format_price(price: Optional[float]) -> str:
    if not price:
        return PRICE_NOT_SET
    return str(int(price)) if float(price).is_integer() else str(price)


def format_similar_products_message(article_code: str, products: list[Product]) -> str:
    shown = products[:SUGGESTIONS_SHOWN]
    lines = "\n".join(f"🔸 **{p.vendor_code}** — {p.name}" for p in shown)
    rest = len(products) - len(shown)
    more = f"\n\n...и ещё {rest} вариантов" if rest > 0 else ""
    return (
        f"Точного артикула **{article_code.upper()}** не найдено, "
        f"но есть похожие варианты:\n\n{lines}{more}\n\n"
        "Пожалуйста, уточните, какой именно артикул вас интересует."
    )


def format_not_found_message(article_code: str) -> str:
    return (
        f"Извините, артикул **{article_code.upper()}** не найден в базе данных. "
        "Проверьте правильность написания или попробуйте ввести часть артикула для поиска."
    )


def process_article_request(
    message: str,
    index: ProductIndex,
) -> Optional[ArticleSearchResult]:
    """
    Классифицирует сообщение с артикулом. None — артикула в сообщении нет.

    Запрос про текстуры/фото → KNOWLEDGE_BASE: такой запрос решается
    через базу знаний, а не карточкой товара. Найденный товар (если есть)
    передаётся туда как контекст.
    """
    article_code = extract_article_code(message)
    if not article_code:
        return None

    exact = find_exact_product(index, article_code)
    if is_knowledge_base_request(message):
        return ArticleSearchResult(
            type=ArticleResultType.KNOWLEDGE_BASE,
            article_code=article_code,
            product=exact,
        )
    if exact is not None:
        return ArticleSearchResult(
            type=ArticleResultType.EXACT_MATCH,
            article_code=article_code,
            product=exact,
            documents_requested=is_document_request(message),
        )

    similar = find_similar_products(index, article_code, limit=None)
    if similar:
        return ArticleSearchResult(
            type=ArticleResultType.SIMILAR_MATCHES,
            article_code=article_code,
            similar_products=similar,
        )
    return ArticleSearchResult(type=ArticleResultType.NOT_FOUND, article_code=article_code)


def generate_article_response(result: ArticleSearchResult) -> Optional[ArticleResponse]:
    """Локальный ответ без LLM; для KNOWLEDGE_BASE — None."""
    if result.type is ArticleResultType.EXACT_MATCH:
        product = result.product
        if result.documents_requested and product.documents:
            return ArticleResponse(content=encode_payload(format_documents_payload(product)))
        attachments = (
            [Attachment(name=product.name, url=product.picture, type="image")]
            if product.picture
            else []
        )
        return ArticleResponse(
            content=encode_payload(format_product_info_payload(product)),
            attachments=attachments,
        )
    if result.type is ArticleResultType.SIMILAR_MATCHES:
        return ArticleResponse(
            content=format_similar_products_message(result.article_code, result.similar_products)
        )
    if result.type is ArticleResultType.NOT_FOUND:
        return ArticleResponse(content=format_not_found_message(result.article_code))
    return None


# ─── Кеш ответов по артикулам ─────────────────────────────────────────────────

@dataclass
class CachedArticleResponse:
    content: str
    attachments: list[Attachment]
    timestamp: float


class ArticleResponseCache:
    """Готовые ответы по артикулам: TTL 1 час, при переполнении — минус 20% самых старых."""

    def __init__(
        self,
        max_size: int = ARTICLE_CACHE_MAX_SIZE,
        ttl: float = ARTICLE_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CachedArticleResponse] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, article_code: str) -> Optional[ArticleResponse]:
        key = article_code.lower()
        cached = self._entries.get(key)
        if cached is None:
            return None
        if self._clock() - cached.timestamp < self.ttl:
            return ArticleResponse(content=cached.content, attachments=list(cached.attachments))
        del self._entries[key]
        return None

    def set(self, article_code: str, response: ArticleResponse) -> None:
        self._entries[article_code.lower()] = CachedArticleResponse(
            content=response.content,
            attachments=list(response.attachments),
            timestamp=self._clock(),
        )
        if len(self._entries) > self.max_size:
            oldest = sorted(self._entries, key=lambda k: self._entries[k].timestamp)
            for key in oldest[: len(oldest) // 5]:
                del self._entries[key]

    def cleanup(self) -> int:
        now = self._clock()
        expired = [k for k, v in self._entries.items() if now - v.timestamp >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
