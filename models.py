"""
Pydantic-модели данных конвейера чата.

Используются оркестратором, кешами и API-слоем для единообразной
валидации и сериализации. Поля, которые приходят от фронтенда и из
фидов в camelCase, объявлены с алиасами.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─── Сообщения чата ────────────────────────────────────────────────────────────

class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Attachment(BaseModel):
    name: str
    url: str
    type: str = "image"


class ChatMessage(BaseModel):
    """Сообщение сессии. После создания не изменяется."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: ChatRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attachments: list[Attachment] = Field(default_factory=list)


# ─── Товары и база знаний ──────────────────────────────────────────────────────

class ProductDocument(BaseModel):
    url: str
    name: str


class Product(_CamelModel):
    """Товар из XML-фида. Ядро работает с ним только на чтение."""

    id: str = ""
    name: str = ""
    vendor_code: str = Field("", alias="vendorCode", description="Артикул (не уникален)")
    price: Optional[float] = None
    description: str = ""
    picture: str = ""
    vendor: str = ""
    url: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    documents: list[ProductDocument] = Field(default_factory=list)

    @field_validator("id", "name", "vendor_code", "description", "picture", "vendor", "url", mode="before")
    @classmethod
    def _none_to_text(cls, value: Any) -> str:
        # В фидах артикулы и id бывают числами, а пустые поля приходят как null
        return "" if value is None else str(value)


class KnowledgeType(str, Enum):
    DOCUMENT = "DOCUMENT"
    LINK = "LINK"
    YANDEX_DISK = "YANDEX_DISK"
    XML_FEED = "XML_FEED"


class KnowledgeItem(_CamelModel):
    id: str = ""
    title: str
    description: Optional[str] = None
    content: Optional[str] = None
    type: KnowledgeType = KnowledgeType.DOCUMENT
    url: Optional[str] = None
    file_url: Optional[str] = Field(None, alias="fileUrl")
    image_url: Optional[str] = Field(None, alias="imageUrl")
    article_code: Optional[str] = Field(None, alias="articleCode")
    is_ai_source: bool = Field(True, alias="isAiSource")
    xml_data: Optional[dict[str, Any]] = Field(None, alias="xmlData")


# ─── Маршрутизация ─────────────────────────────────────────────────────────────

class ModelTier(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    ADVANCED = "advanced"


class RoutingDecision(_CamelModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    use_ai: bool = Field(..., alias="useAI")
    model: ModelTier
    reason: str
    confidence: float = Field(..., ge=0, le=1)


# ─── Структурированные ответы (в content сообщения ассистента) ───────────────

class ProductInfoData(_CamelModel):
    name: str
    vendor_code: str = Field(..., alias="vendorCode")
    description: str = ""
    picture: str = ""
    price: str
    params: dict[str, Any] = Field(default_factory=dict)
    # None, если фид не передаёт остаток
    stock: Optional[str] = None
    in_stock: Optional[bool] = Field(None, alias="inStock")


class ProductInfoPayload(BaseModel):
    type: Literal["product_info"] = "product_info"
    data: ProductInfoData


class DownloadLinkData(BaseModel):
    text: str
    url: Optional[str] = None


class DownloadLinkPayload(BaseModel):
    type: Literal["download_link"] = "download_link"
    data: DownloadLinkData


class DownloadItem(BaseModel):
    text: str
    url: Optional[str] = None
    title: str


class MultiDownloadLinksData(BaseModel):
    items: list[DownloadItem]


class MultiDownloadLinksPayload(BaseModel):
    type: Literal["multi_download_links"] = "multi_download_links"
    data: MultiDownloadLinksData


StructuredPayload = Annotated[
    Union[ProductInfoPayload, DownloadLinkPayload, MultiDownloadLinksPayload],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(StructuredPayload)


def encode_payload(
    payload: ProductInfoPayload | DownloadLinkPayload | MultiDownloadLinksPayload,
) -> str:
    """Сериализует структурированный ответ в строку для поля content."""
    return payload.model_dump_json(by_alias=True)


def decode_content(
    content: str,
) -> ProductInfoPayload | DownloadLinkPayload | MultiDownloadLinksPayload | str:
    """
    Обратная операция к encode_payload.

    Возвращает модель payload, если content — JSON с известным type,
    иначе исходную строку (обычный markdown).
    """
    if not content.lstrip().startswith("{"):
        return content
    try:
        return _payload_adapter.validate_json(content)
    except ValidationError:
        return content


# ─── API: запрос / ответ ──────────────────────────────────────────────────────

class ChatRequest(_CamelModel):
    message: str
    session_id: str = Field("", alias="sessionId")
    chat_history: list[ChatMessage] = Field(default_factory=list, alias="chatHistory")


class StreamChatRequest(_CamelModel):
    message: str
    session_id: Optional[str] = Field(None, alias="sessionId")
    context: Optional[str] = None
    chat_history: list[ChatMessage] = Field(default_factory=list, alias="chatHistory")


class ChatResponse(BaseModel):
    content: str
    attachments: list[Attachment] = Field(default_factory=list)
    cached: Optional[bool] = None


class ChatSessionRequest(_CamelModel):
    session_id: str = Field("", alias="sessionId")
    messages: list[ChatMessage] = Field(default_factory=list)
    user_email: Optional[str] = Field(None, alias="userEmail")


class ChatSessionResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    messages: list[ChatMessage]
    user_email: Optional[str] = Field(None, alias="userEmail")
    is_active: bool = Field(True, alias="isActive")
    last_activity: datetime = Field(..., alias="lastActivity")


class LLMTestRequest(_CamelModel):
    """Параметры пробного запроса к провайдеру; пустые поля берутся из настроек."""

    provider: Optional[str] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    base_url: Optional[str] = Field(None, alias="baseUrl")
    model: Optional[str] = None
