"""Domain models for the chat agent."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.utcnow()


class Role(str, Enum):
    """Message author."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationStatus(str, Enum):
    """Conversation lifecycle: active -> closed -> archived."""

    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class PromptType(str, Enum):
    SYSTEM = "system"
    SHORT = "short"
    DYNAMIC = "dynamic"
    SYSTEM_DYNAMIC = "system+dynamic"


class TokenUsage(BaseModel):
    """Token breakdown for one provider call (or the sum of several)."""

    input: int = 0
    output: int = 0
    cached: int = 0
    thinking: int = 0
    total: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cached=self.cached + other.cached,
            thinking=self.thinking + other.thinking,
            total=self.total + other.total,
        )

    def settled(self) -> "TokenUsage":
        """Return a copy whose total is input + output + thinking."""
        return self.model_copy(update={"total": self.input + self.output + self.thinking})


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: float = 0.0
    output: float = 0.0
    cached: float = 0.0
    total: float = 0.0
    currency: str = "USD"


class Price(BaseModel):
    """Shape-normalized price handed to models: sale defaults to regular."""

    regular: float = 0
    sale: float = 0


class ReplyAction(BaseModel):
    """Client-side action attached to a reply."""

    type: str = "none"
    productId: Optional[str] = None
    quantity: Optional[int] = None
    url: Optional[str] = None
    price_sale: Optional[float] = None
    title: Optional[str] = None
    price_regular: Optional[float] = None
    image: Optional[str] = None
    slug: Optional[str] = None


class FunctionResult(BaseModel):
    """Result of one tool invocation requested by a provider."""

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None


class NormalizedReply(BaseModel):
    """Uniform reply every provider adapter returns."""

    message: str
    audio_description: str = ""
    action: ReplyAction = Field(default_factory=ReplyAction)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    function_results: List[FunctionResult] = Field(default_factory=list)
    thinking: Optional[str] = None
    system_prompt_hash: Optional[str] = None


class InterpretedIntent(BaseModel):
    intent: str = "general_chat"
    params: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    method: str = "disabled"


class ToolResult(BaseModel):
    """Output of a tool. ``data is None`` means nothing was found."""

    tool: str
    data: Optional[Dict[str, Any]] = None


class ProductContext(BaseModel):
    """Most recently shown catalog item, used to resolve "add it"."""

    productId: Optional[str] = None
    slug: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Price] = None
    image: Optional[str] = None
    updatedAt: datetime = Field(default_factory=utcnow)


class IntentSnapshot(BaseModel):
    intent: str
    confidence: float
    method: str
    tool: Optional[str] = None


class MessageMetadata(BaseModel):
    """Per-message audit data. Token fields are written once."""

    model_config = ConfigDict(frozen=True)

    model: Optional[str] = None
    tokens: Optional[TokenUsage] = None
    thinking_used: bool = False
    fallback_used: bool = False
    action: Optional[ReplyAction] = None
    prompt: Optional[str] = None
    prompt_type: Optional[PromptType] = None
    prompt_length: Optional[int] = None
    system_prompt_hash: Optional[str] = None
    intent: Optional[IntentSnapshot] = None
    response_time_ms: Optional[int] = None


class Message(BaseModel):
    """Message model."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[MessageMetadata] = None


class ConversationMetadata(BaseModel):
    """Running totals, mutated only after a turn completes."""

    total_messages: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    average_response_time: float = 0.0
    models_used: Dict[str, int] = Field(default_factory=dict)
    last_product_context: Optional[ProductContext] = None


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    domain: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: List[Message] = Field(default_factory=list)
    system_prompt_hash: Optional[str] = None
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def has_system_prompt(self) -> bool:
        return bool(self.messages) and self.messages[0].role == Role.SYSTEM


class LedgerEntry(BaseModel):
    """Immutable token/cost record for one completed turn."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    domain: str
    user_id: str
    conversation_id: UUID
    provider: str
    model: str
    tokens: TokenUsage
    cost: CostBreakdown
    response_time_ms: int = 0
    fallback_used: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    """Catalog item as stored by the catalog store."""

    id: str
    domain: str
    title: str
    slug: str
    description_short: str = ""
    description_long: str = ""
    price: Optional[Dict[str, Optional[float]]] = None
    image_default: List[str] = Field(default_factory=list)
    category: Optional[Dict[str, Optional[str]]] = None
    tags: List[str] = Field(default_factory=list)
    is_available: bool = True


class ChatReply(BaseModel):
    """What the caller gets back for one turn."""

    message: str
    audio_description: str
    action: ReplyAction
    model_used: str
    response_time_ms: int
    conversation_id: UUID


class ProviderStats(BaseModel):
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


class UsageStats(BaseModel):
    domain: str
    start: datetime
    end: datetime
    requests: int = 0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost: CostBreakdown = Field(default_factory=CostBreakdown)
    average_response_time_ms: float = 0.0
    fallbacks: int = 0
    by_provider: Dict[str, ProviderStats] = Field(default_factory=dict)
