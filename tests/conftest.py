"""Shared fixtures: a small catalog, business config and scripted provider adapters."""

import json
from typing import Any, Dict, List, Optional

import pytest

from smart_chat_agent.domain.models import Product, TokenUsage
from smart_chat_agent.repositories.business import BusinessConfigResolver
from smart_chat_agent.repositories.memory import (
    InMemoryCatalogStore,
    InMemoryConfigStore,
    InMemoryConversationRepository,
    InMemoryLedgerRepository,
)
from smart_chat_agent.services.intent_interpreter import IntentInterpreter
from smart_chat_agent.services.model_router import ModelRouter
from smart_chat_agent.services.orchestrator import ConversationOrchestrator
from smart_chat_agent.services.prompt_memory import PromptMemoryManager
from smart_chat_agent.services.providers.base import (
    GenerationOptions,
    ProviderAdapter,
    StreamHandle,
    ToolCall,
)
from smart_chat_agent.services.tool_executor import ToolExecutor

DOMAIN = "tienda.test"
SHOE_ID = "64b7f0c2a1e4d5f6a7b8c9d0"
LAPTOP_ID = "64b7f0c2a1e4d5f6a7b8c9d1"


def make_product(
    product_id: str,
    title: str,
    slug: str,
    regular: float,
    sale: Optional[float] = None,
    category: Optional[str] = None,
    description: str = "",
    tags: Optional[List[str]] = None,
    domain: str = DOMAIN,
    image: Optional[str] = "/img/default.jpg",
    available: bool = True,
) -> Product:
    price: Dict[str, Optional[float]] = {"regular": regular}
    if sale is not None:
        price["sale"] = sale
    return Product(
        id=product_id,
        domain=domain,
        title=title,
        slug=slug,
        description_short=description,
        price=price,
        image_default=[image] if image else [],
        category={"name": category.title(), "slug": category} if category else None,
        tags=tags or [],
        is_available=available,
    )


def reply_json(message: str, action: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps(
        {"message": message, "audio_description": message, "action": action or {"type": "none"}},
        ensure_ascii=False,
    )


class FakeAdapter(ProviderAdapter):
    """Scripted provider: canned replies, optional failure, recorded calls."""

    def __init__(
        self,
        provider_id: str,
        tools: ToolExecutor,
        replies: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        chunks: Optional[List[Any]] = None,
        stream_tool_calls: Optional[List[ToolCall]] = None,
        follow_chunks: Optional[List[Any]] = None,
        usage: Optional[TokenUsage] = None,
        reasoning: bool = False,
    ):
        super().__init__(tools, model=f"{provider_id}-test")
        self.provider_id = provider_id
        self.replies = list(replies or [])
        self.error = error
        self.chunks = chunks if chunks is not None else ['{"message": "Hola', '", "action": {"type": "none"}}']
        self.stream_tool_calls = stream_tool_calls or []
        self.follow_chunks = follow_chunks or []
        self.usage = usage or TokenUsage(input=100, output=20)
        self.reasoning = reasoning
        self.calls: List[Dict[str, Any]] = []
        self.continued: List[Any] = []
        self.handles: List[StreamHandle] = []

    @property
    def supports_extended_reasoning(self) -> bool:
        return self.reasoning

    def _record(self, user_message, history, domain, system_prompt, options):
        self.calls.append(
            {
                "message": user_message,
                "history": list(history),
                "domain": domain,
                "system_prompt": system_prompt,
                "options": options,
            }
        )

    async def generate_response(self, user_message, history, domain, system_prompt, options=None):
        options = options or GenerationOptions()
        self._record(user_message, history, domain, system_prompt, options)
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else reply_json("Hola, ¿en qué te ayudo?")
        return self.build_reply(text, self.usage, [], options)

    async def generate_response_stream(self, user_message, history, domain, system_prompt, options=None):
        options = options or GenerationOptions()
        self._record(user_message, history, domain, system_prompt, options)
        if self.error is not None:
            raise self.error
        handle = StreamHandle(self.provider_id, self.model, {})
        self.handles.append(handle)
        return handle.attach(self._pump(handle, self.chunks, self.stream_tool_calls))

    async def continue_stream(self, handle, results):
        self.continued.append(results)
        follow = StreamHandle(self.provider_id, self.model, {})
        return follow.attach(self._pump(follow, self.follow_chunks, []))

    async def _pump(self, handle, chunks, tool_calls):
        for chunk in chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk
        handle.tool_calls = list(tool_calls)
        handle.resolve_usage(self.usage)


@pytest.fixture
def products() -> List[Product]:
    return [
        make_product(
            SHOE_ID,
            "Zapatillas Running Pro",
            "zapatillas-running-pro",
            199.9,
            sale=159.9,
            category="calzado",
            description="Zapatillas deportivas para correr",
            tags=["running", "deporte"],
        ),
        make_product(
            LAPTOP_ID,
            "Laptop Gamer X15",
            "laptop-gamer-x15",
            4500.0,
            category="tecnologia",
            description="Laptop para juegos",
            image="https://cdn.example.com/x15.png",
        ),
        make_product(
            "64b7f0c2a1e4d5f6a7b8c9d2",
            "Polo Algodón Básico",
            "polo-algodon-basico",
            39.9,
            category="ropa",
            description="Polo de algodón",
        ),
    ]


@pytest.fixture
def catalog(products) -> InMemoryCatalogStore:
    return InMemoryCatalogStore(products)


@pytest.fixture
def empty_catalog() -> InMemoryCatalogStore:
    return InMemoryCatalogStore()


@pytest.fixture
def config_store() -> InMemoryConfigStore:
    return InMemoryConfigStore(
        {
            DOMAIN: {
                "name": "Tienda Test",
                "title": "Tienda Test",
                "slogan": "Todo para ti",
                "meta_description": "Tienda de prueba",
                "currency": "PEN",
                "country": "Perú",
                "social_links": ["https://instagram.com/tiendatest"],
                "whatsapp_home": "+51999999999",
            }
        }
    )


@pytest.fixture
def business(config_store) -> BusinessConfigResolver:
    return BusinessConfigResolver(config_store)


@pytest.fixture
def tools(catalog, business) -> ToolExecutor:
    return ToolExecutor(catalog, business, asset_base_url="https://cdn.test")


@pytest.fixture
def prompts(catalog, business) -> PromptMemoryManager:
    return PromptMemoryManager(catalog, business)


@pytest.fixture
def make_orchestrator(business):
    """Factory: an orchestrator over in-memory stores with fake adapters."""

    def _make(
        catalog: InMemoryCatalogStore,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        interpreter: Optional[IntentInterpreter] = None,
        **kwargs,
    ):
        tools = ToolExecutor(catalog, business, asset_base_url="https://cdn.test")
        prompts = PromptMemoryManager(catalog, business)
        if adapters is None:
            adapters = {
                "openai": FakeAdapter("openai", tools),
                "gemini": FakeAdapter("gemini", tools),
            }
        else:
            for adapter in adapters.values():
                adapter.tools = tools
        return ConversationOrchestrator(
            conversations=InMemoryConversationRepository(),
            ledger=InMemoryLedgerRepository(),
            router=ModelRouter(),
            interpreter=interpreter or IntentInterpreter(enabled=False),
            tools=tools,
            prompts=prompts,
            adapters=adapters,
            **kwargs,
        )

    return _make
