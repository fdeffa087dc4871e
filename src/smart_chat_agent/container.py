"""Process-wide wiring of stores, services and provider adapters."""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import google.generativeai as genai
import httpx
import openai
import structlog

from .api.rate_limiter import RateLimiter
from .cache import TTLCache
from .config import Settings
from .repositories.base import CatalogStore, ConfigStore, ConversationRepository, LedgerRepository
from .repositories.business import BusinessConfigResolver, HttpConfigurationSource
from .repositories.memory import (
    InMemoryCatalogStore,
    InMemoryConfigStore,
    InMemoryConversationRepository,
    InMemoryLedgerRepository,
)
from .services.intent_interpreter import (
    GeminiIntentClassifier,
    IntentClassifier,
    IntentInterpreter,
    OpenAIIntentClassifier,
)
from .services.model_router import ModelRouter
from .services.orchestrator import ConversationOrchestrator
from .services.pricing import PricingTable
from .services.prompt_memory import PromptMemoryManager
from .services.providers.base import ProviderAdapter
from .services.providers.gemini_provider import GeminiAdapter
from .services.providers.groq_provider import GroqAdapter
from .services.providers.openai_provider import OpenAIAdapter
from .services.tool_executor import ToolExecutor

logger = structlog.get_logger()


@dataclass
class Container:
    settings: Settings
    orchestrator: ConversationOrchestrator
    rate_limiter: RateLimiter
    prompts: PromptMemoryManager
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in self.closers:
            await close()
        logger.info("container_closed", resources=len(self.closers))


def build_adapters(
    settings: Settings, tools: ToolExecutor, openai_client, http_client: httpx.AsyncClient
) -> Dict[str, ProviderAdapter]:
    timeout = settings.performance.provider_timeout_seconds
    adapters: Dict[str, ProviderAdapter] = {
        "openai": OpenAIAdapter(
            openai_client,
            tools,
            model=settings.openai.model,
            temperature=settings.openai.temperature,
            max_tokens=settings.openai.max_tokens,
            timeout=timeout,
        ),
        "gemini": GeminiAdapter(
            tools,
            model=settings.gemini.model,
            temperature=settings.gemini.temperature,
            max_tokens=settings.gemini.max_tokens,
            thinking_models=settings.gemini.thinking_models,
            thinking_max_tokens=settings.gemini.thinking_max_tokens,
            timeout=timeout,
        ),
    }
    if settings.features.groq_fallback:
        adapters["groq"] = GroqAdapter(
            http_client,
            tools,
            api_key=settings.groq.api_key,
            base_url=settings.groq.base_url,
            model=settings.groq.model,
            temperature=settings.groq.temperature,
            max_tokens=settings.groq.max_tokens,
            timeout=timeout,
        )
    return adapters


def build_container(
    settings: Settings,
    catalog: Optional[CatalogStore] = None,
    config_store: Optional[ConfigStore] = None,
    conversations: Optional[ConversationRepository] = None,
    ledger: Optional[LedgerRepository] = None,
    adapters: Optional[Dict[str, ProviderAdapter]] = None,
    classifiers: Optional[List[IntentClassifier]] = None,
) -> Container:
    """Wire one process worth of components. Anything passed in replaces the default."""
    performance = settings.performance
    features = settings.features
    if catalog is None:
        catalog = InMemoryCatalogStore()
    closers: List[Callable[[], Awaitable[None]]] = []

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(performance.provider_timeout_seconds))
    closers.append(http_client.aclose)
    config_source = None
    if settings.api_configuration:
        config_source = HttpConfigurationSource(
            settings.api_configuration,
            client=http_client,
            timeout=performance.config_source_timeout_seconds,
        )
    if config_store is None:
        config_store = InMemoryConfigStore()
    business = BusinessConfigResolver(config_store, config_source)

    tools = ToolExecutor(catalog, business, asset_base_url=settings.asset_base_url)
    prompts = PromptMemoryManager(
        catalog,
        business,
        business_cache=TTLCache(performance.business_config_cache_ttl_ms / 1000),
        catalog_cache=TTLCache(performance.product_cache_ttl_ms / 1000),
        default_currency=settings.default_currency,
        default_language=settings.default_language,
        default_country=settings.default_country,
    )

    if adapters is None or classifiers is None:
        openai_client = openai.AsyncOpenAI(
            api_key=settings.openai.api_key, timeout=performance.provider_timeout_seconds
        )
        closers.append(openai_client.close)
        genai.configure(api_key=settings.gemini.api_key)
        if adapters is None:
            adapters = build_adapters(settings, tools, openai_client, http_client)
        if classifiers is None:
            classifiers = [
                OpenAIIntentClassifier(openai_client, model=settings.openai.intent_model),
                GeminiIntentClassifier(genai.GenerativeModel(settings.gemini.model)),
            ]

    interpreter = IntentInterpreter(
        enabled=features.intent_interpreter,
        use_local=features.intent_interpreter_local,
        use_llm=features.intent_interpreter_llm,
        classifiers=classifiers,
        cache=TTLCache(performance.intent_cache_ttl_ms / 1000),
    )

    pricing = PricingTable.from_file(settings.pricing_table_path) if settings.pricing_table_path else PricingTable()

    orchestrator = ConversationOrchestrator(
        conversations=conversations or InMemoryConversationRepository(),
        ledger=ledger or InMemoryLedgerRepository(),
        router=ModelRouter(),
        interpreter=interpreter,
        tools=tools,
        prompts=prompts,
        adapters=adapters,
        pricing=pricing,
        model_fallback=features.model_fallback,
        groq_fallback=features.groq_fallback,
        thinking_mode=features.thinking_mode,
        history_window=performance.max_conversation_history,
        retention_days=performance.closed_retention_days,
        language=settings.default_language,
    )
    logger.info(
        "container_built",
        providers=sorted(adapters),
        intent_interpreter=features.intent_interpreter,
        model_fallback=features.model_fallback,
        groq_fallback=features.groq_fallback,
    )
    return Container(
        settings=settings,
        orchestrator=orchestrator,
        rate_limiter=RateLimiter.from_settings(settings.rate_limit.window_ms, settings.rate_limit.max_requests),
        prompts=prompts,
        closers=closers,
    )
