"""Conversation orchestration: one chat turn from inbound text to persisted reply.

A turn moves through prepare (conversation, prompt, history), interpret
(optional eager tool run), generate (routed provider with fallback),
finalize (action and product context) and persist (messages, metadata,
ledger). Streaming shares prepare and persist, and relays provider chunks
in between.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.exceptions import ProviderUnavailableError, SmartChatError, ValidationError
from ..domain.models import (
    ChatReply,
    Conversation,
    CostBreakdown,
    FunctionResult,
    IntentSnapshot,
    InterpretedIntent,
    LedgerEntry,
    Message,
    MessageMetadata,
    NormalizedReply,
    ProductContext,
    PromptType,
    ProviderStats,
    ReplyAction,
    Role,
    TokenUsage,
    ToolResult,
    UsageStats,
    utcnow,
)
from ..metrics import CHAT_ERRORS, CHAT_REQUESTS, PROVIDER_FALLBACKS, RESPONSE_TIME, TOKENS
from ..repositories.base import ConversationRepository, LedgerRepository
from .intent_interpreter import GENERAL_CHAT, IntentInterpreter
from .model_router import CONVERSATIONAL_PROVIDER, REASONING_PROVIDER, ModelRouter
from .pricing import PricingTable
from .prompt_memory import PromptMemoryManager, prompt_hash
from .providers.base import GenerationOptions, ProviderAdapter, StreamHandle
from .providers.parsing import parse_reply
from .tool_executor import ADD_TO_CART, ToolExecutor, normalize_price

logger = structlog.get_logger()

FALLBACK_MODEL = "error_fallback"
FALLBACK_MESSAGE = (
    "Lo siento, estoy teniendo problemas técnicos en este momento. "
    "Por favor, intenta de nuevo en unos momentos."
)
FALLBACK_AUDIO = "Lo siento, estoy teniendo problemas técnicos."

GROQ_PROVIDER = "groq"
EAGER_TOOL_CONFIDENCE = 0.6
DEFAULT_STATS_DAYS = 7
PRODUCT_ACTIONS = ("add_to_cart", "show_product")


@dataclass
class Turn:
    """State carried from prepare to persist for one request."""

    conversation: Conversation
    user_message: str
    domain: str
    user_id: str
    history: List[Message]
    system_prompt: str
    prompt_type: PromptType
    system_prompt_hash: Optional[str]
    intent: InterpretedIntent
    provider: str
    extended_reasoning: bool = False
    tool_result: Optional[ToolResult] = None
    started: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class ChatStream:
    """Async iterator of text fragments for one streamed turn.

    Iterating it relays provider chunks, then persists the turn, also when
    the consumer stops early. It never raises once iteration has started.
    """

    def __init__(self, conversation_id: UUID, chunks: AsyncIterator[str]):
        self.conversation_id = conversation_id
        self._chunks = chunks

    def __aiter__(self):
        return self._chunks

    async def aclose(self) -> None:
        """Stop relaying; whatever was already sent is still persisted."""
        await self._chunks.aclose()


class ConversationOrchestrator:
    """Runs chat turns against the routed provider and keeps the conversation record."""

    def __init__(
        self,
        conversations: ConversationRepository,
        ledger: LedgerRepository,
        router: ModelRouter,
        interpreter: IntentInterpreter,
        tools: ToolExecutor,
        prompts: PromptMemoryManager,
        adapters: Dict[str, ProviderAdapter],
        pricing: Optional[PricingTable] = None,
        model_fallback: bool = True,
        groq_fallback: bool = False,
        thinking_mode: bool = False,
        history_window: int = 6,
        retention_days: int = 90,
        language: str = "es",
    ):
        self.conversations = conversations
        self.ledger = ledger
        self.router = router
        self.interpreter = interpreter
        self.tools = tools
        self.prompts = prompts
        self.adapters = adapters
        self.pricing = pricing or PricingTable()
        self.model_fallback = model_fallback
        self.groq_fallback = groq_fallback
        self.thinking_mode = thinking_mode
        self.history_window = history_window
        self.retention_days = retention_days
        self.language = language

    # Preparing / Interpreting

    def recent_history(self, conversation: Conversation) -> List[Message]:
        """System message (if memorized) plus the last N turns."""
        turns = [m for m in conversation.messages if m.role != Role.SYSTEM]
        window = turns[-self.history_window:] if self.history_window > 0 else []
        if conversation.has_system_prompt:
            return [conversation.messages[0]] + window
        return window

    async def prepare(
        self, user_message: str, domain: str, user_id: str, force_model: Optional[str] = None
    ) -> Turn:
        if force_model and force_model not in self.adapters:
            raise ValidationError(f"Unknown model: {force_model}")

        conversation = await self.conversations.find_active(user_id, domain)
        if conversation is None:
            conversation = await self.conversations.create(user_id, domain)

        first_turn = not conversation.has_system_prompt
        if first_turn:
            prompt = await self.prompts.build_system_prompt(domain)
            conversation.system_prompt_hash = prompt_hash(prompt)
            conversation.messages.insert(
                0,
                Message(
                    role=Role.SYSTEM,
                    content=prompt,
                    metadata=MessageMetadata(
                        prompt_type=PromptType.SYSTEM,
                        prompt_length=len(prompt),
                        system_prompt_hash=conversation.system_prompt_hash,
                    ),
                ),
            )
            logger.info(
                "system_prompt_memorized",
                conversation_id=str(conversation.id),
                length=len(prompt),
                hash=conversation.system_prompt_hash,
            )
        else:
            prompt = self.prompts.build_short_system_prompt(domain)
        prompt_type = PromptType.SYSTEM if first_turn else PromptType.SHORT

        history = self.recent_history(conversation)
        product_context = conversation.metadata.last_product_context

        intent = await self.interpreter.interpret(user_message, self.language, domain)
        # Only a message that names no product falls back to the one shown last
        names_product = intent.params.get("productId") or intent.params.get("query")
        if intent.intent == ADD_TO_CART and not names_product and product_context is not None:
            intent.params["productId"] = product_context.productId
            logger.info("intent_completed_from_context", product_id=product_context.productId)

        tool_result = None
        if intent.intent != GENERAL_CHAT and intent.confidence >= EAGER_TOOL_CONFIDENCE:
            try:
                tool_result = await self.tools.execute_tool(intent.intent, intent.params, domain)
            except Exception as e:
                CHAT_ERRORS.labels(stage="intent_tool").inc()
                logger.error("intent_tool_failed", intent=intent.intent, domain=domain, error=str(e))

        if tool_result is not None:
            if first_turn:
                prompt = f"{prompt}\n\n{self.prompts.relevant_information(tool_result)}"
                prompt_type = PromptType.SYSTEM_DYNAMIC
            else:
                prompt = self.prompts.build_dynamic_prompt(domain, tool_result)
                prompt_type = PromptType.DYNAMIC

        context_block = self.prompts.conversation_context(product_context)
        if context_block:
            prompt = f"{prompt}\n\n{context_block}"

        provider = force_model or self.router.decide(user_message, history)
        extended = self.thinking_mode and self.router.should_use_extended_reasoning(user_message)

        logger.info(
            "turn_prepared",
            conversation_id=str(conversation.id),
            domain=domain,
            provider=provider,
            forced=bool(force_model),
            prompt_type=prompt_type.value,
            intent=intent.intent,
            confidence=intent.confidence,
            history=len(history),
        )
        return Turn(
            conversation=conversation,
            user_message=user_message,
            domain=domain,
            user_id=user_id,
            history=history,
            system_prompt=prompt,
            prompt_type=prompt_type,
            system_prompt_hash=conversation.system_prompt_hash,
            intent=intent,
            provider=provider,
            extended_reasoning=extended,
            tool_result=tool_result,
        )

    # Generating

    def provider_chain(self, provider: str) -> List[str]:
        chain = [provider]
        if self.model_fallback:
            chain += [p for p in (CONVERSATIONAL_PROVIDER, REASONING_PROVIDER) if p not in chain]
        if self.groq_fallback and GROQ_PROVIDER not in chain:
            chain.append(GROQ_PROVIDER)
        available = [p for p in chain if p in self.adapters]
        if not available:
            raise ProviderUnavailableError(f"No adapter registered for {provider}")
        return available

    def _options(self, turn: Turn, adapter: ProviderAdapter) -> GenerationOptions:
        extended = turn.extended_reasoning
        if extended and not adapter.supports_extended_reasoning:
            logger.warning("extended_reasoning_unsupported", provider=adapter.provider_id, model=adapter.model)
            extended = False
        return GenerationOptions(extended_reasoning=extended, system_prompt_hash=turn.system_prompt_hash)

    def _record_fallback(self, chain: List[str], index: int, error: Exception) -> None:
        failed = chain[index]
        following = chain[index + 1] if index + 1 < len(chain) else FALLBACK_MODEL
        CHAT_ERRORS.labels(stage="provider").inc()
        PROVIDER_FALLBACKS.labels(from_provider=failed, to_provider=following).inc()
        logger.warning("provider_fallback", failed=failed, next=following, error=str(error))

    async def generate(self, turn: Turn) -> Tuple[NormalizedReply, str, str, bool]:
        """Reply, provider id, model id and whether a fallback produced it."""
        chain = self.provider_chain(turn.provider)
        for index, provider in enumerate(chain):
            adapter = self.adapters[provider]
            options = self._options(turn, adapter)
            try:
                reply = await adapter.generate_response(
                    turn.user_message, turn.history, turn.domain, turn.system_prompt, options
                )
            except SmartChatError as e:
                self._record_fallback(chain, index, e)
                continue
            reply.thinking = "extended" if options.extended_reasoning else None
            return reply, provider, adapter.model, index > 0

        logger.error("all_providers_failed", chain=chain, conversation_id=str(turn.conversation.id))
        return self.fallback_reply(turn), FALLBACK_MODEL, FALLBACK_MODEL, True

    @staticmethod
    def fallback_reply(turn: Turn) -> NormalizedReply:
        return NormalizedReply(
            message=FALLBACK_MESSAGE,
            audio_description=FALLBACK_AUDIO,
            system_prompt_hash=turn.system_prompt_hash,
        )

    # Finalizing

    async def build_action(self, turn: Turn, reply: NormalizedReply) -> ReplyAction:
        cart = turn.tool_result
        if cart is not None and cart.tool == ADD_TO_CART and cart.data and "?" not in reply.message:
            data = cart.data
            price = data.get("price") or {}
            return ReplyAction(
                type="add_to_cart",
                productId=data.get("productId"),
                quantity=data.get("quantity", 1),
                url=f"/product/{data.get('slug')}",
                price_sale=price.get("sale"),
                price_regular=price.get("regular"),
                title=data.get("title"),
                image=data.get("image"),
                slug=data.get("slug"),
            )

        action = reply.action
        if action.type not in PRODUCT_ACTIONS:
            return action
        if not action.productId:
            logger.warning("action_without_product", action=action.type)
            return ReplyAction()

        details = await self.tools.get_item_details(action.productId, turn.domain)
        if details is None:
            logger.warning("action_product_not_found", action=action.type, product_id=action.productId)
            return ReplyAction()
        return action.model_copy(
            update={
                "productId": details["id"],
                "quantity": action.quantity or 1,
                "slug": action.slug or details["slug"],
                "url": action.url or f"/product/{details['slug']}",
                "title": action.title or details["title"],
                "price_sale": action.price_sale if action.price_sale is not None else details["price"]["sale"],
                "price_regular": (
                    action.price_regular if action.price_regular is not None else details["price"]["regular"]
                ),
                "image": action.image or (details["images"][0] if details["images"] else None),
            }
        )

    @staticmethod
    def _product_from(data: Optional[Dict[str, Any]]) -> Optional[ProductContext]:
        if not data:
            return None
        products = data.get("products")
        if products:
            data = products[0]
        elif products is not None:
            return None
        product_id = data.get("productId") or data.get("id")
        if not product_id:
            return None
        images = data.get("images") or []
        return ProductContext(
            productId=str(product_id),
            slug=data.get("slug"),
            title=data.get("title"),
            price=normalize_price(data.get("price")) if isinstance(data.get("price"), dict) else None,
            image=data.get("image") or (images[0] if images else None),
        )

    def product_context(self, turn: Turn, function_results: List[FunctionResult]) -> Optional[ProductContext]:
        """Product the turn showed: the eager tool result first, then provider tool calls."""
        if turn.tool_result is not None:
            context = self._product_from(turn.tool_result.data)
            if context is not None:
                return context
        for result in reversed(function_results):
            context = self._product_from(result.result)
            if context is not None:
                return context
        return None

    # Persisting

    async def persist(
        self,
        turn: Turn,
        reply: NormalizedReply,
        action: ReplyAction,
        provider: str,
        model: str,
        fallback_used: bool,
        response_time_ms: int,
    ) -> Conversation:
        conversation = turn.conversation
        usage = reply.usage.settled()
        dynamic = turn.prompt_type in (PromptType.DYNAMIC, PromptType.SYSTEM_DYNAMIC)

        conversation.messages.append(
            Message(
                role=Role.USER,
                content=turn.user_message,
                metadata=MessageMetadata(
                    intent=IntentSnapshot(
                        intent=turn.intent.intent,
                        confidence=turn.intent.confidence,
                        method=turn.intent.method,
                        tool=turn.tool_result.tool if turn.tool_result else None,
                    )
                ),
            )
        )
        conversation.messages.append(
            Message(
                role=Role.ASSISTANT,
                content=reply.message,
                metadata=MessageMetadata(
                    model=model,
                    tokens=usage,
                    thinking_used=bool(reply.thinking),
                    fallback_used=fallback_used,
                    action=action,
                    prompt=turn.system_prompt if dynamic else None,
                    prompt_type=turn.prompt_type,
                    prompt_length=len(turn.system_prompt),
                    system_prompt_hash=turn.system_prompt_hash,
                    response_time_ms=response_time_ms,
                ),
            )
        )

        metadata = conversation.metadata
        completed = sum(metadata.models_used.values())
        metadata.average_response_time = (
            (metadata.average_response_time * completed) + response_time_ms
        ) / (completed + 1)
        metadata.total_messages += 2
        metadata.total_tokens += usage.total
        metadata.cached_tokens += usage.cached
        metadata.models_used[provider] = metadata.models_used.get(provider, 0) + 1

        context = self.product_context(turn, reply.function_results)
        if context is not None:
            metadata.last_product_context = context

        saved = await self.conversations.save(conversation)

        await self.ledger.append(
            LedgerEntry(
                domain=turn.domain,
                user_id=turn.user_id,
                conversation_id=conversation.id,
                provider=provider,
                model=model,
                tokens=usage,
                cost=self.pricing.cost(provider, model, usage),
                response_time_ms=response_time_ms,
                fallback_used=fallback_used,
            )
        )
        for kind in ("input", "output", "cached", "thinking"):
            amount = getattr(usage, kind)
            if amount:
                TOKENS.labels(provider=provider, kind=kind).inc(amount)
        RESPONSE_TIME.observe(response_time_ms / 1000)

        logger.info(
            "turn_persisted",
            conversation_id=str(conversation.id),
            provider=provider,
            model=model,
            fallback_used=fallback_used,
            tokens=usage.total,
            response_time_ms=response_time_ms,
            action=action.type,
        )
        return saved

    # Entry points

    async def send_message(
        self, user_message: str, domain: str, user_id: str, force_model: Optional[str] = None
    ) -> ChatReply:
        """Run one complete turn and return the reply after it is persisted."""
        CHAT_REQUESTS.labels(mode="sync").inc()
        turn = await self.prepare(user_message, domain, user_id, force_model)
        reply, provider, model, fallback_used = await self.generate(turn)
        action = await self.build_action(turn, reply)
        response_time_ms = turn.elapsed_ms()
        await self.persist(turn, reply, action, provider, model, fallback_used, response_time_ms)
        return ChatReply(
            message=reply.message,
            audio_description=reply.audio_description,
            action=action,
            model_used=model,
            response_time_ms=response_time_ms,
            conversation_id=turn.conversation.id,
        )

    async def open_stream(
        self, user_message: str, domain: str, user_id: str, force_model: Optional[str] = None
    ) -> ChatStream:
        """Prepare the turn and open a provider stream before any byte is sent.

        Preparation errors raise here so the caller can still answer with an
        error status. Each provider must deliver its first chunk before the
        stream is handed out; failures up to that point fall through the
        chain, and when every provider fails the stream carries the fallback
        message.
        """
        CHAT_REQUESTS.labels(mode="stream").inc()
        turn = await self.prepare(user_message, domain, user_id, force_model)
        chain = self.provider_chain(turn.provider)

        for index, provider in enumerate(chain):
            adapter = self.adapters[provider]
            options = self._options(turn, adapter)
            try:
                handle = await adapter.generate_response_stream(
                    turn.user_message, turn.history, turn.domain, turn.system_prompt, options
                )
            except SmartChatError as e:
                self._record_fallback(chain, index, e)
                continue
            try:
                first = await self._first_chunk(handle)
            except Exception as e:
                await handle.aclose()
                self._record_fallback(chain, index, e)
                continue
            return ChatStream(
                turn.conversation.id, self._relay(turn, adapter, handle, first, options, index > 0)
            )

        logger.error("all_providers_failed", chain=chain, conversation_id=str(turn.conversation.id))
        return ChatStream(turn.conversation.id, self._relay_fallback(turn))

    @staticmethod
    async def _first_chunk(handle: StreamHandle) -> Optional[str]:
        """None when the provider went straight to tool calls."""
        try:
            return await handle.__aiter__().__anext__()
        except StopAsyncIteration:
            return None

    async def stream(
        self, user_message: str, domain: str, user_id: str, force_model: Optional[str] = None
    ) -> AsyncIterator[str]:
        chat_stream = await self.open_stream(user_message, domain, user_id, force_model)
        async for chunk in chat_stream:
            yield chunk

    async def _relay(
        self,
        turn: Turn,
        adapter: ProviderAdapter,
        handle: StreamHandle,
        first: Optional[str],
        options: GenerationOptions,
        fallback_used: bool,
    ):
        handles = [handle]
        relayed: List[str] = []
        function_results: List[FunctionResult] = []
        completed = False
        try:
            if first is not None:
                relayed.append(first)
                yield first
            async for chunk in handle:
                relayed.append(chunk)
                yield chunk
            if handle.tool_calls:
                logger.info(
                    "stream_tool_calls",
                    provider=adapter.provider_id,
                    tools=[c.name for c in handle.tool_calls],
                )
                executed = await adapter.run_tool_calls(handle.tool_calls, turn.domain)
                function_results = [
                    FunctionResult(name=c.name, arguments=c.arguments, result=r.data if r else None)
                    for c, r in executed
                ]
                resumed = await adapter.continue_stream(handle, executed)
                handles.append(resumed)
                async for chunk in resumed:
                    relayed.append(chunk)
                    yield chunk
            completed = True
        except Exception as e:
            # Headers are already sent; end the stream without an error frame
            CHAT_ERRORS.labels(stage="stream").inc()
            logger.error("stream_interrupted", provider=adapter.provider_id, error=str(e))
        finally:
            # Also reached when the client disconnects and the relay is closed or cancelled
            if not completed:
                for h in handles:
                    await h.aclose()
                logger.info("stream_ended_early", provider=adapter.provider_id, relayed=len(relayed))
            reply = self._streamed_reply(turn, handles, "".join(relayed), function_results, options)
            await asyncio.shield(
                self._persist_streamed(turn, reply, adapter.provider_id, adapter.model, fallback_used)
            )

    @staticmethod
    def _streamed_reply(
        turn: Turn,
        handles: List[StreamHandle],
        text: str,
        function_results: List[FunctionResult],
        options: GenerationOptions,
    ) -> NormalizedReply:
        """Reply built only from text the client actually received."""
        usage = TokenUsage()
        for h in handles:
            if h.usage.done() and not h.usage.cancelled():
                usage = usage + h.usage.result()

        if text.strip():
            parsed = parse_reply(text)
            message, audio, action = parsed.message, parsed.audio_description, parsed.action
        else:
            message, audio, action = "", "", ReplyAction(type="none")
        return NormalizedReply(
            message=message,
            audio_description=audio,
            action=action,
            usage=usage.settled(),
            function_results=function_results,
            thinking="extended" if options.extended_reasoning else None,
            system_prompt_hash=turn.system_prompt_hash,
        )

    async def _relay_fallback(self, turn: Turn):
        try:
            yield FALLBACK_MESSAGE
        finally:
            reply = self.fallback_reply(turn)
            await asyncio.shield(self._persist_streamed(turn, reply, FALLBACK_MODEL, FALLBACK_MODEL, True))

    async def _persist_streamed(
        self, turn: Turn, reply: NormalizedReply, provider: str, model: str, fallback_used: bool
    ) -> None:
        try:
            action = await self.build_action(turn, reply)
            await self.persist(turn, reply, action, provider, model, fallback_used, turn.elapsed_ms())
        except Exception as e:
            CHAT_ERRORS.labels(stage="persist").inc()
            logger.error(
                "stream_persist_failed",
                conversation_id=str(turn.conversation.id),
                error=str(e),
            )

    # Conversation management

    async def get_history(self, user_id: str, domain: str) -> Optional[Conversation]:
        return await self.conversations.find_active(user_id, domain)

    async def close_conversation(self, conversation_id: UUID) -> Conversation:
        return await self.conversations.close(conversation_id)

    async def archive_conversation(self, conversation_id: UUID) -> Conversation:
        return await self.conversations.archive(conversation_id)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop closed conversations past the retention window; active ones are kept."""
        return await self.conversations.purge_expired(now or utcnow(), self.retention_days)

    async def get_stats(
        self, domain: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> UsageStats:
        end = end or utcnow()
        start = start or end - timedelta(days=DEFAULT_STATS_DAYS)
        entries = await self.ledger.query(domain, start, end)

        tokens = TokenUsage()
        cost = CostBreakdown()
        by_provider: Dict[str, ProviderStats] = {}
        for entry in entries:
            tokens = tokens + entry.tokens
            cost = CostBreakdown(
                input=cost.input + entry.cost.input,
                output=cost.output + entry.cost.output,
                cached=cost.cached + entry.cost.cached,
                total=cost.total + entry.cost.total,
            )
            stats = by_provider.setdefault(entry.provider, ProviderStats())
            stats.requests += 1
            stats.tokens += entry.tokens.total
            stats.cost += entry.cost.total

        return UsageStats(
            domain=domain,
            start=start,
            end=end,
            requests=len(entries),
            tokens=tokens,
            cost=cost,
            average_response_time_ms=(
                sum(e.response_time_ms for e in entries) / len(entries) if entries else 0.0
            ),
            fallbacks=sum(1 for e in entries if e.fallback_used),
            by_provider=by_provider,
        )
