"""Test suite for the conversation orchestrator, end to end over in-memory stores."""

from datetime import timedelta
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest
from openai import RateLimitError

from smart_chat_agent.domain.exceptions import (
    ConversationNotFoundError,
    InvalidStatusTransitionError,
    ProviderError,
    ValidationError,
)
from smart_chat_agent.domain.models import ConversationStatus, PromptType, Role, utcnow
from smart_chat_agent.services.intent_interpreter import IntentInterpreter
from smart_chat_agent.services.orchestrator import FALLBACK_MESSAGE, FALLBACK_MODEL
from smart_chat_agent.services.providers.base import ToolCall
from smart_chat_agent.services.providers.groq_provider import GroqAdapter
from smart_chat_agent.services.providers.openai_provider import OpenAIAdapter

from .conftest import DOMAIN, LAPTOP_ID, SHOE_ID, FakeAdapter, reply_json
from .test_providers import fake_openai


def assistant_messages(conversation):
    return [m for m in conversation.messages if m.role == Role.ASSISTANT]


def local_interpreter():
    return IntentInterpreter(enabled=True, use_llm=False)


@pytest.mark.asyncio
async def test_greeting_goes_to_conversational_provider(make_orchestrator, catalog):
    """A greeting routes to openai and returns no action."""
    orchestrator = make_orchestrator(catalog)
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")

    assert reply.model_used == "openai-test"
    assert reply.action.type == "none"
    assert reply.message == "Hola, ¿en qué te ayudo?"
    assert len(orchestrator.adapters["openai"].calls) == 1
    assert orchestrator.adapters["gemini"].calls == []

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert conversation.id == reply.conversation_id
    assert [m.role for m in conversation.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert conversation.metadata.models_used == {"openai": 1}
    assert conversation.metadata.total_messages == 2
    assert conversation.metadata.total_tokens == 120


@pytest.mark.asyncio
async def test_empty_catalog_search_strips_invented_product(make_orchestrator, empty_catalog, tools):
    """A search with no hits is handed to the model, and an invented product action is dropped."""
    gemini = FakeAdapter(
        "gemini",
        tools,
        replies=[reply_json("Mira estas zapatillas", {"type": "show_product", "productId": "a" * 24})],
    )
    orchestrator = make_orchestrator(
        empty_catalog,
        adapters={"openai": FakeAdapter("openai", tools), "gemini": gemini},
        interpreter=local_interpreter(),
    )
    reply = await orchestrator.send_message("busco zapatillas deportivas", DOMAIN, "u1")

    assert reply.model_used == "gemini-test"
    assert reply.action.type == "none"
    assert reply.action.productId is None
    assert "No hay productos que coincidan" in gemini.calls[0]["system_prompt"]

    conversation = await orchestrator.get_history("u1", DOMAIN)
    user, assistant = conversation.messages[1:]
    assert user.metadata.intent.intent == "search_products"
    assert user.metadata.intent.tool == "search_products"
    assert assistant.metadata.prompt_type == PromptType.SYSTEM_DYNAMIC
    assert assistant.metadata.prompt is not None
    assert conversation.metadata.last_product_context is None


@pytest.mark.asyncio
async def test_confirmation_with_id_adds_to_cart(make_orchestrator, catalog, tools):
    """A local add_to_cart intent runs the cart tool and the action carries full product data."""
    openai = FakeAdapter("openai", tools, replies=[reply_json("Listo, lo agregué al carrito")])
    orchestrator = make_orchestrator(
        catalog,
        adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)},
        interpreter=local_interpreter(),
    )
    reply = await orchestrator.send_message(f"sí, agrégalo {SHOE_ID}", DOMAIN, "u1", force_model="openai")

    action = reply.action
    assert action.type == "add_to_cart"
    assert action.productId == SHOE_ID
    assert action.quantity == 1
    assert action.slug == "zapatillas-running-pro"
    assert action.url == "/product/zapatillas-running-pro"
    assert action.price_sale == 159.9
    assert action.price_regular == 199.9

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert conversation.metadata.last_product_context.productId == SHOE_ID


@pytest.mark.asyncio
async def test_cart_result_is_not_applied_when_reply_asks(make_orchestrator, catalog, tools):
    """If the model answers with a question the cart action is not forced."""
    openai = FakeAdapter("openai", tools, replies=[reply_json("¿Qué talla necesitas?")])
    orchestrator = make_orchestrator(
        catalog,
        adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)},
        interpreter=local_interpreter(),
    )
    reply = await orchestrator.send_message(f"sí, agrégalo {SHOE_ID}", DOMAIN, "u1", force_model="openai")
    assert reply.action.type == "none"


@pytest.mark.asyncio
async def test_all_providers_failing_returns_persisted_fallback(make_orchestrator, catalog, tools):
    """When every provider fails the user gets the fallback reply and the turn is still stored."""
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, error=ProviderError("openai", "insufficient_quota", status=429)),
            "gemini": FakeAdapter("gemini", tools, error=ProviderError("gemini", "Malformed response")),
        },
    )
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")

    assert reply.message == FALLBACK_MESSAGE
    assert reply.model_used == FALLBACK_MODEL
    assert reply.action.type == "none"
    assert len(orchestrator.adapters["openai"].calls) == 1
    assert len(orchestrator.adapters["gemini"].calls) == 1

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assistant = assistant_messages(conversation)[0]
    assert assistant.content == FALLBACK_MESSAGE
    assert assistant.metadata.model == FALLBACK_MODEL
    assert assistant.metadata.fallback_used is True

    stats = await orchestrator.get_stats(DOMAIN)
    assert stats.requests == 1
    assert stats.fallbacks == 1
    assert stats.cost.total == 0.0


@pytest.mark.asyncio
async def test_quota_then_truncated_upstream_body_persists_fallback(make_orchestrator, catalog, tools):
    """Real adapters: an OpenAI quota error then a truncated Groq body still store both turns."""
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    quota = httpx.Response(429, headers={"retry-after": "20"}, request=request)
    client, completions = fake_openai(
        error=RateLimitError("You exceeded your current quota", response=quota, body=None)
    )
    groq_requests = []

    def truncated(request):
        groq_requests.append(request)
        return httpx.Response(
            200,
            content=b'{"choices": [{"message": {"content": "{\\"message\\": \\"Hol',
            headers={"content-type": "application/json"},
        )

    groq = GroqAdapter(httpx.AsyncClient(transport=httpx.MockTransport(truncated)), tools, api_key="gsk-test")
    orchestrator = make_orchestrator(
        catalog,
        adapters={"openai": OpenAIAdapter(client, tools), "groq": groq},
        groq_fallback=True,
    )
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")

    assert reply.model_used == FALLBACK_MODEL
    assert len(completions.requests) == 1
    assert len(groq_requests) == 1

    conversation = await orchestrator.get_history("u1", DOMAIN)
    user, assistant = conversation.messages[1:]
    assert user.content == "hola"
    assert assistant.content == FALLBACK_MESSAGE
    assert assistant.metadata.fallback_used is True


@pytest.mark.asyncio
async def test_openai_completion_without_choices_falls_back(make_orchestrator, catalog, tools):
    """A completion with no choices is a provider failure, not a crash of the turn."""
    client, _ = fake_openai(responses=[SimpleNamespace(choices=[], usage=None)])
    orchestrator = make_orchestrator(
        catalog,
        adapters={"openai": OpenAIAdapter(client, tools), "gemini": FakeAdapter("gemini", tools)},
    )
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")
    assert reply.model_used == "gemini-test"

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert len(assistant_messages(conversation)) == 1
    assert assistant_messages(conversation)[0].metadata.fallback_used is True


@pytest.mark.asyncio
async def test_primary_failure_falls_back_to_other_provider(make_orchestrator, catalog, tools):
    """A failing routed provider hands the turn to the other primary provider."""
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, error=ProviderError("openai", "quota")),
            "gemini": FakeAdapter("gemini", tools),
        },
    )
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")
    assert reply.model_used == "gemini-test"

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert assistant_messages(conversation)[0].metadata.fallback_used is True
    assert conversation.metadata.models_used == {"gemini": 1}


@pytest.mark.asyncio
async def test_fallback_disabled_goes_straight_to_fallback_reply(make_orchestrator, catalog, tools):
    """With model fallback off, only the routed provider is tried."""
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, error=ProviderError("openai", "quota")),
            "gemini": FakeAdapter("gemini", tools),
        },
        model_fallback=False,
    )
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")
    assert reply.model_used == FALLBACK_MODEL
    assert orchestrator.adapters["gemini"].calls == []


@pytest.mark.asyncio
async def test_groq_is_last_in_chain(make_orchestrator, catalog, tools):
    """The optional groq adapter is tried after both primary providers."""
    down = ProviderError("test", "down")
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, error=down),
            "gemini": FakeAdapter("gemini", tools, error=down),
            "groq": FakeAdapter("groq", tools),
        },
        groq_fallback=True,
    )
    assert orchestrator.provider_chain("gemini") == ["gemini", "openai", "groq"]
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")
    assert reply.model_used == "groq-test"


@pytest.mark.asyncio
async def test_system_prompt_memorized_once(make_orchestrator, catalog):
    """The full prompt is stored on the first turn; later turns use the short prompt."""
    orchestrator = make_orchestrator(catalog)
    await orchestrator.send_message("hola", DOMAIN, "u1")
    await orchestrator.send_message("gracias", DOMAIN, "u1")

    conversation = await orchestrator.get_history("u1", DOMAIN)
    system_messages = [m for m in conversation.messages if m.role == Role.SYSTEM]
    assert len(system_messages) == 1
    assert conversation.messages[0].role == Role.SYSTEM
    assert conversation.system_prompt_hash == system_messages[0].metadata.system_prompt_hash
    assert [m.metadata.prompt_type for m in assistant_messages(conversation)] == [PromptType.SYSTEM, PromptType.SHORT]

    calls = orchestrator.adapters["openai"].calls
    assert calls[0]["system_prompt"] == system_messages[0].content
    assert calls[1]["system_prompt"] == orchestrator.prompts.build_short_system_prompt(DOMAIN)
    assert calls[1]["history"][0].role == Role.SYSTEM


@pytest.mark.asyncio
async def test_history_window_keeps_system_and_last_turns(make_orchestrator, catalog):
    """Providers get the memorized system message plus the last N messages."""
    orchestrator = make_orchestrator(catalog, history_window=2)
    for message in ["hola", "gracias", "ok", "bye"]:
        await orchestrator.send_message(message, DOMAIN, "u1")

    history = orchestrator.adapters["openai"].calls[3]["history"]
    assert [m.role for m in history] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert history[1].content == "ok"


@pytest.mark.asyncio
async def test_add_it_resolves_from_last_product_shown(make_orchestrator, catalog, tools):
    """"agrégalo" with no product name uses the product shown in the previous turn."""
    openai = FakeAdapter("openai", tools, replies=[reply_json("Agregado al carrito")])
    orchestrator = make_orchestrator(
        catalog,
        adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)},
        interpreter=local_interpreter(),
    )
    await orchestrator.send_message("busco zapatillas", DOMAIN, "u1")
    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert conversation.metadata.last_product_context.productId == SHOE_ID

    reply = await orchestrator.send_message("agrégalo al carrito", DOMAIN, "u1")
    assert reply.action.type == "add_to_cart"
    assert reply.action.productId == SHOE_ID
    assert "CONTEXTO DE LA CONVERSACIÓN" in openai.calls[0]["system_prompt"]

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert assistant_messages(conversation)[-1].metadata.prompt_type == PromptType.DYNAMIC


@pytest.mark.asyncio
async def test_named_product_wins_over_last_product_shown(make_orchestrator, catalog, tools):
    """Adding a product by name uses that product, not the one from the previous turn."""
    replies = [reply_json("Listo"), reply_json("Agregado al carrito")]
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, replies=list(replies)),
            "gemini": FakeAdapter("gemini", tools, replies=list(replies)),
        },
        interpreter=local_interpreter(),
    )
    await orchestrator.send_message("busco zapatillas", DOMAIN, "u1")
    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert conversation.metadata.last_product_context.productId == SHOE_ID

    turn = await orchestrator.prepare("agrega la laptop gamer al carrito", DOMAIN, "u1")
    assert "productId" not in turn.intent.params
    assert turn.tool_result.data["productId"] == LAPTOP_ID

    reply = await orchestrator.send_message("agrega la laptop gamer al carrito", DOMAIN, "u1")
    assert reply.action.type == "add_to_cart"
    assert reply.action.productId == LAPTOP_ID


@pytest.mark.asyncio
async def test_average_response_time_is_running_mean(make_orchestrator, catalog):
    """The conversation average equals the mean of per-turn response times."""
    orchestrator = make_orchestrator(catalog)
    for message in ["hola", "gracias", "ok"]:
        await orchestrator.send_message(message, DOMAIN, "u1")

    conversation = await orchestrator.get_history("u1", DOMAIN)
    times = [m.metadata.response_time_ms for m in assistant_messages(conversation)]
    assert conversation.metadata.average_response_time == pytest.approx(sum(times) / len(times))
    assert conversation.metadata.total_messages == 6


@pytest.mark.asyncio
async def test_extended_reasoning_only_where_supported(make_orchestrator, catalog, tools):
    """Thinking mode asks for deep reasoning, which is dropped for adapters without it."""
    plain = make_orchestrator(catalog, thinking_mode=True)
    await plain.send_message("explica cómo funciona el envío", DOMAIN, "u1")
    assert plain.adapters["gemini"].calls[0]["options"].extended_reasoning is False

    reasoning = FakeAdapter("gemini", tools, reasoning=True)
    deep = make_orchestrator(
        catalog, adapters={"openai": FakeAdapter("openai", tools), "gemini": reasoning}, thinking_mode=True
    )
    await deep.send_message("explica cómo funciona el envío", DOMAIN, "u2")
    assert reasoning.calls[0]["options"].extended_reasoning is True
    conversation = await deep.get_history("u2", DOMAIN)
    assert assistant_messages(conversation)[0].metadata.thinking_used is True


@pytest.mark.asyncio
async def test_unknown_forced_model_is_rejected(make_orchestrator, catalog):
    """forceModel must name a registered provider."""
    orchestrator = make_orchestrator(catalog)
    with pytest.raises(ValidationError):
        await orchestrator.send_message("hola", DOMAIN, "u1", force_model="claude")


# Streaming


async def collect(orchestrator, message, user_id="u1"):
    return [chunk async for chunk in orchestrator.stream(message, DOMAIN, user_id)]


@pytest.mark.asyncio
async def test_stream_relays_chunks_and_persists(make_orchestrator, catalog):
    """Chunks arrive in order and the parsed reply is stored once the stream ends."""
    orchestrator = make_orchestrator(catalog)
    chunks = await collect(orchestrator, "hola")
    assert "".join(chunks) == '{"message": "Hola", "action": {"type": "none"}}'

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assistant = assistant_messages(conversation)[0]
    assert assistant.content == "Hola"
    assert assistant.metadata.tokens.total == 120
    assert conversation.metadata.models_used == {"openai": 1}


@pytest.mark.asyncio
async def test_stream_runs_tool_calls_then_resumes(make_orchestrator, catalog, tools):
    """Tool calls requested mid-stream are executed and the stream continues once."""
    openai = FakeAdapter(
        "openai",
        tools,
        chunks=[],
        stream_tool_calls=[ToolCall(id="c1", name="search_products", arguments={"query": "laptop"})],
        follow_chunks=['{"message": "Tenemos la X15"', ', "action": {"type": "none"}}'],
    )
    orchestrator = make_orchestrator(catalog, adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)})
    chunks = await collect(orchestrator, "hola")
    assert "".join(chunks) == '{"message": "Tenemos la X15", "action": {"type": "none"}}'

    (results,) = openai.continued
    call, result = results[0]
    assert call.name == "search_products"
    assert result.data["products"][0]["id"] == LAPTOP_ID

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert assistant_messages(conversation)[0].metadata.tokens.total == 240
    assert conversation.metadata.last_product_context.productId == LAPTOP_ID


@pytest.mark.asyncio
async def test_stream_ends_quietly_on_mid_stream_error(make_orchestrator, catalog, tools):
    """A provider failure after the first chunk ends the stream without raising."""
    openai = FakeAdapter("openai", tools, chunks=["Hola, te", ConnectionError("reset")])
    orchestrator = make_orchestrator(catalog, adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)})
    chunks = await collect(orchestrator, "hola")
    assert chunks == ["Hola, te"]

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assistant = assistant_messages(conversation)[0]
    assert assistant.content == "Hola, te"
    assert assistant.metadata.tokens.total == 0


@pytest.mark.asyncio
async def test_stream_failing_before_first_chunk_falls_back(make_orchestrator, catalog, tools):
    """A stream that dies before sending anything is replaced by the next provider."""
    openai = FakeAdapter("openai", tools, chunks=[ConnectionError("reset")])
    gemini = FakeAdapter("gemini", tools)
    orchestrator = make_orchestrator(catalog, adapters={"openai": openai, "gemini": gemini})
    chunks = await collect(orchestrator, "hola")
    assert "".join(chunks) == '{"message": "Hola", "action": {"type": "none"}}'
    assert len(gemini.calls) == 1
    assert openai.handles[0].usage.cancelled()

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assistant = assistant_messages(conversation)[0]
    assert assistant.content == "Hola"
    assert assistant.metadata.model == "gemini-test"
    assert assistant.metadata.fallback_used is True


@pytest.mark.asyncio
async def test_stream_failing_everywhere_before_first_chunk(make_orchestrator, catalog, tools):
    """No placeholder is stored for text the client never received."""
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, chunks=[ConnectionError("reset")]),
            "gemini": FakeAdapter("gemini", tools, chunks=[ConnectionError("reset")]),
        },
    )
    chunks = await collect(orchestrator, "hola")
    assert chunks == [FALLBACK_MESSAGE]

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert [m.content for m in assistant_messages(conversation)] == [FALLBACK_MESSAGE]


@pytest.mark.asyncio
async def test_stream_empty_reply_stores_no_placeholder(make_orchestrator, catalog, tools):
    """A provider that finishes without text leaves an empty assistant turn."""
    openai = FakeAdapter("openai", tools, chunks=[])
    orchestrator = make_orchestrator(catalog, adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)})
    assert await collect(orchestrator, "hola") == []

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert assistant_messages(conversation)[0].content == ""


@pytest.mark.asyncio
async def test_stream_closed_by_consumer_still_persists(make_orchestrator, catalog, tools):
    """A client that goes away mid-stream leaves both turns stored and the provider stream closed."""
    openai = FakeAdapter("openai", tools)
    orchestrator = make_orchestrator(catalog, adapters={"openai": openai, "gemini": FakeAdapter("gemini", tools)})
    chat_stream = await orchestrator.open_stream("hola", DOMAIN, "u1")
    chunks = chat_stream.__aiter__()
    assert await chunks.__anext__() == '{"message": "Hola'
    await chat_stream.aclose()

    assert openai.handles[0].usage.cancelled()
    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert [m.role for m in conversation.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert conversation.messages[1].content == "hola"
    assert conversation.messages[2].content == '{"message": "Hola'
    assert conversation.messages[2].metadata.tokens.total == 0


@pytest.mark.asyncio
async def test_stream_all_providers_failing_sends_fallback(make_orchestrator, catalog, tools):
    """If no provider opens a stream the fallback message is streamed and stored."""
    down = ProviderError("test", "down")
    orchestrator = make_orchestrator(
        catalog,
        adapters={
            "openai": FakeAdapter("openai", tools, error=down),
            "gemini": FakeAdapter("gemini", tools, error=down),
        },
    )
    chunks = await collect(orchestrator, "hola")
    assert chunks == [FALLBACK_MESSAGE]

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert assistant_messages(conversation)[0].metadata.model == FALLBACK_MODEL


@pytest.mark.asyncio
async def test_open_stream_raises_before_streaming_on_bad_input(make_orchestrator, catalog):
    """Preparation errors surface from open_stream, not from iteration."""
    orchestrator = make_orchestrator(catalog)
    with pytest.raises(ValidationError):
        await orchestrator.open_stream("hola", DOMAIN, "u1", force_model="nope")


# Lifecycle and stats


@pytest.mark.asyncio
async def test_close_archive_and_invalid_transitions(make_orchestrator, catalog):
    """Conversations move active -> closed -> archived and never backwards."""
    orchestrator = make_orchestrator(catalog)
    reply = await orchestrator.send_message("hola", DOMAIN, "u1")

    closed = await orchestrator.close_conversation(reply.conversation_id)
    assert closed.status == ConversationStatus.CLOSED
    assert await orchestrator.get_history("u1", DOMAIN) is None

    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.close_conversation(reply.conversation_id)

    archived = await orchestrator.archive_conversation(reply.conversation_id)
    assert archived.status == ConversationStatus.ARCHIVED

    with pytest.raises(ConversationNotFoundError):
        await orchestrator.close_conversation(uuid4())

    again = await orchestrator.send_message("hola", DOMAIN, "u1")
    assert again.conversation_id != reply.conversation_id


@pytest.mark.asyncio
async def test_purge_removes_only_expired_closed_conversations(make_orchestrator, catalog):
    """Closed conversations past retention are purged; active ones stay."""
    orchestrator = make_orchestrator(catalog, retention_days=90)
    closed = await orchestrator.send_message("hola", DOMAIN, "u1")
    await orchestrator.send_message("hola", DOMAIN, "u2")
    await orchestrator.close_conversation(closed.conversation_id)

    assert await orchestrator.purge_expired() == 0
    assert await orchestrator.purge_expired(now=utcnow() + timedelta(days=91)) == 1
    assert await orchestrator.get_history("u2", DOMAIN) is not None


@pytest.mark.asyncio
async def test_stats_aggregate_ledger(make_orchestrator, catalog):
    """Stats sum tokens and cost per provider over the requested window."""
    orchestrator = make_orchestrator(catalog)
    await orchestrator.send_message("hola", DOMAIN, "u1")
    await orchestrator.send_message("busco polos", DOMAIN, "u1")

    stats = await orchestrator.get_stats(DOMAIN)
    assert stats.requests == 2
    assert stats.tokens.total == 240
    assert set(stats.by_provider) == {"openai", "gemini"}
    assert stats.by_provider["openai"].requests == 1
    assert stats.cost.total == pytest.approx(sum(p.cost for p in stats.by_provider.values()))
    assert stats.fallbacks == 0

    empty = await orchestrator.get_stats("otra.tienda")
    assert empty.requests == 0
    assert empty.average_response_time_ms == 0.0

    past = await orchestrator.get_stats(DOMAIN, end=utcnow() - timedelta(days=1))
    assert past.requests == 0
