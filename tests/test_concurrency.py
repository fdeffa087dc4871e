"""Test suite for concurrent operations."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from .conftest import DOMAIN
from .test_api import build_app


@pytest.mark.asyncio
async def test_concurrent_conversations(make_orchestrator, catalog):
    """Turns for different users run concurrently and each gets its own conversation."""
    orchestrator = make_orchestrator(catalog)
    replies = await asyncio.gather(
        *[orchestrator.send_message("hola", DOMAIN, f"user-{i}") for i in range(10)]
    )

    assert len({r.conversation_id for r in replies}) == 10
    for i in range(10):
        conversation = await orchestrator.get_history(f"user-{i}", DOMAIN)
        assert len(conversation.messages) == 3


@pytest.mark.asyncio
async def test_concurrent_messages_same_user(make_orchestrator, catalog):
    """Concurrent turns of one user all complete; the stored document is last-write-wins."""
    orchestrator = make_orchestrator(catalog)
    await orchestrator.send_message("hola", DOMAIN, "u1")

    replies = await asyncio.gather(
        *[orchestrator.send_message(f"mensaje {i}", DOMAIN, "u1") for i in range(5)]
    )
    assert all(r.message for r in replies)
    assert len({r.conversation_id for r in replies}) == 1

    conversation = await orchestrator.get_history("u1", DOMAIN)
    assert conversation.messages[0].content.startswith("Eres asistente de ventas")
    assert len(conversation.messages) >= 5


@pytest.mark.asyncio
async def test_concurrent_streams(make_orchestrator, catalog):
    """Several streams interleave without mixing their chunks."""
    orchestrator = make_orchestrator(catalog)

    async def run(user_id):
        return "".join([chunk async for chunk in orchestrator.stream("hola", DOMAIN, user_id)])

    texts = await asyncio.gather(*[run(f"user-{i}") for i in range(5)])
    assert set(texts) == {'{"message": "Hola", "action": {"type": "none"}}'}


@pytest.mark.asyncio
async def test_concurrent_api_requests(catalog, config_store, tools):
    """Concurrent HTTP requests from different users all succeed."""
    app = build_app(catalog, config_store, tools)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        responses = await asyncio.gather(
            *[
                client.post(
                    "/api/chat/message",
                    json={"userMessage": "hola", "domain": DOMAIN, "userId": f"user-{i}"},
                )
                for i in range(5)
            ]
        )
    assert all(r.status_code == 200 for r in responses)
