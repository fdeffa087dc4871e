"""Test suite for provider routing heuristics."""

import pytest

from smart_chat_agent.domain.models import Message, Role
from smart_chat_agent.services.model_router import (
    CONVERSATIONAL_PROVIDER,
    REASONING_PROVIDER,
    ModelRouter,
)


@pytest.fixture
def router():
    return ModelRouter()


@pytest.mark.parametrize("greeting", ["hola", "Hola", "  gracias ", "ok", "sí", "bye", "???", "buenas noches"])
def test_trivial_messages_use_conversational_provider(router, greeting):
    """Greetings and acknowledgements always go to the conversational provider."""
    long_history = [
        Message(role=Role.USER, content="compara laptops vs tablets y explica por qué"),
        Message(role=Role.ASSISTANT, content="Claro, aquí tienes la comparación"),
    ] * 5
    assert router.decide(greeting) == CONVERSATIONAL_PROVIDER
    assert router.decide(greeting, long_history) == CONVERSATIONAL_PROVIDER


@pytest.mark.parametrize(
    "message",
    [
        "busco zapatillas deportivas",
        "¿tienen laptops?",
        "necesito un monitor",
        "show me your best sellers",
    ],
)
def test_product_search_uses_reasoning_provider(router, message):
    """Catalog-search language routes to the tool-calling provider."""
    assert router.decide(message) == REASONING_PROVIDER


def test_comparison_and_calculation(router):
    """Comparison words and numbers with cost words route to the reasoning provider."""
    assert router.decide("diferencia entre el plan a y el plan b") == REASONING_PROVIDER
    assert router.decide("cuánto sale el envío a 3 ciudades") == REASONING_PROVIDER
    assert router.requires_calculation("pagar 20 soles")
    assert not router.requires_calculation("pagar ahora")


def test_multiple_conditions(router):
    """Two conjunctions or any disjunction count as multiple conditions."""
    assert router.has_multiple_conditions("rojo y grande con bolsillos")
    assert router.has_multiple_conditions("rojo o azul")
    assert not router.has_multiple_conditions("rojo y grande")


def test_explanations_route_to_reasoning_provider(router):
    """Questions asking how or why go to the reasoning provider."""
    assert router.decide("explain the return policy") == REASONING_PROVIDER


def test_default_is_conversational(router):
    """Messages matching no rule use the conversational provider."""
    assert router.decide("me llamo Ana") == CONVERSATIONAL_PROVIDER


def test_routing_is_deterministic(router):
    """The same input always gives the same decision."""
    messages = ["hola", "busco polos", "explica el proceso de compra", "me llamo Ana", "rojo o azul"]
    first = [router.decide(m) for m in messages]
    for _ in range(20):
        assert [router.decide(m) for m in messages] == first


def test_extended_reasoning_flag(router):
    """Deep-reasoning mode is requested for explanations and comparisons only."""
    assert router.should_use_extended_reasoning("¿por qué este modelo es mejor?")
    assert not router.should_use_extended_reasoning("hola")
