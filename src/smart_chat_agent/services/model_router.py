"""Heuristic provider selection.

The router never performs I/O and keeps no state between calls, so the same
(message, history) always routes to the same provider.
"""

import re
from typing import List, Optional, Sequence

from ..domain.models import Message

CONVERSATIONAL_PROVIDER = "openai"
REASONING_PROVIDER = "gemini"

TRIVIAL_PATTERNS = [
    re.compile(r"^(hola|hello|hi|hey|buenos días|buenas tardes|buenas noches)$"),
    re.compile(r"^(gracias|thanks|thank you|muchas gracias)$"),
    re.compile(r"^(adiós|adios|chao|bye|hasta luego|nos vemos)$"),
    re.compile(r"^(ok|okay|vale|bien|perfecto|entendido)$"),
    re.compile(r"^(sí|si|no|nope|yes|yep)$"),
    re.compile(r"^\?+$"),
    re.compile(r"^\.+$"),
]

SEARCH_KEYWORDS = [
    "busco", "buscar", "quiero", "necesito", "me interesa",
    "muéstrame", "mostrar", "ver", "productos", "producto",
    "artículo", "tienes", "tienen", "venden", "hay",
    "dame", "recomienda", "sugerir", "encuentra", "encontrar",
    "looking for", "show me", "do you have", "recommend",
]

PRODUCT_TYPES = [
    "zapatillas", "zapatos", "camisa", "pantalón", "polo",
    "vestido", "laptop", "celular", "teléfono", "computadora",
    "tablet", "audífonos", "mouse", "teclado", "monitor",
]

COMPARISON_KEYWORDS = [
    "compara", "comparar", "diferencia", "diferencias",
    "vs", "versus", "mejor", "mejores", "entre",
    "cuál es", "cual es", "qué es", "que es", "opciones",
    "compare", "difference", "better",
]

CALCULATION_KEYWORDS = [
    "cuánto", "cuanto", "precio", "costo", "total",
    "descuento", "envío", "delivery", "calcular",
    "suma", "cantidad", "pagar", "cobran",
    "price", "cost",
]

AND_PATTERNS = [re.compile(p) for p in (r" y ", r" con ", r" que ", r" además ", r" también ")]
OR_PATTERNS = [re.compile(p) for p in (r" o ", r" entre ")]

THINKING_KEYWORDS = [
    "cómo", "como", "por qué", "porque", "explica",
    "explicar", "funciona", "funcionamiento", "proceso",
    "pasos", "método", "manera",
    "explain", "why",
]

_DIGITS = re.compile(r"\d+")


def _normalize(message: str) -> str:
    return message.lower().strip()


def _contains_any(message: str, keywords: Sequence[str]) -> bool:
    return any(keyword in message for keyword in keywords)


class ModelRouter:
    """Ordered cascade of heuristics; the first rule that matches decides."""

    def decide(self, message: str, history: Optional[List[Message]] = None) -> str:
        text = _normalize(message)

        if self.is_trivial(text):
            return CONVERSATIONAL_PROVIDER
        if self.detects_product_intent(text):
            return REASONING_PROVIDER
        if self.requires_comparison(text):
            return REASONING_PROVIDER
        if self.requires_calculation(text):
            return REASONING_PROVIDER
        if self.has_multiple_conditions(text):
            return REASONING_PROVIDER
        if self.requires_thinking(text):
            return REASONING_PROVIDER
        return CONVERSATIONAL_PROVIDER

    def should_use_extended_reasoning(self, message: str) -> bool:
        text = _normalize(message)
        return (
            self.requires_thinking(text)
            or self.requires_comparison(text)
            or self.has_multiple_conditions(text)
        )

    @staticmethod
    def is_trivial(text: str) -> bool:
        return any(pattern.match(text) for pattern in TRIVIAL_PATTERNS)

    @staticmethod
    def detects_product_intent(text: str) -> bool:
        return _contains_any(text, SEARCH_KEYWORDS) or _contains_any(text, PRODUCT_TYPES)

    @staticmethod
    def requires_comparison(text: str) -> bool:
        return _contains_any(text, COMPARISON_KEYWORDS)

    @staticmethod
    def requires_calculation(text: str) -> bool:
        return bool(_DIGITS.search(text)) and _contains_any(text, CALCULATION_KEYWORDS)

    @staticmethod
    def has_multiple_conditions(text: str) -> bool:
        conjunctions = sum(1 for pattern in AND_PATTERNS if pattern.search(text))
        return conjunctions >= 2 or any(pattern.search(text) for pattern in OR_PATTERNS)

    @staticmethod
    def requires_thinking(text: str) -> bool:
        return _contains_any(text, THINKING_KEYWORDS)
