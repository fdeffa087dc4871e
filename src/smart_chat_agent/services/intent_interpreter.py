"""Intent classification: local pattern rules first, LLM classifiers as escalation."""

import json
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..cache import TTLCache
from ..domain.models import InterpretedIntent

logger = structlog.get_logger()

GENERAL_CHAT = "general_chat"

INTENTS = (
    "search_products",
    "add_to_cart",
    "company_info",
    "product_price",
    "product_details",
    "shipping_info",
    GENERAL_CHAT,
)

LOCAL_CONFIDENCE_THRESHOLD = 0.7
MAX_LOCAL_CONFIDENCE = 0.95

OBJECT_ID_PATTERN = re.compile(r"\b[0-9a-fA-F]{24}\b")
LONG_NUMBER_PATTERN = re.compile(r"\b\d{6,}\b")
QUANTITY_WITH_UNIT = re.compile(r"\b(\d+)\s*(unidades|unidad|pcs|piezas|units?)\b", re.IGNORECASE)
BARE_NUMBER = re.compile(r"\b(\d+)\b")
_PUNCTUATION = re.compile(r"[^\w\s-]")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _fold(text: str) -> str:
    return strip_accents(text.lower().strip())


@dataclass(frozen=True)
class IntentRule:
    """A regex plus keyword groups; a group counts when any of its stems appears."""

    regex: re.Pattern
    keyword_groups: Tuple[Tuple[str, ...], ...]
    confidence: float

    def score(self, folded: str) -> float:
        score = 0.5 if self.regex.search(folded) else 0.0
        if self.keyword_groups:
            found = sum(1 for group in self.keyword_groups if any(k in folded for k in group))
            score += (found / len(self.keyword_groups)) * 0.5
        return score


def _rule(pattern: str, groups: Sequence[Sequence[str]], confidence: float) -> IntentRule:
    return IntentRule(re.compile(pattern), tuple(tuple(g) for g in groups), confidence)


# Patterns run against lower-cased, accent-stripped text
RULES: Dict[str, Dict[str, IntentRule]] = {
    "es": {
        "search_products": _rule(
            r"(producto|productos|busco|buscar|buscando|necesito|quiero|encontrar|mostrar|muestra|muestrame|tienen|venden)",
            [("busc", "necesito", "quiero", "muestr", "encontr", "tienen", "venden"), ("producto", "articulo")],
            0.9,
        ),
        "add_to_cart": _rule(
            r"(agregar|agrega|anadir|anade|poner|meter|carrito|comprar|quiero.*comprar)",
            [("agreg", "anad", "compr", "mete"), ("carrito", "cesta")],
            0.9,
        ),
        "company_info": _rule(
            r"(empresa|quienes|sobre.*nosotros|informacion.*empresa|quien.*son|historia)",
            [("empresa", "tienda", "negocio"), ("quienes", "nosotros", "historia", "informacion")],
            0.9,
        ),
        "product_price": _rule(
            r"(precio|cuanto|cuesta|vale|costar|tarifa)",
            [("precio", "tarifa"), ("cuanto", "cuesta", "vale", "costar")],
            0.85,
        ),
        "product_details": _rule(
            r"(detalle|detalles|caracteristica|especificacion|informacion.*producto)",
            [("detalle", "caracteristica", "especificacion"), ("producto", "articulo")],
            0.85,
        ),
        "shipping_info": _rule(
            r"(envio|enviamos|entrega|delivery|envio.*gratis|costo.*envio)",
            [("envio", "entrega", "delivery", "shipping"), ("gratis", "costo", "demora", "zona")],
            0.85,
        ),
    },
    "en": {
        "search_products": _rule(
            r"(product|products|search|looking|need|want|find|show|show me)",
            [("search", "looking", "need", "want", "find", "show"), ("product", "item")],
            0.9,
        ),
        "add_to_cart": _rule(
            r"(add|add to cart|cart|buy|purchase|want to buy|add.*cart|put.*cart)",
            [("add", "buy", "purchase", "put"), ("cart", "basket")],
            0.9,
        ),
        "company_info": _rule(
            r"(company|about|who|information|history|story)",
            [("company", "store", "business"), ("about", "who", "history", "story")],
            0.9,
        ),
        "product_price": _rule(
            r"(price|how much|cost|worth|pricing)",
            [("price", "pricing"), ("how much", "cost", "worth")],
            0.85,
        ),
        "product_details": _rule(
            r"(detail|details|specification|feature|information.*product)",
            [("detail", "specification", "feature"), ("product", "item")],
            0.85,
        ),
        "shipping_info": _rule(
            r"(shipping|delivery|ship|free shipping|shipping cost)",
            [("shipping", "delivery", "ship"), ("free", "cost", "zone", "time")],
            0.85,
        ),
    },
    "pt": {
        "search_products": _rule(
            r"(produto|produtos|buscar|procurando|preciso|quero|encontrar|mostrar|mostre)",
            [("busc", "procur", "preciso", "quero", "encontr", "mostr"), ("produto", "artigo")],
            0.9,
        ),
        "add_to_cart": _rule(
            r"(adicionar|adiciona|adicionar.*carrinho|carrinho|comprar|quero.*comprar)",
            [("adicion", "compr", "coloc"), ("carrinho", "cesta")],
            0.9,
        ),
        "company_info": _rule(
            r"(empresa|sobre|quem|informacao|historia)",
            [("empresa", "loja", "negocio"), ("sobre", "quem", "historia", "informacao")],
            0.9,
        ),
        "product_price": _rule(
            r"(preco|quanto|custa|vale)",
            [("preco",), ("quanto", "custa", "vale")],
            0.85,
        ),
        "product_details": _rule(
            r"(detalhe|detalhes|caracteristica|especificacao)",
            [("detalhe", "caracteristica", "especificacao"), ("produto", "artigo")],
            0.85,
        ),
        "shipping_info": _rule(
            r"(envio|entrega|frete|frete.*gratis)",
            [("envio", "entrega", "frete"), ("gratis", "custo", "prazo", "zona")],
            0.85,
        ),
    },
}

SEARCH_STOP_WORDS = {
    "es": {
        "quiero", "necesito", "buscar", "busco", "buscando", "producto", "productos", "tengo",
        "muestra", "muestrame", "mostrar", "tienen", "tienes", "venden", "algun", "alguna",
        "unos", "unas", "por", "favor", "para", "que", "hay", "encontrar",
    },
    "en": {
        "want", "need", "search", "product", "products", "show", "looking", "for", "find",
        "some", "any", "please", "the", "you", "have",
    },
    "pt": {
        "quero", "preciso", "buscar", "produto", "produtos", "mostre", "procurando",
        "encontrar", "por", "favor", "para", "algum", "alguma",
    },
}

# Affirmations and pronouns are dropped too so "si, agregalo" leaves no name behind
PRODUCT_STOP_WORDS = {
    "es": {
        "agregar", "anadir", "agrega", "anade", "agregalo", "agregala", "anadelo", "anadela",
        "quiero", "carrito", "comprar", "compro", "dame", "damelo", "damela", "ponlo", "ponla",
        "meter", "mete", "metelo", "precio", "cuanto", "cuesta", "vale", "detalle", "detalles",
        "del", "los", "las", "ese", "esa", "eso", "este", "esta", "esto", "ok", "vale", "por",
        "favor", "tiene", "caracteristicas", "unidad", "unidades", "mas", "ver", "porfa",
    },
    "en": {
        "add", "cart", "want", "buy", "purchase", "the", "that", "this", "yes", "please",
        "price", "how", "much", "does", "cost", "details", "detail", "about", "units", "unit",
    },
    "pt": {
        "adicionar", "adiciona", "carrinho", "quero", "comprar", "sim", "isso", "esse", "essa",
        "preco", "quanto", "custa", "detalhes", "detalhe", "por", "favor", "unidades",
    },
}


def _words(message: str) -> List[Tuple[str, str]]:
    """(original lower-cased word, folded word) pairs with punctuation removed."""
    pairs = []
    for raw in message.lower().split():
        word = _PUNCTUATION.sub("", raw).strip("-")
        if word:
            pairs.append((word, strip_accents(word)))
    return pairs


def extract_product_reference(message: str) -> Optional[str]:
    match = OBJECT_ID_PATTERN.search(message)
    if match:
        return match.group(0)
    match = LONG_NUMBER_PATTERN.search(message)
    if match:
        return match.group(0)
    return None


def extract_quantity(message: str) -> Optional[int]:
    match = QUANTITY_WITH_UNIT.search(message)
    if match:
        return max(1, min(int(match.group(1)), 100))
    match = BARE_NUMBER.search(message)
    if match:
        number = int(match.group(1))
        if 1 <= number <= 100:
            return number
    return None


def extract_search_terms(message: str, language: str) -> Optional[str]:
    stops = SEARCH_STOP_WORDS.get(language, SEARCH_STOP_WORDS["es"])
    relevant = [word for word, folded in _words(message) if len(word) > 2 and folded not in stops]
    return " ".join(relevant) or None


def extract_product_name(message: str, language: str) -> Optional[str]:
    stops = PRODUCT_STOP_WORDS.get(language, PRODUCT_STOP_WORDS["es"])
    relevant = [
        word for word, folded in _words(message)
        if len(word) > 2 and folded not in stops and not folded.isdigit()
    ]
    # The product name tends to close the sentence
    return " ".join(relevant[-5:]) or None


def extract_params(message: str, intent: str, language: str) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if intent == "search_products":
        query = extract_search_terms(message, language)
        if query:
            params["query"] = query
    elif intent in ("add_to_cart", "product_price", "product_details"):
        reference = extract_product_reference(message)
        remainder = message
        if reference:
            params["productId"] = reference
            remainder = message.replace(reference, " ")
        else:
            name = extract_product_name(message, language)
            if name:
                params["query"] = name
        quantity = extract_quantity(remainder)
        if quantity:
            params["quantity"] = quantity
    return params


def _coerce_quantity(value: Any) -> Optional[int]:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return None
    return max(1, min(quantity, 100))


def _clamp(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        confidence = default
    return max(0.0, min(confidence, 1.0))


def classifier_prompt(language: str, domain: str) -> str:
    return (
        f"Eres un clasificador de intenciones para {domain or 'una tienda online'}.\n\n"
        "Clasifica la intención del usuario. Responde SOLO con JSON válido:\n"
        "{\n"
        f'  "intent": "{" | ".join(INTENTS)}",\n'
        '  "params": {"query": "términos de búsqueda si aplica", '
        '"productId": "ID del producto si aplica", "quantity": "cantidad si aplica"},\n'
        '  "confidence": 0.0-1.0\n'
        "}\n\n"
        f"Idioma: {language}"
    )


class IntentClassifier(ABC):
    """An LLM-backed classifier constrained to the {intent, params, confidence} schema."""

    method: str = "llm"

    @abstractmethod
    async def classify(self, message: str, language: str, domain: str) -> Optional[Dict[str, Any]]:
        pass


class OpenAIIntentClassifier(IntentClassifier):
    method = "llm-openai"

    def __init__(self, client, model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    async def classify(self, message: str, language: str, domain: str) -> Optional[Dict[str, Any]]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": classifier_prompt(language, domain)},
                {"role": "user", "content": message},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
            max_tokens=150,
        )
        content = response.choices[0].message.content or ""
        return json.loads(content)


class GeminiIntentClassifier(IntentClassifier):
    method = "llm-gemini"

    def __init__(self, model):
        self.model = model

    async def classify(self, message: str, language: str, domain: str) -> Optional[Dict[str, Any]]:
        prompt = f"{classifier_prompt(language, domain)}\n\nMensaje del usuario: {message}"
        response = await self.model.generate_content_async(
            prompt,
            generation_config={"temperature": 0.1, "max_output_tokens": 150},
        )
        match = re.search(r"\{[\s\S]*\}", response.text or "")
        if not match:
            logger.warning("intent_classifier_no_json", method=self.method)
            return None
        return json.loads(match.group(0))


class IntentInterpreter:
    """Classifies what a user wants so the matching tool can run before generation."""

    def __init__(
        self,
        enabled: bool = False,
        use_local: bool = True,
        use_llm: bool = True,
        classifiers: Optional[List[IntentClassifier]] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.enabled = enabled
        self.use_local = use_local
        self.use_llm = use_llm
        self.classifiers = classifiers or []
        self.cache: TTLCache = cache if cache is not None else TTLCache(ttl_seconds=300)

    @staticmethod
    def cache_key(message: str, language: str) -> str:
        return f"{language}:{message[:50].lower().strip()}"

    async def interpret(self, message: str, language: str = "es", domain: str = "") -> InterpretedIntent:
        if not self.enabled:
            return InterpretedIntent(intent=GENERAL_CHAT, params={}, confidence=1.0, method="disabled")

        key = self.cache_key(message, language)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("intent_cache_hit", key=key)
            return cached.model_copy(deep=True)

        result = None
        if self.use_local:
            result = self.interpret_locally(message, language)

        if (result is None or result.confidence < LOCAL_CONFIDENCE_THRESHOLD) and self.use_llm:
            result = await self.interpret_with_llm(message, language, domain)

        if result is None:
            result = InterpretedIntent(intent=GENERAL_CHAT, params={}, confidence=0.5, method="default")

        self.cache.set(key, result)
        logger.info(
            "intent_interpreted",
            intent=result.intent,
            confidence=result.confidence,
            method=result.method,
        )
        return result.model_copy(deep=True)

    def interpret_locally(self, message: str, language: str) -> Optional[InterpretedIntent]:
        """Best-scoring rule for the language, or None when nothing matches at all."""
        folded = _fold(message)
        rules = RULES.get(language, RULES["es"])

        best_intent, best_score, best_rule = None, 0.0, None
        for intent, rule in rules.items():
            score = rule.score(folded)
            if score > best_score:
                best_intent, best_score, best_rule = intent, score, rule

        if best_intent is None:
            return None
        return InterpretedIntent(
            intent=best_intent,
            params=extract_params(message, best_intent, language),
            confidence=_clamp(min(best_score * best_rule.confidence, MAX_LOCAL_CONFIDENCE), 0.0),
            method="local_rules",
        )

    async def interpret_with_llm(self, message: str, language: str, domain: str) -> Optional[InterpretedIntent]:
        for classifier in self.classifiers:
            try:
                parsed = await classifier.classify(message, language, domain)
            except Exception as e:
                logger.warning("intent_classifier_failed", method=classifier.method, error=str(e))
                continue
            if parsed:
                return self._from_llm(parsed, classifier.method)
        return None

    @staticmethod
    def _from_llm(parsed: Dict[str, Any], method: str) -> InterpretedIntent:
        intent = parsed.get("intent")
        if intent not in INTENTS:
            intent = GENERAL_CHAT
        raw_params = parsed.get("params") if isinstance(parsed.get("params"), dict) else {}
        params = {k: v for k, v in raw_params.items() if v not in (None, "")}
        if "quantity" in params:
            quantity = _coerce_quantity(params["quantity"])
            if quantity is None:
                params.pop("quantity")
            else:
                params["quantity"] = quantity
        return InterpretedIntent(
            intent=intent,
            params=params,
            confidence=_clamp(parsed.get("confidence", 0.8), 0.8),
            method=method,
        )

    def clear_cache(self) -> None:
        self.cache.clear()
