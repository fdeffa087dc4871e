"""System prompt construction with per-domain read-through caches."""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from ..cache import TTLCache
from ..domain.models import ProductContext, ToolResult
from ..repositories.base import CatalogStore
from ..repositories.business import BusinessConfigResolver

logger = structlog.get_logger()

MAX_DIGEST_CATEGORIES = 10
DIGEST_EXAMPLES = 5


@dataclass(frozen=True)
class CatalogDigest:
    """Compact summary of a catalog: never the full item list."""

    text: str
    count: int
    categories: List[str] = field(default_factory=list)
    featured: List[Dict[str, Any]] = field(default_factory=list)


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


class PromptMemoryManager:
    """Builds the full and short system prompts for a store domain.

    Business configuration and catalog digests live in two independent
    TTL caches, populated lazily on first miss.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        business: BusinessConfigResolver,
        business_cache: Optional[TTLCache] = None,
        catalog_cache: Optional[TTLCache] = None,
        default_currency: str = "PEN",
        default_language: str = "es",
        default_country: str = "Perú",
    ):
        self.catalog = catalog
        self.business = business
        self.business_cache: TTLCache = business_cache if business_cache is not None else TTLCache(3600)
        self.catalog_cache: TTLCache = catalog_cache if catalog_cache is not None else TTLCache(300)
        self.default_currency = default_currency
        self.default_language = default_language
        self.default_country = default_country

    def default_business_config(self, domain: str) -> Dict[str, Any]:
        return {
            "name": domain,
            "currency": self.default_currency,
            "language": self.default_language,
            "country": self.default_country,
        }

    async def get_business_config(self, domain: str) -> Dict[str, Any]:
        cached = self.business_cache.get(domain)
        if cached is not None:
            logger.debug("business_config_cache_hit", domain=domain)
            return cached

        config = await self.business.resolve(domain)
        if not config:
            logger.warning("business_config_default_used", domain=domain)
            config = self.default_business_config(domain)
        self.business_cache.set(domain, config)
        logger.info("business_config_loaded", domain=domain)
        return config

    async def get_catalog_digest(self, domain: str) -> CatalogDigest:
        cached = self.catalog_cache.get(domain)
        if cached is not None:
            logger.debug("catalog_digest_cache_hit", domain=domain)
            return cached

        count, categories, featured = await asyncio.gather(
            self.catalog.count(domain),
            self.catalog.categories(domain),
            self.catalog.sample(domain, DIGEST_EXAMPLES),
        )

        if categories:
            shown = ", ".join(categories[:MAX_DIGEST_CATEGORIES])
            more = " y más..." if len(categories) > MAX_DIGEST_CATEGORIES else ""
            categories_text = f"Categorías disponibles: {shown}{more}"
        else:
            categories_text = "No hay categorías disponibles."

        examples = ""
        if featured:
            lines = []
            for i, product in enumerate(featured, start=1):
                regular = (product.price or {}).get("regular")
                lines.append(f"{i}. {product.title} - S/{regular if regular else 'N/A'}")
            examples = "\n\nEjemplos de productos:\n" + "\n".join(lines)

        digest = CatalogDigest(
            text=(
                f"{categories_text}{examples}\n\nIMPORTANTE: Para buscar productos específicos, usa la "
                "función search_products disponible. No inventes productos que no estén en el catálogo."
            ),
            count=count,
            categories=categories[:20],
            featured=[{"id": p.id, "title": p.title, "slug": p.slug, "price": p.price} for p in featured],
        )
        self.catalog_cache.set(domain, digest)
        logger.info("catalog_digest_loaded", domain=domain, products=count, categories=len(categories))
        return digest

    async def build_system_prompt(self, domain: str) -> str:
        """Full prompt: identity, output contract, rules and a catalog digest."""
        config, digest = await asyncio.gather(
            self.get_business_config(domain),
            self.get_catalog_digest(domain),
        )
        name = config.get("name") or config.get("title") or domain
        currency = config.get("currency") or self.default_currency
        country = config.get("country") or self.default_country

        return (
            f'Eres asistente de ventas para "{name}" ({country}, {currency}).\n\n'
            "FORMATO RESPUESTA (JSON obligatorio):\n"
            '{"message": "texto visual", "audio_description": "texto hablado", '
            '"action": {"type": "none|add_to_cart|show_product|go_to_url", "productId": null, ...}}\n\n'
            "REGLAS:\n"
            "- Si el usuario SOLICITA EXPLÍCITAMENTE agregar al carrito (ej: \"agrega al carrito\", "
            "\"quiero comprar\", \"añade\"), ejecuta la acción add_to_cart con los datos del producto proporcionados\n"
            "- Si el usuario solo pregunta o busca productos, muestra información pero pregunta antes de agregar al carrito\n"
            "- BÚSQUEDA INTELIGENTE: cuando uses search_products, piensa en conceptos relacionados y sé flexible "
            "con la intención del usuario, no solo con las palabras exactas.\n"
            "- Para buscar productos: usa search_products (función disponible). NO inventes productos.\n"
            "- message: texto visual (sin links/html). audio_description: texto hablado (sin mencionar botones).\n"
            f"- Responde en español ({currency}). Máximo 150 caracteres.\n"
            '- Si el producto no existe después de buscar términos relacionados: "No encontré ese producto. '
            '¿Buscamos algo similar?"\n\n'
            "CATÁLOGO RESUMEN:\n"
            f"{digest.text}\n"
            "NOTA: Usa search_products para buscar productos específicos."
        )

    def build_short_system_prompt(self, domain: str) -> str:
        """Instruction-only prompt for every turn after the first. Carries no catalog data."""
        return (
            f'Eres asistente de ventas para "{domain}".\n\n'
            "REGLAS:\n"
            '- Responde en JSON: {"message": "...", "audio_description": "...", "action": {...}}\n'
            "- Para buscar productos, usa search_products (función disponible)\n"
            "- Si el usuario SOLICITA EXPLÍCITAMENTE agregar al carrito, ejecuta la acción add_to_cart "
            "con los datos del producto\n"
            "- Si el usuario solo pregunta sobre productos, muestra información pero pregunta antes de agregar\n"
            f"- Responde en español ({self.default_currency})\n"
            "- Máximo 150 caracteres\n"
            "- No inventes productos"
        )

    def build_dynamic_prompt(self, domain: str, tool_result: ToolResult) -> str:
        """Short prompt plus the pre-executed tool result, for one turn only."""
        return f"{self.build_short_system_prompt(domain)}\n\n{self.relevant_information(tool_result)}"

    @staticmethod
    def relevant_information(tool_result: ToolResult) -> str:
        data = tool_result.data
        if data is None:
            return "INFORMACIÓN RELEVANTE:\nNo se encontraron resultados para esta consulta."

        products = data.get("products")
        if products is not None:
            if not products:
                return "INFORMACIÓN RELEVANTE:\nNo hay productos que coincidan. No inventes productos."
            lines = [f"- {p['title']} (id: {p['id']}, S/{p['price']['sale']})" for p in products]
            return "INFORMACIÓN RELEVANTE:\n" + "\n".join(lines)

        return f"INFORMACIÓN RELEVANTE ({tool_result.tool}):\n" + json.dumps(data, ensure_ascii=False, default=str)

    @staticmethod
    def conversation_context(context: Optional[ProductContext]) -> str:
        """Names the last product shown so "sí" or "agrégalo" can be resolved."""
        if context is None or not context.productId:
            return ""
        price = f", S/{context.price.sale}" if context.price else ""
        return (
            "CONTEXTO DE LA CONVERSACIÓN:\n"
            f'Último producto mostrado: "{context.title}" (id: {context.productId}{price}).\n'
            "Si el usuario confirma o pide agregarlo sin nombrar otro producto, usa este productId."
        )

    def invalidate(self, domain: str) -> None:
        self.business_cache.invalidate(domain)
        self.catalog_cache.invalidate(domain)
        logger.info("prompt_cache_cleared", domain=domain)

    def clear(self) -> None:
        self.business_cache.clear()
        self.catalog_cache.clear()
        logger.info("prompt_cache_cleared_all")
