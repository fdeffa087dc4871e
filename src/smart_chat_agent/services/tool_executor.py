"""Catalog and business tools shared by every provider adapter.

Not-found is never an exception here: a tool either returns a ToolResult whose
data is None (or a minimal default), or the whole call returns None for an
unknown tool. Storage and transport failures still propagate.
"""

import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..domain.models import Price, Product, ToolResult
from ..metrics import TOOL_EXECUTIONS
from ..repositories.base import CatalogStore
from ..repositories.business import BusinessConfigResolver

logger = structlog.get_logger()

PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x300?text=Sin+Imagen"

OBJECT_ID = re.compile(r"^[0-9a-fA-F]{24}$")
SLUG = re.compile(r"^[a-zA-Z0-9\-_]{3,}$")

COMMON_WORDS = frozenset(
    [
        "del", "de", "la", "el", "los", "las", "un", "una", "uno", "dos", "tres",
        "con", "por", "para", "ver", "mas", "más", "detalles", "detalle",
    ]
)

DEFAULT_SEARCH_LIMIT = 5
MAX_SEARCH_LIMIT = 10
MAX_STORE_FETCH = 20
AND_MATCH_MIN_KEYWORDS = 3

SEARCH_PRODUCTS = "search_products"
SEARCH_RECOMMENDED = "search_product_recommended"
ADD_TO_CART = "add_to_cart"
COMPANY_INFO = "company_info"
PRODUCT_PRICE = "product_price"
PRODUCT_DETAILS = "product_details"
SHIPPING_INFO = "shipping_info"

# Intent names and the function names models see both resolve here
TOOL_ALIASES: Dict[str, str] = {
    SEARCH_PRODUCTS: SEARCH_PRODUCTS,
    SEARCH_RECOMMENDED: SEARCH_RECOMMENDED,
    ADD_TO_CART: ADD_TO_CART,
    COMPANY_INFO: COMPANY_INFO,
    "get_company_info": COMPANY_INFO,
    "search_info_business": COMPANY_INFO,
    PRODUCT_PRICE: PRODUCT_PRICE,
    "get_product_price": PRODUCT_PRICE,
    PRODUCT_DETAILS: PRODUCT_DETAILS,
    "get_product_details": PRODUCT_DETAILS,
    SHIPPING_INFO: SHIPPING_INFO,
    "get_shipping_info": SHIPPING_INFO,
}


def normalize_price(raw: Optional[Dict[str, Any]]) -> Price:
    if not isinstance(raw, dict):
        return Price(regular=0, sale=0)
    regular = raw.get("regular") or 0
    return Price(regular=regular, sale=raw.get("sale") or regular)


def _bounded_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(number, high))


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def search_keywords(query: str) -> List[str]:
    return [w for w in query.lower().split() if len(w) > 2]


def relevance(product: Product, keywords: List[str]) -> int:
    title = product.title.lower()
    description = f"{product.description_short} {product.description_long}".lower()
    score = 0
    for keyword in keywords:
        if keyword in title:
            score += 10
            if title.startswith(keyword):
                score += 5
        if keyword in description:
            score += 3
    if keywords and all(k in title or k in description for k in keywords):
        score += 10
    return score


def rank(products: List[Product], keywords: List[str]) -> List[Product]:
    """Highest relevance first, alphabetical by title on ties."""
    return sorted(products, key=lambda p: (-relevance(p, keywords), p.title.lower()))


class ToolExecutor:
    """Executes the fixed tool set against one catalog store and business-config resolver."""

    def __init__(
        self,
        catalog: CatalogStore,
        business: BusinessConfigResolver,
        asset_base_url: str = "https://example.com",
    ):
        self.catalog = catalog
        self.business = business
        self.asset_base_url = asset_base_url.rstrip("/")
        self._handlers: Dict[str, Callable[[Dict[str, Any], str], Awaitable[Optional[ToolResult]]]] = {
            SEARCH_PRODUCTS: self.search_products,
            SEARCH_RECOMMENDED: self.search_recommended,
            ADD_TO_CART: self.add_to_cart,
            COMPANY_INFO: self.get_company_info,
            PRODUCT_PRICE: self.get_product_price,
            PRODUCT_DETAILS: self.get_product_details,
            SHIPPING_INFO: self.get_shipping_info,
        }

    @staticmethod
    def canonical_name(name: str) -> Optional[str]:
        return TOOL_ALIASES.get(name)

    async def execute_tool(self, name: str, params: Optional[Dict[str, Any]], domain: str) -> Optional[ToolResult]:
        canonical = self.canonical_name(name)
        if canonical is None:
            logger.warning("unknown_tool", tool=name, domain=domain)
            TOOL_EXECUTIONS.labels(tool="unknown", outcome="unknown").inc()
            return None

        try:
            result = await self._handlers[canonical](dict(params or {}), domain)
        except Exception as e:
            logger.error("tool_execution_failed", tool=canonical, domain=domain, error=str(e))
            TOOL_EXECUTIONS.labels(tool=canonical, outcome="error").inc()
            raise

        outcome = "found" if result is not None and result.data is not None else "empty"
        TOOL_EXECUTIONS.labels(tool=canonical, outcome=outcome).inc()
        logger.info("tool_executed", tool=canonical, domain=domain, outcome=outcome)
        return result

    def resolve_image(self, image: Optional[str]) -> str:
        if not image:
            return PLACEHOLDER_IMAGE
        if image.startswith("http"):
            return image
        return f"{self.asset_base_url}{image if image.startswith('/') else '/' + image}"

    def summarize(self, product: Product) -> Dict[str, Any]:
        """Shape handed to models for a search hit."""
        return {
            "id": product.id,
            "title": product.title or "Sin título",
            "description": product.description_short or "",
            "price": normalize_price(product.price).model_dump(),
            "image": self.resolve_image(product.image_default[0] if product.image_default else None),
            "slug": product.slug or product.id,
            "category": (product.category or {}).get("slug"),
        }

    async def _search(self, params: Dict[str, Any], domain: str) -> List[Product]:
        query = str(params.get("query") or "").strip()
        limit = _bounded_int(params.get("limit"), DEFAULT_SEARCH_LIMIT, 1, MAX_SEARCH_LIMIT)
        fetch = min(limit * 2, MAX_STORE_FETCH)
        keywords = search_keywords(query)
        filters = dict(
            category=params.get("category") or None,
            min_price=_optional_float(params.get("minPrice")),
            max_price=_optional_float(params.get("maxPrice")),
            limit=fetch,
        )

        products: List[Product] = []
        if len(keywords) >= AND_MATCH_MIN_KEYWORDS:
            products = await self.catalog.search(domain, keywords, match_all_in_title=True, **filters)
        if not products:
            products = await self.catalog.search(domain, keywords, **filters)

        if keywords and len(products) > 1:
            products = rank(products, keywords)
        return products[:limit]

    async def search_products(self, params: Dict[str, Any], domain: str) -> ToolResult:
        products = await self._search(params, domain)
        return ToolResult(
            tool=SEARCH_PRODUCTS,
            data={"count": len(products), "products": [self.summarize(p) for p in products]},
        )

    async def search_recommended(self, params: Dict[str, Any], domain: str) -> ToolResult:
        products = await self._search({"limit": params.get("limit")}, domain)
        return ToolResult(
            tool=SEARCH_RECOMMENDED,
            data={"count": len(products), "products": [self.summarize(p) for p in products]},
        )

    async def _lookup(self, reference: str, domain: str) -> Optional[Product]:
        """Find a product by id or slug after rejecting stop-words and malformed references."""
        reference = str(reference).strip()
        if reference.lower() in COMMON_WORDS:
            logger.warning("product_reference_is_common_word", reference=reference)
            return None
        is_object_id = bool(OBJECT_ID.match(reference))
        if not is_object_id and not SLUG.match(reference):
            logger.warning("product_reference_invalid", reference=reference)
            return None

        if is_object_id:
            return await self.catalog.get_by_id(domain, reference)
        product = await self.catalog.get_by_slug(domain, reference)
        if product is None:
            product = await self.catalog.get_by_id(domain, reference)
        return product

    async def _resolve_product(self, params: Dict[str, Any], domain: str) -> Optional[Product]:
        reference = params.get("productId")
        if reference:
            product = await self._lookup(reference, domain)
            if product is not None:
                return product
            logger.warning("product_not_found", reference=str(reference), domain=domain)
        query = params.get("query")
        if query:
            hits = await self._search({"query": query, "limit": 1}, domain)
            if hits:
                return hits[0]
            logger.warning("product_not_found_by_query", query=query, domain=domain)
        return None

    def _details(self, product: Product) -> Dict[str, Any]:
        return {
            "id": product.id,
            "title": product.title,
            "description": product.description_short or product.description_long or "",
            "price": normalize_price(product.price).model_dump(),
            "slug": product.slug,
            "category": product.category,
            "images": [self.resolve_image(image) for image in product.image_default],
            "tags": list(product.tags),
        }

    async def get_product_details(self, params: Dict[str, Any], domain: str) -> ToolResult:
        if not params.get("productId") and not params.get("query"):
            logger.warning("product_reference_missing", tool=PRODUCT_DETAILS)
            return ToolResult(tool=PRODUCT_DETAILS, data=None)
        product = await self._resolve_product(params, domain)
        return ToolResult(tool=PRODUCT_DETAILS, data=self._details(product) if product else None)

    async def get_item_details(self, reference: str, domain: str) -> Optional[Dict[str, Any]]:
        """Details by id or slug only; None for stop-words, malformed or unknown references."""
        product = await self._lookup(reference, domain)
        return self._details(product) if product else None

    async def get_product_price(self, params: Dict[str, Any], domain: str) -> ToolResult:
        product = await self._resolve_product(params, domain)
        if product is None:
            return ToolResult(tool=PRODUCT_PRICE, data=None)
        return ToolResult(
            tool=PRODUCT_PRICE,
            data={
                "productId": product.id,
                "title": product.title,
                "price": normalize_price(product.price).model_dump(),
                "slug": product.slug,
            },
        )

    async def add_to_cart(self, params: Dict[str, Any], domain: str) -> ToolResult:
        quantity = _bounded_int(params.get("quantity"), 1, 1, 100)
        product = await self._resolve_product(params, domain)
        if product is None:
            logger.warning("add_to_cart_unresolved", params=params, domain=domain)
            return ToolResult(tool=ADD_TO_CART, data=None)
        summary = self.summarize(product)
        return ToolResult(
            tool=ADD_TO_CART,
            data={
                "productId": summary["id"],
                "title": summary["title"],
                "price": summary["price"],
                "slug": summary["slug"],
                "quantity": quantity,
                "image": summary["image"],
            },
        )

    async def get_company_info(self, params: Dict[str, Any], domain: str) -> ToolResult:
        config = await self.business.resolve(domain)
        if not config:
            return ToolResult(
                tool=COMPANY_INFO,
                data={
                    "title": domain,
                    "slogan": "",
                    "meta_description": "Información de la empresa no disponible",
                    "meta_keyword": "",
                    "type_store": "",
                    "social_links": [],
                    "whatsapp_home": None,
                },
            )
        return ToolResult(
            tool=COMPANY_INFO,
            data={
                "title": config.get("title") or config.get("name") or domain,
                "slogan": config.get("slogan") or "",
                "meta_description": config.get("meta_description") or config.get("description") or "",
                "meta_keyword": config.get("meta_keyword") or "",
                "type_store": config.get("type_store") or "",
                "social_links": config.get("social_links") or [],
                "whatsapp_home": config.get("whatsapp_home"),
            },
        )

    async def get_shipping_info(self, params: Dict[str, Any], domain: str) -> ToolResult:
        config = await self.business.fetch_remote(domain)
        if not config:
            return ToolResult(tool=SHIPPING_INFO, data={"message": "Información de envío no disponible"})
        return ToolResult(
            tool=SHIPPING_INFO,
            data={
                "shippingPolicy": config.get("shipping_policy") or config.get("shipping_info") or "",
                "freeShippingThreshold": config.get("free_shipping_threshold"),
                "shippingZones": config.get("shipping_zones") or [],
            },
        )
