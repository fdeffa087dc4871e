"""Tool schema presented to every provider, in each provider's own shape."""

from typing import Any, Dict, List

TOOL_SPECS: List[Dict[str, Any]] = [
    {
        "name": "search_products",
        "description": (
            "Busca productos en el catálogo con búsqueda flexible. Úsala para CUALQUIER consulta sobre "
            "productos; entiende conceptos relacionados y sinónimos."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Palabras clave de lo que busca el usuario"},
                "category": {"type": "string", "description": "Categoría del producto (opcional)"},
                "minPrice": {"type": "number", "description": "Precio mínimo (opcional)"},
                "maxPrice": {"type": "number", "description": "Precio máximo (opcional)"},
                "limit": {"type": "number", "description": "Número máximo de resultados (default: 5)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_product_details",
        "description": "Detalles completos de un producto por su ID o slug.",
        "parameters": {
            "type": "object",
            "properties": {"productId": {"type": "string", "description": "ID o slug del producto"}},
            "required": ["productId"],
        },
    },
    {
        "name": "search_info_business",
        "description": "Información de la empresa: quiénes son, qué hacen, contacto y redes.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "get_product_price",
        "description": "Precio de un producto por su ID o slug.",
        "parameters": {
            "type": "object",
            "properties": {"productId": {"type": "string", "description": "ID o slug del producto"}},
            "required": ["productId"],
        },
    },
    {
        "name": "search_product_recommended",
        "description": "Productos recomendados o destacados.",
        "parameters": {
            "type": "object",
            "properties": {"limit": {"type": "number", "description": "Máximo de productos (default: 5)"}},
            "required": [],
        },
    },
    {
        "name": "get_shipping_info",
        "description": "Políticas, costos y zonas de envío.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
]


def openai_tools() -> List[Dict[str, Any]]:
    """Chat-completions shape, shared by OpenAI and OpenAI-compatible endpoints."""
    return [{"type": "function", "function": spec} for spec in TOOL_SPECS]


def _gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    converted: Dict[str, Any] = {"type": schema["type"].upper()}
    if "description" in schema:
        converted["description"] = schema["description"]
    if "properties" in schema:
        converted["properties"] = {k: _gemini_schema(v) for k, v in schema["properties"].items()}
    if schema.get("required"):
        converted["required"] = list(schema["required"])
    return converted


def gemini_function_declarations() -> List[Dict[str, Any]]:
    # Gemini rejects an OBJECT with no properties, so parameterless tools omit it
    declarations = []
    for spec in TOOL_SPECS:
        declaration = {"name": spec["name"], "description": spec["description"]}
        if spec["parameters"].get("properties"):
            declaration["parameters"] = _gemini_schema(spec["parameters"])
        declarations.append(declaration)
    return declarations
