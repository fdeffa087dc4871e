"""Prometheus metrics in an isolated registry."""

from prometheus_client import CollectorRegistry, Counter, Histogram

CUSTOM_REGISTRY = CollectorRegistry()

CHAT_REQUESTS = Counter(
    "chat_requests_total", "Chat turns received", ["mode"], registry=CUSTOM_REGISTRY
)
CHAT_ERRORS = Counter(
    "chat_errors_total", "Chat failures by pipeline stage", ["stage"], registry=CUSTOM_REGISTRY
)
PROVIDER_CALLS = Counter(
    "provider_calls_total", "Provider calls by outcome", ["provider", "outcome"], registry=CUSTOM_REGISTRY
)
PROVIDER_FALLBACKS = Counter(
    "provider_fallbacks_total",
    "Times generation moved to another provider",
    ["from_provider", "to_provider"],
    registry=CUSTOM_REGISTRY,
)
TOOL_EXECUTIONS = Counter(
    "tool_executions_total", "Tool executions by outcome", ["tool", "outcome"], registry=CUSTOM_REGISTRY
)
TOKENS = Counter(
    "tokens_total", "Tokens consumed by provider and kind", ["provider", "kind"], registry=CUSTOM_REGISTRY
)
RESPONSE_TIME = Histogram(
    "chat_response_seconds", "End-to-end chat turn latency", registry=CUSTOM_REGISTRY
)
