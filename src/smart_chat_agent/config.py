"""Typed configuration built from the environment.

Construct via Settings.from_env() in the app, or pass explicitly in tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .domain.exceptions import ConfigurationError


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


GEMINI_THINKING_MODELS = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash-thinking-exp",
    "gemini-2.0-flash-exp",
)


@dataclass(frozen=True)
class OpenAISettings:
    api_key: str = ""
    model: str = "gpt-4o"
    temperature: float = 0.2
    max_tokens: int = 500
    intent_model: str = "gpt-4o-mini"


@dataclass(frozen=True)
class GeminiSettings:
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    temperature: float = 0.3
    max_tokens: int = 1000
    # Models that reason before answering; extended reasoning is only requested from these
    thinking_models: Tuple[str, ...] = GEMINI_THINKING_MODELS
    thinking_max_tokens: int = 8192


@dataclass(frozen=True)
class GroqSettings:
    api_key: str = ""
    base_url: str = "https://api.groq.com/openai/v1"
    model: str = "llama-3.3-70b-versatile"
    temperature: float = 0.3
    max_tokens: int = 800


@dataclass(frozen=True)
class FeatureFlags:
    """Runtime switches, all read from ENABLE_* variables."""

    model_fallback: bool = True
    groq_fallback: bool = False
    thinking_mode: bool = False
    intent_interpreter: bool = False
    intent_interpreter_local: bool = True
    intent_interpreter_llm: bool = True


@dataclass(frozen=True)
class PerformanceSettings:
    max_conversation_history: int = 6
    product_cache_ttl_ms: int = 300_000
    business_config_cache_ttl_ms: int = 3_600_000
    intent_cache_ttl_ms: int = 300_000
    provider_timeout_seconds: float = 30.0
    config_source_timeout_seconds: float = 5.0
    closed_retention_days: int = 90


@dataclass(frozen=True)
class RateLimitSettings:
    window_ms: int = 10_000
    max_requests: int = 5


@dataclass(frozen=True)
class Settings:
    """Centralized configuration for the chat agent."""

    openai: OpenAISettings = field(default_factory=OpenAISettings)
    gemini: GeminiSettings = field(default_factory=GeminiSettings)
    groq: GroqSettings = field(default_factory=GroqSettings)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    performance: PerformanceSettings = field(default_factory=PerformanceSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)

    # Secondary business-config source; empty disables it
    api_configuration: str = ""
    asset_base_url: str = "https://example.com"

    default_language: str = "es"
    default_currency: str = "PEN"
    default_country: str = "Perú"

    pricing_table_path: Optional[str] = None
    allowed_origins: Tuple[str, ...] = ("*",)

    log_level: str = "INFO"
    log_json: bool = False

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.openai.api_key:
            missing.append("OPENAI_API_KEY")
        if not self.gemini.api_key:
            missing.append("GEMINI_API_KEY")
        if self.features.groq_fallback and not self.groq.api_key:
            missing.append("GROQ_API_KEY")
        return missing

    def validate(self) -> "Settings":
        """Refuse to run partially configured."""
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(missing)
        return self

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from the process environment (and a .env file if present)."""
        from dotenv import load_dotenv
        load_dotenv()

        origins = os.getenv("ALLOWED_ORIGINS", "")
        return cls(
            openai=OpenAISettings(
                api_key=os.getenv("OPENAI_API_KEY", ""),
                model=os.getenv("OPENAI_MODEL", "gpt-4o"),
                temperature=_float("OPENAI_TEMPERATURE", 0.2),
                max_tokens=_int("OPENAI_MAX_TOKENS", 500),
                intent_model=os.getenv("OPENAI_INTENT_MODEL", "gpt-4o-mini"),
            ),
            gemini=GeminiSettings(
                api_key=os.getenv("GEMINI_API_KEY", ""),
                model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
                temperature=_float("GEMINI_TEMPERATURE", 0.3),
                max_tokens=_int("GEMINI_MAX_TOKENS", 1000),
                thinking_models=_list("GEMINI_THINKING_MODELS", GEMINI_THINKING_MODELS),
                thinking_max_tokens=_int("GEMINI_THINKING_MAX_TOKENS", 8192),
            ),
            groq=GroqSettings(
                api_key=os.getenv("GROQ_API_KEY", ""),
                base_url=os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1"),
                model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
                temperature=_float("GROQ_TEMPERATURE", 0.3),
                max_tokens=_int("GROQ_MAX_TOKENS", 800),
            ),
            features=FeatureFlags(
                model_fallback=_flag("ENABLE_MODEL_FALLBACK", True),
                groq_fallback=_flag("ENABLE_GROQ_FALLBACK", False),
                thinking_mode=_flag("ENABLE_THINKING_MODE", False),
                intent_interpreter=_flag("ENABLE_INTENT_INTERPRETER", False),
                intent_interpreter_local=_flag("ENABLE_INTENT_INTERPRETER_LOCAL", True),
                intent_interpreter_llm=_flag("ENABLE_INTENT_INTERPRETER_LLM", True),
            ),
            performance=PerformanceSettings(
                max_conversation_history=_int("MAX_CONVERSATION_HISTORY", 6),
                product_cache_ttl_ms=_int("PRODUCT_CACHE_TTL_MS", 300_000),
                business_config_cache_ttl_ms=_int("BUSINESS_CONFIG_CACHE_TTL_MS", 3_600_000),
                provider_timeout_seconds=_float("PROVIDER_TIMEOUT_SECONDS", 30.0),
            ),
            rate_limit=RateLimitSettings(
                window_ms=_int("RATE_LIMIT_WINDOW_MS", 10_000),
                max_requests=_int("RATE_LIMIT_MAX_REQUESTS", 5),
            ),
            api_configuration=os.getenv("API_CONFIGURATION", ""),
            asset_base_url=os.getenv("ASSET_BASE_URL", "https://example.com"),
            default_language=os.getenv("DEFAULT_LANGUAGE", "es"),
            default_currency=os.getenv("DEFAULT_CURRENCY", "PEN"),
            default_country=os.getenv("DEFAULT_COUNTRY", "Perú"),
            pricing_table_path=os.getenv("PRICING_TABLE_PATH") or None,
            allowed_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_flag("LOG_JSON", False),
        )
