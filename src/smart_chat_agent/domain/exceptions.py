"""Exception hierarchy for the chat agent.

Everything raised on purpose inherits from SmartChatError so the HTTP layer
can map broad or specific failures to a response envelope.
"""

from typing import Any, Dict, List, Optional


class SmartChatError(Exception):
    """Base exception for all chat agent errors."""


class ValidationError(SmartChatError):
    """Raised when inbound data has the wrong shape."""


class ConfigurationError(SmartChatError):
    """Raised at startup when mandatory settings are missing."""

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Missing required configuration: {', '.join(missing)}")


class ProviderError(SmartChatError):
    """Raised by a provider adapter on transport, quota or upstream-format failures."""

    def __init__(
        self,
        provider: str,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.status = status
        self.retry_after = retry_after
        self.details = details or {}
        super().__init__(f"[{provider}] {message}")


class ProviderUnavailableError(SmartChatError):
    """Raised when no adapter is registered for a provider id."""


class ConversationNotFoundError(SmartChatError):
    """Raised when a conversation id does not exist."""


class InvalidStatusTransitionError(SmartChatError):
    """Raised when a status change skips or reverses the lifecycle."""


class RepositoryError(SmartChatError):
    """Raised when a storage operation fails."""
