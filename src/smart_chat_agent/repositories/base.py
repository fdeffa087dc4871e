"""Storage interfaces consumed by the chat pipeline."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..domain.models import Conversation, LedgerEntry, Product


class ConversationRepository(ABC):
    """Conversation documents keyed by id, looked up by (user_id, domain)."""

    @abstractmethod
    async def get(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def find_active(self, user_id: str, domain: str) -> Optional[Conversation]:
        """Return the active conversation for a user in a store, if any."""
        pass

    @abstractmethod
    async def create(self, user_id: str, domain: str) -> Conversation:
        """Create a new active conversation."""
        pass

    @abstractmethod
    async def save(self, conversation: Conversation) -> Conversation:
        """Replace the stored document (last write wins)."""
        pass

    @abstractmethod
    async def close(self, conversation_id: UUID) -> Conversation:
        """Move a conversation from active to closed."""
        pass

    @abstractmethod
    async def archive(self, conversation_id: UUID) -> Conversation:
        """Move a conversation from closed to archived."""
        pass

    @abstractmethod
    async def purge_expired(self, now: datetime, retention_days: int) -> int:
        """Drop closed conversations last updated before the retention window."""
        pass


class LedgerRepository(ABC):
    """Append-only token/cost ledger."""

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> None:
        pass

    @abstractmethod
    async def query(self, domain: str, start: datetime, end: datetime) -> List[LedgerEntry]:
        pass


class CatalogStore(ABC):
    """Read-only catalog access, always scoped to available items of one domain."""

    @abstractmethod
    async def search(
        self,
        domain: str,
        keywords: List[str],
        match_all_in_title: bool = False,
        category: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        limit: int = 20,
    ) -> List[Product]:
        """Find products matching any keyword (or all of them in the title).

        An empty keyword list matches every available product.
        """
        pass

    @abstractmethod
    async def get_by_id(self, domain: str, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_by_slug(self, domain: str, slug: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def count(self, domain: str) -> int:
        pass

    @abstractmethod
    async def categories(self, domain: str) -> List[str]:
        """Distinct category names."""
        pass

    @abstractmethod
    async def sample(self, domain: str, limit: int) -> List[Product]:
        pass


class ConfigStore(ABC):
    """Primary business-configuration store."""

    @abstractmethod
    async def get_business_config(self, domain: str) -> Optional[Dict[str, Any]]:
        pass
