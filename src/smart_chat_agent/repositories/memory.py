"""In-memory repository implementations."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

import structlog

from ..domain.exceptions import ConversationNotFoundError, InvalidStatusTransitionError
from ..domain.models import Conversation, ConversationStatus, LedgerEntry, Product, utcnow
from .base import CatalogStore, ConfigStore, ConversationRepository, LedgerRepository

logger = structlog.get_logger()


class InMemoryConversationRepository(ConversationRepository):
    """Conversation store backed by a dict.

    Documents are copied on the way in and out, so callers never share a
    mutable instance with the store and concurrent saves are last-write-wins.
    """

    def __init__(self) -> None:
        self._conversations: Dict[UUID, Conversation] = {}
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized", kind="conversations")

    async def get(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return None
            return conversation.model_copy(deep=True)

    async def find_active(self, user_id: str, domain: str) -> Optional[Conversation]:
        async with self._async_lock:
            matches = [
                c for c in self._conversations.values()
                if c.user_id == user_id and c.domain == domain and c.status == ConversationStatus.ACTIVE
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda c: c.updated_at)
            return latest.model_copy(deep=True)

    async def create(self, user_id: str, domain: str) -> Conversation:
        """Create a new conversation."""
        conversation = Conversation(user_id=user_id, domain=domain)
        async with self._async_lock:
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        logger.info(
            "conversation_created",
            conversation_id=str(conversation.id),
            user_id=user_id,
            domain=domain,
        )
        return conversation

    async def save(self, conversation: Conversation) -> Conversation:
        async with self._async_lock:
            conversation.updated_at = utcnow()
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        logger.debug(
            "conversation_saved",
            conversation_id=str(conversation.id),
            messages=len(conversation.messages),
        )
        return conversation

    async def _transition(
        self, conversation_id: UUID, source: ConversationStatus, target: ConversationStatus
    ) -> Conversation:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            if conversation.status != source:
                raise InvalidStatusTransitionError(
                    f"Cannot move conversation from {conversation.status.value} to {target.value}"
                )
            conversation.status = target
            conversation.updated_at = utcnow()
            logger.info(
                "conversation_status_changed",
                conversation_id=str(conversation_id),
                status=target.value,
            )
            return conversation.model_copy(deep=True)

    async def close(self, conversation_id: UUID) -> Conversation:
        return await self._transition(conversation_id, ConversationStatus.ACTIVE, ConversationStatus.CLOSED)

    async def archive(self, conversation_id: UUID) -> Conversation:
        return await self._transition(conversation_id, ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)

    async def purge_expired(self, now: datetime, retention_days: int) -> int:
        cutoff = now - timedelta(days=retention_days)
        async with self._async_lock:
            expired = [
                cid for cid, c in self._conversations.items()
                if c.status == ConversationStatus.CLOSED and c.updated_at < cutoff
            ]
            for cid in expired:
                del self._conversations[cid]
        if expired:
            logger.info("conversations_purged", count=len(expired), retention_days=retention_days)
        return len(expired)


class InMemoryLedgerRepository(LedgerRepository):
    """Append-only list of ledger entries."""

    def __init__(self) -> None:
        self._entries: List[LedgerEntry] = []
        self._async_lock = asyncio.Lock()

    async def append(self, entry: LedgerEntry) -> None:
        async with self._async_lock:
            self._entries.append(entry)

    async def query(self, domain: str, start: datetime, end: datetime) -> List[LedgerEntry]:
        async with self._async_lock:
            return [
                e for e in self._entries
                if e.domain == domain and start <= e.timestamp <= end
            ]


def _category_text(product: Product) -> str:
    if not product.category:
        return ""
    return " ".join(v for v in product.category.values() if v)


def _regular_price(product: Product) -> float:
    if not product.price:
        return 0.0
    return product.price.get("regular") or 0.0


class InMemoryCatalogStore(CatalogStore):
    """Catalog held in memory, with case-insensitive substring matching."""

    def __init__(self, products: Optional[Iterable[Product]] = None) -> None:
        self._products: List[Product] = list(products or [])
        self.query_count = 0

    def add(self, product: Product) -> None:
        self._products.append(product)

    def _available(self, domain: str) -> List[Product]:
        self.query_count += 1
        return [p for p in self._products if p.domain == domain and p.is_available]

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
        keywords = [k.lower() for k in keywords]
        results = []
        for product in self._available(domain):
            title = product.title.lower()
            if keywords:
                if match_all_in_title:
                    if not all(k in title for k in keywords):
                        continue
                else:
                    haystack = " ".join(
                        [
                            title,
                            product.description_short,
                            product.description_long,
                            _category_text(product),
                            " ".join(product.tags),
                        ]
                    ).lower()
                    if not any(k in haystack for k in keywords):
                        continue
            if category and category.lower() not in ((product.category or {}).get("slug") or "").lower():
                continue
            price = _regular_price(product)
            if min_price and price < min_price:
                continue
            if max_price and price > max_price:
                continue
            results.append(product)
            if len(results) >= limit:
                break
        return results

    async def get_by_id(self, domain: str, product_id: str) -> Optional[Product]:
        return next((p for p in self._available(domain) if p.id == product_id), None)

    async def get_by_slug(self, domain: str, slug: str) -> Optional[Product]:
        return next((p for p in self._available(domain) if p.slug == slug), None)

    async def count(self, domain: str) -> int:
        return len(self._available(domain))

    async def categories(self, domain: str) -> List[str]:
        seen: List[str] = []
        for product in self._available(domain):
            name = (product.category or {}).get("name") or (product.category or {}).get("slug")
            if name and name not in seen:
                seen.append(name)
        return seen

    async def sample(self, domain: str, limit: int) -> List[Product]:
        return self._available(domain)[:limit]


class InMemoryConfigStore(ConfigStore):
    """Business configuration documents keyed by domain."""

    def __init__(self, configs: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._configs = dict(configs or {})
        self.query_count = 0

    async def get_business_config(self, domain: str) -> Optional[Dict[str, Any]]:
        self.query_count += 1
        config = self._configs.get(domain)
        return dict(config) if config is not None else None
