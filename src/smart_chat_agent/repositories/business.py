"""Business configuration lookup: primary store first, then the HTTP configuration API."""

from typing import Any, Dict, Optional

import httpx
import structlog

from .base import ConfigStore

logger = structlog.get_logger()


class HttpConfigurationSource:
    """Client for ``GET {base_url}/api/configurations`` with a ``domain`` header."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def fetch(self, domain: str) -> Optional[Dict[str, Any]]:
        """Return the first configuration document for the domain, or None if unavailable."""
        if not self.enabled:
            return None
        try:
            response = await self._client.get(
                f"{self.base_url}/api/configurations",
                headers={"domain": domain},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("configuration_api_unavailable", domain=domain, error=str(e))
            return None

        if isinstance(payload, list):
            return payload[0] if payload and isinstance(payload[0], dict) else None
        if isinstance(payload, dict):
            return payload
        return None

    async def aclose(self) -> None:
        await self._client.aclose()


class BusinessConfigResolver:
    """Resolves a domain's business configuration from the first source that has it."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        http_source: Optional[HttpConfigurationSource] = None,
    ):
        self.store = store
        self.http_source = http_source

    async def resolve(self, domain: str) -> Optional[Dict[str, Any]]:
        if self.store is not None:
            config = await self.store.get_business_config(domain)
            if config:
                logger.debug("business_config_resolved", domain=domain, source="store")
                return config
            logger.warning("business_config_missing_in_store", domain=domain)

        if self.http_source is not None:
            config = await self.http_source.fetch(domain)
            if config:
                logger.debug("business_config_resolved", domain=domain, source="http")
                return config

        return None

    async def fetch_remote(self, domain: str) -> Optional[Dict[str, Any]]:
        """Only the HTTP source, which is the one that carries shipping fields."""
        if self.http_source is None:
            return None
        return await self.http_source.fetch(domain)
