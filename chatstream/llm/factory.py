"""
Service factory -- one live service instance per provider id.

The factory is an ordinary object owned by the application; there is no
module-level singleton.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatstream.config import ProviderConfig
from chatstream.llm.providers.base import ProviderService
from chatstream.llm.registry import AdapterRegistry, default_registry
from chatstream.types import ConfigurationError

logger = logging.getLogger(__name__)


class ServiceFactory:
    def __init__(
        self,
        registry: AdapterRegistry | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._registry = registry or default_registry()
        self._http_transport = http_transport
        self._instances: dict[str, ProviderService] = {}

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    def get_instance(
        self,
        provider_id: str,
        config: ProviderConfig | None = None,
    ) -> ProviderService:
        """
        Return the service for *provider_id*, creating it on first use.

        *config* only applies on creation; use ``update_config`` to change an
        existing instance.  Raises ``ConfigurationError`` for unknown ids.
        """
        key = str(getattr(provider_id, "value", provider_id))
        service = self._instances.get(key)
        if service is None:
            service = self._registry.create_service(
                key, config, http_transport=self._http_transport
            )
            self._instances[key] = service
            logger.debug("Created %s service", key)
        return service

    def update_config(self, provider_id: str, **updates: Any) -> bool:
        """Apply *updates* to an existing instance; False when none exists."""
        service = self._instances.get(str(getattr(provider_id, "value", provider_id)))
        if service is None:
            return False
        try:
            service.set_config(**updates)
        except ConfigurationError:
            logger.warning("Rejected config update for %s: %s", provider_id, sorted(updates))
            raise
        return True

    async def destroy_instance(self, provider_id: str) -> bool:
        """Cancel any in-flight work and drop the instance."""
        service = self._instances.pop(str(getattr(provider_id, "value", provider_id)), None)
        if service is None:
            return False
        service.cancel("destroyed")
        await service.aclose()
        return True

    async def destroy_all(self) -> None:
        for provider_id in list(self._instances):
            await self.destroy_instance(provider_id)

    def has_instance(self, provider_id: str) -> bool:
        return str(getattr(provider_id, "value", provider_id)) in self._instances

    @property
    def instance_ids(self) -> list[str]:
        return list(self._instances)
