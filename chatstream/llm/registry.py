from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from chatstream.config import ProviderConfig
from chatstream.llm.providers.base import ProviderService, RequestAdapter, ResponseAdapter
from chatstream.llm.providers.custom_api import (
    CustomApiRequestAdapter,
    CustomApiResponseAdapter,
    CustomApiService,
)
from chatstream.llm.providers.deepseek import (
    DeepseekRequestAdapter,
    DeepseekResponseAdapter,
    DeepseekService,
)
from chatstream.types import ConfigurationError


class ProviderType(str, Enum):
    CUSTOM = "custom"
    DEEPSEEK = "deepseek"


@dataclass
class ProviderEntry:
    request_adapter: RequestAdapter
    response_adapter: ResponseAdapter
    service_cls: type[ProviderService]


class AdapterRegistry:
    """Explicit provider id -> (adapters, service class) mapping."""

    def __init__(self) -> None:
        self._entries: dict[str, ProviderEntry] = {}

    def register(
        self,
        provider_id: str,
        request_adapter: RequestAdapter,
        response_adapter: ResponseAdapter,
        service_cls: type[ProviderService],
        *,
        overwrite: bool = False,
    ) -> None:
        key = str(getattr(provider_id, "value", provider_id))
        if key in self._entries and not overwrite:
            raise ValueError(f"Provider already registered: {key}")
        self._entries[key] = ProviderEntry(request_adapter, response_adapter, service_cls)

    def require(self, provider_id: str) -> ProviderEntry:
        key = str(getattr(provider_id, "value", provider_id))
        entry = self._entries.get(key)
        if entry is None:
            raise ConfigurationError(
                f"Unknown provider {key!r}. Registered: {self.providers}"
            )
        return entry

    def request_adapter(self, provider_id: str) -> RequestAdapter:
        return self.require(provider_id).request_adapter

    def response_adapter(self, provider_id: str) -> ResponseAdapter:
        return self.require(provider_id).response_adapter

    def create_service(
        self,
        provider_id: str,
        config: ProviderConfig | None = None,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> ProviderService:
        entry = self.require(provider_id)
        return entry.service_cls(
            config,
            request_adapter=entry.request_adapter,
            response_adapter=entry.response_adapter,
            http_transport=http_transport,
            **kwargs,
        )

    @property
    def providers(self) -> list[str]:
        return sorted(self._entries)


def default_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(
        ProviderType.CUSTOM,
        CustomApiRequestAdapter(),
        CustomApiResponseAdapter(),
        CustomApiService,
    )
    registry.register(
        ProviderType.DEEPSEEK,
        DeepseekRequestAdapter(),
        DeepseekResponseAdapter(),
        DeepseekService,
    )
    return registry
