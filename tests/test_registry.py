"""Tests for chatstream.llm.registry and chatstream.llm.factory."""

from __future__ import annotations

import pytest

from chatstream.config import ProviderConfig
from chatstream.llm.factory import ServiceFactory
from chatstream.llm.providers.custom_api import (
    CustomApiRequestAdapter,
    CustomApiResponseAdapter,
    CustomApiService,
)
from chatstream.llm.providers.deepseek import DeepseekResponseAdapter, DeepseekService
from chatstream.llm.registry import AdapterRegistry, ProviderType, default_registry
from chatstream.types import ConfigurationError

from tests.mock_streams import text_script


class TestAdapterRegistry:
    def test_default_providers(self):
        registry = default_registry()
        assert registry.providers == ["custom", "deepseek"]
        assert isinstance(registry.response_adapter("deepseek"), DeepseekResponseAdapter)

    def test_enum_and_string_keys_agree(self):
        registry = default_registry()
        assert registry.require(ProviderType.DEEPSEEK) is registry.require("deepseek")

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown provider 'openai'"):
            default_registry().require("openai")

    def test_duplicate_registration(self):
        registry = AdapterRegistry()
        args = (CustomApiRequestAdapter(), CustomApiResponseAdapter(), CustomApiService)
        registry.register("mine", *args)
        with pytest.raises(ValueError):
            registry.register("mine", *args)
        registry.register("mine", *args, overwrite=True)
        assert registry.providers == ["mine"]

    def test_create_service_uses_registered_adapters(self):
        registry = AdapterRegistry()
        req, resp = CustomApiRequestAdapter(), CustomApiResponseAdapter()
        registry.register("mine", req, resp, CustomApiService)

        service = registry.create_service("mine", ProviderConfig(mock_mode=True))

        assert service.request_adapter is req
        assert service.response_adapter is resp


class TestServiceFactory:
    def test_one_instance_per_provider(self):
        factory = ServiceFactory()
        first = factory.get_instance("deepseek")
        assert factory.get_instance(ProviderType.DEEPSEEK) is first
        assert isinstance(first, DeepseekService)
        assert factory.instance_ids == ["deepseek"]

    def test_config_only_applies_on_creation(self):
        factory = ServiceFactory()
        factory.get_instance("custom", ProviderConfig(model="a"))
        service = factory.get_instance("custom", ProviderConfig(model="b"))
        assert service.get_config().model == "a"

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            ServiceFactory().get_instance("nope")

    def test_update_config(self):
        factory = ServiceFactory()
        assert factory.update_config("custom", model="x") is False
        factory.get_instance("custom")
        assert factory.update_config("custom", model="x") is True
        assert factory.get_instance("custom").get_config().model == "x"

    def test_update_config_rejects_unknown_keys(self):
        factory = ServiceFactory()
        factory.get_instance("custom")
        with pytest.raises(ConfigurationError):
            factory.update_config("custom", nonsense=1)

    @pytest.mark.asyncio
    async def test_destroy_instance_cancels_open_session(self):
        factory = ServiceFactory()
        service = factory.get_instance("custom", ProviderConfig(mock_mode=True, mock_delay=0))
        service.set_mock_script(text_script("a"))
        session = await service.open_stream([])

        assert await factory.destroy_instance("custom") is True

        assert session.token.cancelled
        assert not factory.has_instance("custom")
        assert await factory.destroy_instance("custom") is False

    @pytest.mark.asyncio
    async def test_destroy_all(self):
        factory = ServiceFactory()
        factory.get_instance("custom")
        factory.get_instance("deepseek")
        await factory.destroy_all()
        assert factory.instance_ids == []
