"""Provider adapters and services."""

from chatstream.llm.providers.base import (
    ProviderService,
    RequestAdapter,
    ResponseAdapter,
    StreamCallbacks,
    create_error_response,
)
from chatstream.llm.providers.custom_api import CustomApiService
from chatstream.llm.providers.deepseek import DeepseekService, DeepseekStreamShaper

__all__ = [
    "CustomApiService",
    "DeepseekService",
    "DeepseekStreamShaper",
    "ProviderService",
    "RequestAdapter",
    "ResponseAdapter",
    "StreamCallbacks",
    "create_error_response",
]
