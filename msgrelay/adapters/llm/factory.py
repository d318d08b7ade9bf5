"""Factory for provider adapters."""
from typing import Dict

from msgrelay.adapters.llm.base import ProviderAdapter
from msgrelay.adapters.llm.chat_completions import ChatCompletionsAdapter, LegacyChatCompletionsAdapter
from msgrelay.adapters.llm.generative import GenerativeAdapter
from msgrelay.adapters.llm.native import NativeAdapter
from msgrelay.config.schema import ServiceType
from msgrelay.core.errors import UnsupportedServiceType

# One adapter per service type; adapters are stateless and shared
ADAPTERS: Dict[str, ProviderAdapter] = {
    ServiceType.NATIVE.value: NativeAdapter(),
    ServiceType.CHAT_COMPLETIONS_LEGACY.value: LegacyChatCompletionsAdapter(),
    ServiceType.CHAT_COMPLETIONS_CURRENT.value: ChatCompletionsAdapter(),
    ServiceType.GENERATIVE.value: GenerativeAdapter(),
}


def get_adapter(service_type: str) -> ProviderAdapter:
    """Get the provider adapter for a channel service type.

    Raises:
        UnsupportedServiceType: If no adapter handles ``service_type``
    """
    adapter = ADAPTERS.get((service_type or "").lower())
    if adapter is None:
        raise UnsupportedServiceType(f"Unsupported service type: {service_type!r}")
    return adapter
