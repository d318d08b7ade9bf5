"""Provider adapters translating unified requests to upstream APIs."""
from msgrelay.adapters.llm.base import ProviderAdapter, ProviderRequest, UnifiedResponse
from msgrelay.adapters.llm.factory import get_adapter

__all__ = ["ProviderAdapter", "ProviderRequest", "UnifiedResponse", "get_adapter"]
