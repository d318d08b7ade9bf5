"""Pydantic schemas for msgrelay channel configuration."""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServiceType(str, Enum):
    """Upstream wire formats with a provider adapter."""

    NATIVE = "native"
    CHAT_COMPLETIONS_LEGACY = "chat-completions-legacy"
    CHAT_COMPLETIONS_CURRENT = "chat-completions-current"
    GENERATIVE = "generative"


# Service type names used by older config.json files
LEGACY_SERVICE_TYPES = {
    "claude": ServiceType.NATIVE.value,
    "openaiold": ServiceType.CHAT_COMPLETIONS_LEGACY.value,
    "openai": ServiceType.CHAT_COMPLETIONS_CURRENT.value,
    "gemini": ServiceType.GENERATIVE.value,
}


class LoadBalanceStrategy(str, Enum):
    """Key selection strategies within a channel."""

    ROUND_ROBIN = "round-robin"
    RANDOM = "random"
    FAILOVER = "failover"


class UpstreamChannel(BaseModel):
    """A configured upstream provider endpoint plus its pool of API keys."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(default="", description="Display name of the channel")
    service_type: str = Field(..., alias="serviceType", description="Wire format spoken by the upstream")
    base_url: str = Field(..., alias="baseUrl", description="Base URL of the upstream API")
    api_keys: List[str] = Field(default_factory=list, alias="apiKeys", description="Ordered API keys (order matters for failover)")
    model_mapping: Dict[str, str] = Field(
        default_factory=dict,
        alias="modelMapping",
        description="Requested model name -> upstream model name",
    )
    insecure_skip_verify: bool = Field(default=False, alias="insecureSkipVerify", description="Skip TLS certificate verification")
    description: Optional[str] = Field(default=None, description="Free-form description")
    website: Optional[str] = Field(default=None, description="Provider website")

    @field_validator("service_type")
    @classmethod
    def normalize_service_type(cls, v: str) -> str:
        """Map legacy service type names onto the current ones.

        Unknown names are kept so that dispatch can reject them per request.
        """
        value = v.strip().lower()
        return LEGACY_SERVICE_TYPES.get(value, value)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError(f"baseUrl must start with http:// or https:// (got {v!r})")
        return v


class ProxyConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    upstream: List[UpstreamChannel] = Field(default_factory=list, description="Configured upstream channels")
    current_upstream: int = Field(default=0, ge=0, alias="currentUpstream", description="Index of the active channel")
    load_balance: LoadBalanceStrategy = Field(
        default=LoadBalanceStrategy.ROUND_ROBIN,
        alias="loadBalance",
        description="Key selection strategy",
    )
