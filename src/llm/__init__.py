"""
LLM Provider Module.

Multi-provider LLM routing with automatic failover.
"""

from src.llm.provider import (
    LLMProvider,
    LLMResponse,
    LLMRouter,
    ProviderConfig,
    ProviderType,
    create_llm_router,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LLMRouter",
    "ProviderConfig",
    "ProviderType",
    "create_llm_router",
]
