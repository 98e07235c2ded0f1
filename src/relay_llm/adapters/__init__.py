"""Provider adapters for the relay LLM client layer."""

from relay_llm.adapters.base import ProviderAdapter, ProviderConfig
from relay_llm.adapters.openai_compat import OpenAICompatAdapter

__all__ = ["ProviderAdapter", "ProviderConfig", "OpenAICompatAdapter"]
