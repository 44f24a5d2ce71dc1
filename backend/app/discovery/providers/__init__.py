"""Text-generation backends behind one adapter contract."""

from .anthropic import AnthropicProvider
from .base import GenerationOptions, Provider, ProviderUnavailable
from .fallback import FallbackGenerator
from .ollama import OllamaProvider
from .openai import OpenAIProvider
from .registry import ProviderCache, ProviderRegistry, build_default_registry, provider_score

__all__ = [
    "AnthropicProvider",
    "FallbackGenerator",
    "GenerationOptions",
    "OllamaProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCache",
    "ProviderRegistry",
    "ProviderUnavailable",
    "build_default_registry",
    "provider_score",
]
