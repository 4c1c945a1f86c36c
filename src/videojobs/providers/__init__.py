"""Rendering provider adapters."""

from .base import ProviderAdapter, ProviderState, ProviderStatus
from .factory import build_provider_registry, create_adapter
from .sora import SoraAdapter
from .veo import VeoAdapter, adapt_prompt_for_veo

__all__ = [
    "ProviderAdapter",
    "ProviderState",
    "ProviderStatus",
    "SoraAdapter",
    "VeoAdapter",
    "adapt_prompt_for_veo",
    "build_provider_registry",
    "create_adapter",
]
