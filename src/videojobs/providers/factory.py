"""Factory for provider adapters."""

from __future__ import annotations

from ..core.config import AppConfig
from ..domain.models import ProviderId
from .base import ProviderAdapter
from .sora import SoraAdapter
from .veo import VeoAdapter


def create_adapter(provider: ProviderId | str, config: AppConfig) -> ProviderAdapter:
    """Instantiate the adapter for ``provider`` using configured credentials."""

    provider_id = provider if isinstance(provider, ProviderId) else ProviderId(provider.lower())
    api_key = config.provider_keys.get(provider_id.value)
    if not api_key:
        raise ValueError(f"API key for provider '{provider_id.value}' is not configured")
    if provider_id is ProviderId.SORA:
        return SoraAdapter(api_key=api_key, timeout_seconds=config.request_timeout_seconds)
    if not config.google_project_id:
        raise ValueError("google_project_id is required to instantiate VeoAdapter")
    return VeoAdapter(
        api_key=api_key,
        project_id=config.google_project_id,
        location=config.google_location,
        timeout_seconds=config.request_timeout_seconds,
    )


def build_provider_registry(config: AppConfig) -> dict[ProviderId, ProviderAdapter]:
    """Create adapters for every provider that has credentials configured."""

    registry: dict[ProviderId, ProviderAdapter] = {}
    for provider_id in ProviderId:
        if not config.provider_keys.get(provider_id.value):
            continue
        if provider_id is ProviderId.VEO and not config.google_project_id:
            continue
        registry[provider_id] = create_adapter(provider_id, config)
    return registry


__all__ = ["build_provider_registry", "create_adapter"]
