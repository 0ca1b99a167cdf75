"""
Provider registry — name -> adapter lookup.

The default registry is built lazily from settings; tests install their
own with ``set_registry``.
"""

from app.core.exceptions import UnknownProvider
from app.models.order import Provider
from app.providers.base import ProviderAdapter


class ProviderRegistry:
    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[Provider, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: Provider | str) -> ProviderAdapter:
        """Look up by enum or wire name; raises UnknownProvider."""
        try:
            key = provider if isinstance(provider, Provider) else Provider(str(provider).lower())
            return self._adapters[key]
        except (KeyError, ValueError):
            raise UnknownProvider(f"Unknown provider: {provider}", provider=str(provider))

    def all(self) -> list[ProviderAdapter]:
        return list(self._adapters.values())

    def pull_only(self) -> list[ProviderAdapter]:
        """Adapters whose orders only move when polled."""
        return [a for a in self._adapters.values() if not a.supports_push_updates]


# Module-level registry override (for tests)
_registry: ProviderRegistry | None = None


def default_registry() -> ProviderRegistry:
    from app.providers.paycrest import PaycrestAdapter
    from app.providers.pretium import PretiumAdapter

    return ProviderRegistry([PaycrestAdapter(), PretiumAdapter()])


def get_registry() -> ProviderRegistry:
    """Return the configured registry."""
    global _registry
    if _registry is None:
        _registry = default_registry()
    return _registry


def set_registry(registry: ProviderRegistry | None) -> None:
    """Override the registry (for testing)."""
    global _registry
    _registry = registry
