from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from stackrun.core.errors import StackDefinitionError
from stackrun.providers.base import ProviderAdapter

ProviderFactory = Callable[..., ProviderAdapter]


@dataclass(frozen=True)
class ProviderSpec:
    """Metadata describing a registered resource kind."""

    kind: str
    factory: ProviderFactory
    version: str | None = None
    description: str | None = None


class ProviderRegistry:
    """Simple in-memory registry mapping resource kinds to adapter factories."""

    def __init__(self) -> None:
        self._providers: dict[str, ProviderSpec] = {}

    def register(
        self,
        kind: str,
        factory: ProviderFactory,
        *,
        version: str | None = None,
        description: str | None = None,
    ) -> None:
        if not kind:
            raise ValueError("Provider kind is required")
        spec = ProviderSpec(
            kind=kind,
            factory=factory,
            version=version,
            description=description,
        )
        self._providers[kind] = spec

    def create(self, kind: str, **kwargs: Any) -> ProviderAdapter:
        spec = self._providers.get(kind)
        if spec is None:
            raise StackDefinitionError(f"No provider registered for kind '{kind}'")
        return spec.factory(**kwargs)

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def list(self) -> list[ProviderSpec]:
        return list(self._providers.values())


provider_registry = ProviderRegistry()


def register_provider(
    kind: str,
    factory: ProviderFactory,
    *,
    version: str | None = None,
    description: str | None = None,
) -> None:
    provider_registry.register(kind, factory, version=version, description=description)


def create_provider(kind: str, **kwargs: Any) -> ProviderAdapter:
    return provider_registry.create(kind, **kwargs)


def list_providers() -> list[ProviderSpec]:
    return provider_registry.list()
