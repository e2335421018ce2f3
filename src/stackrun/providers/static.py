from __future__ import annotations

import copy
from typing import Any

from stackrun.providers.base import ALL_FIELDS, BaseProviderAdapter, Outputs
from stackrun.providers.registry import register_provider


class StaticProvider(BaseProviderAdapter):
    """Holds its spec as outputs; no external side effects.

    Useful for wiring values between resources (rendered config, derived
    credentials) and as a stand-in for resources managed elsewhere.
    """

    kind = "static"
    description = "Pure value holder whose outputs mirror its spec"
    updatable_fields = ALL_FIELDS

    async def create(self, spec: dict[str, Any]) -> Outputs:
        return copy.deepcopy(spec)

    async def update(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        return copy.deepcopy(new_spec)


register_provider(
    StaticProvider.kind,
    StaticProvider,
    version="1.0.0",
    description=StaticProvider.description,
)
