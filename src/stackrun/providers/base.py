from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

Outputs = dict[str, Any]

# updatable_fields value meaning "every field can change in place"
ALL_FIELDS: frozenset[str] = frozenset({"*"})


@dataclass(frozen=True)
class ProviderResourceSchema:
    """Schema metadata describing a provider-managed resource kind."""

    name: str
    description: str
    attributes: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Contract for one resource kind's lifecycle operations.

    Specs handed to these methods are fully resolved: every reference to
    another resource's output has been substituted and secret payloads are
    revealed. Failures are raised; the scheduler tags them with the resource
    id, kind and operation.
    """

    kind: str
    # Top-level spec fields that may change without replacing the resource
    updatable_fields: frozenset[str]
    # Output keys always tagged secret
    secret_outputs: frozenset[str]
    allow_replace: bool
    delete_before_replace: bool

    def schema(self) -> ProviderResourceSchema:
        ...

    async def create(self, spec: dict[str, Any]) -> Outputs:
        ...

    async def read(self, outputs: Outputs) -> Outputs:
        ...

    async def update(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        ...

    async def delete(self, spec: dict[str, Any], outputs: Outputs) -> None:
        ...


class BaseProviderAdapter:
    """Defaults shared by built-in adapters."""

    kind: str = ""
    description: str = ""
    updatable_fields: frozenset[str] = frozenset()
    secret_outputs: frozenset[str] = frozenset()
    allow_replace: bool = True
    delete_before_replace: bool = False

    def schema(self) -> ProviderResourceSchema:
        return ProviderResourceSchema(name=self.kind, description=self.description)

    async def read(self, outputs: Outputs) -> Outputs:
        return dict(outputs)

    async def update(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        return await self.create(new_spec)

    async def create(self, spec: dict[str, Any]) -> Outputs:
        raise NotImplementedError

    async def delete(self, spec: dict[str, Any], outputs: Outputs) -> None:
        return None


class SyncProviderAdapter(BaseProviderAdapter):
    """Adapter base for blocking clients; each call runs in a worker thread."""

    def create_sync(self, spec: dict[str, Any]) -> Outputs:
        raise NotImplementedError

    def read_sync(self, outputs: Outputs) -> Outputs:
        return dict(outputs)

    def update_sync(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        return self.create_sync(new_spec)

    def delete_sync(self, spec: dict[str, Any], outputs: Outputs) -> None:
        return None

    async def create(self, spec: dict[str, Any]) -> Outputs:
        return await asyncio.to_thread(self.create_sync, spec)

    async def read(self, outputs: Outputs) -> Outputs:
        return await asyncio.to_thread(self.read_sync, outputs)

    async def update(self, old_spec: dict[str, Any], new_spec: dict[str, Any], old_outputs: Outputs) -> Outputs:
        return await asyncio.to_thread(self.update_sync, old_spec, new_spec, old_outputs)

    async def delete(self, spec: dict[str, Any], outputs: Outputs) -> None:
        await asyncio.to_thread(self.delete_sync, spec, outputs)
