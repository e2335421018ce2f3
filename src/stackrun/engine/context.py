"""Per-run context shared by the builder, scheduler and preview."""

from __future__ import annotations

import json
import threading
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from stackrun.config.settings import Settings
from stackrun.core.errors import ProviderError, StackDefinitionError
from stackrun.providers.base import ProviderAdapter
from stackrun.providers.registry import ProviderRegistry
from stackrun.state.store import LocalStateStore, StateStore

_cancel_signal: ContextVar[threading.Event | None] = ContextVar("stackrun_cancel_signal", default=None)


def cancellation_requested() -> bool:
    """Best-effort cancellation flag for adapters running inside a run."""
    signal = _cancel_signal.get()
    return signal is not None and signal.is_set()


def _default_registry() -> ProviderRegistry:
    from stackrun.providers import provider_registry

    return provider_registry


@dataclass
class RunContext:
    """Shared context for one apply, destroy or preview run."""

    state: StateStore
    registry: ProviderRegistry = field(default_factory=_default_registry)
    max_parallel: int = 8
    refresh: bool = False
    run_timeout: float | None = None
    cancel_signal: threading.Event = field(default_factory=threading.Event)
    _adapters: dict[tuple[str, str | None, str], ProviderAdapter] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            raise StackDefinitionError("max_parallel must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RunContext":
        state = overrides.pop("state", None) or LocalStateStore.from_settings(settings)
        values = {
            "max_parallel": settings.max_parallel,
            "refresh": settings.refresh,
            "run_timeout": settings.run_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(state=state, **values)

    def adapter_for(
        self,
        kind: str,
        provider: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> ProviderAdapter:
        """One adapter per kind, or per named provider instance and config, for the run.

        ``config`` must be fully resolved; it is passed to the kind's factory.
        """
        key = (kind, provider, json.dumps(config or {}, sort_keys=True, default=str))
        adapter = self._adapters.get(key)
        if adapter is None:
            if provider is None:
                adapter = self.registry.create(kind)
            else:
                try:
                    adapter = self.registry.create(kind, **(config or {}))
                except (TypeError, ValueError) as exc:
                    raise ProviderError(
                        f"Provider '{provider}' for kind '{kind}' rejected its config: {exc}",
                        kind=kind,
                        operation="configure",
                    ) from exc
            self._adapters[key] = adapter
        return adapter

    def bind_cancel_signal(self) -> None:
        _cancel_signal.set(self.cancel_signal)
