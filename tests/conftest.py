"""Root test configuration."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import pytest
import structlog

from stackrun.engine.context import RunContext
from stackrun.providers.base import BaseProviderAdapter
from stackrun.providers.random_password import RandomPasswordProvider
from stackrun.providers.registry import ProviderRegistry
from stackrun.state.store import MemoryStateStore


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@dataclass
class CallLog:
    """Ordered record of adapter calls, keyed by the spec's ``id`` field."""

    events: list = field(default_factory=list)
    specs: dict = field(default_factory=dict)

    def calls(self, operation: Optional[str] = None) -> list:
        return [key for phase, op, key in self.events if phase == "start" and operation in (None, op)]

    def position(self, phase: str, operation: str, key: str) -> int:
        return self.events.index((phase, operation, key))

    def finished_before_started(self, operation: str, first: str, second: str, second_operation: Optional[str] = None) -> bool:
        return self.position("end", operation, first) < self.position("start", second_operation or operation, second)


class RecordingAdapter(BaseProviderAdapter):
    """Stub adapter: outputs echo the spec plus a generated ``name``."""

    kind = "stub"

    def __init__(self, log: CallLog) -> None:
        self.log = log
        self.delay = 0.0
        self.fail_create: set = set()
        self.fail_delete: set = set()
        self.drop_outputs: set = set()
        self.on_start: Optional[Callable[[str, str], None]] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.updatable_fields = frozenset()
        self.allow_replace = True
        self.delete_before_replace = False

    async def _enter(self, operation: str, key: str, payload: Any) -> None:
        self.log.events.append(("start", operation, key))
        self.log.specs[(operation, key)] = payload
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.on_start is not None:
            self.on_start(operation, key)
        await asyncio.sleep(self.delay)

    def _exit(self, operation: str, key: str) -> None:
        self.in_flight -= 1
        self.log.events.append(("end", operation, key))

    def _outputs(self, spec: dict) -> dict:
        outputs = {k: v for k, v in spec.items() if k not in self.drop_outputs}
        outputs["name"] = f"{spec.get('id')}-generated"
        return outputs

    async def create(self, spec: dict) -> dict:
        key = spec.get("id")
        await self._enter("create", key, spec)
        self._exit("create", key)
        if key in self.fail_create:
            raise RuntimeError(f"boom: {key}")
        return self._outputs(spec)

    async def read(self, outputs: dict) -> dict:
        key = outputs.get("id")
        await self._enter("read", key, outputs)
        self._exit("read", key)
        return dict(outputs)

    async def update(self, old_spec: dict, new_spec: dict, old_outputs: dict) -> dict:
        key = new_spec.get("id")
        await self._enter("update", key, {"old": old_spec, "new": new_spec})
        self._exit("update", key)
        return self._outputs(new_spec)

    async def delete(self, spec: dict, outputs: dict) -> None:
        key = spec.get("id")
        await self._enter("delete", key, spec)
        self._exit("delete", key)
        if key in self.fail_delete:
            raise RuntimeError(f"delete refused: {key}")


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def stub_adapter(call_log):
    return RecordingAdapter(call_log)


@pytest.fixture
def registry(stub_adapter):
    """Fresh registry with the stub kind and the real password generator."""
    registry = ProviderRegistry()
    registry.register("stub", lambda: stub_adapter)
    registry.register("random_password", RandomPasswordProvider)
    return registry


@pytest.fixture
def make_context(registry):
    """Build a run context over an in-memory store (secure unless told otherwise)."""

    def _make(state=None, **kwargs):
        return RunContext(state=state or MemoryStateStore(secure=True), registry=registry, **kwargs)

    return _make
