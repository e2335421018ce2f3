"""
Single-assignment value cells.

A ``ValueCell`` holds one resource output that is not known until the owning
resource has been created. Nothing ever blocks on a cell: interest is
expressed by ``subscribe`` and the callback runs once the cell resolves (or
immediately, if it already has). This keeps the cells usable from asyncio,
worker threads, or a plain synchronous loop alike.
"""

from __future__ import annotations

import threading
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Callable, Iterable

from stackrun.core.errors import (
    DependencyUnresolvedError,
    InputTransformError,
    ResolutionConflictError,
)
from stackrun.engine.secrets import REDACTED, Secret, contains_secret, reveal

if TYPE_CHECKING:
    from stackrun.engine.graph import ResourceId

CellCallback = Callable[["ValueCell"], None]

# Set by the graph builder while a spec builder runs; collects every cell read.
_active_reads: ContextVar[set["ValueCell"] | None] = ContextVar("stackrun_active_reads", default=None)


class _Unknown:
    """Placeholder for an output that only exists after a provider call."""

    _instance: "_Unknown | None" = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<computed>"


UNKNOWN = _Unknown()


def note_read(cell: "ValueCell") -> None:
    """Record that the spec builder currently executing read this cell."""
    reads = _active_reads.get()
    if reads is not None:
        reads.add(cell)


class ValueCell:
    """Future-like holder for one output, resolved at most once."""

    def __init__(self, owners: Iterable["ResourceId"], label: str) -> None:
        self.owners: frozenset["ResourceId"] = frozenset(owners)
        self.label = label
        self._lock = threading.Lock()
        self._resolved = False
        self._value: Any = None
        self._error: BaseException | None = None
        self._subscribers: list[CellCallback] = []

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def value(self) -> Any:
        if not self._resolved:
            raise DependencyUnresolvedError(
                f"Value '{self.label}' read before it was resolved",
                details={"cell": self.label},
            )
        if self._error is not None:
            raise InputTransformError(
                f"Transform for '{self.label}' failed: {self._error}",
                details={"cell": self.label},
            ) from self._error
        return self._value

    @property
    def is_secret(self) -> bool:
        return self._resolved and self._error is None and isinstance(self._value, Secret)

    def subscribe(self, callback: CellCallback) -> None:
        """Run callback once resolved; immediately if already resolved."""
        with self._lock:
            if not self._resolved:
                self._subscribers.append(callback)
                return
        callback(self)

    def resolve(self, value: Any) -> None:
        """Store value and notify subscribers in registration order."""
        self._settle(value, None)

    def fail(self, error: BaseException) -> None:
        """Settle the cell in an error state; readers see InputTransformError."""
        self._settle(None, error)

    def _settle(self, value: Any, error: BaseException | None) -> None:
        with self._lock:
            if self._resolved:
                raise ResolutionConflictError(
                    f"Value '{self.label}' resolved more than once",
                    details={"cell": self.label},
                )
            self._value = value
            self._error = error
            self._resolved = True
            pending, self._subscribers = self._subscribers, []
        for callback in pending:
            callback(self)

    def apply(self, fn: Callable[[Any], Any]) -> "ValueCell":
        """Derive a new cell holding fn(value); secrets stay secret."""
        note_read(self)
        name = getattr(fn, "__name__", "fn")
        derived = ValueCell(self.owners, label=f"{self.label}|{name}")

        def _on_source(source: ValueCell) -> None:
            try:
                result = _call_preserving_secrets(fn, [source.value])
            except Exception as exc:
                derived.fail(exc)
                return
            derived.resolve(result)

        self.subscribe(_on_source)
        return derived

    def __repr__(self) -> str:
        if not self._resolved:
            shown = "<unresolved>"
        elif self._error is not None:
            shown = "<failed>"
        elif isinstance(self._value, Secret):
            shown = REDACTED
        else:
            shown = repr(self._value)
        return f"ValueCell({self.label}={shown})"


def _call_preserving_secrets(fn: Callable[..., Any], values: list[Any]) -> Any:
    secret = any(contains_secret(v) for v in values)
    result = fn(*[reveal(v) for v in values])
    return Secret(result) if secret else result


def interpolate(template: str, *parts: Any) -> ValueCell | str:
    """Format cells and plain values into one string cell.

    ``template`` uses ``str.format`` positional fields. Plain values are
    formatted immediately; the result resolves when every cell has.
    """
    cells = [p for p in parts if isinstance(p, ValueCell)]
    if not cells:
        return template.format(*parts)

    owners: set["ResourceId"] = set()
    for cell in cells:
        note_read(cell)
        owners.update(cell.owners)
    derived = ValueCell(owners, label=f"interpolate({template!r})")
    remaining = [len(cells)]
    lock = threading.Lock()

    def _on_part(_: ValueCell) -> None:
        with lock:
            remaining[0] -= 1
            if remaining[0]:
                return
        try:
            values = [p.value if isinstance(p, ValueCell) else p for p in parts]
            result = _call_preserving_secrets(lambda *vs: template.format(*vs), values)
        except Exception as exc:
            derived.fail(exc)
            return
        derived.resolve(result)

    for cell in cells:
        cell.subscribe(_on_part)
    return derived


def collect_cells(value: Any) -> list[ValueCell]:
    """Every cell embedded in a spec value, in traversal order."""
    found: list[ValueCell] = []

    def _walk(item: Any) -> None:
        if isinstance(item, ValueCell):
            found.append(item)
        elif isinstance(item, dict):
            for v in item.values():
                _walk(v)
        elif isinstance(item, (list, tuple)):
            for v in item:
                _walk(v)

    _walk(value)
    return found


def substitute(value: Any, *, allow_unknown: bool = False) -> Any:
    """Replace every cell in a spec with its resolved value.

    With ``allow_unknown`` (preview), unresolved cells become ``UNKNOWN``
    instead of raising.
    """
    if isinstance(value, ValueCell):
        if allow_unknown and not value.resolved:
            return UNKNOWN
        return value.value
    if isinstance(value, dict):
        return {k: substitute(v, allow_unknown=allow_unknown) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, allow_unknown=allow_unknown) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, allow_unknown=allow_unknown) for v in value)
    return value
