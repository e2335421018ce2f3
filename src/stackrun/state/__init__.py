"""Recorded state persistence."""

from stackrun.state.store import (
    LocalStateStore,
    MemoryStateStore,
    RecordedState,
    StateEntry,
    StateStore,
)

__all__ = [
    "LocalStateStore",
    "MemoryStateStore",
    "RecordedState",
    "StateEntry",
    "StateStore",
]
