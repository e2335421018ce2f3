"""
Recorded state persistence.

State is a JSON document mapping resource ids to the last applied spec, its
hash, the outputs, the dependency edges and the final status. It is read once
at run start and rewritten atomically whenever a node finishes. Secret values
are kept raw when the store is marked secure, encrypted when the store has a
cipher, and behind the redaction marker otherwise.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import structlog

from stackrun.config.settings import Settings
from stackrun.core.errors import StateError
from stackrun.engine.graph import ResourceId
from stackrun.engine.secrets import decode_from_state, encode_for_state
from stackrun.state.crypto import StateCipher, cipher_from_settings

logger = structlog.get_logger()

STATE_VERSION = 1
DEFAULT_STATE_PATH = Path(".stackrun/state.json")


@dataclass
class StateEntry:
    """Last-known state of one resource."""

    kind: str
    name: str
    spec: dict[str, Any]
    spec_hash: str
    field_hashes: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    status: str = "applied"
    # Old instances of create-before-delete replacements still to be removed
    pending_deletes: list[dict[str, Any]] = field(default_factory=list)
    # Named provider instance and its resolved config, when not the kind default
    provider: dict[str, Any] | None = None

    @property
    def resource_id(self) -> ResourceId:
        return ResourceId(self.kind, self.name)

    def dependency_ids(self) -> list[ResourceId]:
        return [ResourceId.parse(dep) for dep in self.dependencies]

    def to_dict(self, *, secure: bool, cipher: StateCipher | None = None) -> dict[str, Any]:
        def encode(value: Any) -> Any:
            return encode_for_state(value, secure=secure, cipher=cipher)

        data: dict[str, Any] = {
            "kind": self.kind,
            "name": self.name,
            "spec": encode(self.spec),
            "spec_hash": self.spec_hash,
            "field_hashes": dict(self.field_hashes),
            "outputs": encode(self.outputs),
            "dependencies": sorted(self.dependencies),
            "status": self.status,
        }
        if self.pending_deletes:
            data["pending_deletes"] = encode(self.pending_deletes)
        if self.provider is not None:
            data["provider"] = encode(self.provider)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], cipher: StateCipher | None = None) -> "StateEntry":
        try:
            provider = data.get("provider")
            return cls(
                kind=data["kind"],
                name=data["name"],
                spec=decode_from_state(data.get("spec") or {}, cipher),
                spec_hash=data["spec_hash"],
                field_hashes=dict(data.get("field_hashes") or {}),
                outputs=decode_from_state(data.get("outputs") or {}, cipher),
                dependencies=list(data.get("dependencies") or []),
                status=data.get("status", "applied"),
                pending_deletes=decode_from_state(list(data.get("pending_deletes") or []), cipher),
                provider=decode_from_state(provider, cipher) if provider is not None else None,
            )
        except (KeyError, TypeError) as exc:
            raise StateError(f"Malformed state entry: {exc}") from exc


class RecordedState:
    """Read-only snapshot of recorded state taken at run start."""

    def __init__(self, entries: dict[ResourceId, StateEntry] | None = None) -> None:
        self._entries: dict[ResourceId, StateEntry] = dict(entries or {})

    def get(self, resource_id: ResourceId) -> StateEntry | None:
        return self._entries.get(resource_id)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._entries

    def __iter__(self) -> Iterator[ResourceId]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class StateStore:
    """Base store holding the state document in memory between writes."""

    def __init__(self, *, secure: bool = False, cipher: StateCipher | None = None) -> None:
        self.secure = secure
        self.cipher = None if secure else cipher
        self._lock = threading.Lock()
        self._document: dict[str, Any] | None = None

    def load(self) -> RecordedState:
        with self._lock:
            self._document = self._read()
            raw = copy.deepcopy(self._document["resources"])
        entries: dict[ResourceId, StateEntry] = {}
        for key, data in raw.items():
            entry = StateEntry.from_dict(data, self.cipher)
            if str(entry.resource_id) != key:
                raise StateError(f"State key '{key}' does not match entry {entry.resource_id}")
            entries[entry.resource_id] = entry
        return RecordedState(entries)

    def put(self, entry: StateEntry) -> None:
        with self._lock:
            document = self._ensure_loaded()
            document["resources"][str(entry.resource_id)] = entry.to_dict(secure=self.secure, cipher=self.cipher)
            self._write(document)
        logger.debug("state_entry_written", resource_id=str(entry.resource_id), status=entry.status)

    def remove(self, resource_id: ResourceId) -> None:
        with self._lock:
            document = self._ensure_loaded()
            document["resources"].pop(str(resource_id), None)
            self._write(document)
        logger.debug("state_entry_removed", resource_id=str(resource_id))

    def _ensure_loaded(self) -> dict[str, Any]:
        # Never overwrite a persisted document we have not read
        if self._document is None:
            self._document = self._read()
        return self._document

    def _read(self) -> dict[str, Any]:
        raise NotImplementedError

    def _write(self, document: dict[str, Any]) -> None:
        raise NotImplementedError


def _check_document(document: Any, source: str) -> dict[str, Any]:
    if not isinstance(document, dict) or not isinstance(document.get("resources"), dict):
        raise StateError(f"State document {source} is malformed")
    version = document.get("version")
    if version != STATE_VERSION:
        raise StateError(f"Unsupported state version {version!r} in {source}")
    return document


class MemoryStateStore(StateStore):
    """Keeps the serialized document in memory; used by tests and previews.

    Secrets are encrypted with a per-store key unless a cipher is given.
    """

    def __init__(self, *, secure: bool = False, cipher: StateCipher | None = None) -> None:
        if cipher is None and not secure:
            cipher = StateCipher.generate()
        super().__init__(secure=secure, cipher=cipher)
        self._saved = json.dumps({"version": STATE_VERSION, "resources": {}})

    def _read(self) -> dict[str, Any]:
        return _check_document(json.loads(self._saved), "memory")

    def _write(self, document: dict[str, Any]) -> None:
        self._saved = json.dumps(document, sort_keys=True)

    @property
    def raw(self) -> str:
        """Serialized document exactly as persisted."""
        return self._saved


class LocalStateStore(StateStore):
    """JSON file on local disk, rewritten atomically.

    Without a cipher an insecure store redacts secret payloads.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        secure: bool = False,
        cipher: StateCipher | None = None,
    ) -> None:
        super().__init__(secure=secure, cipher=cipher)
        self.path = path or DEFAULT_STATE_PATH

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        path: Path | None = None,
        secure: bool = False,
    ) -> "LocalStateStore":
        """Store for the configured state file with its secret cipher."""
        path = path or settings.state_path
        secure = secure or settings.state_secure
        cipher = None
        if not secure:
            cipher = cipher_from_settings(path, settings.state_key, settings.state_key_path)
        return cls(path, secure=secure, cipher=cipher)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": STATE_VERSION, "resources": {}}
        try:
            document = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise StateError(f"Cannot read state file {self.path}: {exc}") from exc
        return _check_document(document, str(self.path))

    def _write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, sort_keys=True) + "\n"
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc
