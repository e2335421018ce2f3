"""
Encryption of secret payloads in recorded state.

A store that is not marked secure keeps each secret payload as a Fernet token
instead of the raw value, so a later run can recover it without asking the
provider. The key comes from ``STACKRUN_STATE_KEY`` or from a key file that is
created next to the state file on first use.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

from stackrun.core.errors import ConfigurationError, StateError

logger = structlog.get_logger()


class StateCipher:
    """Symmetric cipher for secret payloads; payloads are JSON values."""

    def __init__(self, key: bytes | str) -> None:
        try:
            self._fernet = Fernet(key)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                "State encryption key must be 32 url-safe base64-encoded bytes"
            ) from exc

    @classmethod
    def generate(cls) -> "StateCipher":
        return cls(Fernet.generate_key())

    def encrypt(self, payload: Any) -> str:
        return self._fernet.encrypt(json.dumps(payload).encode()).decode("ascii")

    def decrypt(self, token: Any) -> Any:
        if not isinstance(token, str):
            raise StateError("Encrypted secret in recorded state is malformed")
        try:
            return json.loads(self._fernet.decrypt(token.encode("ascii")))
        except (InvalidToken, UnicodeError, ValueError) as exc:
            raise StateError(
                "Cannot decrypt a secret in recorded state; check STACKRUN_STATE_KEY or the state key file"
            ) from exc


def key_path_for(state_path: Path) -> Path:
    """Default key file location for a state file."""
    return state_path.with_name(f"{state_path.name}.key")


def load_or_create_key(path: Path) -> bytes:
    """Read the key file, creating it with owner-only permissions if absent."""
    if path.exists():
        try:
            return path.read_bytes().strip()
        except OSError as exc:
            raise StateError(f"Cannot read state key file {path}: {exc}") from exc

    key = Fernet.generate_key()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(key + b"\n")
    except FileExistsError:
        # Another run created it first
        return path.read_bytes().strip()
    except OSError as exc:
        raise StateError(f"Cannot create state key file {path}: {exc}") from exc
    logger.info("state_key_created", path=str(path))
    return key


def cipher_from_settings(state_path: Path, key: str | None = None, key_path: Path | None = None) -> StateCipher:
    """Cipher for a state file: an explicit key wins over the key file."""
    if key:
        return StateCipher(key.strip())
    return StateCipher(load_or_create_key(key_path or key_path_for(state_path)))
