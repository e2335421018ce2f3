"""
Secret tagging and redaction.

A ``Secret`` wraps an opaque payload. It behaves like the payload for equality
and hashing, but every display path (``str``, ``repr``, logs, reports, state
files without an encryption key) shows ``REDACTED`` instead of the payload. Provider
calls receive the raw payload via ``reveal``.
"""

from __future__ import annotations

from typing import Any

REDACTED = "[secret]"
SECRET_MARKER = "__secret__"
ENCRYPTED_MARKER = "__encrypted__"


class Secret:
    """Opaque value whose payload must never be displayed."""

    __slots__ = ("_payload",)

    def __init__(self, payload: Any) -> None:
        # Never double-wrap
        if isinstance(payload, Secret):
            payload = payload.payload
        self._payload = payload

    @property
    def payload(self) -> Any:
        return self._payload

    def __repr__(self) -> str:
        return f"Secret({REDACTED})"

    def __str__(self) -> str:
        return REDACTED

    def __format__(self, format_spec: str) -> str:
        return REDACTED

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Secret):
            return self._payload == other._payload
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("secret", _hashable(self._payload)))


def _hashable(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(v) for v in value)
    return value


def contains_secret(value: Any) -> bool:
    """Return True if a Secret appears anywhere inside value."""
    if isinstance(value, Secret):
        return True
    if isinstance(value, dict):
        return any(contains_secret(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_secret(v) for v in value)
    return False


def redact(value: Any) -> Any:
    """Return a copy of value with every Secret replaced by the marker."""
    if isinstance(value, Secret):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    if isinstance(value, tuple):
        return tuple(redact(v) for v in value)
    return value


def reveal(value: Any) -> Any:
    """Unwrap every Secret so the raw payload flows into a provider call."""
    if isinstance(value, Secret):
        return value.payload
    if isinstance(value, dict):
        return {k: reveal(v) for k, v in value.items()}
    if isinstance(value, list):
        return [reveal(v) for v in value]
    if isinstance(value, tuple):
        return tuple(reveal(v) for v in value)
    return value


def format_value(value: Any) -> str:
    """Display form of a value with secrets redacted."""
    redacted = redact(value)
    return redacted if isinstance(redacted, str) else repr(redacted)


def secret_payloads(value: Any) -> list[Any]:
    """Collect the raw payloads of every Secret inside value."""
    found: list[Any] = []

    def _walk(item: Any) -> None:
        if isinstance(item, Secret):
            found.append(item.payload)
        elif isinstance(item, dict):
            for v in item.values():
                _walk(v)
        elif isinstance(item, (list, tuple)):
            for v in item:
                _walk(v)

    _walk(value)
    return found


def rewrap_secrets(outputs: Any, payloads: list[Any]) -> Any:
    """Re-tag output values that echo a secret payload passed in as input."""
    if not payloads:
        return outputs
    if isinstance(outputs, Secret):
        return outputs
    if isinstance(outputs, dict):
        return {k: rewrap_secrets(v, payloads) for k, v in outputs.items()}
    if isinstance(outputs, list):
        return [rewrap_secrets(v, payloads) for v in outputs]
    if any(_same_payload(outputs, p) for p in payloads):
        return Secret(outputs)
    return outputs


def _same_payload(value: Any, payload: Any) -> bool:
    if isinstance(value, (dict, list)) or value is None or isinstance(value, bool):
        return False
    return type(value) is type(payload) and value == payload


def encode_for_state(value: Any, *, secure: bool, cipher: Any = None) -> Any:
    """JSON-safe form for persistence.

    Secure stores keep the raw payload. Otherwise the payload is encrypted
    with ``cipher`` when one is given and replaced by the marker when not.
    """
    if isinstance(value, Secret):
        if secure:
            return {SECRET_MARKER: value.payload}
        if cipher is not None:
            return {ENCRYPTED_MARKER: cipher.encrypt(value.payload)}
        return {SECRET_MARKER: REDACTED}
    if isinstance(value, dict):
        return {k: encode_for_state(v, secure=secure, cipher=cipher) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_for_state(v, secure=secure, cipher=cipher) for v in value]
    return value


def decode_from_state(value: Any, cipher: Any = None) -> Any:
    if isinstance(value, dict):
        if set(value) == {SECRET_MARKER}:
            return Secret(value[SECRET_MARKER])
        if set(value) == {ENCRYPTED_MARKER}:
            # Without the key the payload is as lost as a redacted one
            if cipher is None:
                return Secret(REDACTED)
            return Secret(cipher.decrypt(value[ENCRYPTED_MARKER]))
        return {k: decode_from_state(v, cipher) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_from_state(v, cipher) for v in value]
    return value


def has_redacted_secret(value: Any) -> bool:
    """True when a Secret in value lost its payload to redaction in storage."""
    if isinstance(value, Secret):
        return value.payload == REDACTED
    if isinstance(value, dict):
        return any(has_redacted_secret(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(has_redacted_secret(v) for v in value)
    return False


def redact_secrets_processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor that scrubs Secret values from every log event."""
    return {key: redact(val) for key, val in event_dict.items()}
