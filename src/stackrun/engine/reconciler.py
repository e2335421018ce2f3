"""
Desired-versus-recorded reconciliation.

The reconciler looks at one resource at a time and picks the provider
operation that brings it to its desired spec. It never looks at other nodes;
ordering is the scheduler's job.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping

from stackrun.core.errors import ReplacementForbiddenError
from stackrun.engine.cells import UNKNOWN
from stackrun.engine.secrets import Secret
from stackrun.providers.base import ALL_FIELDS, ProviderAdapter
from stackrun.state.store import StateEntry


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NOOP = "noop"
    DELETE = "delete"


@dataclass(frozen=True)
class PlanDecision:
    """Chosen action plus the fields that drove it."""

    action: Action
    changed_fields: tuple[str, ...] = ()
    replace_fields: tuple[str, ...] = ()
    delete_before_replace: bool = False


def _canonical(value: Any) -> Any:
    if isinstance(value, Secret):
        digest = hashlib.sha256(json.dumps(_canonical(value.payload), sort_keys=True).encode())
        return {"__secret__": digest.hexdigest()}
    if value is UNKNOWN:
        return {"__unknown__": True}
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def hash_spec(spec: Any) -> str:
    """Stable digest of a resolved spec; secret payloads are hashed, never embedded."""
    encoded = json.dumps(_canonical(spec), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


def field_hashes(spec: Mapping[str, Any]) -> dict[str, str]:
    return {str(key): hash_spec(value) for key, value in spec.items()}


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


class Reconciler:
    """Picks Create/Update/Replace/NoOp/Delete for one resource."""

    def plan(
        self,
        desired_spec: Mapping[str, Any] | None,
        recorded: StateEntry | None,
        adapter: ProviderAdapter,
        *,
        resource_id: str | None = None,
    ) -> PlanDecision:
        if desired_spec is None:
            return PlanDecision(Action.DELETE)
        if recorded is None:
            return PlanDecision(Action.CREATE)

        if not contains_unknown(desired_spec) and hash_spec(desired_spec) == recorded.spec_hash:
            return PlanDecision(Action.NOOP)

        old_hashes = recorded.field_hashes or field_hashes(recorded.spec)
        new_hashes = field_hashes(desired_spec)
        changed = sorted(
            key
            for key in set(old_hashes) | set(new_hashes)
            if old_hashes.get(key) != new_hashes.get(key)
            or contains_unknown(desired_spec.get(key))
        )
        if not changed:
            # Same fields, different hash algorithm or key order; nothing to do
            return PlanDecision(Action.NOOP)

        updatable = adapter.updatable_fields
        if updatable == ALL_FIELDS:
            replace_fields: list[str] = []
        else:
            replace_fields = [key for key in changed if key not in updatable]

        if not replace_fields:
            return PlanDecision(Action.UPDATE, changed_fields=tuple(changed))

        if not adapter.allow_replace:
            raise ReplacementForbiddenError(
                f"Changing {', '.join(replace_fields)} requires replacing "
                f"'{resource_id or recorded.resource_id}', which kind '{recorded.kind}' forbids",
                details={"resource_id": resource_id or str(recorded.resource_id), "fields": replace_fields},
            )
        return PlanDecision(
            Action.REPLACE,
            changed_fields=tuple(changed),
            replace_fields=tuple(replace_fields),
            delete_before_replace=adapter.delete_before_replace,
        )
