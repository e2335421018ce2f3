"""Result types for apply, destroy and preview runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from stackrun.core.errors import ExitCode
from stackrun.engine.graph import NodeStatus
from stackrun.engine.reconciler import Action
from stackrun.engine.secrets import redact


@dataclass
class NodeResult:
    """Final outcome of one node in a run."""

    resource_id: str
    status: NodeStatus
    action: Action | None = None
    error: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "status": str(self.status),
            "action": str(self.action) if self.action else None,
            "error": self.error,
            "outputs": redact(self.outputs),
            "cancelled": self.cancelled,
        }


@dataclass
class RunReport:
    """Aggregate report of an apply (up) or destroy run."""

    operation: str
    nodes: dict[str, NodeResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    def _with_status(self, status: NodeStatus) -> list[str]:
        return sorted(rid for rid, res in self.nodes.items() if res.status == status)

    @property
    def applied(self) -> list[str]:
        return self._with_status(NodeStatus.APPLIED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_status(NodeStatus.BLOCKED)

    @property
    def deleted(self) -> list[str]:
        return self._with_status(NodeStatus.DELETED)

    @property
    def skipped(self) -> list[str]:
        """Nodes never dispatched because the run was cancelled."""
        return sorted(rid for rid, res in self.nodes.items() if res.cancelled)

    def actions(self) -> dict[str, Action | None]:
        return {rid: res.action for rid, res in self.nodes.items()}

    @property
    def success(self) -> bool:
        """Whether every node reached Applied or Deleted."""
        return (
            not self.errors
            and all(res.status in (NodeStatus.APPLIED, NodeStatus.DELETED) for res in self.nodes.values())
        )

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.success else ExitCode.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "applied": self.applied,
            "failed": self.failed,
            "blocked": self.blocked,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "nodes": {rid: res.to_dict() for rid, res in sorted(self.nodes.items())},
        }


class ResultCollector:
    """Aggregates node outcomes while a run executes; safe across workers."""

    def __init__(self, operation: str) -> None:
        self._report = RunReport(operation=operation)
        self._lock = threading.Lock()

    def record(
        self,
        resource_id: str,
        status: NodeStatus,
        *,
        action: Action | None = None,
        error: BaseException | str | None = None,
        outputs: dict[str, Any] | None = None,
        cancelled: bool = False,
    ) -> None:
        """Record (or overwrite) the outcome of a node."""
        message = None
        if error is not None:
            message = getattr(error, "message", None) or str(error)
        with self._lock:
            self._report.nodes[resource_id] = NodeResult(
                resource_id=resource_id,
                status=status,
                action=action,
                error=message,
                outputs=dict(outputs or {}),
                cancelled=cancelled,
            )

    def record_error(self, message: str) -> None:
        """Record a run-level failure not tied to a node's final status."""
        with self._lock:
            self._report.errors.append(message)

    def mark_cancelled(self) -> None:
        with self._lock:
            self._report.cancelled = True

    def finalize(self, duration: float) -> RunReport:
        """Return the final report with duration set."""
        self._report.duration_seconds = duration
        return self._report


@dataclass
class PreviewStep:
    resource_id: str
    action: Action | None
    changed_fields: list[str] = field(default_factory=list)
    replace_fields: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "action": str(self.action) if self.action else None,
            "changed_fields": self.changed_fields,
            "replace_fields": self.replace_fields,
            "error": self.error,
        }


@dataclass
class PreviewReport:
    """Planned action for every node; no provider was called."""

    steps: list[PreviewStep] = field(default_factory=list)

    def action_for(self, resource_id: str) -> Action | None:
        for step in self.steps:
            if step.resource_id == resource_id:
                return step.action
        return None

    def counts(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for step in self.steps:
            key = str(step.action) if step.action else "error"
            totals[key] = totals.get(key, 0) + 1
        return totals

    @property
    def errors(self) -> list[str]:
        return [f"{s.resource_id}: {s.error}" for s in self.steps if s.error]

    @property
    def has_changes(self) -> bool:
        return any(s.action not in (Action.NOOP, None) for s in self.steps)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.success else ExitCode.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "counts": self.counts(),
            "steps": [step.to_dict() for step in self.steps],
        }
