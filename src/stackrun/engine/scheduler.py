"""
Dependency-ordered execution of a resource graph.

The scheduler drives one apply (``up``) or destroy run. Each node waits on the
completion cells of the nodes it depends on (dependents, for deletes); when the
last one resolves the node is dispatched to a bounded worker pool, reconciled
against recorded state and handed to its provider adapter. A failed node marks
every node that still needs it Blocked instead of waiting on it.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Any, Awaitable, Callable

import structlog

from stackrun.core.errors import (
    FATAL_ERRORS,
    DependencyUnresolvedError,
    ProviderError,
)
from stackrun.engine.cells import substitute
from stackrun.engine.context import RunContext
from stackrun.engine.graph import NodeStatus, ResourceGraph, ResourceId, ResourceNode
from stackrun.engine.reconciler import Action, Reconciler, field_hashes, hash_spec
from stackrun.engine.results import ResultCollector, RunReport
from stackrun.engine.secrets import (
    Secret,
    has_redacted_secret,
    reveal,
    rewrap_secrets,
    secret_payloads,
)
from stackrun.logging import bind_context
from stackrun.providers.base import Outputs, ProviderAdapter
from stackrun.state.store import RecordedState, StateEntry

logger = structlog.get_logger()

NodeExecutor = Callable[[ResourceNode], Awaitable[Outputs | None]]


class _Phase:
    """One pass over a graph with a bounded worker pool.

    Forward passes wait on each node's dependencies, reverse passes (deletes)
    on its dependents. Only the event loop thread touches the countdowns.
    """

    def __init__(
        self,
        graph: ResourceGraph,
        *,
        reverse: bool,
        execute: NodeExecutor,
        collector: ResultCollector,
        actions: dict[ResourceId, Action],
        cancel_signal: threading.Event,
        max_parallel: int,
        log: Any,
    ) -> None:
        self.graph = graph
        self.reverse = reverse
        self._execute = execute
        self._collector = collector
        self._actions = actions
        self._cancel_signal = cancel_signal
        self._log = log
        self._done_status = NodeStatus.DELETED if reverse else NodeStatus.APPLIED
        self._semaphore = asyncio.Semaphore(max_parallel)
        self._wakeup = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._remaining: dict[ResourceId, int] = {}
        self.fatal: BaseException | None = None

    def wake(self) -> None:
        self._wakeup.set()

    async def run(self) -> None:
        nodes = [self.graph.nodes[rid] for rid in sorted(self.graph.nodes)]
        dependents = self.graph.dependents()
        for node in nodes:
            if self.reverse:
                waits = dependents[node.id]
            else:
                waits = {dep for dep in node.dependencies if dep in self.graph}
            self._remaining[node.id] = len(waits)
            for rid in sorted(waits):
                self.graph.nodes[rid].completion.subscribe(self._countdown(node))

        for node in nodes:
            if self._remaining[node.id] == 0 and node.status is NodeStatus.PENDING:
                self._dispatch(node)

        while not all(node.status.terminal for node in nodes):
            if not self._tasks:
                if self._cancel_signal.is_set():
                    break
                stuck = sorted(str(node.id) for node in nodes if not node.status.terminal)
                raise DependencyUnresolvedError(
                    "Scheduler stalled with nodes that can never become runnable",
                    details={"resources": stuck},
                )
            self._wakeup.clear()
            await self._wakeup.wait()

        for node in nodes:
            if not node.status.terminal:
                self._collector.record(
                    str(node.id),
                    node.status,
                    action=self._actions.get(node.id),
                    error="not started: run cancelled",
                    cancelled=True,
                )

        if self.fatal is not None:
            raise self.fatal

    def _countdown(self, node: ResourceNode) -> Callable[[Any], None]:
        def _on_complete(_cell: Any) -> None:
            self._remaining[node.id] -= 1
            if self._remaining[node.id] == 0 and node.status is NodeStatus.PENDING:
                self._dispatch(node)

        return _on_complete

    def _dispatch(self, node: ResourceNode) -> None:
        if self._cancel_signal.is_set():
            return
        node.transition(NodeStatus.RUNNABLE)
        task = asyncio.get_running_loop().create_task(self._run_node(node), name=f"stackrun:{node.id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._wakeup.set()

    async def _run_node(self, node: ResourceNode) -> None:
        async with self._semaphore:
            if self._cancel_signal.is_set() or node.status is not NodeStatus.RUNNABLE:
                return
            node.transition(NodeStatus.APPLYING)
            self._log.info("node_started", resource_id=str(node.id), kind=node.kind)
            try:
                outputs = await self._execute(node)
                self._succeed(node, outputs)
            except FATAL_ERRORS as exc:
                self._abort(node, exc)
            except Exception as exc:
                self._fail(node, exc)

    def _succeed(self, node: ResourceNode, outputs: Outputs | None) -> None:
        node.transition(self._done_status)
        if outputs is not None:
            node.resolve_outputs(outputs)
        action = self._actions.get(node.id)
        self._collector.record(str(node.id), node.status, action=action, outputs=outputs)
        self._log.info(
            "node_deleted" if self.reverse else "node_applied",
            resource_id=str(node.id),
            action=str(action) if action else None,
        )
        # Dependents are counted down only after outputs are resolved
        node.completion.resolve(True)

    def _fail(self, node: ResourceNode, exc: BaseException) -> None:
        node.error = exc
        if node.status is NodeStatus.APPLYING:
            node.transition(NodeStatus.FAILED)
        self._collector.record(str(node.id), NodeStatus.FAILED, action=self._actions.get(node.id), error=exc)
        self._log.warning(
            "node_failed",
            resource_id=str(node.id),
            error_type=type(exc).__name__,
            error=getattr(exc, "message", None) or str(exc),
        )

        needing = self.graph.ancestors(node.id) if self.reverse else self.graph.descendants(node.id)
        reason = f"skipped due to upstream failure of {node.id}"
        for rid in sorted(needing):
            other = self.graph.nodes[rid]
            if other.status in (NodeStatus.PENDING, NodeStatus.RUNNABLE):
                other.transition(NodeStatus.BLOCKED)
                self._collector.record(str(rid), NodeStatus.BLOCKED, error=reason)
                self._log.info("node_blocked", resource_id=str(rid), upstream=str(node.id))

    def _abort(self, node: ResourceNode, exc: BaseException) -> None:
        self._log.error("run_aborted", resource_id=str(node.id), error_type=type(exc).__name__, error=str(exc))
        if self.fatal is None:
            self.fatal = exc
        self._cancel_signal.set()
        if node.status is NodeStatus.APPLYING:
            self._fail(node, exc)


class Scheduler:
    """Runs apply and destroy passes for one run context."""

    def __init__(self, context: RunContext, reconciler: Reconciler | None = None) -> None:
        self.context = context
        self.reconciler = reconciler or Reconciler()
        self._recorded = RecordedState()
        self._actions: dict[ResourceId, Action] = {}
        self._written: dict[ResourceId, StateEntry] = {}
        self._phase: _Phase | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._log: Any = logger

    def cancel(self) -> None:
        """Stop dispatching new nodes; in-flight provider calls are allowed to finish.

        Safe to call from signal handlers and other threads.
        """
        self.context.cancel_signal.set()
        phase, loop = self._phase, self._loop
        if phase is not None and loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(phase.wake)

    @property
    def cancelled(self) -> bool:
        return self.context.cancel_signal.is_set()

    async def apply(self, graph: ResourceGraph) -> RunReport:
        """Bring every declared resource to its desired spec, then remove orphans."""
        graph.claim("apply")
        # Static validation; raises before any provider is called
        graph.topological_order()
        for kind in sorted({node.kind for node in graph.nodes.values()}):
            self.context.adapter_for(kind)

        async def _body(collector: ResultCollector) -> None:
            await self._run_phase(graph, reverse=False, execute=self._apply_node, collector=collector)
            if self.cancelled:
                return
            await self._delete_orphans(graph, collector)
            if self.cancelled:
                return
            await self._drain_pending_deletes(graph, collector)

        return await self._run("up", _body, resources=len(graph))

    async def destroy(self) -> RunReport:
        """Delete every recorded resource, dependents before their dependencies."""

        async def _body(collector: ResultCollector) -> None:
            graph = self._graph_from_state(set(self._recorded))
            graph.topological_order()
            await self._run_phase(graph, reverse=True, execute=self._delete_node, collector=collector)

        return await self._run("destroy", _body)

    async def _run(
        self,
        operation: str,
        body: Callable[[ResultCollector], Awaitable[None]],
        **log_fields: Any,
    ) -> RunReport:
        started = time.monotonic()
        self._log = bind_context(run_id=uuid.uuid4().hex[:12], operation=operation)
        self._recorded = self.context.state.load()
        self._actions = {}
        self._written = {}
        self._loop = asyncio.get_running_loop()
        self.context.bind_cancel_signal()
        collector = ResultCollector(operation)

        timer = None
        if self.context.run_timeout:
            timer = self._loop.call_later(self.context.run_timeout, self._on_timeout)
        self._log.info("run_started", recorded=len(self._recorded), **log_fields)
        try:
            await body(collector)
        finally:
            if timer is not None:
                timer.cancel()
            self._phase = None

        if self.cancelled:
            collector.mark_cancelled()
            self._log.warning("run_cancelled")
        report = collector.finalize(time.monotonic() - started)
        self._log.info(
            "run_finished",
            success=report.success,
            applied=len(report.applied),
            failed=len(report.failed),
            blocked=len(report.blocked),
            deleted=len(report.deleted),
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    def _on_timeout(self) -> None:
        self._log.warning("run_timeout", timeout_seconds=self.context.run_timeout)
        self.cancel()

    async def _run_phase(
        self,
        graph: ResourceGraph,
        *,
        reverse: bool,
        execute: NodeExecutor,
        collector: ResultCollector,
    ) -> None:
        phase = _Phase(
            graph,
            reverse=reverse,
            execute=execute,
            collector=collector,
            actions=self._actions,
            cancel_signal=self.context.cancel_signal,
            max_parallel=self.context.max_parallel,
            log=self._log,
        )
        self._phase = phase
        await phase.run()

    async def _call(self, resource_id: ResourceId, operation: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Invoke an adapter method, tagging failures with resource id, kind and operation."""
        try:
            return await fn(*args)
        except FATAL_ERRORS:
            raise
        except ProviderError as exc:
            if exc.resource_id is not None:
                raise
            raise ProviderError(
                f"{operation} of {resource_id} failed: {exc.message}",
                resource_id=str(resource_id),
                kind=resource_id.kind,
                operation=operation,
                details=exc.details,
            ) from exc
        except Exception as exc:
            raise ProviderError(
                f"{operation} of {resource_id} failed: {exc}",
                resource_id=str(resource_id),
                kind=resource_id.kind,
                operation=operation,
            ) from exc

    def _node_adapter(self, node: ResourceNode) -> tuple[ProviderAdapter, dict[str, Any] | None]:
        """Adapter for a declared node plus the provider record kept in state."""
        instance = node.provider
        if instance is None:
            return self.context.adapter_for(node.kind), None
        config = substitute(instance.config)
        try:
            adapter = self.context.adapter_for(node.kind, instance.name, reveal(config))
        except ProviderError as exc:
            raise ProviderError(
                exc.message,
                resource_id=str(node.id),
                kind=node.kind,
                operation="configure",
            ) from exc
        return adapter, {"name": instance.name, "config": config}

    def _recorded_adapter(self, kind: str, provider: dict[str, Any] | None) -> ProviderAdapter:
        """Adapter for a recorded instance, configured the way it was created."""
        if not provider:
            return self.context.adapter_for(kind)
        return self.context.adapter_for(kind, provider.get("name"), reveal(provider.get("config") or {}))

    def _require_recorded(self, resource_id: ResourceId) -> StateEntry:
        entry = self._recorded.get(resource_id)
        if entry is None:
            raise DependencyUnresolvedError(f"No recorded state for {resource_id}")
        return entry

    async def _apply_node(self, node: ResourceNode) -> Outputs:
        adapter, provider = self._node_adapter(node)
        desired = substitute(node.spec)
        recorded = self._recorded.get(node.id)
        decision = self.reconciler.plan(desired, recorded, adapter, resource_id=str(node.id))
        self._actions[node.id] = decision.action
        pending_deletes = list(recorded.pending_deletes) if recorded else []

        if decision.action is Action.NOOP:
            recorded = self._require_recorded(node.id)
            outputs = dict(recorded.outputs)
            needed = {key: outputs[key] for key in node.requested_outputs() if key in outputs}
            if self.context.refresh or has_redacted_secret(needed):
                outputs = await self._call(node.id, "read", adapter.read, reveal(outputs))
        elif decision.action is Action.CREATE:
            outputs = await self._call(node.id, "create", adapter.create, reveal(desired))
        elif decision.action is Action.UPDATE:
            recorded = self._require_recorded(node.id)
            outputs = await self._call(
                node.id,
                "update",
                adapter.update,
                reveal(recorded.spec),
                reveal(desired),
                reveal(recorded.outputs),
            )
        else:
            recorded = self._require_recorded(node.id)
            if decision.delete_before_replace:
                old_adapter = self._recorded_adapter(node.kind, recorded.provider)
                await self._call(node.id, "delete", old_adapter.delete, reveal(recorded.spec), reveal(recorded.outputs))
                self.context.state.remove(node.id)
                outputs = await self._call(node.id, "create", adapter.create, reveal(desired))
            else:
                outputs = await self._call(node.id, "create", adapter.create, reveal(desired))
                # The old instance goes once every dependent has moved to the new one
                old: dict[str, Any] = {"spec": recorded.spec, "outputs": recorded.outputs}
                if recorded.provider is not None:
                    old["provider"] = recorded.provider
                pending_deletes.append(old)

        outputs = self._tag_outputs(node.id, adapter, desired, outputs)
        entry = StateEntry(
            kind=node.kind,
            name=node.name,
            spec=desired,
            spec_hash=hash_spec(desired),
            field_hashes=field_hashes(desired),
            outputs=outputs,
            dependencies=[str(dep) for dep in node.dependencies],
            status="applied",
            pending_deletes=pending_deletes,
            provider=provider,
        )
        self.context.state.put(entry)
        self._written[node.id] = entry

        missing = node.missing_outputs(outputs)
        if missing:
            raise ProviderError(
                f"{node.id} did not return requested outputs: {', '.join(missing)}",
                resource_id=str(node.id),
                kind=node.kind,
                operation="outputs",
                details={"missing": missing},
            )
        return outputs

    def _tag_outputs(
        self,
        resource_id: ResourceId,
        adapter: ProviderAdapter,
        desired: dict[str, Any],
        outputs: Any,
    ) -> Outputs:
        if outputs is None:
            outputs = {}
        if not isinstance(outputs, dict):
            raise ProviderError(
                f"{resource_id} returned {type(outputs).__name__} instead of an outputs mapping",
                resource_id=str(resource_id),
                kind=resource_id.kind,
                operation="outputs",
            )
        tagged = dict(outputs)
        for key in adapter.secret_outputs:
            if key in tagged:
                tagged[key] = Secret(tagged[key])
        return rewrap_secrets(tagged, secret_payloads(desired))

    async def _delete_node(self, node: ResourceNode) -> None:
        entry = self._require_recorded(node.id)
        adapter = self._recorded_adapter(node.kind, entry.provider)
        decision = self.reconciler.plan(None, entry, adapter, resource_id=str(node.id))
        self._actions[node.id] = decision.action

        remaining, errors = await self._delete_old_instances(node.id, entry)
        if errors:
            self._record_delete_failure(entry, remaining)
            raise errors[0]
        try:
            await self._call(node.id, "delete", adapter.delete, reveal(entry.spec), reveal(entry.outputs))
        except Exception:
            self._record_delete_failure(entry, remaining)
            raise
        self.context.state.remove(node.id)
        return None

    def _record_delete_failure(self, entry: StateEntry, remaining: list[dict[str, Any]]) -> None:
        entry.status = "delete_failed"
        entry.pending_deletes = remaining
        self.context.state.put(entry)

    async def _delete_old_instances(
        self,
        resource_id: ResourceId,
        entry: StateEntry,
    ) -> tuple[list[dict[str, Any]], list[BaseException]]:
        """Delete instances left over from replacements; returns the ones that survived."""
        remaining: list[dict[str, Any]] = []
        errors: list[BaseException] = []
        for old in entry.pending_deletes:
            try:
                adapter = self._recorded_adapter(resource_id.kind, old.get("provider"))
                await self._call(
                    resource_id,
                    "delete",
                    adapter.delete,
                    reveal(old.get("spec") or {}),
                    reveal(old.get("outputs") or {}),
                )
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                self._log.warning("replaced_instance_delete_failed", resource_id=str(resource_id), error=str(exc))
                remaining.append(old)
                errors.append(exc)
            else:
                self._log.info("replaced_instance_deleted", resource_id=str(resource_id))
        return remaining, errors

    async def _drain_pending_deletes(self, graph: ResourceGraph, collector: ResultCollector) -> None:
        for rid in reversed(graph.topological_order()):
            entry = self._written.get(rid)
            if entry is None or not entry.pending_deletes or graph.nodes[rid].status is not NodeStatus.APPLIED:
                continue
            # A dependent that did not apply still points at the old instance
            waiting = sorted(
                str(dep) for dep in graph.descendants(rid) if graph.nodes[dep].status is not NodeStatus.APPLIED
            )
            if waiting:
                self._log.info("replaced_instance_kept", resource_id=str(rid), referenced_by=waiting)
                continue
            if self.cancelled:
                return
            remaining, errors = await self._delete_old_instances(rid, entry)
            for exc in errors:
                collector.record_error(getattr(exc, "message", None) or str(exc))
            if len(remaining) != len(entry.pending_deletes):
                entry.pending_deletes = remaining
                self.context.state.put(entry)

    async def _delete_orphans(self, graph: ResourceGraph, collector: ResultCollector) -> None:
        orphan_ids = {rid for rid in self._recorded if rid not in graph}
        if not orphan_ids:
            return
        orphans = self._graph_from_state(orphan_ids)
        orphans.topological_order()

        # Declared nodes that did not apply still carry their old edges
        referenced: dict[ResourceId, ResourceId] = {}
        for rid, node in graph.nodes.items():
            if node.status is NodeStatus.APPLIED:
                continue
            old = self._recorded.get(rid)
            for dep in old.dependency_ids() if old else []:
                if dep in orphan_ids:
                    referenced.setdefault(dep, rid)
        for rid in sorted(referenced):
            for kept in [rid, *sorted(orphans.ancestors(rid))]:
                node = orphans.nodes[kept]
                if node.status is not NodeStatus.PENDING:
                    continue
                node.transition(NodeStatus.BLOCKED)
                referrer = referenced.get(kept, rid)
                collector.record(
                    str(kept),
                    NodeStatus.BLOCKED,
                    action=Action.DELETE,
                    error=f"still referenced by {referrer}",
                )
                self._log.info("orphan_kept", resource_id=str(kept), referenced_by=str(referrer))

        self._log.info("orphans_deleting", resources=sorted(str(rid) for rid in orphan_ids))
        await self._run_phase(orphans, reverse=True, execute=self._delete_node, collector=collector)

    def _graph_from_state(self, ids: set[ResourceId]) -> ResourceGraph:
        nodes = []
        for rid in sorted(ids):
            entry = self._require_recorded(rid)
            deps = [dep for dep in entry.dependency_ids() if dep in ids]
            nodes.append(ResourceNode(rid, entry.spec, explicit_dependencies=deps))
        return ResourceGraph(nodes)
