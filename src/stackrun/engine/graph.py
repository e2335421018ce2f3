"""
Resource graph construction.

``StackBuilder.declare`` registers a resource node. Its spec builder runs at
declaration time; any output cell it reads becomes an implicit dependency
edge, and explicit ``depends_on`` entries become explicit edges. No provider
is contacted while a graph is being built.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping, Union

import structlog

from stackrun.core.errors import CycleError, StackDefinitionError
from stackrun.engine.cells import ValueCell, _active_reads, collect_cells, note_read

logger = structlog.get_logger()

ID_SEPARATOR = "::"


@dataclass(frozen=True, order=True)
class ResourceId:
    """Identity of a resource within one run."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}{ID_SEPARATOR}{self.name}"

    @classmethod
    def parse(cls, text: str) -> "ResourceId":
        kind, sep, name = text.partition(ID_SEPARATOR)
        if not sep or not kind or not name:
            raise StackDefinitionError(
                f"Invalid resource id '{text}' (expected kind{ID_SEPARATOR}name)"
            )
        return cls(kind, name)


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNABLE = "runnable"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    DELETED = "deleted"

    @property
    def terminal(self) -> bool:
        return self in (
            NodeStatus.APPLIED,
            NodeStatus.FAILED,
            NodeStatus.BLOCKED,
            NodeStatus.DELETED,
        )


_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNABLE, NodeStatus.BLOCKED}),
    NodeStatus.RUNNABLE: frozenset({NodeStatus.APPLYING, NodeStatus.BLOCKED}),
    NodeStatus.APPLYING: frozenset({NodeStatus.APPLIED, NodeStatus.FAILED, NodeStatus.DELETED}),
}


class ResourceNode:
    """One declared resource: desired spec, edges, status, and output cells."""

    def __init__(
        self,
        resource_id: ResourceId,
        spec: Any,
        explicit_dependencies: Iterable[ResourceId] = (),
        implicit_dependencies: Iterable[ResourceId] = (),
        provider: ProviderInstance | None = None,
    ) -> None:
        self.id = resource_id
        self.spec = spec
        self.provider = provider
        self.explicit_dependencies: set[ResourceId] = set(explicit_dependencies)
        self.implicit_dependencies: set[ResourceId] = set(implicit_dependencies)
        self.status = NodeStatus.PENDING
        self.outputs: dict[str, ValueCell] = {}
        # Resolved once the node completes successfully; the scheduler subscribes to it
        self.completion = ValueCell([resource_id], label=f"{resource_id}#done")
        self.error: BaseException | None = None
        self._lock = threading.Lock()
        self._resolved_outputs: dict[str, Any] | None = None

    @property
    def kind(self) -> str:
        return self.id.kind

    @property
    def name(self) -> str:
        return self.id.name

    @property
    def dependencies(self) -> set[ResourceId]:
        return self.explicit_dependencies | self.implicit_dependencies

    def output(self, key: str) -> ValueCell:
        """Cell for one output; reading it inside a spec builder adds an edge."""
        with self._lock:
            cell = self.outputs.get(key)
            if cell is None:
                cell = ValueCell([self.id], label=f"{self.id}.{key}")
                self.outputs[key] = cell
                resolved = self._resolved_outputs
            else:
                resolved = None
        if resolved is not None and key in resolved:
            cell.resolve(resolved[key])
        note_read(cell)
        return cell

    __getitem__ = output

    def transition(self, status: NodeStatus) -> None:
        """Move to a new status; one writer at a time per node."""
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
            if status not in allowed:
                raise RuntimeError(f"Illegal transition for {self.id}: {self.status} -> {status}")
            self.status = status

    def requested_outputs(self) -> list[str]:
        """Output keys some other declaration has asked for."""
        with self._lock:
            return sorted(self.outputs)

    def missing_outputs(self, outputs: Mapping[str, Any]) -> list[str]:
        with self._lock:
            return sorted(key for key in self.outputs if key not in outputs)

    def resolve_outputs(self, outputs: Mapping[str, Any]) -> None:
        """Resolve every requested output cell from a provider result."""
        with self._lock:
            self._resolved_outputs = dict(outputs)
            cells = [(key, cell) for key, cell in self.outputs.items() if not cell.resolved]
        for key, cell in cells:
            if key in outputs:
                cell.resolve(outputs[key])

    def __repr__(self) -> str:
        return f"ResourceNode({self.id}, status={self.status})"


DependencyRef = Union[ResourceNode, ResourceId, str]
SpecBuilder = Callable[[], Any]
ProviderRef = Union["ProviderInstance", str]


def _to_id(ref: DependencyRef) -> ResourceId:
    if isinstance(ref, ResourceNode):
        return ref.id
    if isinstance(ref, ResourceId):
        return ref
    if isinstance(ref, str):
        return ResourceId.parse(ref)
    raise StackDefinitionError(f"Unsupported dependency reference: {ref!r}")


class ProviderInstance:
    """A named, configured adapter for one resource kind.

    Config values may be output cells of other resources. Every resource that
    selects the instance then depends on those resources, and the config is
    resolved right before the resource's provider call.
    """

    def __init__(
        self,
        kind: str,
        name: str,
        config: dict[str, Any],
        dependencies: Iterable[ResourceId] = (),
    ) -> None:
        self.kind = kind
        self.name = name
        self.config = config
        self.dependencies: frozenset[ResourceId] = frozenset(dependencies)

    def __repr__(self) -> str:
        return f"ProviderInstance({self.kind}{ID_SEPARATOR}{self.name})"


def _evaluate(
    builder: Callable[[], Any] | Mapping[str, Any] | None,
    label: str,
) -> tuple[dict[str, Any], set[ResourceId]]:
    """Run a spec or config builder and collect the owners of every cell it reads."""
    reads: set[ValueCell] = set()
    token = _active_reads.set(reads)
    try:
        value = builder() if callable(builder) else builder
    finally:
        _active_reads.reset(token)
    if value is None:
        value = {}
    if not isinstance(value, Mapping):
        raise StackDefinitionError(f"{label} must be a mapping, got {type(value).__name__}")
    value = dict(value)
    owners: set[ResourceId] = set()
    # Cells captured outside the builder still carry their owners
    for cell in [*reads, *collect_cells(value)]:
        owners.update(cell.owners)
    return value, owners


class StackBuilder:
    """Collects resource declarations into a graph."""

    def __init__(self) -> None:
        self._nodes: dict[ResourceId, ResourceNode] = {}
        self._providers: dict[tuple[str, str], ProviderInstance] = {}

    def provider(
        self,
        kind: str,
        name: str,
        config_builder: SpecBuilder | Mapping[str, Any] | None = None,
    ) -> ProviderInstance:
        """Declare a named provider instance for ``kind``."""
        if not kind or not name:
            raise StackDefinitionError("Provider kind and name are required")
        if (kind, name) in self._providers:
            raise StackDefinitionError(f"Provider '{kind}{ID_SEPARATOR}{name}' declared twice")
        config, owners = _evaluate(config_builder, f"Config for provider '{kind}{ID_SEPARATOR}{name}'")
        instance = ProviderInstance(kind, name, config, owners)
        self._providers[(kind, name)] = instance
        logger.debug("provider_declared", kind=kind, name=name, dependencies=sorted(str(d) for d in owners))
        return instance

    def declare(
        self,
        kind: str,
        name: str,
        spec_builder: SpecBuilder | Mapping[str, Any] | None = None,
        depends_on: Iterable[DependencyRef] = (),
        provider: ProviderRef | None = None,
    ) -> ResourceNode:
        """Declare a resource and return its node handle.

        ``provider`` selects a provider instance declared with
        :meth:`provider` (by instance or name); the kind default is used
        otherwise.
        """
        if not kind or not name:
            raise StackDefinitionError("Resource kind and name are required")
        resource_id = ResourceId(kind, name)
        if resource_id in self._nodes:
            raise StackDefinitionError(f"Resource '{resource_id}' declared twice")

        instance = self._provider_for(kind, provider)
        spec, implicit = _evaluate(spec_builder, f"Spec for '{resource_id}'")
        if instance is not None:
            implicit |= instance.dependencies
        explicit = {_to_id(ref) for ref in depends_on}

        if resource_id in explicit or resource_id in implicit:
            raise CycleError([str(resource_id), str(resource_id)])

        node = ResourceNode(resource_id, spec, explicit, implicit - explicit, provider=instance)
        cycle = self._path_back_to(node)
        if cycle:
            raise CycleError([str(i) for i in cycle])

        self._nodes[resource_id] = node
        logger.debug(
            "resource_declared",
            resource_id=str(resource_id),
            explicit=sorted(str(d) for d in explicit),
            implicit=sorted(str(d) for d in node.implicit_dependencies),
            provider=instance.name if instance else None,
        )
        return node

    def _provider_for(self, kind: str, provider: ProviderRef | None) -> ProviderInstance | None:
        if provider is None:
            return None
        if isinstance(provider, str):
            instance = self._providers.get((kind, provider))
            if instance is None:
                raise StackDefinitionError(f"No provider '{provider}' declared for kind '{kind}'")
            return instance
        if not isinstance(provider, ProviderInstance):
            raise StackDefinitionError(f"Unsupported provider reference: {provider!r}")
        if provider.kind != kind:
            raise StackDefinitionError(
                f"Provider '{provider.kind}{ID_SEPARATOR}{provider.name}' cannot serve kind '{kind}'"
            )
        return provider

    def _path_back_to(self, node: ResourceNode) -> list[ResourceId] | None:
        """Detect a cycle closed by node through earlier forward references."""
        target = node.id
        stack: list[tuple[ResourceId, list[ResourceId]]] = [
            (dep, [target, dep]) for dep in sorted(node.dependencies)
        ]
        seen: set[ResourceId] = set()
        while stack:
            current, path = stack.pop()
            if current == target:
                return path
            if current in seen:
                continue
            seen.add(current)
            existing = self._nodes.get(current)
            if existing is None:
                continue
            for dep in sorted(existing.dependencies):
                stack.append((dep, [*path, dep]))
        return None

    def get(self, resource_id: ResourceId | str) -> ResourceNode | None:
        if isinstance(resource_id, str):
            resource_id = ResourceId.parse(resource_id)
        return self._nodes.get(resource_id)

    def build(self) -> "ResourceGraph":
        return ResourceGraph(self._nodes.values())


class ResourceGraph:
    """Directed acyclic graph of resource nodes (edges point at dependents)."""

    def __init__(self, nodes: Iterable[ResourceNode] = ()) -> None:
        self.nodes: dict[ResourceId, ResourceNode] = {node.id: node for node in nodes}
        self._claimed = False

    def claim(self, operation: str) -> None:
        """Mark the graph as used; node statuses and cells are single-use."""
        if self._claimed:
            raise RuntimeError(f"Graph already used by an earlier run; rebuild it to {operation}")
        self._claimed = True

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def dependents(self) -> dict[ResourceId, set[ResourceId]]:
        result: dict[ResourceId, set[ResourceId]] = {rid: set() for rid in self.nodes}
        for node in self.nodes.values():
            for dep in node.dependencies:
                if dep in result:
                    result[dep].add(node.id)
        return result

    def validate(self) -> None:
        """Reject dangling dependency references."""
        for node in self.nodes.values():
            unknown = sorted(str(d) for d in node.dependencies if d not in self.nodes)
            if unknown:
                raise StackDefinitionError(
                    f"Resource '{node.id}' depends on undeclared resources: {', '.join(unknown)}",
                    details={"resource_id": str(node.id)},
                )

    def topological_order(self) -> list[ResourceId]:
        """Kahn's algorithm; raises CycleError if any node never frees up."""
        self.validate()
        in_degree = {rid: len(node.dependencies) for rid, node in self.nodes.items()}
        dependents = self.dependents()
        ready = deque(sorted(rid for rid, deg in in_degree.items() if deg == 0))
        order: list[ResourceId] = []
        while ready:
            current = ready.popleft()
            order.append(current)
            for child in sorted(dependents[current]):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    ready.append(child)
        if len(order) != len(self.nodes):
            remaining = {rid for rid, deg in in_degree.items() if deg > 0}
            raise CycleError([str(rid) for rid in self._extract_cycle(remaining)])
        return order

    def _extract_cycle(self, remaining: set[ResourceId]) -> list[ResourceId]:
        # Every remaining node has a remaining dependency, so walking must loop
        start = min(remaining)
        path: list[ResourceId] = []
        index: dict[ResourceId, int] = {}
        current = start
        while current not in index:
            index[current] = len(path)
            path.append(current)
            current = min(d for d in self.nodes[current].dependencies if d in remaining)
        return [*path[index[current]:], current]

    def descendants(self, resource_id: ResourceId) -> set[ResourceId]:
        """Every node that transitively depends on resource_id."""
        dependents = self.dependents()
        return _reach(resource_id, lambda rid: dependents.get(rid, set()))

    def ancestors(self, resource_id: ResourceId) -> set[ResourceId]:
        """Every node resource_id transitively depends on."""
        return _reach(
            resource_id,
            lambda rid: {d for d in self.nodes[rid].dependencies if d in self.nodes}
            if rid in self.nodes
            else set(),
        )


def _reach(start: ResourceId, step: Callable[[ResourceId], set[ResourceId]]) -> set[ResourceId]:
    seen: set[ResourceId] = set()
    queue = deque(step(start))
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(step(current))
    return seen
