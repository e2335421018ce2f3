"""
YAML stack definitions.

A stack file lists resources in any order:

    resources:
      - kind: random_password
        name: db-password
        spec:
          length: 24
      - kind: static
        name: db-credentials
        spec:
          password: ${db-password.result | base64}
          url: postgres://app:${db-password.result}@db:5432/app
        depends_on: [namespace]

A ``providers`` list declares named provider instances. A resource picks one
with ``provider: <name>``; the instance config may reference outputs too:

    providers:
      - kind: command
        name: cluster
        config:
          environment:
            KUBECONFIG: ${kubeconfig.stdout}
    resources:
      - kind: command
        name: namespace
        provider: cluster
        spec:
          create: kubectl create namespace app

``${name.output}`` reads another resource's output and adds an implicit
dependency edge. A reference that is the whole string keeps the output's
type; an embedded reference is interpolated into the surrounding string.
References and ``depends_on`` entries may use a bare resource name or a
``kind::name`` id when names are shared across kinds.

Usage:
    from stackrun.stack.loader import load_stack

    graph = load_stack("stack.yaml")
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import structlog
import yaml

from stackrun.core.errors import StackDefinitionError
from stackrun.engine.cells import ValueCell, interpolate
from stackrun.engine.graph import (
    ID_SEPARATOR,
    ProviderInstance,
    ResourceGraph,
    ResourceId,
    ResourceNode,
    StackBuilder,
)
from stackrun.providers import provider_registry
from stackrun.providers.registry import ProviderRegistry

logger = structlog.get_logger()

REFERENCE_PATTERN = re.compile(
    r"\$\{\s*(?P<target>[^\s.{}|]+)\.(?P<output>[\w-]+)\s*(?:\|\s*(?P<filter>\w+)\s*)?\}"
)


def _base64(value: Any) -> str:
    if not isinstance(value, bytes):
        value = str(value).encode()
    return base64.b64encode(value).decode("ascii")


FILTERS: dict[str, Callable[[Any], Any]] = {
    "base64": _base64,
}


@dataclass
class _Declaration:
    resource_id: ResourceId
    spec: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)
    references: list[re.Match] = field(default_factory=list)
    provider: str | None = None


@dataclass
class _ProviderDeclaration:
    kind: str
    name: str
    config: dict[str, Any]
    references: list[re.Match] = field(default_factory=list)


class StackLoader:
    """Turns parsed stack data into a resource graph."""

    def __init__(self, registry: ProviderRegistry | None = None, source: str = "<stack>") -> None:
        self.registry = registry or provider_registry
        self.source = source
        self._by_name: dict[str, list[ResourceId]] = {}
        self._builder = StackBuilder()
        self._providers: dict[tuple[str, str], _ProviderDeclaration] = {}
        self._instances: dict[tuple[str, str], ProviderInstance] = {}

    def build(self, data: Any) -> ResourceGraph:
        if not isinstance(data, dict):
            raise StackDefinitionError(f"Expected a YAML mapping in {self.source}")
        raw = data.get("resources", [])
        if not isinstance(raw, list):
            raise StackDefinitionError(f"'resources' must be a list in {self.source}")
        raw_providers = data.get("providers", [])
        if not isinstance(raw_providers, list):
            raise StackDefinitionError(f"'providers' must be a list in {self.source}")
        for index, item in enumerate(raw_providers):
            decl = self._parse_provider(item, index)
            key = (decl.kind, decl.name)
            if key in self._providers:
                raise StackDefinitionError(
                    f"Provider '{decl.kind}{ID_SEPARATOR}{decl.name}' declared twice in {self.source}"
                )
            self._providers[key] = decl

        declarations = [self._parse_resource(item, index) for index, item in enumerate(raw)]
        seen: set[ResourceId] = set()
        for decl in declarations:
            if decl.resource_id in seen:
                raise StackDefinitionError(f"Resource '{decl.resource_id}' declared twice in {self.source}")
            seen.add(decl.resource_id)
            self._by_name.setdefault(decl.resource_id.name, []).append(decl.resource_id)
        for provider in self._providers.values():
            for match in provider.references:
                self._resolve(match["target"], ResourceId(provider.kind, provider.name))

        edges: dict[ResourceId, set[ResourceId]] = {}
        for decl in declarations:
            deps = {self._resolve(target, decl.resource_id) for target in decl.depends_on}
            deps.update(self._resolve(match["target"], decl.resource_id) for match in decl.references)
            provider = self._provider_declaration(decl)
            if provider is not None:
                deps.update(self._resolve(match["target"], decl.resource_id) for match in provider.references)
            edges[decl.resource_id] = deps

        # Declare in dependency order so every referenced node already exists
        order = ResourceGraph(ResourceNode(rid, {}, deps) for rid, deps in edges.items()).topological_order()
        by_id = {decl.resource_id: decl for decl in declarations}
        for rid in order:
            decl = by_id[rid]
            self._builder.declare(
                rid.kind,
                rid.name,
                lambda decl=decl: self._materialize(decl.spec, decl.resource_id),
                depends_on=[self._resolve(target, rid) for target in decl.depends_on],
                provider=self._provider_instance(decl),
            )

        logger.info("stack_loaded", source=self.source, resources=len(order))
        return self._builder.build()

    def _parse_provider(self, item: Any, index: int) -> _ProviderDeclaration:
        where = f"providers[{index}] in {self.source}"
        if not isinstance(item, dict):
            raise StackDefinitionError(f"{where} must be a mapping")
        kind, name = item.get("kind"), item.get("name")
        if not isinstance(kind, str) or not kind:
            raise StackDefinitionError(f"{where} requires a 'kind'")
        if not isinstance(name, str) or not name:
            raise StackDefinitionError(f"{where} requires a 'name'")
        if kind not in self.registry:
            raise StackDefinitionError(f"{where}: unknown resource kind '{kind}'")
        config = item.get("config") or {}
        if not isinstance(config, dict):
            raise StackDefinitionError(f"{where}: 'config' must be a mapping")
        references = _scan_references(config)
        self._check_filters(references, where)
        return _ProviderDeclaration(kind, name, config, references)

    def _provider_declaration(self, decl: _Declaration) -> _ProviderDeclaration | None:
        if decl.provider is None:
            return None
        provider = self._providers.get((decl.resource_id.kind, decl.provider))
        if provider is None:
            raise StackDefinitionError(
                f"'{decl.resource_id}' selects undeclared provider '{decl.provider}' "
                f"for kind '{decl.resource_id.kind}'"
            )
        return provider

    def _provider_instance(self, decl: _Declaration) -> ProviderInstance | None:
        provider = self._provider_declaration(decl)
        if provider is None:
            return None
        instance = self._instances.get((provider.kind, provider.name))
        if instance is None:
            # Declared on first use, after every resource its config reads
            instance = self._builder.provider(
                provider.kind,
                provider.name,
                lambda: self._materialize(provider.config, decl.resource_id),
            )
            self._instances[(provider.kind, provider.name)] = instance
        return instance

    def _parse_resource(self, item: Any, index: int) -> _Declaration:
        where = f"resources[{index}] in {self.source}"
        if not isinstance(item, dict):
            raise StackDefinitionError(f"{where} must be a mapping")
        kind, name = item.get("kind"), item.get("name")
        if not isinstance(kind, str) or not kind:
            raise StackDefinitionError(f"{where} requires a 'kind'")
        if not isinstance(name, str) or not name:
            raise StackDefinitionError(f"{where} requires a 'name'")
        if "." in name or ID_SEPARATOR in name:
            raise StackDefinitionError(f"{where}: resource name '{name}' may not contain '.' or '{ID_SEPARATOR}'")
        if kind not in self.registry:
            raise StackDefinitionError(f"{where}: unknown resource kind '{kind}'")

        spec = item.get("spec") or {}
        if not isinstance(spec, dict):
            raise StackDefinitionError(f"{where}: 'spec' must be a mapping")

        depends_on = item.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise StackDefinitionError(f"{where}: 'depends_on' must be a list of resource names")

        provider = item.get("provider")
        if provider is not None and (not isinstance(provider, str) or not provider):
            raise StackDefinitionError(f"{where}: 'provider' must be a provider name")

        references = _scan_references(spec)
        self._check_filters(references, where)
        return _Declaration(ResourceId(kind, name), spec, list(depends_on), references, provider)

    def _check_filters(self, references: list[re.Match], where: str) -> None:
        for match in references:
            if match["filter"] and match["filter"] not in FILTERS:
                raise StackDefinitionError(
                    f"{where}: unknown filter '{match['filter']}' (available: {', '.join(sorted(FILTERS))})"
                )

    def _resolve(self, target: str, referrer: ResourceId) -> ResourceId:
        if ID_SEPARATOR in target:
            resource_id = ResourceId.parse(target)
            if resource_id.name not in self._by_name or resource_id not in self._by_name[resource_id.name]:
                raise StackDefinitionError(f"'{referrer}' references undeclared resource '{target}'")
            return resource_id
        candidates = self._by_name.get(target, [])
        if not candidates:
            raise StackDefinitionError(f"'{referrer}' references undeclared resource '{target}'")
        if len(candidates) > 1:
            choices = ", ".join(str(c) for c in sorted(candidates))
            raise StackDefinitionError(f"'{referrer}' reference '{target}' is ambiguous; use one of: {choices}")
        return candidates[0]

    def _materialize(self, value: Any, referrer: ResourceId) -> Any:
        if isinstance(value, str):
            return self._expand(value, referrer)
        if isinstance(value, dict):
            return {k: self._materialize(v, referrer) for k, v in value.items()}
        if isinstance(value, list):
            return [self._materialize(v, referrer) for v in value]
        return value

    def _expand(self, text: str, referrer: ResourceId) -> Any:
        matches = list(REFERENCE_PATTERN.finditer(text))
        if not matches:
            return text
        if len(matches) == 1 and matches[0].span() == (0, len(text)):
            return self._reference(matches[0], referrer)

        template: list[str] = []
        parts: list[ValueCell] = []
        position = 0
        for match in matches:
            template.append(_escape_braces(text[position:match.start()]))
            template.append("{}")
            parts.append(self._reference(match, referrer))
            position = match.end()
        template.append(_escape_braces(text[position:]))
        return interpolate("".join(template), *parts)

    def _reference(self, match: re.Match, referrer: ResourceId) -> ValueCell:
        resource_id = self._resolve(match["target"], referrer)
        node = self._builder.get(resource_id)
        if node is None:
            raise StackDefinitionError(f"'{referrer}' references '{resource_id}' before it was declared")
        cell = node.output(match["output"])
        if match["filter"]:
            cell = cell.apply(FILTERS[match["filter"]])
        return cell


def _scan_references(value: Any) -> list[re.Match]:
    if isinstance(value, str):
        return list(REFERENCE_PATTERN.finditer(value))
    if isinstance(value, dict):
        return [m for v in value.values() for m in _scan_references(v)]
    if isinstance(value, list):
        return [m for v in value for m in _scan_references(v)]
    return []


def _escape_braces(text: str) -> str:
    return text.replace("{", "{{").replace("}", "}}")


def build_stack(data: Any, *, source: str = "<stack>", registry: ProviderRegistry | None = None) -> ResourceGraph:
    """Build a resource graph from already-parsed stack data."""
    return StackLoader(registry=registry, source=source).build(data)


def load_stack(file_path: str | Path, registry: ProviderRegistry | None = None) -> ResourceGraph:
    """
    Load a stack file and build its resource graph.

    Raises:
        StackDefinitionError: If the file is missing, is not valid YAML, or
            declares malformed resources or references
        CycleError: If the declared dependencies form a cycle
    """
    path = Path(file_path)
    if not path.exists():
        raise StackDefinitionError(f"Stack file not found: {file_path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise StackDefinitionError(f"Invalid YAML in {file_path}: {e}") from e

    return build_stack(data, source=str(path), registry=registry)
