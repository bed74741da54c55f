"""Resource graph model.

A graph holds typed resource nodes and the dependency edges between them:
1. Explicit edges come from a node's `depends_on` declaration
2. Implicit edges come from attribute references to another node's outputs

REFERENCE SYNTAX:
An attribute string may reference another node's outputs with
`${<node-id>.<output>[.<key>...]}`. A string that consists of exactly one
reference resolves to the raw output value; references embedded in a
longer string are interpolated as text. References stay as placeholders
in the node until the executor resolves them right before the provider
call, once the referenced node has succeeded.

EXAMPLE:
```yaml
- id: nodegroup-a
  kind: NodeGroup
  dependsOn: [node-role]
  attributes:
    clusterName: "${cluster.name}"        # implicit edge to `cluster`
    subnetIds: "${network.privateSubnetIds}"
```
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import (
    ConfigurationError,
    DuplicateIdError,
    GraphFrozenError,
    UnknownNodeError,
)

logger = logging.getLogger(__name__)

# Node ids are referenced from attribute strings, keep them simple
VALID_NODE_ID_PATTERN = r"^[a-z][a-z0-9_-]{0,62}$"

# Reference roots resolved while the graph is built, never node ids
RESERVED_ROOTS = frozenset({"var", "run"})

REFERENCE_PATTERN = re.compile(
    r"\$\{([a-z][a-z0-9_-]*)\.([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*)\}"
)


class ResourceKind(str, Enum):
    """Supported resource kinds."""

    NETWORK = "Network"
    SUBNET = "Subnet"
    GATEWAY = "Gateway"
    SECURITY_GROUP = "SecurityGroup"
    ROLE = "Role"
    POLICY = "Policy"
    ROLE_ATTACHMENT = "RoleAttachment"
    CLUSTER = "Cluster"
    NODE_GROUP = "NodeGroup"
    ADDON = "Addon"


class UnresolvedReferenceError(LookupError):
    """Raised when a reference points at outputs that are not available."""

    pass


@dataclass(frozen=True)
class OutputRef:
    """Placeholder for another node's output, bound lazily."""

    node_id: str
    path: tuple[str, ...]

    @property
    def expression(self) -> str:
        return "${" + ".".join((self.node_id, *self.path)) + "}"

    def resolve(self, outputs: Mapping[str, Mapping[str, Any]]) -> Any:
        if self.node_id not in outputs:
            raise UnresolvedReferenceError(
                f"{self.expression}: outputs of '{self.node_id}' are not available"
            )
        value: Any = outputs[self.node_id]
        for key in self.path:
            if not isinstance(value, Mapping) or key not in value:
                raise UnresolvedReferenceError(
                    f"{self.expression}: output '{key}' not found on '{self.node_id}'"
                )
            value = value[key]
        return value


@dataclass(frozen=True)
class Interpolation:
    """String with one or more embedded output references."""

    parts: tuple[str | OutputRef, ...]

    def resolve(self, outputs: Mapping[str, Mapping[str, Any]]) -> str:
        return "".join(
            part if isinstance(part, str) else str(part.resolve(outputs))
            for part in self.parts
        )


def parse_value(value: Any) -> Any:
    """Convert a declared attribute value into its frozen, placeholder-bearing form."""
    if isinstance(value, str):
        matches = list(REFERENCE_PATTERN.finditer(value))
        if not matches:
            return value
        if len(matches) == 1 and matches[0].span() == (0, len(value)):
            return _ref_from_match(matches[0])
        parts: list[str | OutputRef] = []
        cursor = 0
        for match in matches:
            if match.start() > cursor:
                parts.append(value[cursor : match.start()])
            parts.append(_ref_from_match(match))
            cursor = match.end()
        if cursor < len(value):
            parts.append(value[cursor:])
        return Interpolation(parts=tuple(parts))
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): parse_value(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(parse_value(v) for v in value)
    return value


def _ref_from_match(match: re.Match[str]) -> OutputRef:
    return OutputRef(node_id=match.group(1), path=tuple(match.group(2).split(".")))


def iter_references(value: Any) -> Iterator[OutputRef]:
    """Yield every output reference contained in a parsed value."""
    if isinstance(value, OutputRef):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            if isinstance(part, OutputRef):
                yield part
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, tuple):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, outputs: Mapping[str, Mapping[str, Any]]) -> Any:
    """Resolve placeholders against known outputs, returning plain data.

    Raises:
        UnresolvedReferenceError: If a referenced output is not known.
    """
    if isinstance(value, (OutputRef, Interpolation)):
        return value.resolve(outputs)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, outputs) for k, v in value.items()}
    if isinstance(value, tuple):
        return [resolve_value(v, outputs) for v in value]
    return value


def render_value(value: Any) -> Any:
    """Render a parsed value back to plain data, keeping references as text."""
    if isinstance(value, OutputRef):
        return value.expression
    if isinstance(value, Interpolation):
        return "".join(p if isinstance(p, str) else p.expression for p in value.parts)
    if isinstance(value, Mapping):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [render_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ResourceNode:
    """A single declared resource.

    Attributes are frozen on construction: mappings become read-only and
    sequences become tuples. `index` records declaration order and is
    assigned by the graph.
    """

    id: str
    kind: ResourceKind
    attributes: Mapping[str, Any] = field(default_factory=dict)
    enabled: bool | str = True
    depends_on: tuple[str, ...] = ()
    index: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", parse_value(dict(self.attributes)))
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(self.depends_on)))

    def references(self) -> list[OutputRef]:
        return list(iter_references(self.attributes))

    def referenced_ids(self) -> list[str]:
        """Ids this node references through attributes, in first-seen order."""
        return list(dict.fromkeys(ref.node_id for ref in self.references()))

    def resolve_attributes(self, outputs: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
        return resolve_value(self.attributes, outputs)

    def rendered_attributes(self) -> dict[str, Any]:
        return render_value(self.attributes)


@dataclass(frozen=True)
class Edge:
    """`dependent` requires `dependency` to be applied first."""

    dependent: str
    dependency: str
    implicit: bool = False


class ResourceGraph:
    """Directed graph of resource nodes, immutable once frozen."""

    def __init__(self) -> None:
        self._nodes: dict[str, ResourceNode] = {}
        self._edges: dict[tuple[str, str], Edge] = {}
        self._frozen = False

    @classmethod
    def build(
        cls, nodes: Iterable[ResourceNode]
    ) -> tuple[ResourceGraph, list[ConfigurationError]]:
        """Build and freeze a graph, collecting every structural error.

        Duplicate nodes are dropped and unknown dependencies are skipped so
        later validation stages can still report their own findings.

        Returns:
            Tuple of (frozen graph, errors found while building).
        """
        graph = cls()
        errors: list[ConfigurationError] = []
        accepted: list[ResourceNode] = []

        for node in nodes:
            try:
                accepted.append(graph.add_node(node))
            except DuplicateIdError as e:
                errors.append(e)

        for node in accepted:
            for dep in node.depends_on:
                try:
                    graph.add_edge(node.id, dep)
                except UnknownNodeError:
                    errors.append(UnknownNodeError(dep, referenced_by=node.id))
            for dep in node.referenced_ids():
                try:
                    graph.add_edge(node.id, dep, implicit=True)
                except UnknownNodeError:
                    errors.append(UnknownNodeError(dep, referenced_by=node.id))

        graph.freeze()
        logger.debug(
            "Resource graph built",
            extra={"node_count": len(graph), "edge_count": len(graph._edges)},
        )
        return graph, errors

    def _check_mutable(self) -> None:
        if self._frozen:
            raise GraphFrozenError("Resource graph is frozen")

    def add_node(self, node: ResourceNode) -> ResourceNode:
        """Add a node, assigning its declaration index.

        Raises:
            DuplicateIdError: If a node with the same id exists.
            GraphFrozenError: If the graph is frozen.
        """
        self._check_mutable()
        if node.id in self._nodes:
            raise DuplicateIdError(node.id)
        node = replace(node, index=len(self._nodes))
        self._nodes[node.id] = node
        return node

    def add_edge(self, dependent: str, dependency: str, implicit: bool = False) -> Edge:
        """Add a dependency edge.

        An explicit edge replaces an implicit one between the same nodes.

        Raises:
            UnknownNodeError: If either id is not in the graph.
            GraphFrozenError: If the graph is frozen.
        """
        self._check_mutable()
        for node_id in (dependent, dependency):
            if node_id not in self._nodes:
                raise UnknownNodeError(node_id)
        key = (dependent, dependency)
        existing = self._edges.get(key)
        if existing is not None and not existing.implicit:
            return existing
        edge = Edge(dependent=dependent, dependency=dependency, implicit=implicit)
        self._edges[key] = edge
        return edge

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def nodes(self) -> Mapping[str, ResourceNode]:
        """Read-only view of nodes keyed by id, in declaration order."""
        return MappingProxyType(self._nodes)

    def edges(self) -> tuple[Edge, ...]:
        return tuple(self._edges.values())

    def node(self, node_id: str) -> ResourceNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def declaration_order(self) -> list[str]:
        return list(self._nodes)

    def dependencies_of(self, node_id: str) -> list[str]:
        deps = {e.dependency for e in self._edges.values() if e.dependent == node_id}
        return [n for n in self._nodes if n in deps]

    def dependents_of(self, node_id: str) -> list[str]:
        dependents = {e.dependent for e in self._edges.values() if e.dependency == node_id}
        return [n for n in self._nodes if n in dependents]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)
