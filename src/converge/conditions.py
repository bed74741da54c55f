"""Conditional inclusion of resources.

Each node carries an `enabled` expression evaluated exactly once per run:
- `true` / `false`
- a flag name, e.g. `create_cluster`
- a negated flag name, e.g. `!use_existing_network`

Flags are boolean variables bound from the document defaults and command
line overrides. An enabled node that depends on an excluded node is a
configuration error: the reference would dangle, so the whole run is
rejected before any provider call instead of silently pruning.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import (
    ConfigurationError,
    DanglingDependencyError,
    UnboundFlagError,
    raise_collected,
)
from .graph import Edge, ResourceGraph, ResourceNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedGraph:
    """Graph pruned to the nodes included in this run."""

    graph: ResourceGraph
    included: tuple[str, ...]
    excluded: tuple[str, ...] = ()

    @classmethod
    def all_included(cls, graph: ResourceGraph) -> ResolvedGraph:
        return cls(graph=graph, included=tuple(graph.declaration_order()))

    def is_included(self, node_id: str) -> bool:
        return node_id in self.included

    def node(self, node_id: str) -> ResourceNode:
        return self.graph.node(node_id)

    def nodes(self) -> list[ResourceNode]:
        return [self.graph.node(n) for n in self.included]

    def excluded_nodes(self) -> list[ResourceNode]:
        return [self.graph.node(n) for n in self.excluded]

    def edges(self) -> tuple[Edge, ...]:
        included = set(self.included)
        return tuple(
            e for e in self.graph.edges() if e.dependent in included and e.dependency in included
        )

    def dependencies_of(self, node_id: str) -> list[str]:
        return [n for n in self.graph.dependencies_of(node_id) if n in self.included]

    def dependents_of(self, node_id: str) -> list[str]:
        return [n for n in self.graph.dependents_of(node_id) if n in self.included]


class InclusionResolver:
    """Evaluates enabled expressions against flag bindings."""

    def __init__(self, flags: Mapping[str, Any] | None = None) -> None:
        self._flags = dict(flags or {})

    def evaluate(self, node: ResourceNode) -> bool:
        """Evaluate a node's enabled expression.

        Raises:
            UnboundFlagError: If the flag is missing or not a boolean.
        """
        expression = node.enabled
        if isinstance(expression, bool):
            return expression

        negate = expression.startswith("!")
        flag = expression[1:].strip() if negate else expression.strip()
        if flag not in self._flags:
            raise UnboundFlagError(node.id, flag)
        value = self._flags[flag]
        if not isinstance(value, bool):
            raise UnboundFlagError(node.id, flag, detail=f"is not a boolean: {value!r}")
        return not value if negate else value

    def resolve(self, graph: ResourceGraph) -> ResolvedGraph:
        """Prune excluded nodes from the graph.

        Nodes with unbound flags are treated as included so that dangling
        references are still reported in the same pass.

        Raises:
            UnboundFlagError: If one enabled expression cannot be evaluated.
            DanglingDependencyError: If enabled nodes depend on excluded ones.
            ConfigurationErrors: If several of the above were found.
        """
        errors: list[ConfigurationError] = []
        included: list[str] = []
        excluded: list[str] = []

        for node in graph.nodes().values():
            try:
                enabled = self.evaluate(node)
            except UnboundFlagError as e:
                errors.append(e)
                enabled = True
            (included if enabled else excluded).append(node.id)

        excluded_set = set(excluded)
        dangling = [
            (node_id, dep)
            for node_id in included
            for dep in graph.dependencies_of(node_id)
            if dep in excluded_set
        ]
        if dangling:
            errors.append(DanglingDependencyError(dangling))

        raise_collected(errors)

        if excluded:
            logger.info(
                "Resources excluded by enabled flags",
                extra={"excluded": excluded, "included_count": len(included)},
            )
        return ResolvedGraph(graph=graph, included=tuple(included), excluded=tuple(excluded))
