"""Topological scheduling of resolved resource graphs.

Apply order comes from Kahn's algorithm. Among nodes that become ready at
the same time the one declared first goes first, so identical input always
yields an identical order. Destroy order is the exact reverse: a node group
is deleted before its cluster, the cluster before its network.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass

from .conditions import ResolvedGraph
from .errors import CycleDetectedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Schedule:
    """Execution order for one reconciliation pass."""

    apply_order: tuple[str, ...]

    @property
    def destroy_order(self) -> tuple[str, ...]:
        return tuple(reversed(self.apply_order))

    def position(self, node_id: str) -> int:
        return self.apply_order.index(node_id)


class TopologicalScheduler:
    """Orders the included nodes of a resolved graph."""

    def __init__(self, resolved: ResolvedGraph) -> None:
        self._resolved = resolved

    def schedule(self) -> Schedule:
        """Compute the apply order.

        Raises:
            CycleDetectedError: If some nodes can never become ready.
        """
        resolved = self._resolved
        index = {node_id: resolved.node(node_id).index for node_id in resolved.included}

        in_degree: dict[str, int] = {node_id: 0 for node_id in resolved.included}
        dependents: dict[str, list[str]] = {node_id: [] for node_id in resolved.included}
        for edge in resolved.edges():
            in_degree[edge.dependent] += 1
            dependents[edge.dependency].append(edge.dependent)

        # Heap keyed by declaration index for a stable tie-break
        queue = [(index[n], n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(queue)
        order: list[str] = []

        while queue:
            _, current = heapq.heappop(queue)
            order.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, (index[dependent], dependent))

        if len(order) != len(in_degree):
            remaining = [n for n in resolved.included if in_degree[n] > 0]
            raise CycleDetectedError(remaining)

        logger.debug("Apply order computed", extra={"apply_order": order})
        return Schedule(apply_order=tuple(order))

    def ready(self, satisfied: set[str]) -> list[str]:
        """Nodes not yet satisfied whose dependencies all are.

        Returns:
            Node ids in declaration order.
        """
        return [
            node_id
            for node_id in self._resolved.included
            if node_id not in satisfied
            and all(dep in satisfied for dep in self._resolved.dependencies_of(node_id))
        ]
