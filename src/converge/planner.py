"""Plan computation.

The planner reads the current state of every included resource and pairs
each node with the action that converges it:

| Current state          | Desired attributes      | Action  |
|------------------------|-------------------------|---------|
| absent                 | any                     | Create  |
| present                | match current           | NoOp    |
| present                | differ (drift)          | Update  |
| present                | references a change     | Update  |
| excluded by flags      | -                       | Skip    |

Only declared attributes are compared. Fields the backend adds on its own
(provisioning state, generated ids) never count as drift, and nested
mappings are compared the same way.

A node referencing one that will be created or updated is an Update,
since the values it binds are only known after apply.

Planning issues `read` calls only and has no side effects.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .conditions import ResolvedGraph
from .errors import ProviderError
from .graph import ResourceNode, UnresolvedReferenceError
from .providers import ProviderRegistry, ResourceState
from .scheduler import Schedule

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Kind of reconciliation pass."""

    APPLY = "apply"
    DESTROY = "destroy"


class Action(str, Enum):
    """Action computed for a node."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"
    SKIP = "skip"


MUTATING_ACTIONS = frozenset({Action.CREATE, Action.UPDATE, Action.DESTROY})


@dataclass(frozen=True)
class PlanEntry:
    """A node paired with its computed action."""

    node: ResourceNode
    action: Action
    reason: str = ""
    current: ResourceState | None = None
    # Set when the current state could not be read; the entry fails on execution
    error: str | None = None

    @property
    def node_id(self) -> str:
        return self.node.id


@dataclass(frozen=True)
class Plan:
    """Plan entries in execution order for one pass."""

    operation: Operation
    entries: tuple[PlanEntry, ...]

    def entry(self, node_id: str) -> PlanEntry:
        for entry in self.entries:
            if entry.node_id == node_id:
                return entry
        raise KeyError(node_id)

    def by_declaration(self) -> list[PlanEntry]:
        return sorted(self.entries, key=lambda e: e.node.index)

    def count(self, action: Action) -> int:
        return sum(1 for e in self.entries if e.action == action)

    @property
    def mutating_count(self) -> int:
        return sum(1 for e in self.entries if e.action in MUTATING_ACTIONS)

    @property
    def has_changes(self) -> bool:
        return self.mutating_count > 0


def attributes_match(desired: Any, current: Any) -> bool:
    """Check that every declared value is present and equal in current state."""
    if isinstance(desired, Mapping):
        if not isinstance(current, Mapping):
            return False
        return all(
            key in current and attributes_match(value, current[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list) and isinstance(current, list):
        return len(desired) == len(current) and all(
            attributes_match(d, c) for d, c in zip(desired, current, strict=True)
        )
    return desired == current


def drifted_keys(desired: Mapping[str, Any], current: Mapping[str, Any]) -> list[str]:
    return [
        key
        for key, value in desired.items()
        if key not in current or not attributes_match(value, current[key])
    ]


class Planner:
    """Computes plans by reading current state through the providers."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    def _read(self, node: ResourceNode) -> tuple[ResourceState | None, str | None]:
        try:
            return self._registry.for_kind(node.kind).read(node), None
        except ProviderError as e:
            logger.error(
                "Failed to read resource state",
                extra={"node_id": node.id, "kind": node.kind.value, "error": str(e)},
            )
            return None, f"read failed: {e}"

    def plan_apply(self, resolved: ResolvedGraph, schedule: Schedule) -> Plan:
        """Plan creation and update of every included node."""
        entries: list[PlanEntry] = []
        known_outputs: dict[str, dict[str, Any]] = {}

        for node_id in schedule.apply_order:
            node = resolved.node(node_id)
            current, error = self._read(node)
            if error is not None:
                entries.append(PlanEntry(node=node, action=Action.CREATE, error=error))
                continue

            if current is None:
                entries.append(PlanEntry(node=node, action=Action.CREATE, reason="not found"))
                continue

            try:
                desired = node.resolve_attributes(known_outputs)
            except UnresolvedReferenceError as e:
                entries.append(
                    PlanEntry(
                        node=node,
                        action=Action.UPDATE,
                        reason=f"known after apply: {e}",
                        current=current,
                    )
                )
                continue

            changed = drifted_keys(desired, current.attributes)
            if changed:
                entries.append(
                    PlanEntry(
                        node=node,
                        action=Action.UPDATE,
                        reason=f"drift in {', '.join(changed)}",
                        current=current,
                    )
                )
            else:
                # Only unchanged nodes expose outputs to dependents at plan time
                known_outputs[node_id] = current.outputs
                entries.append(PlanEntry(node=node, action=Action.NOOP, current=current))

        entries.extend(
            PlanEntry(node=node, action=Action.SKIP, reason="disabled")
            for node in resolved.excluded_nodes()
        )
        plan = Plan(operation=Operation.APPLY, entries=tuple(entries))
        self._log_plan(plan)
        return plan

    def plan_destroy(self, resolved: ResolvedGraph, schedule: Schedule) -> Plan:
        """Plan teardown of every included node in reverse order."""
        entries: list[PlanEntry] = []

        for node_id in schedule.destroy_order:
            node = resolved.node(node_id)
            current, error = self._read(node)
            if error is not None:
                entries.append(PlanEntry(node=node, action=Action.DESTROY, error=error))
            elif current is None:
                entries.append(PlanEntry(node=node, action=Action.NOOP, reason="already absent"))
            else:
                entries.append(PlanEntry(node=node, action=Action.DESTROY, current=current))

        entries.extend(
            PlanEntry(node=node, action=Action.SKIP, reason="disabled")
            for node in resolved.excluded_nodes()
        )
        plan = Plan(operation=Operation.DESTROY, entries=tuple(entries))
        self._log_plan(plan)
        return plan

    def _log_plan(self, plan: Plan) -> None:
        logger.info(
            "Plan computed",
            extra={
                "operation": plan.operation.value,
                "create_count": plan.count(Action.CREATE),
                "update_count": plan.count(Action.UPDATE),
                "destroy_count": plan.count(Action.DESTROY),
                "noop_count": plan.count(Action.NOOP),
                "skip_count": plan.count(Action.SKIP),
            },
        )
