"""Tests for plan computation."""

from __future__ import annotations

import pytest

from converge.conditions import InclusionResolver
from converge.errors import ProviderError
from converge.graph import ResourceGraph, ResourceKind, ResourceNode
from converge.planner import (
    Action,
    Operation,
    Planner,
    attributes_match,
    drifted_keys,
)
from converge.providers import LocalStateProvider, ProviderRegistry
from converge.scheduler import TopologicalScheduler


def plan_for(registry, nodes, flags=None, operation=Operation.APPLY):
    graph, errors = ResourceGraph.build(nodes)
    assert errors == []
    resolved = InclusionResolver(flags).resolve(graph)
    schedule = TopologicalScheduler(resolved).schedule()
    planner = Planner(registry)
    if operation == Operation.DESTROY:
        return planner.plan_destroy(resolved, schedule)
    return planner.plan_apply(resolved, schedule)


class TestAttributeComparison:
    """Tests for drift comparison."""

    def test_extra_current_keys_ignored(self) -> None:
        assert attributes_match({"cidr": "10.0.0.0/16"}, {"cidr": "10.0.0.0/16", "state": "ok"})

    def test_nested_mappings_compared_by_subset(self) -> None:
        desired = {"tags": {"env": "dev"}}
        assert attributes_match(desired, {"tags": {"env": "dev", "owner": "platform"}})
        assert not attributes_match(desired, {"tags": {"env": "prod"}})

    def test_lists_compared_by_position(self) -> None:
        assert attributes_match({"z": ["a", "b"]}, {"z": ["a", "b"]})
        assert not attributes_match({"z": ["a", "b"]}, {"z": ["b", "a"]})
        assert not attributes_match({"z": ["a"]}, {"z": ["a", "b"]})

    def test_drifted_keys(self) -> None:
        desired = {"size": 3, "type": "m6i", "labels": {"a": "1"}}
        current = {"size": 2, "type": "m6i"}
        assert drifted_keys(desired, current) == ["size", "labels"]


class TestPlanApply:
    """Tests for Planner.plan_apply."""

    def test_fresh_graph_creates_everything(
        self, registry: ProviderRegistry, eks_nodes: list[ResourceNode]
    ) -> None:
        plan = plan_for(registry, eks_nodes, {"create_cluster": True})

        assert plan.operation == Operation.APPLY
        assert [e.node_id for e in plan.entries] == ["vpc", "cluster", "ng-a", "ng-b"]
        assert all(e.action == Action.CREATE for e in plan.entries)
        assert plan.count(Action.CREATE) == 4

    def test_planning_only_reads(
        self, provider: LocalStateProvider, registry: ProviderRegistry, eks_nodes
    ) -> None:
        plan_for(registry, eks_nodes, {"create_cluster": True})

        assert provider.mutating_calls() == []
        assert {op for op, _ in provider.calls} == {"read"}

    def test_matching_state_is_noop(self, provider: LocalStateProvider, registry) -> None:
        provider.put("vpc", {"cidr": "10.0.0.0/16"}, outputs={"id": "vpc-1"})
        provider.put("sg", {"vpc": "vpc-1", "port": 443})
        nodes = [
            ResourceNode(id="vpc", kind=ResourceKind.NETWORK, attributes={"cidr": "10.0.0.0/16"}),
            ResourceNode(
                id="sg",
                kind=ResourceKind.SECURITY_GROUP,
                attributes={"vpc": "${vpc.id}", "port": 443},
            ),
        ]
        plan = plan_for(registry, nodes)

        assert [e.action for e in plan.entries] == [Action.NOOP, Action.NOOP]
        assert plan.entry("vpc").current.outputs == {"id": "vpc-1"}
        assert not plan.has_changes

    def test_drift_is_update(self, provider: LocalStateProvider, registry) -> None:
        provider.put("ng", {"size": 2, "type": "m6i"})
        nodes = [
            ResourceNode(
                id="ng", kind=ResourceKind.NODE_GROUP, attributes={"size": 3, "type": "m6i"}
            )
        ]
        entry = plan_for(registry, nodes).entry("ng")

        assert entry.action == Action.UPDATE
        assert entry.reason == "drift in size"

    def test_reference_to_missing_node_is_update_known_after_apply(
        self, provider: LocalStateProvider, registry
    ) -> None:
        """An existing node whose dependency is absent cannot be compared yet."""
        provider.put("sg", {"vpc": "vpc-old"})
        nodes = [
            ResourceNode(id="vpc", kind=ResourceKind.NETWORK),
            ResourceNode(
                id="sg", kind=ResourceKind.SECURITY_GROUP, attributes={"vpc": "${vpc.id}"}
            ),
        ]
        plan = plan_for(registry, nodes)

        assert plan.entry("vpc").action == Action.CREATE
        assert plan.entry("sg").action == Action.UPDATE
        assert plan.entry("sg").reason.startswith("known after apply")

    def test_dependent_of_updated_node_is_update(
        self, provider: LocalStateProvider, registry
    ) -> None:
        """Outputs of a node about to change are not used to compare its dependents."""
        provider.put("role", {"name": "old"})
        provider.put("attach", {"role": "old"})
        nodes = [
            ResourceNode(id="role", kind=ResourceKind.ROLE, attributes={"name": "new"}),
            ResourceNode(
                id="attach",
                kind=ResourceKind.ROLE_ATTACHMENT,
                attributes={"role": "${role.name}"},
            ),
        ]
        plan = plan_for(registry, nodes)

        assert plan.entry("role").action == Action.UPDATE
        assert plan.entry("attach").action == Action.UPDATE
        assert plan.entry("attach").reason.startswith("known after apply")

    def test_excluded_nodes_are_skipped(self, registry, eks_nodes) -> None:
        nodes = [eks_nodes[0], ResourceNode(id="nat", kind=ResourceKind.GATEWAY, enabled="use_nat")]
        plan = plan_for(registry, nodes, {"use_nat": False})

        entry = plan.entry("nat")
        assert entry.action == Action.SKIP
        assert entry.reason == "disabled"
        assert plan.mutating_count == 1

    def test_read_failure_is_recorded_on_entry(self, registry: ProviderRegistry) -> None:
        class BrokenReads(LocalStateProvider):
            def read(self, node):
                raise ProviderError("access denied")

        registry.register(ResourceKind.ROLE, BrokenReads())
        nodes = [ResourceNode(id="role", kind=ResourceKind.ROLE)]
        entry = plan_for(registry, nodes).entry("role")

        assert entry.action == Action.CREATE
        assert entry.error == "read failed: access denied"


class TestPlanDestroy:
    """Tests for Planner.plan_destroy."""

    def test_reverse_order_and_absent_nodes(self, provider: LocalStateProvider, registry) -> None:
        provider.put("vpc", {})
        provider.put("cluster", {})
        nodes = [
            ResourceNode(id="vpc", kind=ResourceKind.NETWORK),
            ResourceNode(id="cluster", kind=ResourceKind.CLUSTER, depends_on=("vpc",)),
            ResourceNode(id="ng", kind=ResourceKind.NODE_GROUP, depends_on=("cluster",)),
        ]
        plan = plan_for(registry, nodes, operation=Operation.DESTROY)

        assert [e.node_id for e in plan.entries] == ["ng", "cluster", "vpc"]
        assert [e.action for e in plan.entries] == [Action.NOOP, Action.DESTROY, Action.DESTROY]
        assert plan.entry("ng").reason == "already absent"
        assert [e.node_id for e in plan.by_declaration()] == ["vpc", "cluster", "ng"]

    def test_unknown_entry(self, registry) -> None:
        plan = plan_for(registry, [ResourceNode(id="vpc", kind=ResourceKind.NETWORK)])
        with pytest.raises(KeyError):
            plan.entry("nope")
