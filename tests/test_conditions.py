"""Tests for conditional inclusion."""

from __future__ import annotations

from dataclasses import replace

import pytest

from converge.conditions import InclusionResolver, ResolvedGraph
from converge.errors import ConfigurationErrors, DanglingDependencyError, UnboundFlagError
from converge.graph import ResourceGraph, ResourceKind, ResourceNode


def build(nodes: list[ResourceNode]) -> ResourceGraph:
    graph, errors = ResourceGraph.build(nodes)
    assert errors == []
    return graph


class TestEvaluate:
    """Tests for enabled expression evaluation."""

    @pytest.mark.parametrize(
        ("enabled", "flags", "expected"),
        [
            (True, {}, True),
            (False, {}, False),
            ("create_cluster", {"create_cluster": True}, True),
            ("create_cluster", {"create_cluster": False}, False),
            ("!use_existing", {"use_existing": True}, False),
            ("!use_existing", {"use_existing": False}, True),
        ],
    )
    def test_expressions(self, enabled: bool | str, flags: dict, expected: bool) -> None:
        n = ResourceNode(id="x", kind=ResourceKind.ROLE, enabled=enabled)
        assert InclusionResolver(flags).evaluate(n) is expected

    def test_unbound_flag(self) -> None:
        n = ResourceNode(id="x", kind=ResourceKind.ROLE, enabled="missing")
        with pytest.raises(UnboundFlagError, match="'missing' is not bound"):
            InclusionResolver({}).evaluate(n)

    def test_non_boolean_flag(self) -> None:
        n = ResourceNode(id="x", kind=ResourceKind.ROLE, enabled="region")
        with pytest.raises(UnboundFlagError, match="is not a boolean"):
            InclusionResolver({"region": "eu-west-1"}).evaluate(n)


class TestResolve:
    """Tests for pruning the graph."""

    def test_cluster_disabled_with_its_node_groups(self, eks_nodes: list[ResourceNode]) -> None:
        nodes = [n if n.id == "vpc" else replace(n, enabled="create_cluster") for n in eks_nodes]
        resolved = InclusionResolver({"create_cluster": False}).resolve(build(nodes))

        assert resolved.included == ("vpc",)
        assert resolved.excluded == ("cluster", "ng-a", "ng-b")
        assert resolved.edges() == ()

    def test_dangling_dependency(self, eks_nodes: list[ResourceNode]) -> None:
        """Node groups reference a cluster that is toggled off."""
        with pytest.raises(DanglingDependencyError) as exc_info:
            InclusionResolver({"create_cluster": False}).resolve(build(eks_nodes))

        assert exc_info.value.pairs == [("ng-a", "cluster"), ("ng-b", "cluster")]
        assert "'ng-a' depends on disabled 'cluster'" in str(exc_info.value)

    def test_all_enabled(self, eks_nodes: list[ResourceNode]) -> None:
        graph = build(eks_nodes)
        resolved = InclusionResolver({"create_cluster": True}).resolve(graph)

        assert resolved.included == ("vpc", "cluster", "ng-a", "ng-b")
        assert resolved.excluded == ()
        assert resolved == ResolvedGraph.all_included(graph)

    def test_errors_collected(self) -> None:
        """Unbound flags and dangling dependencies are reported together."""
        graph = build(
            [
                ResourceNode(id="a", kind=ResourceKind.ROLE, enabled=False),
                ResourceNode(id="b", kind=ResourceKind.POLICY, depends_on=("a",)),
                ResourceNode(id="c", kind=ResourceKind.POLICY, enabled="nope"),
            ]
        )
        with pytest.raises(ConfigurationErrors) as exc_info:
            InclusionResolver({}).resolve(graph)

        kinds = {type(e) for e in exc_info.value.errors}
        assert kinds == {UnboundFlagError, DanglingDependencyError}

    def test_disabled_dependent_of_enabled_node_is_fine(self) -> None:
        graph = build(
            [
                ResourceNode(id="vpc", kind=ResourceKind.NETWORK),
                ResourceNode(
                    id="nat",
                    kind=ResourceKind.GATEWAY,
                    enabled=False,
                    attributes={"vpc": "${vpc.id}"},
                ),
            ]
        )
        resolved = InclusionResolver({}).resolve(graph)

        assert resolved.included == ("vpc",)
        assert resolved.dependents_of("vpc") == []
        assert [n.id for n in resolved.excluded_nodes()] == ["nat"]
