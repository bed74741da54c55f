"""Tests for the Pydantic document models."""

import pytest
from pydantic import ValidationError

from converge.graph import ResourceKind
from converge.models import ResourceDeclaration, StackSpec


class TestResourceDeclaration:
    """Tests for ResourceDeclaration model."""

    def test_valid_declaration(self) -> None:
        """Test parsing a resource with explicit dependencies."""
        declaration = ResourceDeclaration.model_validate(
            {
                "id": "ng-system",
                "kind": "NodeGroup",
                "attributes": {"cluster": "${cluster.name}", "size": 2},
                "dependsOn": ["cluster", "node-policy", "cluster"],
            }
        )

        assert declaration.kind == ResourceKind.NODE_GROUP
        assert declaration.depends_on == ["cluster", "node-policy"]
        assert declaration.enabled is True

    def test_populate_by_name(self) -> None:
        declaration = ResourceDeclaration(id="vpc", kind="Network", depends_on=["x"])
        assert declaration.depends_on == ["x"]

    @pytest.mark.parametrize("node_id", ["VPC", "1vpc", "vpc.main", ""])
    def test_invalid_id(self, node_id: str) -> None:
        with pytest.raises(ValidationError):
            ResourceDeclaration.model_validate({"id": node_id, "kind": "Network"})

    @pytest.mark.parametrize("node_id", ["var", "run"])
    def test_reserved_id(self, node_id: str) -> None:
        with pytest.raises(ValidationError, match="reserved"):
            ResourceDeclaration.model_validate({"id": node_id, "kind": "Network"})

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValidationError):
            ResourceDeclaration.model_validate({"id": "db", "kind": "Database"})

    def test_extra_fields_forbidden(self) -> None:
        """Misspelled keys are rejected instead of silently ignored."""
        with pytest.raises(ValidationError):
            ResourceDeclaration.model_validate(
                {"id": "vpc", "kind": "Network", "depends_on_typo": ["x"]}
            )

    @pytest.mark.parametrize(
        ("enabled", "expected"),
        [
            (False, False),
            ("true", True),
            ("False", False),
            ("create_cluster", "create_cluster"),
            ("!use_existing", "!use_existing"),
            ("  create_cluster ", "create_cluster"),
        ],
    )
    def test_enabled_forms(self, enabled: bool | str, expected: bool | str) -> None:
        declaration = ResourceDeclaration.model_validate(
            {"id": "cluster", "kind": "Cluster", "enabled": enabled}
        )
        assert declaration.enabled == expected

    @pytest.mark.parametrize("enabled", ["a and b", "flag == 1", "!!x"])
    def test_enabled_expressions_rejected(self, enabled: str) -> None:
        with pytest.raises(ValidationError, match="flag name"):
            ResourceDeclaration.model_validate(
                {"id": "cluster", "kind": "Cluster", "enabled": enabled}
            )

    def test_invalid_depends_on(self) -> None:
        with pytest.raises(ValidationError, match="dependsOn"):
            ResourceDeclaration.model_validate(
                {"id": "ng", "kind": "NodeGroup", "dependsOn": ["Cluster A"]}
            )


class TestStackSpec:
    """Tests for StackSpec model."""

    def test_variable_shorthand(self) -> None:
        spec = StackSpec.model_validate(
            {
                "variables": {
                    "create_cluster": {"default": True, "description": "Create EKS"},
                    "region": "eu-west-1",
                    "min_size": 2,
                },
                "resources": [{"id": "vpc", "kind": "Network"}],
            }
        )

        assert spec.variable_defaults() == {
            "create_cluster": True,
            "region": "eu-west-1",
            "min_size": 2,
        }
        assert spec.variables["create_cluster"].description == "Create EKS"

    def test_invalid_variable_name(self) -> None:
        with pytest.raises(ValidationError, match="invalid variable name"):
            StackSpec.model_validate(
                {"variables": {"bad-name": 1}, "resources": [{"id": "vpc", "kind": "Network"}]}
            )

    def test_empty_resources(self) -> None:
        with pytest.raises(ValidationError, match="no resources"):
            StackSpec.model_validate({"name": "empty", "resources": []})

    def test_unknown_top_level_key(self) -> None:
        with pytest.raises(ValidationError):
            StackSpec.model_validate(
                {"resources": [{"id": "vpc", "kind": "Network"}], "outputs": {}}
            )
