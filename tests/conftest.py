"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.graph import ResourceKind, ResourceNode  # noqa: E402
from converge.main import HANDLER_NAME  # noqa: E402
from converge.providers import LocalStateProvider, ProviderRegistry  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop the handler installed by CLI invocations."""
    yield
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if handler.get_name() == HANDLER_NAME:
            root_logger.removeHandler(handler)


@pytest.fixture
def provider() -> LocalStateProvider:
    return LocalStateProvider()


@pytest.fixture
def registry(provider: LocalStateProvider) -> ProviderRegistry:
    return ProviderRegistry(default=provider)


@pytest.fixture
def eks_nodes() -> list[ResourceNode]:
    """Network, cluster and two node groups; cluster gated by a flag."""
    return [
        ResourceNode(id="vpc", kind=ResourceKind.NETWORK, attributes={"cidr": "10.0.0.0/16"}),
        ResourceNode(
            id="cluster",
            kind=ResourceKind.CLUSTER,
            attributes={"name": "eks", "vpc_id": "${vpc.id}"},
            enabled="create_cluster",
        ),
        ResourceNode(
            id="ng-a",
            kind=ResourceKind.NODE_GROUP,
            attributes={"cluster": "${cluster.name}", "size": 2},
        ),
        ResourceNode(
            id="ng-b",
            kind=ResourceKind.NODE_GROUP,
            attributes={"cluster": "${cluster.name}", "size": 3},
            depends_on=("ng-a",),
        ),
    ]
