"""Mock Azure Resource Manager generic resources API.

Provides in-memory state for resources addressed by ARM id, with the
`resources.get_by_id` / `begin_create_or_update_by_id` /
`begin_delete_by_id` operations the azure provider uses, plus error
injection for failure scenarios.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError


def http_error(status_code: int, message: str = "Simulated failure") -> HttpResponseError:
    """Build an HttpResponseError carrying a status code."""
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


@dataclass
class MockResource:
    """Represents a mock Azure resource in state."""

    resource_id: str
    location: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    api_version: str = "2024-01-01"
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.resource_id.startswith("/subscriptions/"):
            raise ValueError(f"Not an ARM resource id: {self.resource_id}")

    @property
    def name(self) -> str:
        return self.resource_id.rstrip("/").rsplit("/", 1)[-1]

    @property
    def type(self) -> str:
        # /subscriptions/s/resourceGroups/rg/providers/Ns.Type/name -> Ns.Type
        segments = self.resource_id.strip("/").split("/")
        if "providers" not in segments:
            return "Microsoft.Resources/resourceGroups"
        provider_index = segments.index("providers")
        namespace = segments[provider_index + 1]
        types = segments[provider_index + 2 :: 2]
        return "/".join([namespace, *types])

    @property
    def id(self) -> str:
        return self.resource_id


class MockResourceState:
    """In-memory Azure resource state manager.

    All operations are synchronous since this is test code.
    """

    def __init__(self) -> None:
        self._resources: dict[str, MockResource] = {}
        # resource id -> queue of errors raised on the next calls
        self._errors: dict[str, list[Exception]] = {}
        self.operations: list[tuple[str, str]] = []

    @property
    def resource_count(self) -> int:
        return len(self._resources)

    def get_resource(self, resource_id: str) -> MockResource | None:
        return self._resources.get(resource_id.lower())

    def put_resource(self, resource: MockResource) -> MockResource:
        # ARM ids are case-insensitive
        self._resources[resource.resource_id.lower()] = resource
        return resource

    def delete_resource(self, resource_id: str) -> bool:
        return self._resources.pop(resource_id.lower(), None) is not None

    def inject_error(self, resource_id: str, *errors: Exception) -> None:
        """Raise the given errors, in order, on the next calls for a resource."""
        self._errors.setdefault(resource_id.lower(), []).extend(errors)

    def raise_injected(self, resource_id: str) -> None:
        queue = self._errors.get(resource_id.lower())
        if queue:
            raise queue.pop(0)

    def clear(self) -> None:
        self._resources.clear()
        self._errors.clear()
        self.operations.clear()


class MockLROPoller:
    """Minimal stand-in for azure.core.polling.LROPoller."""

    def __init__(self, result: Any, finished: bool = True) -> None:
        self._result = result
        self._finished = finished

    def result(self, timeout: int | None = None) -> Any:
        return self._result if self._finished else None

    def done(self) -> bool:
        return self._finished

    def status(self) -> str:
        return "Succeeded" if self._finished else "InProgress"


class _MockResourcesOperations:
    """Mock of ResourceManagementClient.resources."""

    def __init__(self, client: MockResourceClient) -> None:
        self._client = client

    @property
    def _state(self) -> MockResourceState:
        return self._client.state

    def get_by_id(self, resource_id: str, api_version: str, **kwargs: Any) -> MockResource:
        self._state.operations.append(("get", resource_id))
        self._state.raise_injected(resource_id)
        resource = self._state.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFoundError(message=f"Resource not found: {resource_id}")
        return copy.deepcopy(resource)

    def begin_create_or_update_by_id(
        self, resource_id: str, api_version: str, parameters: Any, **kwargs: Any
    ) -> MockLROPoller:
        self._state.operations.append(("put", resource_id))
        self._state.raise_injected(resource_id)
        resource = MockResource(
            resource_id=resource_id,
            location=parameters.location,
            properties=copy.deepcopy(parameters.properties or {}),
            tags=dict(parameters.tags or {}),
            api_version=api_version,
        )
        if self._client.hang_operations:
            return MockLROPoller(None, finished=False)
        self._state.put_resource(resource)
        return MockLROPoller(copy.deepcopy(resource))

    def begin_delete_by_id(
        self, resource_id: str, api_version: str, **kwargs: Any
    ) -> MockLROPoller:
        self._state.operations.append(("delete", resource_id))
        self._state.raise_injected(resource_id)
        if not self._state.delete_resource(resource_id):
            raise ResourceNotFoundError(message=f"Resource not found: {resource_id}")
        return MockLROPoller(None)


class MockResourceClient:
    """Mock ResourceManagementClient backed by MockResourceState."""

    def __init__(
        self,
        state: MockResourceState | None = None,
        subscription_id: str = "00000000-0000-0000-0000-000000000000",
        *,
        hang_operations: bool = False,
    ) -> None:
        self.state = state or MockResourceState()
        self._subscription_id = subscription_id
        self.hang_operations = hang_operations
        self.resources = _MockResourcesOperations(self)

    @property
    def subscription_id(self) -> str:
        return self._subscription_id
