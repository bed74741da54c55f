"""Azure provider backed by ARM generic resources.

Each node maps to one ARM resource addressed by id. Recognized attributes:

    resourceId: Full ARM resource id (must not contain output references)
    apiVersion: Resource provider API version
    location:   Azure region
    properties: Resource properties
    tags:       Resource tags

Outputs are the resource's id, name, type, location and properties, so
dependents can reference e.g. `${cluster.properties.fqdn}`.

SECURITY: Credentials come from a managed identity only, see security.py.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .config import DEFAULT_OPERATION_TIMEOUT_SECONDS
from .errors import ProviderError, ProviderTransientError
from .graph import ResourceNode
from .providers import ResourceState

logger = logging.getLogger(__name__)

# HTTP status codes Azure uses for throttling and retryable service errors
TRANSIENT_STATUS_CODES = frozenset({408, 429})


def _is_transient(error: HttpResponseError) -> bool:
    status = error.status_code or 0
    return status in TRANSIENT_STATUS_CODES or status >= 500


def _translate(error: AzureError, node_id: str, operation: str) -> ProviderError:
    """Map an Azure SDK error onto the provider error hierarchy."""
    if isinstance(error, HttpResponseError):
        error_code = error.error.code if error.error else None
        logger.warning(
            "Azure API error",
            extra={
                "node_id": node_id,
                "operation": operation,
                "status_code": error.status_code,
                "error_code": error_code,
            },
        )
        message = f"Azure API error ({error.status_code}) during {operation}: {error.message}"
        if _is_transient(error):
            return ProviderTransientError(message)
        return ProviderError(message)
    return ProviderError(f"Azure error during {operation}: {error}")


class AzureResourceProvider:
    """Reads and converges ARM resources through the generic resources API."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._timeout = operation_timeout_seconds
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    def _static(self, node: ResourceNode, key: str) -> str:
        value = node.attributes.get(key)
        if not isinstance(value, str) or not value:
            raise ProviderError(f"Resource '{node.id}' needs a literal '{key}' attribute")
        return value

    def _to_state(self, node: ResourceNode, resource: GenericResource) -> ResourceState:
        outputs = {
            "id": resource.id,
            "name": resource.name,
            "type": resource.type,
            "location": resource.location,
            "properties": dict(resource.properties or {}),
        }
        attributes = {
            "resourceId": self._static(node, "resourceId"),
            "apiVersion": self._static(node, "apiVersion"),
            "location": resource.location,
            "properties": dict(resource.properties or {}),
            "tags": dict(resource.tags or {}),
        }
        return ResourceState(id=resource.id or "", attributes=attributes, outputs=outputs)

    def read(self, node: ResourceNode) -> ResourceState | None:
        resource_id = self._static(node, "resourceId")
        api_version = self._static(node, "apiVersion")
        try:
            resource = self._client.resources.get_by_id(
                resource_id=resource_id,
                api_version=api_version,
            )
        except ResourceNotFoundError:
            logger.debug(
                "Resource not found", extra={"node_id": node.id, "resource_id": resource_id}
            )
            return None
        except AzureError as e:
            raise _translate(e, node.id, "read") from e
        return self._to_state(node, resource)

    def _create_or_update(
        self, node: ResourceNode, attributes: dict[str, Any], operation: str
    ) -> dict[str, Any]:
        resource_id = self._static(node, "resourceId")
        api_version = self._static(node, "apiVersion")
        parameters = GenericResource(
            location=attributes.get("location"),
            properties=attributes.get("properties") or {},
            tags=attributes.get("tags") or {},
        )
        logger.info(
            "Submitting resource",
            extra={"node_id": node.id, "resource_id": resource_id, "operation": operation},
        )
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=api_version,
                parameters=parameters,
            )
            resource = poller.result(timeout=self._timeout)
        except AzureError as e:
            raise _translate(e, node.id, operation) from e

        if not poller.done():
            raise ProviderTransientError(
                f"{operation} of {resource_id} did not finish within {self._timeout}s"
            )
        return self._to_state(node, resource).outputs

    def create(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        return self._create_or_update(node, attributes, "create")

    def update(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        return self._create_or_update(node, attributes, "update")

    def destroy(self, node: ResourceNode) -> None:
        resource_id = self._static(node, "resourceId")
        api_version = self._static(node, "apiVersion")
        logger.info("Deleting resource", extra={"node_id": node.id, "resource_id": resource_id})
        try:
            poller = self._client.resources.begin_delete_by_id(
                resource_id=resource_id,
                api_version=api_version,
            )
            poller.result(timeout=self._timeout)
        except AzureError as e:
            raise _translate(e, node.id, "destroy") from e

        if not poller.done():
            raise ProviderTransientError(
                f"destroy of {resource_id} did not finish within {self._timeout}s"
            )
