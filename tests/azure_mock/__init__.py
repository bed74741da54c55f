"""Azure API Mock for integration testing.

In-memory stand-ins for the Azure SDK pieces converge uses, so the azure
provider can be exercised without Azure connectivity.

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ...
        assert ctx.state.resource_count == 1
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import (
    MockLROPoller,
    MockResource,
    MockResourceClient,
    MockResourceState,
    http_error,
)

__all__ = [
    "MockAzureContext",
    "MockLROPoller",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
    "http_error",
]
