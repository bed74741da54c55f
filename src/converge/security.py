"""Secretless credentials for the azure provider.

converge talks to Azure only as a managed identity. Service principal
secrets, certificates and user passwords in the environment are treated
as a leak, and the azure provider refuses to start while any is set.
The local provider needs no credentials and skips the check.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Variables azure-identity would pick up for secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment."""

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        names = ", ".join(env_vars)
        super().__init__(
            f"Credential environment variables set: {names}. The azure provider "
            "authenticates with a managed identity only; unset them and grant the "
            "identity the RBAC roles it needs instead."
        )


def find_credential_env_vars() -> list[str]:
    """Forbidden credential variables that are set to a non-empty value."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def require_secretless_environment() -> None:
    """Raise SecretlessViolationError if any credential secret is set.

    Runs before any Azure SDK client is created.
    """
    detected = find_credential_env_vars()
    if not detected:
        return
    logger.critical(
        "Credential secrets found in environment, azure provider not started",
        extra={"security_event": "credential_detected", "env_vars": detected},
    )
    raise SecretlessViolationError(detected)


def _redact(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


def managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Credential of the user-assigned identity `client_id`, or the system identity.

    Raises:
        SecretlessViolationError: If credential secrets are set.
    """
    require_secretless_environment()
    if client_id:
        logger.info("Using user-assigned managed identity", extra={"client_id": _redact(client_id)})
        return ManagedIdentityCredential(client_id=client_id)
    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
