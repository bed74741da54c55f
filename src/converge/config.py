"""Configuration management with validation.

Settings are loaded from the environment and validated at construction
time. Command line options override individual fields through
`dataclasses.replace`, which re-runs validation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import SettingsError


class ProviderName(str, Enum):
    """Supported provider backends."""

    LOCAL = "local"
    AZURE = "azure"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 10
MIN_PARALLELISM = 1
MAX_PARALLELISM = 64

DEFAULT_STATE_FILE = ".converge/state.json"

DEFAULT_PROVIDER_MAX_RETRIES = 0  # No retries unless explicitly enabled
MAX_PROVIDER_RETRIES = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

# Security constraints - enforced limits to prevent abuse
MAX_DOCUMENT_SIZE_BYTES = 1024 * 1024  # 1MB max resource document

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_RUN_SUFFIX_PATTERN = r"^[a-z0-9]{1,16}$"


@dataclass(frozen=True)
class Settings:
    """Runtime settings.

    All fields are validated at construction time. Invalid settings raise
    SettingsError listing every problem rather than failing mid-run.
    """

    parallelism: int = DEFAULT_PARALLELISM
    provider: ProviderName = ProviderName.LOCAL
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Azure provider
    subscription_id: str | None = None
    client_id: str | None = None
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Fixed value for ${run.suffix}, otherwise taken from state or generated
    run_suffix: str | None = None

    # Provider-side retry policy for transient errors
    provider_max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM:
            errors.append(
                f"CONVERGE_PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )

        if self.provider == ProviderName.AZURE:
            if not self.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required for the azure provider")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.run_suffix is not None and not re.match(VALID_RUN_SUFFIX_PATTERN, self.run_suffix):
            errors.append(
                f"CONVERGE_RUN_SUFFIX must be 1-16 lowercase letters or digits: {self.run_suffix}"
            )

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if not 0 <= self.provider_max_retries <= MAX_PROVIDER_RETRIES:
            errors.append(f"PROVIDER_MAX_RETRIES must be between 0 and {MAX_PROVIDER_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS must not be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise SettingsError(error_msg)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables.

        Environment Variables:
            CONVERGE_PARALLELISM: Max concurrent node operations (default: 10)
            CONVERGE_PROVIDER: Provider backend, local or azure (default: local)
            CONVERGE_STATE_FILE: State file of the local provider
                (default: .converge/state.json)
            CONVERGE_RUN_SUFFIX: Value of ${run.suffix} (default: from state, or new)
            AZURE_SUBSCRIPTION_ID: Target subscription, required for azure
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            OPERATION_TIMEOUT: Timeout for a single provider operation (default: 1800)
            PROVIDER_MAX_RETRIES: Retries for transient provider errors (default: 0)
            RETRY_BACKOFF_BASE_SECONDS: Base delay of exponential backoff (default: 5)
            LOG_LEVEL: Logging level (default: INFO)
            LOG_FORMAT: json or text (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise SettingsError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise SettingsError(f"{key} must be a number: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise SettingsError(f"{key} must be one of {valid}: {value}") from e

        return cls(
            parallelism=get_int("CONVERGE_PARALLELISM", DEFAULT_PARALLELISM),
            provider=get_enum("CONVERGE_PROVIDER", ProviderName, ProviderName.LOCAL),
            state_file=Path(os.environ.get("CONVERGE_STATE_FILE", DEFAULT_STATE_FILE)),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            run_suffix=os.environ.get("CONVERGE_RUN_SUFFIX") or None,
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            provider_max_retries=get_int("PROVIDER_MAX_RETRIES", DEFAULT_PROVIDER_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=get_enum("LOG_FORMAT", LogFormat, LogFormat.JSON),
        )
