"""Provider boundary.

A provider is the only component that talks to real infrastructure. The
reconciler calls it through four operations:

- `read(node)`: current state, or None when the resource does not exist
- `create(node, attributes)`: create the resource, return its outputs
- `update(node, attributes)`: converge an existing resource, return outputs
- `destroy(node)`: delete the resource

Failures raise ProviderError. A provider raises ProviderTransientError
when the backend signals a retryable condition (throttling, 5xx); the
executor then consults its retry hook. Backoff policy lives here, on the
provider side of the boundary, never in the executor.
"""

from __future__ import annotations

import copy
import json
import logging
import random
import secrets
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .errors import ProviderError, ProviderTransientError, SettingsError
from .graph import ResourceKind, ResourceNode

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1

# Retry hook: (node_id, error, attempt) -> delay in seconds, or None to give up
RetryHook = Callable[[str, ProviderTransientError, int], float | None]


@dataclass
class ResourceState:
    """Actual state of a resource as reported by a provider."""

    id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(Protocol):
    """Operations the reconciler needs from a backend."""

    def read(self, node: ResourceNode) -> ResourceState | None: ...

    def create(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]: ...

    def destroy(self, node: ResourceNode) -> None: ...


class ProviderRegistry:
    """Maps resource kinds to providers, with an optional default."""

    def __init__(
        self,
        default: Provider | None = None,
        providers: Mapping[ResourceKind, Provider] | None = None,
    ) -> None:
        self._default = default
        self._providers: dict[ResourceKind, Provider] = dict(providers or {})

    @property
    def default(self) -> Provider | None:
        return self._default

    def register(self, kind: ResourceKind, provider: Provider) -> None:
        self._providers[kind] = provider

    def for_kind(self, kind: ResourceKind) -> Provider:
        """Get the provider for a kind.

        Raises:
            ProviderError: If no provider handles the kind.
        """
        provider = self._providers.get(kind, self._default)
        if provider is None:
            raise ProviderError(f"No provider registered for kind '{kind.value}'")
        return provider


def exponential_backoff(
    max_attempts: int = 3,
    base_seconds: float = 5.0,
    jitter_ratio: float = 0.2,
) -> RetryHook:
    """Build a retry hook with exponential backoff and jitter.

    Args:
        max_attempts: Total attempts including the first one.
        base_seconds: Delay before the second attempt.
        jitter_ratio: Fraction of the delay added as random jitter.
    """

    def hook(node_id: str, error: ProviderTransientError, attempt: int) -> float | None:
        if attempt >= max_attempts:
            return None
        backoff = base_seconds * (2 ** (attempt - 1))
        return backoff + random.uniform(0, backoff * jitter_ratio)

    return hook


def _output_id(kind: ResourceKind) -> str:
    slug = "".join(c for c in kind.value.lower() if c.isalnum())
    return f"{slug}-{secrets.token_hex(4)}"


class LocalStateProvider:
    """Provider that keeps resources in process, optionally in a JSON state file.

    Used for local runs and tests. Every call is recorded in `calls` as
    `(operation, node_id)`. Faults can be injected per node:

    - `fail_on`: node ids whose create/update/destroy always fail
    - `transient_failures`: node id -> number of transient failures before success

    Thread-safe: the executor calls providers from worker threads.
    """

    def __init__(
        self,
        state_path: Path | None = None,
        *,
        fail_on: Iterable[str] = (),
        transient_failures: Mapping[str, int] | None = None,
    ) -> None:
        self._state_path = state_path
        self._fail_on = set(fail_on)
        self._transient = dict(transient_failures or {})
        self._lock = threading.Lock()
        self._resources: dict[str, ResourceState] = {}
        self._run_suffix: str | None = None
        self.calls: list[tuple[str, str]] = []

        if state_path is not None and state_path.exists():
            self._resources, self._run_suffix = self._load(state_path)

    @property
    def run_suffix(self) -> str | None:
        """Suffix of the run that created the stored resources, if recorded."""
        return self._run_suffix

    def remember_run_suffix(self, suffix: str) -> None:
        """Record the run suffix. Written with the next state change."""
        with self._lock:
            self._run_suffix = suffix

    @staticmethod
    def _load(path: Path) -> tuple[dict[str, ResourceState], str | None]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SettingsError(f"Failed to read state file {path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != STATE_FILE_VERSION:
            raise SettingsError(f"Unsupported state file format: {path}")

        resources: dict[str, ResourceState] = {}
        for node_id, entry in data.get("resources", {}).items():
            resources[node_id] = ResourceState(
                id=entry.get("id", node_id),
                attributes=entry.get("attributes", {}),
                outputs=entry.get("outputs", {}),
            )
        logger.debug("Loaded state file", extra={"path": str(path), "count": len(resources)})
        return resources, data.get("run_suffix")

    def _save(self) -> None:
        if self._state_path is None:
            return
        data = {
            "version": STATE_FILE_VERSION,
            "run_suffix": self._run_suffix,
            "resources": {
                node_id: {
                    "id": state.id,
                    "attributes": state.attributes,
                    "outputs": state.outputs,
                }
                for node_id, state in sorted(self._resources.items())
            },
        }
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        self._state_path.write_text(
            json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )

    def _check_faults(self, operation: str, node: ResourceNode) -> None:
        if node.id in self._fail_on:
            raise ProviderError(f"{operation} failed for '{node.id}'")
        remaining = self._transient.get(node.id, 0)
        if remaining > 0:
            self._transient[node.id] = remaining - 1
            raise ProviderTransientError(f"{operation} throttled for '{node.id}'")

    def read(self, node: ResourceNode) -> ResourceState | None:
        with self._lock:
            self.calls.append(("read", node.id))
            state = self._resources.get(node.id)
            if state is None:
                return None
            return ResourceState(
                id=state.id,
                attributes=copy.deepcopy(state.attributes),
                outputs=copy.deepcopy(state.outputs),
            )

    def create(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.calls.append(("create", node.id))
            self._check_faults("create", node)
            if node.id in self._resources:
                raise ProviderError(f"Resource '{node.id}' already exists")
            resource_id = _output_id(node.kind)
            outputs = {**attributes, "id": resource_id, "kind": node.kind.value}
            self._resources[node.id] = ResourceState(
                id=resource_id, attributes=dict(attributes), outputs=outputs
            )
            self._save()
            return dict(outputs)

    def update(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.calls.append(("update", node.id))
            self._check_faults("update", node)
            state = self._resources.get(node.id)
            if state is None:
                raise ProviderError(f"Resource '{node.id}' does not exist")
            state.attributes = {**state.attributes, **attributes}
            state.outputs = {**state.attributes, "id": state.id, "kind": node.kind.value}
            self._save()
            return dict(state.outputs)

    def destroy(self, node: ResourceNode) -> None:
        with self._lock:
            self.calls.append(("destroy", node.id))
            self._check_faults("destroy", node)
            if self._resources.pop(node.id, None) is None:
                raise ProviderError(f"Resource '{node.id}' does not exist")
            self._save()

    def put(
        self,
        node_id: str,
        attributes: dict[str, Any],
        outputs: dict[str, Any] | None = None,
    ) -> None:
        """Seed or overwrite state directly, e.g. to simulate drift."""
        with self._lock:
            existing = self._resources.get(node_id)
            resource_id = existing.id if existing else f"seeded-{node_id}"
            self._resources[node_id] = ResourceState(
                id=resource_id,
                attributes=dict(attributes),
                outputs=dict(outputs) if outputs is not None else {**attributes, "id": resource_id},
            )
            self._save()

    def mutating_calls(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] != "read"]

    def snapshot(self) -> dict[str, ResourceState]:
        with self._lock:
            return dict(self._resources)
