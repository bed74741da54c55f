"""Exception hierarchy for the reconciler.

Configuration errors are fatal and raised before any provider call is made.
Provider errors are recorded per node and never abort a run.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class ConfigurationError(Exception):
    """Raised when the declared resource graph cannot be reconciled."""

    pass


class DuplicateIdError(ConfigurationError):
    """Raised when two nodes share the same id."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Duplicate resource id: '{node_id}'")


class UnknownNodeError(ConfigurationError):
    """Raised when an edge or reference names an undeclared node."""

    def __init__(self, node_id: str, referenced_by: str | None = None) -> None:
        self.node_id = node_id
        self.referenced_by = referenced_by
        if referenced_by:
            message = f"Resource '{referenced_by}' references unknown resource '{node_id}'"
        else:
            message = f"Unknown resource id: '{node_id}'"
        super().__init__(message)


class UnboundFlagError(ConfigurationError):
    """Raised when an enabled expression names a flag with no boolean binding."""

    def __init__(self, node_id: str, flag: str, detail: str = "is not bound") -> None:
        self.node_id = node_id
        self.flag = flag
        super().__init__(f"Resource '{node_id}' enabled flag '{flag}' {detail}")


class DanglingDependencyError(ConfigurationError):
    """Raised when an enabled node depends on a node that was excluded."""

    def __init__(self, pairs: Sequence[tuple[str, str]]) -> None:
        self.pairs = list(pairs)
        details = ", ".join(
            f"'{dependent}' depends on disabled '{dependency}'"
            for dependent, dependency in self.pairs
        )
        super().__init__(f"Unresolvable dependency: {details}")


class CycleDetectedError(ConfigurationError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, node_ids: Sequence[str]) -> None:
        self.node_ids = list(node_ids)
        super().__init__(f"Circular dependency detected involving: {self.node_ids}")


class SpecLoadError(ConfigurationError):
    """Raised when a resource document cannot be loaded or validated."""

    pass


class SettingsError(ConfigurationError):
    """Raised when runtime settings fail validation."""

    pass


class ConfigurationErrors(ConfigurationError):
    """All configuration problems found in one validation pass."""

    def __init__(self, errors: Iterable[ConfigurationError]) -> None:
        self.errors = list(errors)
        lines = "\n  - ".join(str(e) for e in self.errors)
        super().__init__(f"Configuration validation failed:\n  - {lines}")


def flatten_errors(error: ConfigurationError) -> list[ConfigurationError]:
    if isinstance(error, ConfigurationErrors):
        return list(error.errors)
    return [error]


def raise_collected(errors: Sequence[ConfigurationError]) -> None:
    """Raise the single collected error as-is, or all of them aggregated."""
    if not errors:
        return
    if len(errors) == 1:
        raise errors[0]
    raise ConfigurationErrors(errors)


class GraphFrozenError(RuntimeError):
    """Raised when a frozen graph is mutated."""

    pass


class ProviderError(Exception):
    """Raised by a provider when an operation fails permanently."""

    pass


class ProviderTransientError(ProviderError):
    """Raised by a provider for failures it signals as retryable (e.g. throttling)."""

    pass
