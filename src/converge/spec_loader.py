"""Resource document loading with validation.

SECURITY: File reads enforce a size limit. Input validation is performed
at the boundary.

Build-time values are substituted while nodes are constructed:
- `${var.<name>}` from document variables and command line overrides
- `${run.suffix}` from the suffix passed in (kept in state between runs),
  or a random one materialized once per run

Both are stored immutably on the nodes that reference them; nothing is
re-evaluated later in the run.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_SIZE_BYTES
from .errors import ConfigurationError, SpecLoadError, raise_collected
from .graph import REFERENCE_PATTERN, ResourceNode
from .models import StackSpec

logger = logging.getLogger(__name__)

RUN_SUFFIX_BYTES = 4


@dataclass(frozen=True)
class Stack:
    """Loaded document ready for reconciliation."""

    name: str
    nodes: tuple[ResourceNode, ...]
    variables: Mapping[str, Any] = field(default_factory=dict)
    run_suffix: str = ""


def new_run_suffix() -> str:
    return secrets.token_hex(RUN_SUFFIX_BYTES)


def parse_value_literal(raw: str) -> bool | int | str:
    """Parse a command line variable value (`true`, `false`, integers, strings)."""
    lowered = raw.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    try:
        return int(raw)
    except ValueError:
        return raw


def parse_var_assignments(assignments: Iterable[str]) -> dict[str, bool | int | str]:
    """Parse `name=value` pairs.

    Raises:
        SpecLoadError: If an assignment has no `=` or an empty name.
    """
    result: dict[str, bool | int | str] = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name.strip():
            raise SpecLoadError(f"Variable assignment must be name=value: {assignment!r}")
        result[name.strip()] = parse_value_literal(value)
    return result


def read_document(path: Path) -> dict[str, Any]:
    """Read a YAML document and unwrap the optional Kubernetes-style envelope.

    Raises:
        SpecLoadError: If the file is missing, too large or not a mapping.
    """
    if not path.exists():
        raise SpecLoadError(f"Resource document not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat resource document {path}: {e}") from e

    if file_size > MAX_DOCUMENT_SIZE_BYTES:
        raise SpecLoadError(
            f"Resource document exceeds maximum size of {MAX_DOCUMENT_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read resource document {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Resource document must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        metadata = raw_data.get("metadata") or {}
        if "name" not in spec_data and isinstance(metadata, dict) and metadata.get("name"):
            spec_data = {**spec_data, "name": metadata["name"]}
        return spec_data

    return raw_data


def validate_document(data: Mapping[str, Any], source: str = "<document>") -> StackSpec:
    """Validate raw document data.

    Raises:
        SpecLoadError: With every validation problem listed.
    """
    try:
        return StackSpec.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def _substitute(
    value: Any,
    variables: Mapping[str, Any],
    run_suffix: str,
    node_id: str,
    errors: list[ConfigurationError],
) -> Any:
    if isinstance(value, dict):
        return {k: _substitute(v, variables, run_suffix, node_id, errors) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, variables, run_suffix, node_id, errors) for v in value]
    if not isinstance(value, str):
        return value

    def lookup(root: str, path: str) -> Any:
        if root == "run":
            if path != "suffix":
                errors.append(
                    SpecLoadError(f"Resource '{node_id}' uses unknown run value '{path}'")
                )
                return ""
            return run_suffix
        if path not in variables:
            errors.append(
                SpecLoadError(f"Resource '{node_id}' references undefined variable '{path}'")
            )
            return ""
        return variables[path]

    whole = REFERENCE_PATTERN.fullmatch(value)
    if whole and whole.group(1) in ("var", "run"):
        return lookup(whole.group(1), whole.group(2))

    def replace(match: re.Match[str]) -> str:
        if match.group(1) not in ("var", "run"):
            return match.group(0)
        return str(lookup(match.group(1), match.group(2)))

    return REFERENCE_PATTERN.sub(replace, value)


def build_stack(
    spec: StackSpec,
    overrides: Mapping[str, Any] | None = None,
    run_suffix: str | None = None,
    default_name: str = "stack",
) -> Stack:
    """Turn a validated document into graph nodes.

    Raises:
        SpecLoadError: If an override names an undeclared variable or a
            value references one.
        ConfigurationErrors: If several such problems were found.
    """
    errors: list[ConfigurationError] = []
    variables: dict[str, Any] = spec.variable_defaults()
    for name, value in (overrides or {}).items():
        if name not in variables:
            errors.append(SpecLoadError(f"Variable '{name}' is not declared in the document"))
            continue
        variables[name] = value

    suffix = run_suffix or new_run_suffix()
    nodes = []
    for declaration in spec.resources:
        attributes = _substitute(declaration.attributes, variables, suffix, declaration.id, errors)
        nodes.append(
            ResourceNode(
                id=declaration.id,
                kind=declaration.kind,
                attributes=attributes,
                enabled=declaration.enabled,
                depends_on=tuple(declaration.depends_on),
            )
        )

    raise_collected(errors)
    return Stack(
        name=spec.name or default_name,
        nodes=tuple(nodes),
        variables=variables,
        run_suffix=suffix,
    )


def load_stack(
    path: Path,
    overrides: Mapping[str, Any] | None = None,
    run_suffix: str | None = None,
) -> Stack:
    """Load, validate and build a resource document from YAML."""
    spec = validate_document(read_document(path), source=str(path))
    stack = build_stack(spec, overrides, run_suffix, default_name=path.stem)
    logger.info(
        "Loaded resource document",
        extra={"path": str(path), "stack": stack.name, "resource_count": len(stack.nodes)},
    )
    return stack
