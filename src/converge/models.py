"""Pydantic models for resource documents with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to resource graph nodes
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .graph import RESERVED_ROOTS, VALID_NODE_ID_PATTERN, ResourceKind

VALID_FLAG_PATTERN = r"^!?\s*[A-Za-z_][A-Za-z0-9_]*$"
VALID_VARIABLE_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

VariableValue = bool | int | float | str


class VariableSpec(BaseModel):
    """Document variable with a default value.

    Boolean variables double as flags for `enabled` expressions.
    """

    model_config = {"extra": "forbid"}

    default: VariableValue | None = None
    description: str | None = None


class ResourceDeclaration(BaseModel):
    """A single resource as declared in a document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    id: Annotated[str, Field(pattern=VALID_NODE_ID_PATTERN)]
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)

    # true/false, a flag name, or a negated flag name ("!flag")
    enabled: bool | str = True

    # Explicit dependency ids; implicit ones come from ${id.output} references
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("id")
    @classmethod
    def validate_not_reserved(cls, v: str) -> str:
        if v in RESERVED_ROOTS:
            raise ValueError(f"id '{v}' is reserved")
        return v

    @field_validator("enabled")
    @classmethod
    def validate_enabled(cls, v: bool | str) -> bool | str:
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in ("true", "false"):
                return lowered == "true"
            if not re.match(VALID_FLAG_PATTERN, v.strip()):
                raise ValueError(f"enabled must be a boolean or a flag name: {v!r}")
            return v.strip()
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for dep in v:
            if not re.match(VALID_NODE_ID_PATTERN, dep):
                raise ValueError(f"dependsOn entry is not a valid resource id: {dep!r}")
        return list(dict.fromkeys(v))


class StackSpec(BaseModel):
    """A resource document: variables plus resource declarations."""

    model_config = {"extra": "forbid"}

    name: str | None = None
    variables: dict[str, VariableSpec] = Field(default_factory=dict)
    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @field_validator("variables", mode="before")
    @classmethod
    def normalize_variables(cls, v: Any) -> Any:
        # Shorthand: `create_cluster: true` means `create_cluster: {default: true}`
        if not isinstance(v, dict):
            return v
        normalized: dict[str, Any] = {}
        for name, value in v.items():
            if not re.match(VALID_VARIABLE_NAME_PATTERN, str(name)):
                raise ValueError(f"invalid variable name: {name!r}")
            normalized[str(name)] = value if isinstance(value, dict) else {"default": value}
        return normalized

    @model_validator(mode="after")
    def validate_has_resources(self) -> StackSpec:
        if not self.resources:
            raise ValueError("document declares no resources")
        return self

    def variable_defaults(self) -> dict[str, VariableValue | None]:
        return {name: var.default for name, var in self.variables.items()}
