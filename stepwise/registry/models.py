"""Pydantic models describing registered modules."""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import ValidationError


def parse_module_path(path: str) -> Tuple[str, str, str]:
    """Split ``category.module.function`` into its three segments."""
    parts = path.split(".") if isinstance(path, str) else []
    if len(parts) != 3 or not all(p.strip() for p in parts):
        raise ValidationError(
            f"Invalid module path '{path}': expected category.module.function"
        )
    category, module, function = parts
    return category, module, function


class ParamDescriptor(BaseModel):
    """Describes a single input parameter of a module."""

    name: str
    type_ref: str = Field(default="any", description="Informal type name or schema reference")
    required: bool = True
    description: Optional[str] = None
    default_json: Optional[Any] = None


class ModuleDescriptor(BaseModel):
    """A registered, side-effecting callable addressed by a three-part path."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    category: str
    module: str
    function: str
    handler: Callable[..., Any] = Field(exclude=True)
    description: Optional[str] = None
    params: List[ParamDescriptor] = Field(default_factory=list)

    # Resilience settings
    integration: Optional[str] = Field(
        default=None, description="Rate limit / breaker key; defaults to the module segment"
    )
    timeout: Optional[float] = None

    @field_validator("category", "module", "function")
    @classmethod
    def _ensure_segment(cls, v: str) -> str:
        if not v or "." in v:
            raise ValueError("path segments must be non-empty and contain no dots")
        return v

    @property
    def path(self) -> str:
        return f"{self.category}.{self.module}.{self.function}"

    @property
    def resilience_key(self) -> str:
        return self.integration or self.module

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.params if p.required]
