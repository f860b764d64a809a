"""Module registry: maps ``category.module.function`` paths to callables."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..errors import DuplicateModuleError, UnknownModuleError, ValidationError
from .models import ModuleDescriptor, ParamDescriptor, parse_module_path
from .validation import ValidationReport, ensure_valid, validate_definition

logger = logging.getLogger(__name__)

ParamSpec = Union[ParamDescriptor, str, Dict[str, Any]]


def _as_param(spec: ParamSpec) -> ParamDescriptor:
    if isinstance(spec, ParamDescriptor):
        return spec
    if isinstance(spec, str):
        return ParamDescriptor(name=spec)
    return ParamDescriptor(**spec)


class ModuleRegistry:
    """Closed registry of module descriptors.

    Modules are registered explicitly at process start. Once :meth:`freeze` is
    called the registry is read-only for the rest of the process lifetime.
    """

    def __init__(self) -> None:
        self._modules: Dict[str, ModuleDescriptor] = {}
        self._frozen = False

    def register(self, path: str, descriptor: ModuleDescriptor) -> None:
        """Register ``descriptor`` under ``path``.

        Raises:
            ValidationError: if ``path`` is malformed or disagrees with the descriptor.
            DuplicateModuleError: if ``path`` is already registered.
            RuntimeError: if the registry has been frozen.
        """
        if self._frozen:
            raise RuntimeError(f"Cannot register '{path}': module registry is frozen")
        segments = parse_module_path(path)
        if segments != (descriptor.category, descriptor.module, descriptor.function):
            raise ValidationError(
                f"Module path '{path}' does not match descriptor '{descriptor.path}'"
            )
        if path in self._modules:
            raise DuplicateModuleError(f"Module '{path}' is already registered")
        self._modules[path] = descriptor
        logger.debug(f"Registered module {path} (integration={descriptor.resilience_key})")

    def add(
        self,
        path: str,
        handler: Callable[..., Any],
        *,
        description: Optional[str] = None,
        params: Iterable[ParamSpec] = (),
        integration: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ModuleDescriptor:
        """Build a descriptor for ``handler`` and register it under ``path``."""
        category, module, function = parse_module_path(path)
        descriptor = ModuleDescriptor(
            category=category,
            module=module,
            function=function,
            handler=handler,
            description=description or (handler.__doc__ or "").strip().split("\n")[0] or None,
            params=[_as_param(p) for p in params],
            integration=integration,
            timeout=timeout,
        )
        self.register(path, descriptor)
        return descriptor

    def register_function(self, path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`add`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.add(path, func, **kwargs)
            return func

        return decorator

    def lookup(self, path: str) -> ModuleDescriptor:
        """Return the descriptor registered under exactly ``path``."""
        try:
            return self._modules[path]
        except KeyError:
            raise UnknownModuleError(path) from None

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def paths(self) -> List[str]:
        return sorted(self._modules)

    def descriptors(self) -> List[ModuleDescriptor]:
        return [self._modules[p] for p in self.paths()]

    def __contains__(self, path: object) -> bool:
        return path in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def describe(self) -> str:
        """Render the registry as a markdown catalog of available modules."""
        lines = ["# Available Modules", "", "Use these modules in the format: category.module.function", ""]
        current_category = current_module = None
        for descriptor in self.descriptors():
            if descriptor.category != current_category:
                current_category, current_module = descriptor.category, None
                lines += [f"## {descriptor.category}", ""]
            if descriptor.module != current_module:
                current_module = descriptor.module
                lines.append(f"### {descriptor.category}.{descriptor.module}")
            entry = f"- **{descriptor.path}**"
            if descriptor.description:
                entry += f": {descriptor.description}"
            if descriptor.params:
                rendered = ", ".join(
                    p.name if p.required else f"{p.name}?" for p in descriptor.params
                )
                entry += f" (params: {rendered})"
            lines.append(entry)
        return "\n".join(lines).rstrip() + "\n"


# Process-wide default registry that module packages register into. Engine
# components always receive a registry explicitly.
MODULES = ModuleRegistry()


def register_module(path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Register a handler into the default :data:`MODULES` registry."""
    return MODULES.register_function(path, **kwargs)


__all__ = [
    "MODULES",
    "ModuleDescriptor",
    "ModuleRegistry",
    "ParamDescriptor",
    "ValidationReport",
    "ensure_valid",
    "parse_module_path",
    "register_module",
    "validate_definition",
]
