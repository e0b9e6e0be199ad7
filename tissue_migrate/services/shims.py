from __future__ import annotations

import importlib
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from tissue_migrate.config.loader import ConfigurationError, read_yaml
from tissue_migrate.models.graph import GraphNode
from tissue_migrate.models.row_data import RowData

"""Shim registry: per-(class, attribute) value transformations and per-class hooks.

Three kinds of customization are registered:

- attribute shims ``fn(node, value, row) -> value``: transform the mapped,
  filtered or defaulted value before it is set. Returning None leaves the
  attribute unset; raising rejects the row.
- class hooks ``fn(node, row)``: run after a node of the class is built and may
  add auxiliary nodes (a derived specimen, a synthesized event, ...).
- validators ``fn(node) -> bool``: migration validity checks.

Lookup is by exact class name; a subclass never inherits its parent's shims.

Shim files reference functions by import string::

    shims:
      - class: Participant
        attribute: name
        function: galena.shims:split_initials
    hooks:
      - class: Specimen
        function: galena.shims:add_frozen_derivative
    validators:
      - class: SpecimenCollectionGroup
        function: galena.shims:has_spn
"""

__all__ = [
    "ShimRegistry",
    "load_shim_files",
]

AttributeShim = Callable[[GraphNode, Any, RowData], Any]
ClassHook = Callable[[GraphNode, RowData], None]
Validator = Callable[[GraphNode], bool]


class ShimRegistry:
    def __init__(self) -> None:
        self._shims: dict[tuple[str, str], AttributeShim] = {}
        self._hooks: dict[str, list[ClassHook]] = {}
        self._validators: dict[str, list[Validator]] = {}

    def register(self, class_name: str, attribute: str, fn: AttributeShim) -> AttributeShim:
        key = (class_name, attribute)
        if key in self._shims:
            raise ConfigurationError(f"shim for {class_name}.{attribute} is already registered")
        self._shims[key] = fn
        return fn

    def shim(self, class_name: str, attribute: str) -> Callable[[AttributeShim], AttributeShim]:
        """Decorator form of register."""
        def deco(fn: AttributeShim) -> AttributeShim:
            return self.register(class_name, attribute, fn)
        return deco

    def register_hook(self, class_name: str, fn: ClassHook) -> ClassHook:
        self._hooks.setdefault(class_name, []).append(fn)
        return fn

    def register_validator(self, class_name: str, fn: Validator) -> Validator:
        self._validators.setdefault(class_name, []).append(fn)
        return fn

    def lookup(self, class_name: str, attribute: str) -> AttributeShim | None:
        return self._shims.get((class_name, attribute))

    def apply(self, node: GraphNode, attribute: str, value: Any, row: RowData) -> Any:
        """Transform value through the (class, attribute) shim, if one is registered."""
        fn = self._shims.get((node.class_name, attribute))
        if fn is None:
            return value
        return fn(node, value, row)

    def hooks_for(self, class_name: str) -> list[ClassHook]:
        return list(self._hooks.get(class_name, []))

    def validators_for(self, class_name: str) -> list[Validator]:
        return list(self._validators.get(class_name, []))

    def check_classes(self, known: Sequence[str] | Any) -> None:
        """Raise ConfigurationError for registrations naming a class not in ``known``."""
        names = {c for c, _ in self._shims} | set(self._hooks) | set(self._validators)
        unknown = sorted(n for n in names if n not in known)
        if unknown:
            raise ConfigurationError(f"shims registered for unknown classes: {unknown}")

    def __len__(self) -> int:
        return (
            len(self._shims)
            + sum(len(v) for v in self._hooks.values())
            + sum(len(v) for v in self._validators.values())
        )


def _import_function(ref: str) -> Callable[..., Any]:
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"shim function reference must be 'module:function': {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import shim module '{module_name}': {e}") from e
    fn = module
    for part in attr.split("."):
        fn = getattr(fn, part, None)
        if fn is None:
            raise ConfigurationError(f"shim function '{ref}' not found")
    if not callable(fn):
        raise ConfigurationError(f"shim reference '{ref}' is not callable")
    return fn


def _entries(data: dict[str, Any], section: str, path: Path) -> list[dict[str, Any]]:
    entries = data.get(section) or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ConfigurationError(f"shim file {path}: '{section}' must be a list of mappings")
    for e in entries:
        if "class" not in e or "function" not in e:
            raise ConfigurationError(f"shim file {path}: {section} entry needs class and function: {e}")
    return entries


def load_shim_files(paths: Sequence[Path | str], registry: ShimRegistry | None = None) -> ShimRegistry:
    registry = registry or ShimRegistry()
    for p in paths:
        path = Path(p)
        data = read_yaml(path, "shim") or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"shim file {path} must contain a mapping")
        for e in _entries(data, "shims", path):
            if "attribute" not in e:
                raise ConfigurationError(f"shim file {path}: shim entry needs attribute: {e}")
            registry.register(e["class"], e["attribute"], _import_function(e["function"]))
        for e in _entries(data, "hooks", path):
            registry.register_hook(e["class"], _import_function(e["function"]))
        for e in _entries(data, "validators", path):
            registry.register_validator(e["class"], _import_function(e["function"]))
    return registry
