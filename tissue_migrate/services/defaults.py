from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

from tissue_migrate.config.loader import ConfigurationError, read_yaml

"""Default provider.

Default files map attribute paths (relative to the target class) to values.
Files are loaded base first, then overrides; the most recently loaded layer is
the most specific and wins::

    # conf/defaults.yml
    participant.gender: Unspecified
    collection_protocol:          # pre-existing reference object
      title: Galena CP

A reference-typed default is a mapping describing the referenced object; the
migrator builds (and in commit mode finds) that object.
"""

__all__ = [
    "ABSENT",
    "DefaultProvider",
    "load_default_files",
]


class _Absent:
    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:  # pragma: no cover (trivial)
        return "<ABSENT>"


ABSENT = _Absent()


class DefaultProvider:
    def __init__(self, layers: Sequence[dict[str, Any]] | None = None) -> None:
        # layers[0] = base, layers[-1] = 最優先
        self._layers: list[dict[str, Any]] = []
        for layer in layers or []:
            self.push(layer)

    def push(self, layer: dict[str, Any]) -> None:
        """Add a more specific layer on top of the existing ones."""
        if not isinstance(layer, dict):
            raise ConfigurationError(f"default layer must be a mapping, got {type(layer).__name__}")
        self._layers.append({str(k).strip(): v for k, v in layer.items()})

    def default_for(self, path: str | Any) -> Any:
        """Value for the attribute path from the most specific layer defining it, else ABSENT."""
        key = str(path)
        for layer in reversed(self._layers):
            if key in layer and layer[key] is not None:
                return layer[key]
        return ABSENT

    def paths(self) -> list[str]:
        """Every path with a default, in first-definition order."""
        seen: dict[str, None] = {}
        for layer in self._layers:
            for key, value in layer.items():
                if value is not None:
                    seen.setdefault(key, None)
        return list(seen)


def load_default_files(paths: Sequence[Path | str]) -> DefaultProvider:
    provider = DefaultProvider()
    for p in paths:
        data = read_yaml(Path(p), "defaults") or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"defaults file {p} must contain a mapping")
        provider.push(data)
    return provider
