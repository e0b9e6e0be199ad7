from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

from tissue_migrate.config.loader import ConfigurationError, read_yaml

"""Value filter: (category, raw value) -> canonical value substitution.

Filter files map a category to a table of input value -> replacement::

    tissue_site:
      Esoph: Esophagus, NOS
      Pancreas: Pancreas, NOS
    participant.gender:
      M: Male Gender

For vocabulary attributes the category is the vocabulary category; for other
attributes it is the dotted attribute path. Both keys match case-insensitively.
Later files override earlier ones for the same (category, value).
"""

__all__ = [
    "ValueFilter",
    "load_filter_files",
]


def _fold(value: Any) -> str:
    return str(value).strip().casefold()


class ValueFilter:
    def __init__(self, table: dict[str, dict[Any, Any]] | None = None) -> None:
        self._table: dict[str, dict[str, Any]] = {}
        for category, subs in (table or {}).items():
            self.add(category, subs)

    def add(self, category: str, substitutions: dict[Any, Any]) -> None:
        if not isinstance(substitutions, dict):
            raise ConfigurationError(f"filter for '{category}' must be a mapping")
        folded = self._table.setdefault(_fold(category), {})
        for raw, canonical in substitutions.items():
            folded[_fold(raw)] = canonical

    def substitute(self, category: str, raw: Any) -> Any:
        """Return the configured substitute for raw, or raw unchanged."""
        if raw is None:
            return None
        subs = self._table.get(_fold(category))
        if not subs:
            return raw
        return subs.get(_fold(raw), raw)

    def __bool__(self) -> bool:
        return bool(self._table)


def load_filter_files(paths: Sequence[Path | str]) -> ValueFilter:
    vf = ValueFilter()
    for p in paths:
        data = read_yaml(Path(p), "filter") or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"filter file {p} must contain a mapping")
        for category, subs in data.items():
            vf.add(str(category), subs or {})
    return vf
