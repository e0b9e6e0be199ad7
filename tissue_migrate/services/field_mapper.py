from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tissue_migrate.config.loader import ConfigurationError, read_yaml
from tissue_migrate.models.graph import is_blank
from tissue_migrate.models.row_data import RowData
from tissue_migrate.models.schema import AttributeSchema, DomainSchema
from tissue_migrate.source.reader import normalize_field_name

"""Field mapper: input field name -> attribute path(s) in the target graph.

Mapping files are YAML mappings of field name to a dotted path relative to the
target class, a comma separated list of paths, or a mapping with ``path`` and
``optional``::

    initials: participant.name
    spn: specimen_collection_group.surgical_pathology_number
    site:
      path: specimen_characteristics.tissue_site
      optional: true

Paths are resolved once against the schema into attribute descriptor tuples.
"""

__all__ = [
    "AttributePath",
    "FieldMapper",
    "FieldMapping",
    "load_mapping_files",
]


@dataclass(frozen=True)
class AttributePath:
    """Resolved attribute path. ``attributes[i]`` is navigated from the node at depth i."""
    text: str
    attributes: tuple[AttributeSchema, ...]

    @property
    def terminal(self) -> AttributeSchema:
        return self.attributes[-1]

    @property
    def parents(self) -> tuple[AttributeSchema, ...]:
        return self.attributes[:-1]

    @property
    def depth(self) -> int:
        return len(self.attributes)

    def __str__(self) -> str:
        return self.text

    @staticmethod
    def resolve(schema: DomainSchema, root_class: str, text: str) -> AttributePath:
        """Resolve a dotted path against the schema.

        Raises:
            ConfigurationError: unknown attribute, or a non-terminal segment
                which is not reference valued
        """
        names = [n.strip() for n in text.split(".")]
        if not names or any(not n for n in names):
            raise ConfigurationError(f"malformed attribute path '{text}'")
        cls = schema.get(root_class)
        attrs: list[AttributeSchema] = []
        for i, name in enumerate(names):
            if not cls.has_attribute(name):
                raise ConfigurationError(
                    f"attribute path '{text}': {cls.name} has no attribute '{name}'"
                )
            attr = cls.attribute(name)
            attrs.append(attr)
            if i < len(names) - 1:
                if not attr.is_reference:
                    raise ConfigurationError(
                        f"attribute path '{text}': {cls.name}.{name} is not a reference"
                    )
                cls = schema.get(attr.target)  # type: ignore[arg-type]
        return AttributePath(text=".".join(names), attributes=tuple(attrs))


@dataclass(frozen=True)
class FieldMapping:
    field: str  # normalized input field name
    paths: tuple[AttributePath, ...]
    optional: bool = False


def _parse_entry(field: str, spec: Any) -> tuple[list[str], bool]:
    if isinstance(spec, str):
        return [p.strip() for p in spec.split(",") if p.strip()], False
    if isinstance(spec, list):
        return [str(p).strip() for p in spec], False
    if isinstance(spec, dict) and "path" in spec:
        paths, _ = _parse_entry(field, spec["path"])
        return paths, bool(spec.get("optional", False))
    raise ConfigurationError(f"mapping for field '{field}' is invalid: {spec!r}")


class FieldMapper:
    """Translate rows into (AttributePath, raw value) pairs."""

    def __init__(self, schema: DomainSchema, target: str, table: dict[str, Any]) -> None:
        self.schema = schema
        self.target = target
        schema.get(target)
        self._mappings: dict[str, FieldMapping] = {}
        for raw_field, spec in table.items():
            field = normalize_field_name(raw_field)
            if field in self._mappings:
                raise ConfigurationError(f"field '{raw_field}' is mapped more than once")
            texts, optional = _parse_entry(field, spec)
            if not texts:
                raise ConfigurationError(f"field '{raw_field}' has no attribute path")
            paths = tuple(AttributePath.resolve(schema, target, t) for t in texts)
            self._mappings[field] = FieldMapping(field=field, paths=paths, optional=optional)

    @property
    def mappings(self) -> list[FieldMapping]:
        return list(self._mappings.values())

    def mapping_for(self, field: str) -> FieldMapping | None:
        return self._mappings.get(normalize_field_name(field))

    def paths(self) -> list[AttributePath]:
        return [p for m in self._mappings.values() for p in m.paths]

    def map_row(self, row: RowData) -> Iterator[tuple[FieldMapping, AttributePath, Any]]:
        """Yield (mapping, path, raw value) for each mapped, non-blank field of the row.

        Unmapped fields are ignored. Blank values are skipped so that a default
        can be supplied later.
        """
        for field, mapping in self._mappings.items():
            value = row.values.get(field)
            if is_blank(value):
                continue
            for path in mapping.paths:
                yield mapping, path, value


def load_mapping_files(paths: Sequence[Path | str], schema: DomainSchema, target: str) -> FieldMapper:
    """Merge mapping files (later files may not redefine a field) into one FieldMapper."""
    table: dict[str, Any] = {}
    for p in paths:
        data = read_yaml(Path(p), "mapping") or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"mapping file {p} must contain a mapping")
        for field, spec in data.items():
            if normalize_field_name(field) in {normalize_field_name(f) for f in table}:
                raise ConfigurationError(f"field '{field}' is mapped more than once ({p})")
            table[field] = spec
    return FieldMapper(schema, target, table)
