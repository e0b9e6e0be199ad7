from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

import pandas as pd

from tissue_migrate.config.loader import ConfigurationError, read_yaml

"""Domain schema description table.

The schema is read once at startup from YAML::

    classes:
      Participant:
        attributes:
          name: string
          first_name: {type: string, mandatory: true}
      Specimen:
        table: specimen
        derivatives: child_specimens
        attributes:
          label: {type: string, key: true, unique: true, mandatory: true}
          specimen_type: {type: vocabulary, category: specimen_type}
          participant: {type: reference, target: Participant}
          child_specimens: {type: collection, target: Specimen, dependent: true}

Every attribute becomes an AttributeSchema which is the typed accessor used by
graph construction; nothing looks attributes up by reflection.
"""

__all__ = [
    "AttributeSchema",
    "ClassSchema",
    "DomainSchema",
    "load_schema",
]

SCALAR_TYPES = {"string", "integer", "float", "boolean", "date"}
ATTRIBUTE_TYPES = SCALAR_TYPES | {"vocabulary", "reference", "collection"}

_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0"}


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _coerce_scalar(kind: str, value: Any) -> Any:
    if kind in ("string", "vocabulary"):
        return value.strip() if isinstance(value, str) else str(value)
    if kind == "integer":
        if isinstance(value, str):
            value = value.strip()
            return int(float(value)) if "." in value else int(value)
        return int(value)
    if kind == "float":
        return float(value.strip()) if isinstance(value, str) else float(value)
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    if kind == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return pd.to_datetime(str(value).strip()).date()
    raise ValueError(f"unsupported scalar type {kind}")


@dataclass(frozen=True)
class AttributeSchema:
    """Typed accessor for one domain attribute."""
    name: str
    type: str  # one of ATTRIBUTE_TYPES
    target: str | None = None  # reference / collection element class
    element: str | None = None  # scalar element type of a value collection
    category: str | None = None  # vocabulary category
    mandatory: bool = False
    dependent: bool = False  # target is owned by the declaring object
    key: bool = False  # part of the natural key
    unique: bool = False  # uniquified by the ``unique`` run option

    @property
    def is_reference(self) -> bool:
        """Whether the attribute navigates to another domain object."""
        return self.type == "reference" or (self.type == "collection" and self.target is not None)

    @property
    def is_collection(self) -> bool:
        return self.type == "collection"

    @property
    def is_vocabulary(self) -> bool:
        return self.type == "vocabulary" or (self.is_collection and self.element == "vocabulary")

    @property
    def vocabulary_category(self) -> str:
        return self.category or self.name

    def coerce(self, value: Any) -> Any:
        """Convert a raw input value to this attribute's type.

        Raises:
            ValueError: if the value cannot be converted
        """
        if self.is_reference:
            return value
        kind = self.element if self.is_collection else self.type
        return _coerce_scalar(kind or "string", value)


@dataclass(frozen=True)
class ClassSchema:
    name: str
    attributes: dict[str, AttributeSchema]
    table: str  # change-log table name of persisted objects
    derivatives: str | None = None  # dependent collection holding derived objects

    def attribute(self, name: str) -> AttributeSchema:
        try:
            return self.attributes[name]
        except KeyError:
            raise ConfigurationError(f"{self.name} has no attribute '{name}'") from None

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    @property
    def key_attributes(self) -> list[AttributeSchema]:
        return [a for a in self.attributes.values() if a.key]

    @property
    def mandatory_attributes(self) -> list[AttributeSchema]:
        return [a for a in self.attributes.values() if a.mandatory]

    @property
    def unique_attributes(self) -> list[AttributeSchema]:
        return [a for a in self.attributes.values() if a.unique]

    @property
    def reference_attributes(self) -> list[AttributeSchema]:
        return [a for a in self.attributes.values() if a.is_reference]


@dataclass(frozen=True)
class DomainSchema:
    classes: dict[str, ClassSchema] = field(default_factory=dict)

    def get(self, class_name: str) -> ClassSchema:
        try:
            return self.classes[class_name]
        except KeyError:
            raise ConfigurationError(f"unknown domain class: {class_name}") from None

    def __contains__(self, class_name: object) -> bool:
        return class_name in self.classes

    def dependency(self, parent: str, child: str) -> AttributeSchema | None:
        """Return the parent attribute which owns child objects, if any."""
        for attr in self.get(parent).attributes.values():
            if attr.dependent and attr.target == child:
                return attr
        return None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DomainSchema:
        classes_raw = data.get("classes") if isinstance(data, dict) else None
        if not isinstance(classes_raw, dict) or not classes_raw:
            raise ConfigurationError("schema must define a non-empty 'classes' mapping")
        classes: dict[str, ClassSchema] = {}
        for cls_name, cls_raw in classes_raw.items():
            cls_raw = cls_raw or {}
            attrs: dict[str, AttributeSchema] = {}
            for attr_name, spec in (cls_raw.get("attributes") or {}).items():
                # 省略形 "quantity: float" を許容
                if isinstance(spec, str):
                    spec = {"type": spec}
                if not isinstance(spec, dict):
                    raise ConfigurationError(f"{cls_name}.{attr_name}: invalid attribute spec {spec!r}")
                kind = spec.get("type", "string")
                if kind not in ATTRIBUTE_TYPES:
                    raise ConfigurationError(f"{cls_name}.{attr_name}: unknown type '{kind}'")
                attrs[attr_name] = AttributeSchema(
                    name=attr_name,
                    type=kind,
                    target=spec.get("target"),
                    element=spec.get("element"),
                    category=spec.get("category"),
                    mandatory=bool(spec.get("mandatory", False)),
                    dependent=bool(spec.get("dependent", False)),
                    key=bool(spec.get("key", False)),
                    unique=bool(spec.get("unique", False)),
                )
            classes[cls_name] = ClassSchema(
                name=cls_name,
                attributes=attrs,
                table=cls_raw.get("table") or _snake_case(cls_name),
                derivatives=cls_raw.get("derivatives"),
            )
        schema = DomainSchema(classes)
        schema._check_references()
        return schema

    def _check_references(self) -> None:
        for cls in self.classes.values():
            for attr in cls.attributes.values():
                if attr.type == "reference" and attr.target is None:
                    raise ConfigurationError(f"{cls.name}.{attr.name}: reference without target")
                if attr.target is not None and attr.target not in self.classes:
                    raise ConfigurationError(
                        f"{cls.name}.{attr.name}: target class '{attr.target}' is not defined"
                    )
            if cls.derivatives is not None:
                attr = cls.attribute(cls.derivatives)
                if not (attr.is_collection and attr.dependent and attr.target):
                    raise ConfigurationError(
                        f"{cls.name}.{cls.derivatives}: derivatives must be a dependent collection"
                    )


def load_schema(path: Path) -> DomainSchema:
    return DomainSchema.from_dict(read_yaml(path, "schema") or {})
