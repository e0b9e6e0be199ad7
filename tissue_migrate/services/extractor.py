from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import pandas as pd

from tissue_migrate.db.persistence import Persistence
from tissue_migrate.models.graph import GraphNode
from tissue_migrate.models.schema import DomainSchema

from .field_mapper import AttributePath, FieldMapper

"""Extractor: persisted target objects -> CSV, the reverse of a migration.

One output column per mapped field, in mapping order. Each column's value is
the field's first attribute path resolved on the fetched object; referenced
objects are fetched on demand (independent references by identifier,
dependents by owner).
"""

__all__ = [
    "Extractor",
]

logger = logging.getLogger(__name__)


class Extractor:
    def __init__(self, persistence: Persistence, schema: DomainSchema, mapper: FieldMapper) -> None:
        self.persistence = persistence
        self.schema = schema
        self.mapper = mapper
        self.target = mapper.target
        self.columns: dict[str, AttributePath] = {m.field: m.paths[0] for m in mapper.mappings}

    def extract(self, identifiers: Iterable[Any]) -> Iterator[GraphNode]:
        """Yield each target object found; identifiers without an object are skipped."""
        for identifier in identifiers:
            node = self.persistence.find(GraphNode(self.schema, self.target, identifier=identifier))
            if node is None:
                logger.debug(f"Extract target {self.target} {identifier} not found")
                continue
            yield node

    def record(self, node: GraphNode) -> dict[str, Any]:
        return {field: self.path_value(node, path) for field, path in self.columns.items()}

    def path_value(self, node: GraphNode, path: AttributePath) -> Any:
        current: GraphNode | None = node
        for attr in path.parents:
            current = self._reference(current, attr)  # type: ignore[arg-type]
            if current is None:
                return None
        value = current.get(path.terminal.name)  # type: ignore[union-attr]
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return value

    def _reference(self, node: GraphNode, attr: Any) -> GraphNode | None:
        if attr.dependent:
            owned = self.persistence.query(GraphNode(self.schema, attr.target, owner=node))
            return owned[0] if owned else None
        ref = node.get(attr.name)
        if isinstance(ref, list):
            ref = ref[0] if ref else None
        if ref is None:
            return None
        if ref.loaded:
            return ref
        return self.persistence.find(GraphNode(self.schema, ref.class_name, identifier=ref.identifier))

    def to_frame(self, identifiers: Iterable[Any]) -> pd.DataFrame:
        rows = [self.record(node) for node in self.extract(identifiers)]
        return pd.DataFrame(rows, columns=list(self.columns))

    def run(self, identifiers: Iterable[Any], output: Path | str) -> int:
        """Write the extract CSV and return the number of records written."""
        df = self.to_frame(identifiers)
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False)
        logger.info(f"Extracted {len(df)} {self.target} records to {path}")
        return len(df)
