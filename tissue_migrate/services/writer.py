from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any

from tissue_migrate.db.persistence import Persistence
from tissue_migrate.models.graph import GraphNode, Lineage
from tissue_migrate.models.migration_result import WriteRecord

from .matcher import match

"""Graph writer: persist one row's target graph through the Persistence collaborator.

Phase 1 saves every non-derived node depth first: independent references
before the node that refers to them, dependents after their owner. A node is
looked up by its template; a found root or dependent is updated (left
unchanged under create_only), a found independent reference is only adopted.

Phase 2 saves derived nodes in breadth-first order, grouped by lineage root
and class. Each group is paired with the already-persisted derivatives of the
same root by the identity matcher; matched nodes take over the existing
identifier, unmatched nodes are created.
"""

__all__ = [
    "GraphWriter",
]

logger = logging.getLogger(__name__)


class GraphWriter:
    def __init__(self, persistence: Persistence, create_only: bool = False) -> None:
        self.persistence = persistence
        self.create_only = create_only

    def write(self, root: GraphNode) -> WriteRecord:
        record = WriteRecord()
        seen: set[int] = set()
        derived: list[GraphNode] = []
        self._save(root, record, seen, derived, update=True)
        self._save_derived(derived, record, seen)
        return record

    def _save(
        self,
        node: GraphNode,
        record: WriteRecord,
        seen: set[int],
        derived: list[GraphNode],
        update: bool,
    ) -> None:
        if id(node) in seen:
            return
        seen.add(id(node))
        self._save_independents(node, record, seen, derived)
        self._persist(node, record, update)
        self._save_dependents(node, record, seen, derived)

    def _save_independents(self, node: GraphNode, record: WriteRecord, seen: set[int], derived: list[GraphNode]) -> None:
        for attr, ref in node.references():
            if not attr.dependent:
                self._save(ref, record, seen, derived, update=False)

    def _save_dependents(self, node: GraphNode, record: WriteRecord, seen: set[int], derived: list[GraphNode]) -> None:
        for attr, ref in node.references():
            if not attr.dependent or id(ref) in seen:
                continue
            if ref.lineage is not None:
                derived.append(ref)
            else:
                self._save(ref, record, seen, derived, update=True)

    def _persist(self, node: GraphNode, record: WriteRecord, update: bool) -> None:
        if node.identifier is not None and not node.loaded:
            # identifier-only stub fetched from persistence
            return
        if node.identifier is None:
            existing = self.persistence.find(node.template())
            if existing is None:
                self.persistence.create(node)
                record.created.append(node)
                logger.debug(f"created {node!r}")
                return
            node.identifier = existing.identifier
        if update and not self.create_only:
            self.persistence.update(node)
            record.updated.append(node)
            logger.debug(f"updated {node!r}")
        else:
            record.unchanged.append(node)

    def _save_derived(self, derived: list[GraphNode], record: WriteRecord, seen: set[int]) -> None:
        claimed: set[Any] = set()
        pending = derived
        while pending:
            groups: OrderedDict[tuple[str, int], list[GraphNode]] = OrderedDict()
            for node in pending:
                if id(node) in seen:
                    continue
                seen.add(id(node))
                key = (node.class_name, id(node.lineage.root))  # type: ignore[union-attr]
                groups.setdefault(key, []).append(node)
            pending = []
            for nodes in groups.values():
                for node in nodes:
                    self._save_independents(node, record, seen, pending)
                self._save_group(nodes, record, claimed)
                for node in nodes:
                    self._save_dependents(node, record, seen, pending)

    def _save_group(self, nodes: list[GraphNode], record: WriteRecord, claimed: set[Any]) -> None:
        first = nodes[0]
        template = GraphNode(first.schema, first.class_name, lineage=Lineage(root=first.lineage.root))  # type: ignore[union-attr]
        existing = [e for e in self.persistence.query(template) if e.identifier not in claimed]
        matched: set[int] = set()
        for new, old in match(nodes, existing):
            claimed.add(old.identifier)
            matched.add(id(new))
            new.identifier = old.identifier
            if self.create_only:
                record.unchanged.append(new)
            else:
                self.persistence.update(new)
                record.updated.append(new)
                logger.debug(f"updated derived {new!r}")
        for node in nodes:
            if id(node) not in matched:
                if node.identifier is None:
                    self.persistence.create(node)
                    record.created.append(node)
                    claimed.add(node.identifier)
                    logger.debug(f"created derived {node!r}")
