from __future__ import annotations

import copy
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from tissue_migrate.models.graph import GraphNode, Lineage
from tissue_migrate.models.schema import DomainSchema

"""Persistence collaborator contract and the in-memory implementation.

Persistence works node by node on query-by-example templates: a template is a
GraphNode whose set scalar values, identifier, owner and lineage root are the
criteria. Referenced objects come back as identifier-only stubs.

Only independent (non-dependent) references are stored on an object;
dependent objects point at their owner instead.
"""

__all__ = [
    "InMemoryPersistence",
    "Persistence",
    "PersistenceError",
    "StoredObject",
]


class PersistenceError(Exception):
    """Raised when a create/update/find/query fails at the storage layer."""


class Persistence(Protocol):
    def create(self, node: GraphNode) -> GraphNode: ...

    def update(self, node: GraphNode) -> GraphNode: ...

    def find(self, template: GraphNode) -> GraphNode | None: ...

    def query(self, template: GraphNode) -> list[GraphNode]: ...

    def transaction(self) -> Any: ...

    def changes(self, since: datetime, before: datetime) -> Iterator[tuple[str, Any]]: ...


def stored_references(node: GraphNode) -> dict[str, Any]:
    """Independent reference attribute -> identifier (list for collections)."""
    refs: dict[str, Any] = {}
    for attr, ref in node.references():
        if attr.dependent:
            continue
        if ref.identifier is None:
            raise PersistenceError(
                f"{node.class_name}.{attr.name} references unsaved {ref.class_name}"
            )
        if attr.is_collection:
            refs.setdefault(attr.name, []).append(ref.identifier)
        else:
            refs[attr.name] = ref.identifier
    return refs


def lineage_record(node: GraphNode) -> tuple[Any, str | None, list[list[list[Any]]] | None]:
    """(root identifier, root class, steps as nested lists) of a derived node."""
    if node.lineage is None:
        return None, None, None
    root = node.lineage.root
    if root.identifier is None:
        raise PersistenceError(f"{node.class_name} lineage root {root!r} is not saved")
    return root.identifier, root.class_name, [[[k, v] for k, v in step] for step in node.lineage.steps]


def _lineage_steps(
    schema: DomainSchema, root_class: str, stored: list[list[list[Any]]],
) -> tuple[tuple[tuple[str, Any], ...], ...]:
    # each derivation level is an instance of the previous level's derivatives target
    steps = []
    class_name = root_class
    for group in stored:
        cls = schema.get(class_name)
        if cls.derivatives is None:
            raise PersistenceError(f"stored lineage derives from {class_name}, which has no derivatives")
        class_name = cls.attribute(cls.derivatives).target  # type: ignore[assignment]
        target = schema.get(class_name)
        steps.append(tuple(
            (name, target.attribute(name).coerce(value) if value is not None else None)
            for name, value in group
        ))
    return tuple(steps)


def build_node(
    schema: DomainSchema,
    class_name: str,
    identifier: Any,
    values: dict[str, Any],
    refs: dict[str, Any],
    owner_id: Any,
    owner_class: str | None,
    lineage_root_id: Any,
    lineage_root_class: str | None,
    lineage_steps: list[list[list[Any]]] | None,
) -> GraphNode:
    """Rebuild a GraphNode from a stored record (references become stubs)."""
    cls = schema.get(class_name)
    node = GraphNode(schema, class_name, identifier=identifier)
    for name, value in values.items():
        if cls.has_attribute(name) and value is not None:
            node.set(name, cls.attribute(name).coerce(value) if not isinstance(value, list)
                     else [cls.attribute(name).coerce(v) for v in value])
    for name, ref in refs.items():
        if not cls.has_attribute(name):
            continue
        target = cls.attribute(name).target
        if isinstance(ref, list):
            node.set(name, [GraphNode(schema, target, identifier=r) for r in ref])  # type: ignore[arg-type]
        else:
            node.set(name, GraphNode(schema, target, identifier=ref))  # type: ignore[arg-type]
    if owner_id is not None and owner_class is not None:
        node.owner = GraphNode(schema, owner_class, identifier=owner_id)
    if lineage_root_id is not None and lineage_root_class is not None:
        node.lineage = Lineage(
            root=GraphNode(schema, lineage_root_class, identifier=lineage_root_id),
            steps=_lineage_steps(schema, lineage_root_class, lineage_steps or []),
        )
    return node


@dataclass
class StoredObject:
    identifier: int
    class_name: str
    values: dict[str, Any]
    refs: dict[str, Any]
    owner_id: Any = None
    owner_class: str | None = None
    lineage_root_id: Any = None
    lineage_root_class: str | None = None
    lineage_steps: list[list[list[Any]]] | None = None
    history: list[datetime] = field(default_factory=list)


class InMemoryPersistence:
    """Dictionary-backed Persistence for dry runs and tests."""

    def __init__(self, schema: DomainSchema, clock: Callable[[], datetime] | None = None) -> None:
        self.schema = schema
        self.clock = clock or (lambda: datetime.now(UTC))
        self.objects: dict[int, StoredObject] = {}
        self.change_log: list[tuple[str, int, datetime]] = []
        self._next_id = 1

    def objects_of(self, class_name: str) -> list[StoredObject]:
        return [o for o in self.objects.values() if o.class_name == class_name]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        snapshot = (copy.deepcopy(self.objects), list(self.change_log), self._next_id)
        try:
            yield
        except BaseException:
            self.objects, self.change_log, self._next_id = snapshot
            raise

    def _record(self, node: GraphNode) -> StoredObject:
        root_id, root_class, steps = lineage_record(node)
        owner = node.owner
        if owner is not None and owner.identifier is None:
            raise PersistenceError(f"{node.class_name} owner {owner!r} is not saved")
        return StoredObject(
            identifier=node.identifier,
            class_name=node.class_name,
            values=copy.deepcopy(node.scalar_values()),
            refs=stored_references(node),
            owner_id=owner.identifier if owner is not None else None,
            owner_class=owner.class_name if owner is not None else None,
            lineage_root_id=root_id,
            lineage_root_class=root_class,
            lineage_steps=steps,
        )

    def _log(self, obj: StoredObject) -> None:
        now = self.clock()
        obj.history.append(now)
        self.change_log.append((self.schema.get(obj.class_name).table, obj.identifier, now))

    def create(self, node: GraphNode) -> GraphNode:
        if node.identifier is not None:
            raise PersistenceError(f"{node!r} is already persisted")
        node.identifier = self._next_id
        try:
            obj = self._record(node)
        except PersistenceError:
            node.identifier = None
            raise
        self._next_id += 1
        self.objects[obj.identifier] = obj
        self._log(obj)
        return node

    def update(self, node: GraphNode) -> GraphNode:
        if node.identifier not in self.objects:
            raise PersistenceError(f"{node!r} is not persisted")
        obj = self._record(node)
        obj.history = self.objects[node.identifier].history
        self.objects[node.identifier] = obj
        self._log(obj)
        return node

    def _matches(self, obj: StoredObject, template: GraphNode) -> bool:
        if obj.class_name != template.class_name:
            return False
        if template.identifier is not None and obj.identifier != template.identifier:
            return False
        for name, value in template.scalar_values().items():
            if obj.values.get(name) != value:
                return False
        if template.owner is not None and obj.owner_id != template.owner.identifier:
            return False
        if template.lineage is not None and obj.lineage_root_id != template.lineage.root.identifier:
            return False
        return True

    def _node(self, obj: StoredObject) -> GraphNode:
        return build_node(
            self.schema, obj.class_name, obj.identifier, obj.values, obj.refs,
            obj.owner_id, obj.owner_class, obj.lineage_root_id, obj.lineage_root_class,
            obj.lineage_steps,
        )

    def find(self, template: GraphNode) -> GraphNode | None:
        for obj in self.objects.values():
            if self._matches(obj, template):
                return self._node(obj)
        return None

    def query(self, template: GraphNode) -> list[GraphNode]:
        return [self._node(o) for o in self.objects.values() if self._matches(o, template)]

    def changes(self, since: datetime, before: datetime) -> Iterator[tuple[str, Any]]:
        for table, identifier, changed_at in self.change_log:
            if since <= changed_at < before:
                yield table, identifier
