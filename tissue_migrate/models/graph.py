from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from .schema import AttributeSchema, ClassSchema, DomainSchema

"""Target graph model.

A GraphNode is one domain object under construction (or fetched from the
persistence layer). Values are stored by attribute name and always written
through the class's AttributeSchema table, so an unknown attribute is a
configuration error rather than a silently ignored field.
"""

__all__ = [
    "GraphNode",
    "Lineage",
    "is_blank",
]


def is_blank(value: Any) -> bool:
    """Whether a raw or attribute value counts as absent."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float):
        return value != value  # NaN
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def same_entity(a: GraphNode, b: GraphNode) -> bool:
    """Whether two nodes denote the same object (same instance or same persisted id)."""
    if a is b:
        return True
    return (
        a.identifier is not None
        and a.identifier == b.identifier
        and a.class_name == b.class_name
    )


Step = tuple[tuple[str, Any], ...]


@dataclass(frozen=True)
class Lineage:
    """Derivation history of a derived node.

    ``root`` is the originating ancestor; ``steps`` holds one group of
    (attribute, value) specializations per derivation, in order from the root.
    """
    root: GraphNode
    steps: tuple[Step, ...] = ()

    @property
    def signature(self) -> tuple[Step, ...]:
        return self.steps

    def extend(self, step: Step) -> Lineage:
        return Lineage(root=self.root, steps=self.steps + (step,))

    def comparable(self, other: Lineage) -> bool:
        return same_entity(self.root, other.root)


class GraphNode:
    """One domain object of the target graph."""

    def __init__(
        self,
        schema: DomainSchema,
        class_name: str,
        values: dict[str, Any] | None = None,
        *,
        identifier: Any = None,
        owner: GraphNode | None = None,
        lineage: Lineage | None = None,
    ) -> None:
        self.schema = schema
        self.cls: ClassSchema = schema.get(class_name)
        self.identifier = identifier
        self.owner = owner
        self.lineage = lineage
        self._values: dict[str, Any] = {}
        for name, value in (values or {}).items():
            self.set(name, value)

    @property
    def class_name(self) -> str:
        return self.cls.name

    @property
    def values(self) -> dict[str, Any]:
        return dict(self._values)

    @property
    def loaded(self) -> bool:
        """False for an identifier-only stub returned by the persistence layer."""
        return bool(self._values) or self.identifier is None

    def attribute(self, name: str) -> AttributeSchema:
        return self.cls.attribute(name)

    def get(self, name: str, default: Any = None) -> Any:
        self.cls.attribute(name)
        return self._values.get(name, default)

    def has(self, name: str) -> bool:
        return not is_blank(self._values.get(name))

    def set(self, name: str, value: Any) -> None:
        attr = self.cls.attribute(name)
        if attr.is_collection and value is not None and not isinstance(value, list):
            value = [value]
        if value is None:
            self._values.pop(name, None)
        else:
            self._values[name] = value

    def unset(self, name: str) -> None:
        self.cls.attribute(name)
        self._values.pop(name, None)

    def add(self, name: str, value: Any) -> None:
        """Append a value to a collection attribute."""
        attr = self.cls.attribute(name)
        if not attr.is_collection:
            raise ValueError(f"{self.class_name}.{name} is not a collection")
        self._values.setdefault(name, []).append(value)

    def remove(self, name: str, value: Any) -> None:
        attr = self.cls.attribute(name)
        if attr.is_collection:
            items = [v for v in self._values.get(name, []) if v is not value]
            self.set(name, items or None)
        elif self._values.get(name) is value:
            self._values.pop(name)

    def references(self) -> Iterator[tuple[AttributeSchema, GraphNode]]:
        """Yield (attribute, referenced node) pairs in schema attribute order."""
        for attr in self.cls.reference_attributes:
            value = self._values.get(attr.name)
            if value is None:
                continue
            for ref in value if attr.is_collection else [value]:
                yield attr, ref

    def child(self, attr: AttributeSchema) -> GraphNode:
        """Return the node referenced through ``attr``, creating it if missing.

        A collection-valued reference yields its first element. The new node's
        owner is set when the attribute is dependent.
        """
        current = self._values.get(attr.name)
        if attr.is_collection:
            if current:
                return current[0]
        elif current is not None:
            return current
        node = GraphNode(self.schema, attr.target, owner=self if attr.dependent else None)  # type: ignore[arg-type]
        if attr.is_collection:
            self.add(attr.name, node)
        else:
            self.set(attr.name, node)
        return node

    def derive(self, **specializations: Any) -> GraphNode:
        """Create a derived node carrying this node's lineage plus ``specializations``.

        The derived node is added to the class's ``derivatives`` collection and
        owned by this node. Specialization values are set on the new node.
        """
        if self.cls.derivatives is None:
            raise ValueError(f"{self.class_name} does not declare a derivatives attribute")
        attr = self.cls.attribute(self.cls.derivatives)
        node = GraphNode(self.schema, attr.target, owner=self)  # type: ignore[arg-type]
        for name, value in specializations.items():
            node.set(name, node.attribute(name).coerce(value))
        # lineage steps carry the coerced values
        step = tuple((name, node.get(name)) for name in specializations)
        node.lineage = self.lineage.extend(step) if self.lineage else Lineage(root=self, steps=(step,))
        self.add(attr.name, node)
        return node

    def walk(self) -> Iterator[GraphNode]:
        """Breadth-first traversal of the graph, parents before children, each node once."""
        seen: set[int] = set()
        queue: deque[GraphNode] = deque([self])
        while queue:
            node = queue.popleft()
            if id(node) in seen:
                continue
            seen.add(id(node))
            yield node
            for _, ref in node.references():
                if id(ref) not in seen:
                    queue.append(ref)

    def scalar_values(self) -> dict[str, Any]:
        """Non-reference attribute values."""
        return {
            k: v for k, v in self._values.items() if not self.cls.attribute(k).is_reference
        }

    def key_values(self) -> dict[str, Any]:
        return {a.name: self._values[a.name] for a in self.cls.key_attributes if a.name in self._values}

    def template(self) -> GraphNode:
        """Query-by-example template which finds this node's persisted counterpart.

        Uses the natural key when every key attribute is set. Otherwise a node
        is described by its scalar values plus its owner.
        """
        keys = self.key_values()
        if keys and len(keys) == len(self.cls.key_attributes):
            return GraphNode(self.schema, self.class_name, keys)
        return GraphNode(self.schema, self.class_name, self.scalar_values(), owner=self.owner)

    def __repr__(self) -> str:
        shown = self.key_values() or self.scalar_values()
        ident = f" id={self.identifier}" if self.identifier is not None else ""
        return f"<{self.class_name}{ident} {shown}>"
