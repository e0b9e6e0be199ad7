from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

"""Controlled vocabulary cache.

Resolves free-text values to canonical, hierarchy-aware vocabulary entries
while keeping backing store round trips to a minimum:

- a category's root entries are loaded with one query on first access;
- a value not seen yet costs exactly one ``search`` and the answer is memoized,
  including a not-found sentinel;
- descendants are hydrated only on request (``resolve_subtree``) and each
  entry's children are fetched at most once.

Lookups are case-insensitive and a (category, value) always resolves to the
same ControlledValue instance for the lifetime of the cache.

The store is injected; tests pass a fake store and count calls. The process
wide instance is managed by get_vocabulary_cache / set_vocabulary_cache.
"""

__all__ = [
    "ControlledValue",
    "VocabularyCache",
    "VocabularyError",
    "VocabularyStore",
    "get_vocabulary_cache",
    "reset_vocabulary_cache",
    "set_vocabulary_cache",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VocabularyError(Exception):
    """Raised when the vocabulary store cannot be reached or fails."""


class VocabularyStore(Protocol):
    """Backing store of permissible values. Rows are (identifier, value) pairs."""

    def roots(self, category: str) -> list[tuple[Any, str]]: ...

    def children(self, identifier: Any) -> list[tuple[Any, str]]: ...

    def search(self, category: str, value: str) -> tuple[Any, str] | None: ...

    def max_identifier(self) -> int | None: ...

    def insert(self, identifier: Any, parent_identifier: Any, category: str, value: str) -> None: ...

    def delete(self, identifier: Any) -> None: ...


class ControlledValue:
    """One vocabulary entry; a node in the category forest."""

    def __init__(self, category: str, value: str, identifier: Any = None) -> None:
        self.category = category
        self.value = value
        self.identifier = identifier
        self.parent: ControlledValue | None = None
        self._children: list[ControlledValue] = []
        self._descendants: tuple[ControlledValue, ...] | None = None
        self._hydrated = False

    @property
    def children(self) -> tuple[ControlledValue, ...]:
        return tuple(self._children)

    @property
    def parent_identifier(self) -> Any:
        return self.parent.identifier if self.parent else None

    @property
    def descendants(self) -> tuple[ControlledValue, ...]:
        """Transitive closure of the known children, memoized until the subtree changes."""
        if self._descendants is None:
            out: list[ControlledValue] = []
            stack = list(reversed(self._children))
            while stack:
                node = stack.pop()
                out.append(node)
                stack.extend(reversed(node._children))
            self._descendants = tuple(out)
        return self._descendants

    @property
    def ancestors(self) -> list[ControlledValue]:
        out = []
        node = self.parent
        while node is not None:
            out.append(node)
            node = node.parent
        return out

    def is_a(self, other: ControlledValue) -> bool:
        """Whether this entry is ``other`` or a specialization of it."""
        return self is other or other in self.ancestors

    def _add_child(self, child: ControlledValue) -> None:
        if child.parent is self:
            return
        if child.parent is not None:
            child.parent._remove_child(child)
        child.parent = self
        self._children.append(child)
        self._subtree_changed()

    def _remove_child(self, child: ControlledValue) -> None:
        self._children = [c for c in self._children if c is not child]
        child.parent = None
        self._subtree_changed()

    def _subtree_changed(self) -> None:
        node: ControlledValue | None = self
        while node is not None:
            node._descendants = None
            node = node.parent

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"<ControlledValue {self.category}:{self.value!r} id={self.identifier}>"


class _NotFound:
    def __repr__(self) -> str:  # pragma: no cover (trivial)
        return "<NOT_FOUND>"


NOT_FOUND = _NotFound()


def _fold(value: Any) -> str:
    return str(value).strip().casefold()


class _CategoryEntry:
    """Folded value -> entry (or NOT_FOUND) plus the roots-loaded flag of one category."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.values: dict[str, ControlledValue | _NotFound] = {}
        self.roots: list[ControlledValue] = []
        self.roots_loaded = False


class VocabularyCache:
    def __init__(self, store: VocabularyStore, aliases: dict[str, str] | None = None) -> None:
        self.store = store
        self.aliases = dict(aliases or {})
        self._categories: dict[str, _CategoryEntry] = {}

    def standard_category(self, category: str) -> str:
        """Translate a category alias (e.g. ``tissue_site``) to the stored category id."""
        return self.aliases.get(category, category)

    # -- lookup -------------------------------------------------------------

    def roots(self, category: str) -> list[ControlledValue]:
        return list(self._category(category).roots)

    def resolve(self, category: str, value: Any) -> ControlledValue | None:
        """Return the entry for value in category, or None if there is none.

        Raises:
            VocabularyError: if the store must be consulted and fails
        """
        if value is None or str(value).strip() == "":
            return None
        cat = self._category(category)
        key = _fold(value)
        entry = cat.values.get(key)
        if isinstance(entry, ControlledValue):
            return entry
        if entry is NOT_FOUND:
            return None

        logger.debug("Loading controlled value %s %r from the store...", cat.name, value)
        row = self._call(self.store.search, cat.name, str(value).strip())
        if row is None:
            logger.debug("Controlled value %s %r not found.", cat.name, value)
            cat.values[key] = NOT_FOUND
            return None
        identifier, canonical = row
        found = self._register(cat, identifier, canonical)
        cat.values[key] = found
        return found

    def resolve_subtree(self, category: str, value: Any) -> ControlledValue | None:
        """Like resolve, and hydrate every descendant of the entry from the store."""
        entry = self.resolve(category, value)
        if entry is None:
            return None
        self._hydrate(self._category(category), entry)
        return entry

    # -- mutation -----------------------------------------------------------

    def create(self, category: str, value: str, parent: ControlledValue | str | None = None) -> ControlledValue:
        """Insert a new entry with the next store identifier."""
        if value is None or str(value).strip() == "":
            raise ValueError("controlled value create is missing a value")
        cat = self._category(category)
        value = str(value).strip()
        existing = cat.values.get(_fold(value))
        if isinstance(existing, ControlledValue):
            raise ValueError(f"controlled value {cat.name} {value!r} already exists")
        if isinstance(parent, str):
            resolved = self.resolve(category, parent)
            if resolved is None:
                raise ValueError(f"parent controlled value {cat.name} {parent!r} not found")
            parent = resolved
        if parent is not None and parent.category != cat.name:
            raise ValueError(f"parent {parent!r} is not in category {cat.name}")

        identifier = (self._call(self.store.max_identifier) or 0) + 1
        logger.debug("Creating controlled value %s %r with identifier %s...", cat.name, value, identifier)
        self._call(
            self.store.insert,
            identifier,
            parent.identifier if parent is not None else None,
            cat.name,
            value,
        )
        entry = ControlledValue(cat.name, value, identifier)
        entry._hydrated = True
        if parent is not None:
            parent._add_child(entry)
        else:
            cat.roots.append(entry)
        cat.values[_fold(value)] = entry
        return entry

    def invalidate(self, category: str, value: Any) -> bool:
        """Delete the entry and its whole descendant subtree from the cache and the store.

        Returns:
            True if an entry was deleted
        """
        cat = self._category(category)
        entry = self.resolve(category, value)
        if entry is None:
            return False
        self._hydrate(cat, entry)
        subtree = [entry, *entry.descendants]
        logger.debug("Deleting controlled value %r and %d descendants...", entry, len(subtree) - 1)
        # 子から順に削除 (親子制約)
        for node in reversed(subtree):
            self._call(self.store.delete, node.identifier)
            for key in [k for k, v in cat.values.items() if v is node]:
                cat.values[key] = NOT_FOUND
        if entry.parent is not None:
            entry.parent._remove_child(entry)
        cat.roots = [r for r in cat.roots if r is not entry]
        return True

    def clear(self) -> None:
        """Drop every cached category; the next access reloads from the store."""
        self._categories.clear()

    # -- internals ----------------------------------------------------------

    def _category(self, category: str) -> _CategoryEntry:
        name = self.standard_category(category)
        cat = self._categories.get(name)
        if cat is None:
            cat = self._categories[name] = _CategoryEntry(name)
        if not cat.roots_loaded:
            logger.debug("Loading %s root controlled values from the store...", name)
            rows = self._call(self.store.roots, name)
            cat.roots = [self._register(cat, identifier, value) for identifier, value in rows]
            cat.roots_loaded = True
            logger.debug("Loaded %d %s root controlled values.", len(cat.roots), name)
        return cat

    def _register(
        self,
        cat: _CategoryEntry,
        identifier: Any,
        value: str,
        parent: ControlledValue | None = None,
    ) -> ControlledValue:
        key = _fold(value)
        entry = cat.values.get(key)
        if not isinstance(entry, ControlledValue):
            entry = ControlledValue(cat.name, value, identifier)
            cat.values[key] = entry
        elif entry.identifier is None:
            entry.identifier = identifier
        if parent is not None and entry.parent is None:
            parent._add_child(entry)
        return entry

    def _hydrate(self, cat: _CategoryEntry, entry: ControlledValue) -> None:
        stack = [entry]
        while stack:
            node = stack.pop()
            if node._hydrated:
                stack.extend(node._children)
                continue
            rows = self._call(self.store.children, node.identifier)
            for identifier, value in rows:
                self._register(cat, identifier, value, node)
            node._hydrated = True
            stack.extend(node._children)

    @staticmethod
    def _call(fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except VocabularyError:
            raise
        except Exception as e:
            raise VocabularyError(f"vocabulary store failure: {e}") from e


# Process-wide instance
_cache: VocabularyCache | None = None


def get_vocabulary_cache() -> VocabularyCache:
    if _cache is None:
        raise VocabularyError("vocabulary cache is not configured")
    return _cache


def set_vocabulary_cache(cache: VocabularyCache) -> VocabularyCache:
    global _cache
    _cache = cache
    return cache


def reset_vocabulary_cache() -> None:
    """Forget the process-wide cache. Mainly for testing purposes."""
    global _cache
    _cache = None
