from __future__ import annotations

from typing import Any

import psycopg2

from .cache import VocabularyError

"""PostgreSQL permissible value store for the vocabulary cache.

Table layout::

    permissible_value(identifier bigint primary key,
                      parent_identifier bigint null,
                      category text not null,
                      value text not null)

Root entries have a null (or 0) parent. Every psycopg2 failure is re-raised as
VocabularyError so the migrator can reject the affected row.
"""

__all__ = [
    "PgVocabularyStore",
]

ROOTS_SQL = (
    "SELECT identifier, value FROM permissible_value "
    "WHERE category = %s AND (parent_identifier IS NULL OR parent_identifier = 0) "
    "ORDER BY identifier"
)
CHILDREN_SQL = "SELECT identifier, value FROM permissible_value WHERE parent_identifier = %s ORDER BY identifier"
SEARCH_SQL = (
    "SELECT identifier, value FROM permissible_value "
    "WHERE category = %s AND lower(value) = lower(%s) ORDER BY identifier LIMIT 1"
)
MAX_ID_SQL = "SELECT max(identifier) FROM permissible_value"
INSERT_SQL = (
    "INSERT INTO permissible_value (identifier, parent_identifier, category, value) "
    "VALUES (%s, %s, %s, %s)"
)
DELETE_SQL = "DELETE FROM permissible_value WHERE identifier = %s"


class PgVocabularyStore:
    """VocabularyStore over a psycopg2 connection. Writes commit immediately."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[tuple[Any, ...]]:
        try:
            with self.connection.cursor() as cur:
                cur.execute(sql, params)
                return list(cur.fetchall())
        except psycopg2.Error as e:
            raise VocabularyError(f"permissible value query failed: {e}") from e

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        try:
            with self.connection.cursor() as cur:
                cur.execute(sql, params)
            self.connection.commit()
        except psycopg2.Error as e:
            try:
                self.connection.rollback()
            except psycopg2.Error:  # pragma: no cover
                pass
            raise VocabularyError(f"permissible value update failed: {e}") from e

    def roots(self, category: str) -> list[tuple[Any, str]]:
        return [(r[0], r[1]) for r in self._select(ROOTS_SQL, (category,))]

    def children(self, identifier: Any) -> list[tuple[Any, str]]:
        return [(r[0], r[1]) for r in self._select(CHILDREN_SQL, (identifier,))]

    def search(self, category: str, value: str) -> tuple[Any, str] | None:
        rows = self._select(SEARCH_SQL, (category, value))
        return (rows[0][0], rows[0][1]) if rows else None

    def max_identifier(self) -> int | None:
        rows = self._select(MAX_ID_SQL, ())
        return int(rows[0][0]) if rows and rows[0][0] is not None else None

    def insert(self, identifier: Any, parent_identifier: Any, category: str, value: str) -> None:
        self._write(INSERT_SQL, (identifier, parent_identifier, category, value))

    def delete(self, identifier: Any) -> None:
        self._write(DELETE_SQL, (identifier,))
