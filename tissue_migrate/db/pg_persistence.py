from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from functools import partial
from typing import Any

import psycopg2
from psycopg2.extras import Json

from tissue_migrate.models.graph import GraphNode
from tissue_migrate.models.schema import DomainSchema

from .persistence import PersistenceError, build_node, lineage_record, stored_references

"""PostgreSQL persistence for migrated object graphs.

Objects are stored generically, one row per domain object, in
``migrated_object``; attribute values and independent references are JSONB
documents so that query-by-example becomes a JSONB containment test. Every
create/update appends to ``change_log`` under the class's logical table name,
which the delta detector reads.

トランザクション境界は呼び出し側 (Migrator) が行単位で transaction() を使う。
"""

__all__ = [
    "DDL",
    "PgPersistence",
]

DDL = """
CREATE TABLE IF NOT EXISTS migrated_object (
    identifier      BIGSERIAL PRIMARY KEY,
    class_name      TEXT NOT NULL,
    attributes      JSONB NOT NULL,
    refs            JSONB NOT NULL,
    owner_id        BIGINT,
    owner_class     TEXT,
    lineage_root_id BIGINT,
    lineage_root_class TEXT,
    lineage         JSONB,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
ALTER TABLE migrated_object ADD COLUMN IF NOT EXISTS lineage_root_class TEXT;
CREATE INDEX IF NOT EXISTS migrated_object_class_idx ON migrated_object (class_name);
CREATE INDEX IF NOT EXISTS migrated_object_attrs_idx ON migrated_object USING gin (attributes);
CREATE TABLE IF NOT EXISTS change_log (
    table_name  TEXT NOT NULL,
    identifier  BIGINT NOT NULL,
    changed_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

INSERT_SQL = (
    "INSERT INTO migrated_object "
    "(class_name, attributes, refs, owner_id, owner_class, lineage_root_id, lineage_root_class, lineage) "
    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) RETURNING identifier"
)
UPDATE_SQL = (
    "UPDATE migrated_object SET attributes = %s, refs = %s, owner_id = %s, owner_class = %s, "
    "lineage_root_id = %s, lineage_root_class = %s, lineage = %s, updated_at = now() WHERE identifier = %s"
)
SELECT_SQL = (
    "SELECT identifier, class_name, attributes, refs, owner_id, owner_class, "
    "lineage_root_id, lineage_root_class, lineage "
    "FROM migrated_object WHERE class_name = %s AND attributes @> %s"
)
LOG_SQL = "INSERT INTO change_log (table_name, identifier) VALUES (%s, %s)"
CHANGES_SQL = (
    "SELECT table_name, identifier FROM change_log "
    "WHERE changed_at >= %s AND changed_at < %s ORDER BY changed_at"
)


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


_dumps = partial(json.dumps, default=_json_default)


def _json(value: Any) -> Json:
    return Json(value, dumps=_dumps)


class PgPersistence:
    def __init__(self, connection: Any, schema: DomainSchema) -> None:
        self.connection = connection
        self.schema = schema

    def ensure_tables(self) -> None:
        with self._cursor() as cur:
            cur.execute(DDL)
        self.connection.commit()

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            with self.connection.cursor() as cur:
                yield cur
        except psycopg2.Error as e:
            raise PersistenceError(str(e).strip()) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self.connection.rollback()
            raise
        try:
            self.connection.commit()
        except psycopg2.Error as e:
            raise PersistenceError(f"commit failed: {e}") from e

    def _params(self, node: GraphNode) -> tuple[Any, ...]:
        root_id, root_class, steps = lineage_record(node)
        owner = node.owner
        if owner is not None and owner.identifier is None:
            raise PersistenceError(f"{node.class_name} owner {owner!r} is not saved")
        return (
            _json(node.scalar_values()),
            _json(stored_references(node)),
            owner.identifier if owner is not None else None,
            owner.class_name if owner is not None else None,
            root_id,
            root_class,
            _json(steps) if steps is not None else None,
        )

    def create(self, node: GraphNode) -> GraphNode:
        if node.identifier is not None:
            raise PersistenceError(f"{node!r} is already persisted")
        params = self._params(node)
        with self._cursor() as cur:
            cur.execute(INSERT_SQL, (node.class_name, *params))
            node.identifier = cur.fetchone()[0]
            cur.execute(LOG_SQL, (node.cls.table, node.identifier))
        return node

    def update(self, node: GraphNode) -> GraphNode:
        if node.identifier is None:
            raise PersistenceError(f"{node!r} is not persisted")
        params = self._params(node)
        with self._cursor() as cur:
            cur.execute(UPDATE_SQL, (*params, node.identifier))
            if cur.rowcount == 0:
                raise PersistenceError(f"{node!r} is not persisted")
            cur.execute(LOG_SQL, (node.cls.table, node.identifier))
        return node

    def _select(self, template: GraphNode, limit: int | None = None) -> list[GraphNode]:
        sql = SELECT_SQL
        params: list[Any] = [template.class_name, _json(template.scalar_values())]
        if template.identifier is not None:
            sql += " AND identifier = %s"
            params.append(template.identifier)
        if template.owner is not None:
            sql += " AND owner_id = %s"
            params.append(template.owner.identifier)
        if template.lineage is not None:
            sql += " AND lineage_root_id = %s"
            params.append(template.lineage.root.identifier)
        sql += " ORDER BY identifier"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [build_node(self.schema, row[1], row[0], *row[2:]) for row in rows]

    def find(self, template: GraphNode) -> GraphNode | None:
        found = self._select(template, limit=1)
        return found[0] if found else None

    def query(self, template: GraphNode) -> list[GraphNode]:
        return self._select(template)

    def changes(self, since: datetime, before: datetime) -> Iterator[tuple[str, Any]]:
        with self._cursor() as cur:
            cur.execute(CHANGES_SQL, (since, before))
            rows = cur.fetchall()
        for table, identifier in rows:
            yield table, identifier
