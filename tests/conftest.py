# Shared pytest fixtures
from __future__ import annotations
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import yaml

from tissue_migrate.db.persistence import InMemoryPersistence
from tissue_migrate.logging.init import reset_logging
from tissue_migrate.models.schema import DomainSchema
from tissue_migrate.services.field_mapper import FieldMapper
from tissue_migrate.services.shims import ShimRegistry
from tissue_migrate.vocab.cache import VocabularyCache, reset_vocabulary_cache, set_vocabulary_cache

SCHEMA_YAML = """classes:
  CollectionProtocol:
    table: collection_protocol
    attributes:
      title: {type: string, key: true, mandatory: true}
      pi_email: string
  Participant:
    attributes:
      name: string
      first_name: {type: string, mandatory: true}
      last_name: string
      email: {type: string, unique: true}
      gender: {type: vocabulary, category: gender}
  SpecimenCollectionGroup:
    table: specimen_coll_group
    attributes:
      spn: {type: string, key: true, unique: true, mandatory: true}
      collection_date: date
      participant: {type: reference, target: Participant}
      protocol: {type: reference, target: CollectionProtocol}
  SpecimenCharacteristics:
    attributes:
      tissue_side: string
      tissue_site: {type: vocabulary, category: tissue_site}
  Specimen:
    table: tissue_specimen
    derivatives: child_specimens
    attributes:
      label: {type: string, key: true}
      specimen_type: {type: vocabulary, category: specimen_type}
      quantity: float
      comments: {type: collection, element: string}
      group: {type: reference, target: SpecimenCollectionGroup}
      characteristics: {type: reference, target: SpecimenCharacteristics, dependent: true}
      child_specimens: {type: collection, target: Specimen, dependent: true}
"""

MAPPING_YAML = """label: label
initials: group.participant.name
spn: group.spn
collected: group.collection_date
type: specimen_type
quantity: quantity
side: characteristics.tissue_side
site:
  path: characteristics.tissue_site
  optional: true
"""

# category -> [(identifier, value, parent identifier)]
VOCABULARY = {
    "gender": [(1, "Male", None), (2, "Female", None), (3, "Unspecified", None)],
    "specimen_type": [(10, "Tissue", None), (11, "Fixed Tissue", 10), (12, "Frozen Tissue", 10)],
    "Tissue_Site_PID": [
        (20, "Digestive Organs", None),
        (21, "Esophagus", 20),
        (22, "Esophagus, NOS", 21),
        (23, "Stomach", 20),
        (24, "Breast", None),
    ],
}
CATEGORY_ALIASES = {"tissue_site": "Tissue_Site_PID"}

# derivatives of a different class than their owner, two levels deep
LINEAGE_SCHEMA_YAML = """classes:
  Collection:
    derivatives: samples
    attributes:
      code: {type: string, key: true}
      samples: {type: collection, target: Sample, dependent: true}
  Sample:
    derivatives: aliquots
    attributes:
      kind: string
      harvested: date
      volume: float
      aliquots: {type: collection, target: Sample, dependent: true}
"""


class FakeVocabularyStore:
    """In-memory permissible value store counting every call."""

    def __init__(self, rows: dict[str, list[tuple[Any, str, Any]]] | None = None) -> None:
        self.rows: dict[Any, tuple[str, str, Any]] = {}
        for category, entries in (rows if rows is not None else VOCABULARY).items():
            for identifier, value, parent in entries:
                self.rows[identifier] = (category, value, parent)
        self.calls: dict[str, int] = {}
        self.fail = False

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.fail:
            raise ConnectionError("vocabulary database is down")

    def roots(self, category: str) -> list[tuple[Any, str]]:
        self._count("roots")
        return [(i, v) for i, (c, v, p) in sorted(self.rows.items()) if c == category and p is None]

    def children(self, identifier: Any) -> list[tuple[Any, str]]:
        self._count("children")
        return [(i, v) for i, (c, v, p) in sorted(self.rows.items()) if p == identifier]

    def search(self, category: str, value: str) -> tuple[Any, str] | None:
        self._count("search")
        for i, (c, v, p) in sorted(self.rows.items()):
            if c == category and v.lower() == value.lower():
                return i, v
        return None

    def max_identifier(self) -> int | None:
        self._count("max_identifier")
        return max(self.rows) if self.rows else None

    def insert(self, identifier: Any, parent_identifier: Any, category: str, value: str) -> None:
        self._count("insert")
        self.rows[identifier] = (category, value, parent_identifier)

    def delete(self, identifier: Any) -> None:
        self._count("delete")
        self.rows.pop(identifier, None)


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "conf").mkdir()
        (p / "data").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_state():
    yield
    reset_vocabulary_cache()
    reset_logging()


@pytest.fixture()
def schema() -> DomainSchema:
    return DomainSchema.from_dict(yaml.safe_load(SCHEMA_YAML))


@pytest.fixture()
def lineage_schema() -> DomainSchema:
    return DomainSchema.from_dict(yaml.safe_load(LINEAGE_SCHEMA_YAML))


@pytest.fixture()
def mapper(schema: DomainSchema) -> FieldMapper:
    return FieldMapper(schema, "Specimen", yaml.safe_load(MAPPING_YAML))


@pytest.fixture()
def vocab_store() -> FakeVocabularyStore:
    return FakeVocabularyStore()


@pytest.fixture()
def vocabulary(vocab_store: FakeVocabularyStore) -> VocabularyCache:
    cache = set_vocabulary_cache(VocabularyCache(vocab_store, CATEGORY_ALIASES))
    yield cache
    cache.clear()


@pytest.fixture()
def persistence(schema: DomainSchema) -> InMemoryPersistence:
    return InMemoryPersistence(schema)


def split_initials(node, value, row):
    """Participant.name shim: "JS" -> first_name J, last_name S."""
    text = str(value).replace(".", "").strip()
    node.set("first_name", text[:1])
    if len(text) > 1:
        node.set("last_name", text[1:])
    return None


def add_frozen_derivative(node, row):
    """Specimen hook: every primary specimen gets one frozen derivative."""
    if node.lineage is None:
        node.derive(specimen_type="Frozen Tissue")


@pytest.fixture()
def shims() -> ShimRegistry:
    registry = ShimRegistry()
    registry.register("Participant", "name", split_initials)
    return registry


@pytest.fixture()
def derivative_shims(shims: ShimRegistry) -> ShimRegistry:
    """Shim registry which also gives every primary specimen a frozen derivative."""
    shims.register_hook("Specimen", add_frozen_derivative)
    return shims


@pytest.fixture()
def write_project(temp_workdir: Path) -> Path:
    """Write a complete config tree (schema, mapping, defaults, input) and return migration.yml."""
    conf = temp_workdir / "conf"
    (conf / "schema.yml").write_text(SCHEMA_YAML, encoding="utf-8")
    (conf / "mapping.yml").write_text(MAPPING_YAML, encoding="utf-8")
    (conf / "defaults.yml").write_text("group.participant.gender: Unspecified\n", encoding="utf-8")
    (conf / "shims.yml").write_text(
        'shims: [{class: Participant, attribute: name, function: "conftest:split_initials"}]\n',
        encoding="utf-8",
    )
    (temp_workdir / "data" / "rows.csv").write_text(
        "Label,Initials,SPN,Collected,Type,Quantity,Side,Site\n"
        "S-1,JS,SP-100,2024-03-01,Fixed Tissue,1.5,left,Esophagus\n"
        "S-2,,SP-101,2024-03-02,Fixed Tissue,2,right,Breast\n",
        encoding="utf-8",
    )
    cfg = conf / "migration.yml"
    cfg.write_text(
        "input: ../data/rows.csv\n"
        "target: Specimen\n"
        "schema: schema.yml\n"
        "mapping: [mapping.yml]\n"
        "defaults: [defaults.yml]\n"
        "shims: [shims.yml]\n"
        "bad: ../data/bad.csv\n"
        "category_aliases:\n"
        "  tissue_site: Tissue_Site_PID\n",
        encoding="utf-8",
    )
    return cfg


class TablePersistence(InMemoryPersistence):
    """InMemoryPersistence standing in for PgPersistence behind the CLI."""

    def ensure_tables(self) -> None:
        pass


@pytest.fixture()
def fake_database(vocab_store: FakeVocabularyStore):
    """Patch the CLI's database collaborators; the dict holds the persistence shared by every run."""
    stores: dict[str, TablePersistence] = {}

    @contextmanager
    def _connection(options):
        yield MagicMock(name="connection")

    def _persistence(conn, schema):
        if "db" not in stores:
            stores["db"] = TablePersistence(schema)
        return stores["db"]

    with patch("tissue_migrate.cli.__main__._db_connection", _connection), \
         patch("tissue_migrate.cli.__main__.PgVocabularyStore", lambda conn: vocab_store), \
         patch("tissue_migrate.cli.__main__.PgPersistence", _persistence):
        yield stores
