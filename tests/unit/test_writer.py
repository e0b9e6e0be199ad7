from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest

from tissue_migrate.db.persistence import InMemoryPersistence, PersistenceError
from tissue_migrate.models.graph import GraphNode
from tissue_migrate.services.writer import GraphWriter


def _graph(schema, label="S-1", spn="SP-100", site="Esophagus", derive=True) -> GraphNode:
    specimen = GraphNode(schema, "Specimen", {"label": label, "specimen_type": "Fixed Tissue"})
    cls = schema.get("Specimen")
    group = specimen.child(cls.attribute("group"))
    group.set("spn", spn)
    group.set("collection_date", date(2024, 3, 1))
    participant = group.child(schema.get("SpecimenCollectionGroup").attribute("participant"))
    participant.set("first_name", "J")
    participant.set("last_name", "S")
    chars = specimen.child(cls.attribute("characteristics"))
    chars.set("tissue_site", site)
    if derive:
        specimen.derive(specimen_type="Frozen Tissue")
    return specimen


def _classes(nodes):
    return [n.class_name for n in nodes]


def test_first_write_creates_dependencies_first(schema, persistence):
    record = GraphWriter(persistence).write(_graph(schema))
    assert _classes(record.created) == [
        "Participant",
        "SpecimenCollectionGroup",
        "Specimen",
        "SpecimenCharacteristics",
        "Specimen",
    ]
    assert record.updated == []
    derived = record.created[-1]
    assert derived.lineage.root is record.created[2]
    assert persistence.objects[derived.identifier].owner_id == record.created[2].identifier


def test_rewrite_updates_instead_of_duplicating(schema, persistence):
    GraphWriter(persistence).write(_graph(schema))
    before = len(persistence.objects)

    record = GraphWriter(persistence).write(_graph(schema))
    assert len(persistence.objects) == before
    assert record.created == []
    # 独立参照 (group, participant) は採用のみ
    assert _classes(record.unchanged) == ["Participant", "SpecimenCollectionGroup"]
    assert _classes(record.updated) == ["Specimen", "SpecimenCharacteristics", "Specimen"]


def test_dependent_without_key_is_found_by_values_and_owner(schema, persistence):
    GraphWriter(persistence).write(_graph(schema, derive=False))
    GraphWriter(persistence).write(_graph(schema, site="Stomach", derive=False))
    sites = sorted(o.values["tissue_site"] for o in persistence.objects_of("SpecimenCharacteristics"))
    assert sites == ["Esophagus", "Stomach"]


def test_create_only_leaves_existing_objects(schema, persistence):
    GraphWriter(persistence).write(_graph(schema))
    root = _graph(schema)
    root.set("quantity", 3.0)
    record = GraphWriter(persistence, create_only=True).write(root)
    assert record.created == [] and record.updated == []
    assert len(record.unchanged) == 5
    stored = persistence.find(GraphNode(schema, "Specimen", {"label": "S-1"}))
    assert stored.get("quantity") is None


def test_new_derivative_of_existing_root_is_created(schema, persistence):
    GraphWriter(persistence).write(_graph(schema))
    root = _graph(schema)
    root.derive(specimen_type="Fixed Tissue")
    record = GraphWriter(persistence).write(root)
    assert _classes(record.created) == ["Specimen"]
    assert record.created[0].get("specimen_type") == "Fixed Tissue"
    assert len(persistence.objects_of("Specimen")) == 3


def test_shared_reference_is_saved_once(schema, persistence):
    root = _graph(schema, derive=False)
    protocol = GraphNode(schema, "CollectionProtocol", {"title": "Biobank"})
    root.get("group").set("protocol", protocol)
    other = GraphNode(schema, "SpecimenCollectionGroup", {"spn": "SP-200", "protocol": protocol})
    record = GraphWriter(persistence).write(root)
    GraphWriter(persistence).write(other)
    assert len(persistence.objects_of("CollectionProtocol")) == 1
    assert _classes(record.created).count("CollectionProtocol") == 1


def test_persistence_errors_propagate():
    failing = MagicMock()
    failing.find.side_effect = PersistenceError("connection lost")
    node = MagicMock()
    node.references.return_value = []
    node.identifier = None
    with pytest.raises(PersistenceError):
        GraphWriter(failing).write(node)


def _collection(schema, code="C1", two_level=True, one_level=True) -> GraphNode:
    collection = GraphNode(schema, "Collection", {"code": code})
    if two_level:
        frozen = collection.derive(kind="frozen", harvested="2024-03-01")
        frozen.derive(volume="0.5")
    if one_level:
        collection.derive(kind="frozen", volume="0.5")
    return collection


def _derived_ids(root: GraphNode) -> dict:
    return {n.lineage.signature: n.identifier for n in root.walk() if n.lineage is not None}


def test_rewrite_matches_derivatives_of_another_class(lineage_schema):
    persistence = InMemoryPersistence(lineage_schema)
    first = _collection(lineage_schema)
    GraphWriter(persistence).write(first)
    assert len(persistence.objects_of("Sample")) == 3
    assert persistence.objects_of("Sample")[0].lineage_root_class == "Collection"

    again = _collection(lineage_schema)
    record = GraphWriter(persistence).write(again)
    assert record.created == []
    assert len(persistence.objects_of("Sample")) == 3
    assert _derived_ids(again) == _derived_ids(first)


def test_one_level_derivative_never_claims_a_second_level_one(lineage_schema):
    persistence = InMemoryPersistence(lineage_schema)
    stored = _collection(lineage_schema, one_level=False)
    GraphWriter(persistence).write(stored)
    [aliquot] = stored.get("samples")[0].get("aliquots")

    record = GraphWriter(persistence).write(_collection(lineage_schema, two_level=False))
    [created] = record.created
    assert created.lineage.signature == ((("kind", "frozen"), ("volume", 0.5)),)
    assert created.identifier != aliquot.identifier
    assert len(persistence.objects_of("Sample")) == 3
