from __future__ import annotations

import json

import jsonschema
import pytest
from jsonschema.exceptions import ValidationError

from tissue_migrate.config.loader import SCHEMA_PATH

"""Run configuration schema contract."""


@pytest.fixture(scope="module")
def schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_config_schema_valid_example(schema):
    config = {
        "input": "../data/specimens.csv",
        "target": "Specimen",
        "schema": "schema.yml",
        "mapping": ["mapping.yml", "mapping_site.yml"],
        "filters": ["filters.yml"],
        "defaults": ["defaults.yml", "defaults_2024.yml"],
        "shims": ["shims.yml"],
        "bad": "../data/bad.csv",
        "unique": False,
        "offset": 10,
        "create_only": True,
        "database": {"host": "localhost", "port": 5432, "user": "migrator", "database": "catissue"},
        "delta_patterns": {"CollectionProtocol": "^collection_protocol$"},
        "category_aliases": {"tissue_site": "Tissue_Site_PID"},
        "null_sentinels": ["N/A", "NULL"],
    }
    jsonschema.validate(config, schema)


@pytest.mark.parametrize(
    "config",
    [
        {"schema": "schema.yml", "mapping": ["mapping.yml"]},
        {"target": "Specimen", "schema": "schema.yml", "mapping": []},
        {"target": "Specimen", "schema": "schema.yml", "mapping": ["m.yml"], "offset": -1},
        {"target": "Specimen", "schema": "schema.yml", "mapping": ["m.yml"], "batch_size": 500},
        {"target": "Specimen", "schema": "schema.yml", "mapping": ["m.yml"], "database": {"schema": "x"}},
    ],
    ids=["no-target", "empty-mapping", "negative-offset", "unknown-key", "unknown-database-key"],
)
def test_config_schema_rejects(schema, config):
    with pytest.raises(ValidationError):
        jsonschema.validate(config, schema)
