from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from tissue_migrate.models.config_models import DatabaseConfig, MigrationOptions

"""Config loader.

Responsibilities:
- Load the run configuration YAML (e.g. conf/migration.yml)
- Validate it against migration_schema.json
- Resolve file references relative to the config file directory
- Merge command line overrides (overrides win over file values)

Every failure here is an operator mistake and surfaces as ConfigurationError
before any row is processed.
"""

SCHEMA_PATH = Path(__file__).parent / "migration_schema.json"

# list 値として扱うファイル参照キー
_FILE_LIST_KEYS = ("mapping", "filters", "defaults", "shims")
_FILE_KEYS = ("input", "schema", "bad")


class ConfigurationError(Exception):
    pass


def read_yaml(path: Path, what: str = "config") -> Any:
    """Read a YAML file, mapping every failure to ConfigurationError."""
    if not path.exists():
        raise ConfigurationError(f"{what} file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid yaml in {what} file {path}: {e}") from e


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigurationError: if the schema file is missing or unreadable, or the
            config data fails schema validation (missing required keys, wrong
            types, unknown keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigurationError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"config validation failed: {e.message}") from e


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _resolve(base: Path, ref: str | None) -> str | None:
    if ref is None:
        return None
    p = Path(ref).expanduser()
    if not p.is_absolute():
        p = base / p
    return str(p)


def load_config(path: Path | None, overrides: dict[str, Any] | None = None) -> MigrationOptions:
    """Load the run configuration.

    Args:
        path: YAML config file, or None to build the options from overrides only
        overrides: option name -> value (e.g. parsed command line). None values
            are ignored so that an absent CLI flag never masks a file value.
            Override file references are taken relative to the working directory.

    Returns:
        The resolved MigrationOptions
    """
    data: dict[str, Any] = {}
    base = Path.cwd()
    if path is not None:
        data = read_yaml(path) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")
        base = path.resolve().parent
        for key in _FILE_KEYS:
            if data.get(key) is not None:
                data[key] = _resolve(base, data[key])
        for key in _FILE_LIST_KEYS:
            if key in data:
                data[key] = [_resolve(base, ref) for ref in _as_list(data[key])]

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in _FILE_KEYS:
            value = _resolve(Path.cwd(), value)
        elif key in _FILE_LIST_KEYS:
            value = [_resolve(Path.cwd(), ref) for ref in _as_list(value)]
        data[key] = value

    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return MigrationOptions(
        input=data.get("input"),
        target=data["target"],
        schema=data["schema"],
        mapping=data["mapping"],
        filters=data.get("filters", []),
        defaults=data.get("defaults", []),
        shims=data.get("shims", []),
        bad=data.get("bad"),
        unique=bool(data.get("unique", False)),
        offset=int(data.get("offset", 0)),
        create_only=bool(data.get("create_only", False)),
        database=db,
        delta_patterns=dict(data.get("delta_patterns") or {}),
        category_aliases=dict(data.get("category_aliases") or {}),
        null_sentinels={s.strip().upper() for s in data.get("null_sentinels") or []},
    )
