from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the tabular -> object graph migration tool.

These are separate from the loader implementation in tissue_migrate/config/loader.py
and only describe the resolved, typed run options.
"""


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None
    port: int | None
    user: str | None
    password: str | None
    database: str | None
    dsn: str | None


@dataclass(frozen=True)
class MigrationOptions:
    """Root configuration object for one migration run.

    File references are absolute (resolved against the config file directory).
    List-valued file options keep their declared order; for ``defaults`` the
    first entry is the base layer and the last entry the most specific override.
    """
    input: str | None  # Source CSV file
    target: str  # Target domain class name (graph root)
    schema: str  # Domain schema YAML
    mapping: list[str]  # Field mapping YAML files
    filters: list[str] = field(default_factory=list)
    defaults: list[str] = field(default_factory=list)
    shims: list[str] = field(default_factory=list)
    bad: str | None = None  # Bad-record CSV sink
    unique: bool = False  # Uniquify natural keys (test runs)
    offset: int = 0  # Leading input records to skip
    create_only: bool = False  # Never update existing persisted objects
    database: DatabaseConfig | None = None
    delta_patterns: dict[str, str] = field(default_factory=dict)  # type -> table regex
    category_aliases: dict[str, str] = field(default_factory=dict)
    null_sentinels: set[str] = field(default_factory=set)  # 文字列 -> blank 扱い (大文字化済)
