"""Domain models for the tabular -> object graph migration tool.

Schema and graph models live in .schema and .graph; they are imported
directly by their users since they depend on the config loader.
"""

from .bad_record import BadRecord
from .config_models import DatabaseConfig, MigrationOptions
from .migration_result import MigrationResult, RowOutcome, RowState, WriteRecord
from .row_data import RowData

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "MigrationOptions",
    # Processing models
    "BadRecord",
    "MigrationResult",
    "RowData",
    "RowOutcome",
    "RowState",
    "WriteRecord",
]
