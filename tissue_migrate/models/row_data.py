from __future__ import annotations

from dataclasses import dataclass
from typing import Any

"""RowData model.

RowData represents one input record after header normalization. It is created
by the row source per input line, consumed once and never mutated.
"""

__all__ = [
    "RowData",
]


@dataclass(frozen=True)
class RowData:
    """Logical representation of a single input record."""
    row_number: int  # 1-based data row number (header excluded, offset included)
    values: dict[str, Any]  # Normalized field name -> raw value
    raw_values: dict[str, Any] | None = None  # Original header -> value, for the bad-record sink

    def get(self, field: str, default: Any = None) -> Any:
        return self.values.get(field, default)

    def __getitem__(self, field: str) -> Any:
        return self.values[field]
