from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .row_data import RowData

"""BadRecord model for the bad-record sink.

A BadRecord pairs a rejected input row with the failure reason. The sink
writes the original fields followed by the reason column, so the file can be
corrected and fed back to the migrator.
"""

__all__ = [
    "BadRecord",
    "REASON_COLUMN",
]

REASON_COLUMN = "migration_error"


@dataclass(frozen=True)
class BadRecord:
    """Rejected row plus reason.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        row_number: 1-based input row number
        fields: original header -> raw value
        reason: non-empty failure description
    """
    timestamp: str
    row_number: int
    fields: dict[str, Any]
    reason: str

    @staticmethod
    def create(row: RowData, reason: str) -> BadRecord:
        if not reason:
            raise ValueError("bad record requires a reason")
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        fields = dict(row.raw_values if row.raw_values is not None else row.values)
        return BadRecord(timestamp=ts, row_number=row.row_number, fields=fields, reason=reason)

    def to_csv_row(self) -> dict[str, Any]:
        """Original fields plus the reason column, in input order."""
        out = dict(self.fields)
        out[REASON_COLUMN] = self.reason
        return out
