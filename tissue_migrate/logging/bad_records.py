from __future__ import annotations

from pathlib import Path

import pandas as pd

from tissue_migrate.models.bad_record import REASON_COLUMN, BadRecord
from tissue_migrate.models.row_data import RowData

"""Bad-record sink.

Rejected rows are buffered in memory and appended to a CSV file on flush: the
original input columns followed by the ``migration_error`` reason column. The
header is written only when the file is new or empty.

Without a path the sink is memory only; ``records`` keeps every record appended
during the sink's lifetime either way.
"""

__all__ = [
    "BadRecord",
    "BadRecordSink",
]


class BadRecordSink:
    """Append-only destination for rejected rows. Not thread safe (serial runs)."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._pending: list[BadRecord] = []
        self._records: list[BadRecord] = []

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def records(self) -> list[BadRecord]:
        return list(self._records)

    def append(self, row: RowData, reason: str) -> BadRecord:
        record = BadRecord.create(row, reason)
        self._pending.append(record)
        self._records.append(record)
        return record

    def __len__(self) -> int:
        return len(self._records)

    def flush(self) -> Path | None:
        """Write pending records; returns the file path (None for a memory sink)."""
        if self._path is None:
            self._pending.clear()
            return None
        if not self._pending:
            return self._path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame([r.to_csv_row() for r in self._pending])
        # reason 列は常に末尾
        columns = [c for c in df.columns if c != REASON_COLUMN] + [REASON_COLUMN]
        write_header = not self._path.exists() or self._path.stat().st_size == 0
        df[columns].to_csv(self._path, mode="a", header=write_header, index=False)
        self._pending.clear()
        return self._path
