from __future__ import annotations

import re
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pandas as pd

from tissue_migrate.models.row_data import RowData

"""CSV row source.

The first line is the header. Values are read as untyped strings
(``dtype=str``, no pandas NA conversion) so that typing is decided by the
domain schema, not by pandas inference. Blank cells and configured null
sentinels become ``None``.

Each ``iter()`` re-opens the file, so one source can drive several runs.
"""

__all__ = [
    "CsvRowSource",
    "RowSourceError",
    "normalize_field_name",
]

DEFAULT_CHUNK_SIZE = 1000


class RowSourceError(Exception):
    """Raised when the input file is missing or has no usable header."""


def normalize_field_name(name: Any) -> str:
    """Normalize a header or mapping key: ``"Tissue Site "`` -> ``"tissue_site"``."""
    text = re.sub(r"[^0-9a-z]+", "_", str(name).strip().lower())
    return text.strip("_")


class CsvRowSource:
    """Lazy, forward-only, restartable sequence of RowData."""

    def __init__(
        self,
        path: Path | str,
        offset: int = 0,
        null_sentinels: set[str] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if offset < 0:
            raise ValueError(f"offset must be >= 0: {offset}")
        self.path = Path(path)
        self.offset = offset
        self.null_sentinels = {s.strip().upper() for s in null_sentinels or ()}
        self.chunk_size = chunk_size

    def __iter__(self) -> Iterator[RowData]:
        if not self.path.exists():
            raise RowSourceError(f"input file not found: {self.path}")
        try:
            reader = pd.read_csv(
                self.path,
                dtype=str,
                keep_default_na=False,
                na_filter=False,
                skip_blank_lines=True,
                skiprows=range(1, self.offset + 1) if self.offset else None,
                chunksize=self.chunk_size,
            )
        except pd.errors.EmptyDataError as e:
            raise RowSourceError(f"input file {self.path} has no header") from e

        row_number = self.offset
        with reader:
            for chunk in reader:
                headers = [str(c).strip() for c in chunk.columns]
                fields = [normalize_field_name(h) for h in headers]
                for raw in chunk.itertuples(index=False, name=None):
                    row_number += 1
                    cleaned = [self._clean(v) for v in raw]
                    # 全セル空の行は読み飛ばす
                    if all(v is None for v in cleaned):
                        continue
                    yield RowData(
                        row_number=row_number,
                        values=dict(zip(fields, cleaned, strict=False)),
                        raw_values=dict(zip(headers, raw, strict=False)),
                    )

    def _clean(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            if stripped == "" or stripped.upper() in self.null_sentinels:
                return None
            return stripped
        return value
