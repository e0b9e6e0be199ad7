from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from tissue_migrate.logging.bad_records import BadRecordSink
from tissue_migrate.models.bad_record import REASON_COLUMN, BadRecord
from tissue_migrate.models.row_data import RowData


def _row(n: int, label: str) -> RowData:
    return RowData(n, {"label": label, "spn": "SP-1"}, raw_values={"Label": label, "SPN": "SP-1"})


def test_bad_record_requires_reason():
    with pytest.raises(ValueError):
        BadRecord.create(_row(1, "S-1"), "")


def test_bad_record_keeps_original_fields():
    record = BadRecord.create(_row(4, "S-4"), "missing mandatory attribute")
    assert record.row_number == 4
    assert record.timestamp.endswith("Z")
    assert record.to_csv_row() == {"Label": "S-4", "SPN": "SP-1", REASON_COLUMN: "missing mandatory attribute"}


def test_memory_sink():
    sink = BadRecordSink()
    sink.append(_row(1, "S-1"), "boom")
    assert len(sink) == 1
    assert sink.flush() is None
    assert sink.records[0].reason == "boom"


def test_flush_appends_and_writes_header_once(tmp_path: Path):
    path = tmp_path / "out" / "bad.csv"
    sink = BadRecordSink(path)
    sink.append(_row(1, "S-1"), "first")
    assert sink.flush() == path
    sink.append(_row(2, "S-2"), "second")
    sink.flush()
    sink.flush()  # nothing pending
    df = pd.read_csv(path, dtype=str)
    assert list(df.columns) == ["Label", "SPN", REASON_COLUMN]
    assert df["Label"].tolist() == ["S-1", "S-2"]
    assert df[REASON_COLUMN].tolist() == ["first", "second"]
    assert len(sink) == 2


def test_existing_file_is_appended_without_header(tmp_path: Path):
    path = tmp_path / "bad.csv"
    path.write_text(f"Label,SPN,{REASON_COLUMN}\nS-0,SP-0,old\n", encoding="utf-8")
    sink = BadRecordSink(path)
    sink.append(_row(1, "S-1"), "new")
    sink.flush()
    df = pd.read_csv(path, dtype=str)
    assert df["Label"].tolist() == ["S-0", "S-1"]
