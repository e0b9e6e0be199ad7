from __future__ import annotations

from pathlib import Path

import pytest

from tissue_migrate.source.reader import CsvRowSource, RowSourceError, normalize_field_name


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_normalize_field_name():
    assert normalize_field_name("Tissue Site ") == "tissue_site"
    assert normalize_field_name("Initials") == "initials"
    assert normalize_field_name("Qty (ml)") == "qty_ml"


def test_rows_are_untyped_strings_with_blanks_as_none(tmp_path: Path):
    src = _write(tmp_path / "in.csv", "Label,Quantity,Site\nS-1,001.50, \nS-2,NA,Breast\n")
    rows = list(CsvRowSource(src))
    assert [r.row_number for r in rows] == [1, 2]
    assert rows[0].values == {"label": "S-1", "quantity": "001.50", "site": None}
    # pandas must not turn "NA" into a missing value
    assert rows[1]["quantity"] == "NA"
    assert rows[1].raw_values == {"Label": "S-2", "Quantity": "NA", "Site": "Breast"}


def test_null_sentinels(tmp_path: Path):
    src = _write(tmp_path / "in.csv", "label,site\nS-1,n/a\n")
    row = next(iter(CsvRowSource(src, null_sentinels={"N/A"})))
    assert row["site"] is None


def test_blank_rows_are_skipped_but_counted(tmp_path: Path):
    src = _write(tmp_path / "in.csv", "label,site\nS-1,x\n,\nS-3,y\n")
    rows = list(CsvRowSource(src))
    assert [r.row_number for r in rows] == [1, 3]


def test_offset_skips_leading_rows_and_keeps_numbering(tmp_path: Path):
    src = _write(tmp_path / "in.csv", "label\nS-1\nS-2\nS-3\n")
    rows = list(CsvRowSource(src, offset=2))
    assert [(r.row_number, r["label"]) for r in rows] == [(3, "S-3")]


def test_source_is_restartable_across_chunks(tmp_path: Path):
    lines = "\n".join(f"S-{i}" for i in range(1, 8))
    src = _write(tmp_path / "in.csv", f"label\n{lines}\n")
    source = CsvRowSource(src, chunk_size=3)
    first = [r["label"] for r in source]
    second = [r["label"] for r in source]
    assert first == second == [f"S-{i}" for i in range(1, 8)]


def test_missing_file(tmp_path: Path):
    with pytest.raises(RowSourceError):
        list(CsvRowSource(tmp_path / "missing.csv"))


def test_empty_file(tmp_path: Path):
    src = _write(tmp_path / "empty.csv", "")
    with pytest.raises(RowSourceError):
        list(CsvRowSource(src))


def test_negative_offset_rejected(tmp_path: Path):
    with pytest.raises(ValueError):
        CsvRowSource(tmp_path / "in.csv", offset=-1)
