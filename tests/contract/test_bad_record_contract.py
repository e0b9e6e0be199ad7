from __future__ import annotations

from pathlib import Path

import pandas as pd

from tissue_migrate.cli.__main__ import main
from tissue_migrate.models.bad_record import REASON_COLUMN

"""Bad-record file contract.

Rejected rows are appended to the configured CSV with the original input
header and values, followed by the reason column. Re-runs append without a
second header.
"""


def _run(config: Path, monkeypatch) -> int:
    monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
    return main(["migrate", "-c", str(config), "--dry-run"])


def test_bad_record_columns_and_values(write_project: Path, vocabulary, monkeypatch):
    _run(write_project, monkeypatch)
    bad = write_project.parent.parent / "data" / "bad.csv"
    df = pd.read_csv(bad, dtype=str, keep_default_na=False)
    assert list(df.columns) == [
        "Label", "Initials", "SPN", "Collected", "Type", "Quantity", "Side", "Site", REASON_COLUMN,
    ]
    [record] = df.to_dict("records")
    assert record["Label"] == "S-2"
    assert record["Initials"] == ""
    assert record["Site"] == "Breast"
    assert record[REASON_COLUMN] == "missing mandatory attribute Specimen.group.participant.first_name"


def test_rerun_appends_without_second_header(write_project: Path, vocabulary, monkeypatch):
    _run(write_project, monkeypatch)
    _run(write_project, monkeypatch)
    bad = write_project.parent.parent / "data" / "bad.csv"
    lines = bad.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("Label,")
    assert len(lines) == 3
    assert sum(1 for line in lines if line.startswith("Label,")) == 1
