from __future__ import annotations
import pytest
from pathlib import Path
from tissue_migrate.config.loader import ConfigurationError, load_config


def test_load_config_success(write_project: Path):
    cfg = load_config(write_project)
    conf = write_project.parent
    assert cfg.target == "Specimen"
    assert cfg.schema == str(conf / "schema.yml")
    assert cfg.mapping == [str(conf / "mapping.yml")]
    assert cfg.defaults == [str(conf / "defaults.yml")]
    # relative to the config directory, not the working directory
    assert Path(cfg.input).resolve() == (conf.parent / "data" / "rows.csv").resolve()
    assert cfg.category_aliases == {"tissue_site": "Tissue_Site_PID"}
    assert cfg.offset == 0 and cfg.unique is False and cfg.create_only is False


def test_load_config_missing_file(temp_workdir: Path):
    with pytest.raises(ConfigurationError) as e:
        load_config(temp_workdir / "conf" / "not_exists.yml")
    assert "not found" in str(e.value)


def test_load_config_invalid_yaml(temp_workdir: Path):
    cfg = temp_workdir / "conf" / "migration.yml"
    cfg.write_text("target: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError) as e:
        load_config(cfg)
    assert "invalid yaml" in str(e.value)


def test_load_config_missing_required(write_project: Path):
    text = write_project.read_text(encoding="utf-8").replace("target: Specimen\n", "")
    write_project.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigurationError) as e:
        load_config(write_project)
    assert "config validation failed" in str(e.value) and "required property" in str(e.value)


def test_load_config_extra_field(write_project: Path):
    write_project.write_text(write_project.read_text(encoding="utf-8") + "extra_field: 1\n", encoding="utf-8")
    with pytest.raises(ConfigurationError) as e:
        load_config(write_project)
    assert "config validation failed" in str(e.value)


def test_load_config_negative_offset(write_project: Path):
    write_project.write_text(write_project.read_text(encoding="utf-8") + "offset: -1\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(write_project)


def test_overrides_win_and_none_is_ignored(write_project: Path, temp_workdir: Path):
    cfg = load_config(
        write_project,
        {"offset": 5, "unique": True, "bad": "out/bad.csv", "create_only": None, "target": None},
    )
    assert cfg.offset == 5
    assert cfg.unique is True
    assert cfg.create_only is False
    assert cfg.target == "Specimen"
    # override paths are relative to the working directory
    assert Path(cfg.bad) == temp_workdir / "out" / "bad.csv"


def test_single_mapping_string_becomes_list(write_project: Path):
    text = write_project.read_text(encoding="utf-8").replace("mapping: [mapping.yml]", "mapping: mapping.yml")
    write_project.write_text(text, encoding="utf-8")
    cfg = load_config(write_project)
    assert cfg.mapping == [str(write_project.parent / "mapping.yml")]


def test_null_sentinels_are_upper_cased(write_project: Path):
    write_project.write_text(
        write_project.read_text(encoding="utf-8") + "null_sentinels: [n/a, ' none ']\n", encoding="utf-8"
    )
    cfg = load_config(write_project)
    assert cfg.null_sentinels == {"N/A", "NONE"}


def test_database_section(write_project: Path):
    write_project.write_text(
        write_project.read_text(encoding="utf-8")
        + "database:\n  host: db\n  port: 5433\n  user: app\n  database: tissue\n",
        encoding="utf-8",
    )
    cfg = load_config(write_project)
    assert cfg.database.host == "db"
    assert cfg.database.port == 5433
    assert cfg.database.dsn is None


def test_load_config_from_overrides_only(temp_workdir: Path):
    cfg = load_config(None, {"target": "Specimen", "schema": "conf/schema.yml", "mapping": "conf/m.yml"})
    assert cfg.mapping == [str(temp_workdir / "conf" / "m.yml")]
