from __future__ import annotations

import json
import logging
from pathlib import Path

import pandas as pd
import pytest

from dexpipe.errors import InputShapeError
from dexpipe.pipeline.io import (
    read_count_directory,
    read_count_file,
    read_gene_sets,
    read_metadata,
    replicate_mapping,
    setup_logger,
    sum_technical_replicates,
    write_json,
    write_table,
)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_read_count_file_drops_special_counters(tmp_path: Path, caplog):
    path = _write(
        tmp_path / "s1.txt",
        "gene_id\tcount\nG1\t5\nG2\t0\nG3\t12\n__no_feature\t40\n__ambiguous\t2\n",
    )
    with caplog.at_level(logging.INFO):
        series = read_count_file(path)
    assert list(series.index) == ["G1", "G2", "G3"]
    assert series.tolist() == [5, 0, 12]
    assert "Dropped 2 summary counter rows" in caplog.text


def test_read_count_file_without_header(tmp_path: Path):
    path = _write(tmp_path / "s1.txt", "G1 3\nG2 4\n")
    assert read_count_file(path).tolist() == [3, 4]


def test_read_count_file_rejects_bad_rows(tmp_path: Path):
    dup = _write(tmp_path / "dup.txt", "G1\t1\nG1\t2\n")
    with pytest.raises(InputShapeError, match="G1"):
        read_count_file(dup)

    frac = _write(tmp_path / "frac.txt", "G1\t1\nG2\t2.5\n")
    with pytest.raises(InputShapeError, match="non-negative integers"):
        read_count_file(frac)

    text = _write(tmp_path / "text.txt", "G1\t1\nG2\tabc\nG3\t4\n")
    with pytest.raises(InputShapeError, match="G2"):
        read_count_file(text)

    with pytest.raises(FileNotFoundError):
        read_count_file(tmp_path / "absent.txt")


def test_read_count_directory_outer_merges(tmp_path: Path):
    _write(tmp_path / "b.counts.txt", "G1\t2\nG2\t7\n")
    _write(tmp_path / "a.counts.txt", "G1\t1\nG2\t3\nG3\t5\n")
    counts = read_count_directory(tmp_path, "*.counts.txt")
    assert list(counts.samples) == ["a", "b"]
    assert list(counts.genes) == ["G1", "G2", "G3"]
    assert counts.frame.loc["G3", "b"] == 0
    assert counts.lib_sizes.tolist() == [9.0, 9.0]


def test_read_count_directory_sums_technical_replicates(tmp_path: Path, caplog):
    _write(tmp_path / "s1_L001.txt", "G1\t1\nG2\t2\n")
    _write(tmp_path / "s1_L002.txt", "G1\t10\nG2\t20\n")
    _write(tmp_path / "s2_L001.txt", "G1\t4\nG2\t4\n")
    with caplog.at_level(logging.INFO):
        counts = read_count_directory(tmp_path, replicate_pattern=r"_L00[0-9]$")
    assert list(counts.samples) == ["s1", "s2"]
    assert counts.frame.loc["G1", "s1"] == 11
    assert counts.frame.loc["G2", "s1"] == 22
    assert "Summed 3 technical replicate columns into 2 samples" in caplog.text


def test_read_count_directory_errors(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        read_count_directory(tmp_path / "missing")
    with pytest.raises(FileNotFoundError, match="No count files"):
        read_count_directory(tmp_path)


def test_sum_technical_replicates_keeps_unmapped_columns():
    frame = pd.DataFrame({"r1": [1, 2], "r2": [3, 4], "solo": [5, 6]}, index=["G1", "G2"])
    out = sum_technical_replicates(frame, {"r1": "S", "r2": "S"})
    assert list(out.columns) == ["S", "solo"]
    assert out["S"].tolist() == [4, 6]
    assert out["solo"].tolist() == [5, 6]


def test_replicate_mapping_rejects_empty_sample_id():
    with pytest.raises(InputShapeError, match="empty sample id"):
        replicate_mapping(["_L001"], r"_L00[0-9]$")


def test_read_metadata_detects_separator(tmp_path: Path):
    csv = _write(tmp_path / "meta.csv", "sample,group,age\nS1,A,30\nS2,B,41\n")
    meta = read_metadata(csv)
    assert list(meta.samples) == ["S1", "S2"]
    assert meta.groups.tolist() == ["A", "B"]
    assert pd.api.types.is_numeric_dtype(meta.frame["age"])

    tsv = _write(tmp_path / "meta.tsv", "id\tcondition\nS1\tctl\nS1\ttrt\n")
    with pytest.raises(InputShapeError, match="S1"):
        read_metadata(tsv, sample_column="id", group_column="condition")

    with pytest.raises(KeyError, match="Sample column"):
        read_metadata(csv, sample_column="id")


def test_read_gene_sets_json_and_gmt(tmp_path: Path):
    js = tmp_path / "sets.json"
    js.write_text(json.dumps({"B": ["g2", "g3"], "A": ["g1"]}), encoding="utf-8")
    sets = read_gene_sets(js)
    assert list(sets) == ["A", "B"]
    assert sets["B"] == frozenset({"g2", "g3"})

    gmt = _write(tmp_path / "sets.gmt", "PATH1\tdesc\tg1\tg2\nPATH2\thttp://x\tg3\n")
    sets = read_gene_sets(gmt)
    assert sets.sizes().to_dict() == {"PATH1": 2, "PATH2": 1}

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"A": "g1"}), encoding="utf-8")
    with pytest.raises(ValueError, match="not a list"):
        read_gene_sets(bad)


def test_write_helpers_and_logger(tmp_path: Path):
    out = write_table(
        pd.DataFrame({"x": [0.123456789]}, index=["g"]), tmp_path / "t" / "x.tsv", "gene"
    )
    assert out.read_text(encoding="utf-8").splitlines() == ["gene\tx", "g\t0.123457"]

    write_json(tmp_path / "j" / "s.json", {"b": 1, "a": 2})
    assert json.loads((tmp_path / "j" / "s.json").read_text(encoding="utf-8")) == {"a": 2, "b": 1}

    logger = setup_logger(tmp_path / "logs" / "run.log", "dexpipe-test-io")
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()
    assert "| INFO | hello" in (tmp_path / "logs" / "run.log").read_text(encoding="utf-8")
