from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd
import pytest

from dexpipe.annotation import InMemoryAnnotationProvider, TableAnnotationProvider, map_external_ids
from dexpipe.errors import UnmappedGeneIdentifierWarning


def _provider() -> InMemoryAnnotationProvider:
    frame = pd.DataFrame(
        {
            "symbol": ["TP53", "MYC", "NOVEL1"],
            "chromosome": ["17", "8", "1"],
            "external_id": ["7157", "4609", None],
        },
        index=["ENSG1", "ENSG2", "ENSG3"],
    )
    return InMemoryAnnotationProvider(frame)


def test_map_external_ids_drops_and_reports_unmapped(caplog):
    with caplog.at_level(logging.WARNING):
        with pytest.warns(UnmappedGeneIdentifierWarning, match="2 of 4 genes"):
            mapped = map_external_ids(["ENSG1", "ENSG2", "ENSG3", "ENSG9"], _provider())
    assert mapped.to_dict() == {"ENSG1": "7157", "ENSG2": "4609"}
    assert mapped.name == "external_id"
    assert "have no external identifier" in caplog.text


def test_map_external_ids_all_mapped_is_silent(recwarn):
    mapped = map_external_ids(["ENSG2", "ENSG1"], _provider())
    assert list(mapped.index) == ["ENSG2", "ENSG1"]
    assert not [w for w in recwarn if issubclass(w.category, UnmappedGeneIdentifierWarning)]


def test_lookup_returns_known_genes_only():
    ann = _provider().lookup(["ENSG3", "ENSG1", "missing"])
    assert list(ann.genes) == ["ENSG3", "ENSG1"]
    assert ann.symbols().tolist() == ["NOVEL1", "TP53"]


def test_table_provider_reads_delimited_file(tmp_path: Path):
    path = tmp_path / "annotation.tsv"
    path.write_text(
        "ensembl_gene_id\tsymbol\texternal_id\nENSG1\tTP53\t7157\nENSG2\tMYC\t4609\n",
        encoding="utf-8",
    )
    provider = TableAnnotationProvider(path)
    assert map_external_ids(["ENSG1", "ENSG2"], provider).tolist() == ["7157", "4609"]

    bad = tmp_path / "bad.tsv"
    bad.write_text("id\tsymbol\nENSG1\tTP53\n", encoding="utf-8")
    with pytest.raises(KeyError, match="No gene identifier column"):
        TableAnnotationProvider(bad)
    with pytest.raises(FileNotFoundError):
        TableAnnotationProvider(tmp_path / "absent.tsv")
