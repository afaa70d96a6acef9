from __future__ import annotations

import json
import os
from pathlib import Path

os.environ.setdefault("MPLCONFIGDIR", "/tmp/mpl-test")

import numpy as np
import pandas as pd
import pytest

from dexpipe.config import PipelineConfig
from dexpipe.core.types import CountMatrix, GeneSetCollection, SampleMetadata
from dexpipe.errors import EmptyResultAfterFiltering, RankDeficientDesignError
from dexpipe.pipeline.run import STATUS_EMPTY, STATUS_OK, analyze, run_pipeline, summarize
from dexpipe.stats.ebayes import ebayes
from dexpipe.stats.enrichment import camera_from_fit


def _write_inputs(root: Path, make_counts) -> dict[str, str]:
    counts, meta = make_counts(seed=3, n_genes=400, n_per_group=3, n_de=25, fold=5.0)
    count_dir = root / "counts"
    count_dir.mkdir()
    for sample in counts.samples:
        # split each library over two lanes to exercise replicate summing
        col = counts.frame[sample]
        lane1 = col // 2
        lane2 = col - lane1
        for lane, values in (("L001", lane1), ("L002", lane2)):
            lines = [f"{gene}\t{int(v)}" for gene, v in values.items()]
            lines += ["__no_feature\t100", "__ambiguous\t7"]
            (count_dir / f"{sample}_{lane}.counts.txt").write_text(
                "\n".join(lines) + "\n", encoding="utf-8"
            )

    meta_path = root / "samples.tsv"
    meta.frame.rename_axis("sample").reset_index().to_csv(meta_path, sep="\t", index=False)

    genes = list(counts.genes)
    annotation = pd.DataFrame(
        {
            "gene_id": genes,
            "symbol": [f"SYM{i}" for i in range(len(genes))],
            "external_id": [f"E{i}" if i < 380 else "" for i in range(len(genes))],
        }
    )
    ann_path = root / "annotation.tsv"
    annotation.to_csv(ann_path, sep="\t", index=False)

    gmt_path = root / "sets.gmt"
    gmt_path.write_text(
        "\n".join(
            [
                "DE_SET\tde\t" + "\t".join(f"E{i}" for i in range(25)),
                "RANDOM\tnull\t" + "\t".join(f"E{i}" for i in range(200, 240)),
                "OUTSIDE\tnone\t" + "\t".join(f"Z{i}" for i in range(10)),
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    return {
        "counts_dir": str(count_dir),
        "count_pattern": "*.counts.txt",
        "replicate_pattern": "_L00[0-9]$",
        "metadata_path": str(meta_path),
        "annotation_path": str(ann_path),
        "gene_sets_path": str(gmt_path),
        "output_dir": str(root / "out"),
    }


def _write_config(root: Path, payload: dict) -> Path:
    path = root / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_run_pipeline_writes_outputs(tmp_path: Path, make_counts):
    payload = _write_inputs(tmp_path, make_counts)
    payload["model"] = {"covariates": ["batch"], "reference_level": "control"}
    cfg_path = _write_config(tmp_path, payload)

    result = run_pipeline(cfg_path)
    assert result.status == STATUS_OK
    assert result.design.coef_name == "grouptreated"
    assert list(result.metadata.samples) == ["ctrl1", "ctrl2", "ctrl3", "trt1", "trt2", "trt3"]

    results_dir = tmp_path / "out" / "results"
    de = pd.read_csv(results_dir / "de_results.tsv", sep="\t", index_col=0)
    assert list(de.columns[:5]) == ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]
    assert "decision" in de.columns and "external_id" in de.columns
    up = de.index[de["decision"] == 1]
    assert len(up) >= 5
    de_genes = {f"ENSG{i:05d}" for i in range(25)}
    assert len(set(up) & de_genes) / len(up) >= 0.8

    summary = json.loads((results_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "ok"
    assert summary["counts"]["up"] == len(up)
    assert summary["n_genes_kept"] == de.shape[0]
    assert summary["n_samples"] == 6

    for mode in ("ora", "camera"):
        table = pd.read_csv(results_dir / f"enrichment_{mode}.tsv", sep="\t", index_col=0)
        assert "OUTSIDE" not in table.index
        assert "DE_SET" in table.index
    camera = pd.read_csv(results_dir / "enrichment_camera.tsv", sep="\t", index_col=0)
    assert camera.loc["DE_SET", "direction"] == "Up"
    assert camera.index[0] == "DE_SET"

    samples = pd.read_csv(results_dir / "samples.tsv", sep="\t", index_col=0)
    assert {"lib_size", "norm_factor", "sample_weight"} <= set(samples.columns)

    log_text = (tmp_path / "out" / "logs" / "dexpipe.log").read_text(encoding="utf-8")
    assert "summary counter rows" in log_text
    assert "no external identifier" in log_text


def test_run_pipeline_empty_after_filtering(tmp_path: Path, make_counts):
    payload = _write_inputs(tmp_path, make_counts)
    payload["filter"] = {"min_count": 1e9}
    cfg_path = _write_config(tmp_path, payload)

    with pytest.warns(EmptyResultAfterFiltering):
        result = run_pipeline(cfg_path)
    assert result.status == STATUS_EMPTY
    assert result.fit is None
    results_dir = tmp_path / "out" / "results"
    summary = json.loads((results_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "empty_after_filtering"
    assert summary["n_genes_kept"] == 0
    assert not (results_dir / "de_results.tsv").exists()


def test_analyze_in_memory_options(make_counts):
    counts, meta = make_counts(seed=5)
    frame = counts.frame.copy()
    frame[["ctrl1", "ctrl2", "trt1"]] *= 5
    counts = CountMatrix(frame)
    cfg = PipelineConfig.from_dict(
        {
            "library_size_buckets": 2,
            "model": {"voom": False, "sample_weights": False, "lfc_threshold": 0.5},
            "correction": {"method": "holm"},
        }
    )
    result = analyze(counts, meta, cfg)
    assert result.status == STATUS_OK
    bucket = result.design.matrix["lib_size_bucketQ2"]
    assert bucket[bucket == 1.0].index.tolist() == ["ctrl1", "ctrl2", "trt1"]
    assert result.voom is None
    assert result.fit.lfc_threshold == 0.5
    assert result.fit.adjust_method == "holm"
    assert result.enrichment == {}
    assert summarize(result.fit)["n_tested"] == result.filter_result.n_kept


def test_analyze_rejects_confounded_covariate(make_counts):
    counts, meta = make_counts(seed=1)
    confounded = meta.with_covariate("site", meta.groups.map({"control": "A", "treated": "B"}))
    cfg = PipelineConfig.from_dict({"model": {"covariates": ["site"]}})
    with pytest.raises(RankDeficientDesignError) as excinfo:
        analyze(counts, confounded, cfg)
    assert excinfo.value.columns == ("siteB",)


def test_treat_enrichment_uses_unthresholded_statistics(make_counts):
    counts, meta = make_counts(seed=2, n_de=25, fold=5.0)
    genes = list(counts.genes)
    sets = GeneSetCollection.from_mapping(
        {"DE_SET": genes[:25], "NULL_SET": genes[200:240], "OUTSIDE": ["nope1", "nope2"]}
    )
    cfg = PipelineConfig.from_dict(
        {
            "model": {"lfc_threshold": 1.0},
            "enrichment": {"modes": ["ora", "camera"], "inter_gene_cor": None},
        }
    )
    result = analyze(counts, meta, cfg, gene_sets=sets)
    assert result.fit.lfc_threshold == 1.0
    assert set(result.enrichment) == {"ora", "camera"}

    plain = ebayes(result.fit.model)
    assert (result.fit.table["t"] == 0.0).mean() > 0.5
    assert (result.fit.statistics() == 0.0).sum() == 0
    assert np.allclose(result.fit.statistics(), plain.table["t"])

    expected = camera_from_fit(
        plain,
        sets,
        inter_gene_cor=None,
        use_ranks=cfg.enrichment.use_ranks,
        min_size=cfg.enrichment.min_set_size,
        max_size=cfg.enrichment.max_set_size,
    )
    camera_table = result.enrichment["camera"]
    pd.testing.assert_frame_equal(camera_table, expected)
    assert camera_table.loc["DE_SET", "direction"] == "Up"
    assert camera_table.loc["NULL_SET", "p_value"] > 0.01
    assert "OUTSIDE" not in camera_table.index
    assert "DE_SET" in result.enrichment["ora"].index


def test_analyze_reports_single_surviving_gene():
    samples = [f"s{i}" for i in range(6)]
    values = np.array([[900, 1100, 1000, 950, 1050, 1000], [0, 0, 0, 0, 0, 0]])
    counts = CountMatrix.from_array(values, ["g_high", "g_zero"], samples)
    meta = SampleMetadata(pd.DataFrame({"group": ["a"] * 3 + ["b"] * 3}, index=samples), "group")
    with pytest.raises(ValueError, match="Only 1 gene passed the expression filter"):
        analyze(counts, meta, PipelineConfig())
