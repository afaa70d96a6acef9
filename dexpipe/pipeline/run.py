"""End-to-end differential-expression analysis and on-disk outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from dexpipe._version import __version__
from dexpipe.annotation import AnnotationProvider, TableAnnotationProvider, map_external_ids
from dexpipe.config import (
    CorrectionConfig,
    EnrichmentConfig,
    ModelConfig,
    PipelineConfig,
    load_pipeline_config,
)
from dexpipe.core.types import (
    CountMatrix,
    FitResult,
    GeneSetCollection,
    NormalizedMatrix,
    SampleMetadata,
)
from dexpipe.filtering import FilterResult, filter_by_expression
from dexpipe.metadata import Design, build_design, join_metadata, library_size_bucket
from dexpipe.normalization import calc_norm_factors
from dexpipe.pipeline.io import (
    ensure_dir,
    read_count_directory,
    read_gene_sets,
    read_metadata,
    setup_logger,
    write_json,
    write_table,
)
from dexpipe.stats.ebayes import ebayes, treat
from dexpipe.stats.enrichment import camera_from_fit, over_representation_by_direction
from dexpipe.stats.linear_model import lm_fit
from dexpipe.stats.voom import (
    VoomResult,
    sample_quality_weights,
    voom,
    voom_with_quality_weights,
)

_log = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_EMPTY = "empty_after_filtering"
LIB_SIZE_COVARIATE = "lib_size_bucket"


@dataclass(frozen=True)
class AnalysisResult:
    """Everything produced by one `analyze` call.

    `status` is `"ok"` or `"empty_after_filtering"`; in the latter case only
    `metadata`, `design` and `filter_result` are populated.
    """

    status: str
    metadata: SampleMetadata
    design: Design
    filter_result: FilterResult
    normalized: NormalizedMatrix | None = None
    voom: VoomResult | None = None
    fit: FitResult | None = None
    summary: dict[str, int] = field(default_factory=dict)
    enrichment: dict[str, pd.DataFrame] = field(default_factory=dict)
    external_ids: pd.Series | None = None


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def summarize(result: FitResult, alpha: float = 0.05, lfc: float = 0.0) -> dict[str, int]:
    """Counts of up, down and not significant genes."""
    counts = result.summary(alpha=alpha, lfc=lfc)
    counts["n_tested"] = int(result.table.shape[0])
    return counts


def fit_normalized(
    normalized: NormalizedMatrix,
    design: Design,
    model: ModelConfig | None = None,
    correction: CorrectionConfig | None = None,
    logger: logging.Logger | None = None,
) -> tuple[FitResult, VoomResult | None]:
    """Weight, fit and moderate a normalized matrix.

    Uses TREAT when `model.lfc_threshold > 0`, otherwise plain moderated t.
    """
    mcfg = model or ModelConfig()
    ccfg = correction or CorrectionConfig()
    log = logger or _log

    vr: VoomResult | None = None
    if mcfg.voom and mcfg.sample_weights:
        vr = voom_with_quality_weights(
            normalized,
            design,
            span=mcfg.lowess_span,
            tol=mcfg.weight_tol,
            max_iter=mcfg.weight_max_iter,
            logger=log,
        )
        expression, weights = vr.expression, vr.weights
    elif mcfg.voom:
        vr = voom(normalized, design, span=mcfg.lowess_span, logger=log)
        expression, weights = vr.expression, vr.weights
    else:
        expression = normalized.log_cpm()
        weights = None
        if mcfg.sample_weights:
            weights = sample_quality_weights(
                expression,
                design,
                tol=mcfg.weight_tol,
                max_iter=mcfg.weight_max_iter,
                logger=log,
            )

    fit = lm_fit(
        expression,
        design,
        weights=weights,
        n_jobs=mcfg.n_jobs,
        chunk_size=mcfg.chunk_size,
        logger=log,
    )
    if mcfg.lfc_threshold > 0:
        result = treat(fit, mcfg.lfc_threshold, adjust_method=ccfg.method, logger=log)
    else:
        result = ebayes(fit, adjust_method=ccfg.method, logger=log)
    return result, vr


def run_enrichment(
    result: FitResult,
    gene_sets: GeneSetCollection,
    config: EnrichmentConfig | None = None,
    correction: CorrectionConfig | None = None,
    id_map: pd.Series | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, pd.DataFrame]:
    cfg = config or EnrichmentConfig()
    ccfg = correction or CorrectionConfig()
    log = logger or _log
    tables: dict[str, pd.DataFrame] = {}
    for mode in cfg.modes:
        if mode == "ora":
            tables[mode] = over_representation_by_direction(
                result,
                gene_sets,
                id_map,
                alpha=ccfg.alpha,
                lfc=ccfg.lfc,
                min_size=cfg.min_set_size,
                max_size=cfg.max_set_size,
                logger=log,
            )
        else:
            tables[mode] = camera_from_fit(
                result,
                gene_sets,
                id_map,
                inter_gene_cor=cfg.inter_gene_cor,
                use_ranks=cfg.use_ranks,
                min_size=cfg.min_set_size,
                max_size=cfg.max_set_size,
                logger=log,
            )
        log.info("Enrichment (%s): %d gene sets tested.", mode, int(tables[mode].shape[0]))
    return tables


def analyze(
    counts: CountMatrix,
    metadata: SampleMetadata,
    config: PipelineConfig | None = None,
    annotation: AnnotationProvider | None = None,
    gene_sets: GeneSetCollection | None = None,
    logger: logging.Logger | None = None,
) -> AnalysisResult:
    """Filter, normalize, fit, correct and test gene sets, in memory."""
    cfg = config or PipelineConfig()
    log = logger or _log

    joined = join_metadata(counts, metadata, logger=log)
    covariates = list(cfg.model.covariates)
    if cfg.library_size_buckets > 1:
        buckets = library_size_bucket(counts, cfg.library_size_buckets)
        joined = joined.with_covariate(LIB_SIZE_COVARIATE, buckets)
        if LIB_SIZE_COVARIATE not in covariates:
            covariates.append(LIB_SIZE_COVARIATE)

    reference = None
    if cfg.model.reference_level is not None:
        reference = {joined.group_column: cfg.model.reference_level}
    design = build_design(
        joined,
        covariates=covariates,
        reference=reference,
        interest_level=cfg.model.interest_level,
    )
    log.info(
        "Design: %d samples x %d columns; testing '%s'.",
        design.matrix.shape[0],
        design.matrix.shape[1],
        design.coef_name,
    )

    filtered = filter_by_expression(counts, joined, cfg.filter, logger=log)
    if filtered.is_empty:
        return AnalysisResult(
            status=STATUS_EMPTY,
            metadata=joined,
            design=design,
            filter_result=filtered,
        )

    if cfg.model.voom and filtered.n_kept < 2:
        raise ValueError(
            f"Only {filtered.n_kept} gene passed the expression filter; voom needs at least "
            "two genes for its mean-variance trend. Lower 'filter.min_count' or set "
            "'model.voom' to false."
        )

    normalized = calc_norm_factors(filtered.counts, cfg.normalization, logger=log)
    result, vr = fit_normalized(normalized, design, cfg.model, cfg.correction, logger=log)
    summary = summarize(result, alpha=cfg.correction.alpha, lfc=cfg.correction.lfc)
    log.info(
        "%d up, %d down, %d not significant at %s < %.3g.",
        summary["up"],
        summary["down"],
        summary["not_significant"],
        cfg.correction.method,
        cfg.correction.alpha,
    )

    id_map = None
    if annotation is not None:
        id_map = map_external_ids(result.genes, annotation, logger=log)

    enrichment: dict[str, pd.DataFrame] = {}
    if gene_sets is not None and len(gene_sets) > 0:
        enrichment = run_enrichment(
            result,
            gene_sets,
            cfg.enrichment,
            cfg.correction,
            id_map=id_map,
            logger=log,
        )

    return AnalysisResult(
        status=STATUS_OK,
        metadata=joined,
        design=design,
        filter_result=filtered,
        normalized=normalized,
        voom=vr,
        fit=result,
        summary=summary,
        enrichment=enrichment,
        external_ids=id_map,
    )


def _prepare_dirs(outdir: Path) -> tuple[Path, Path]:
    results_dir = outdir / "results"
    logs_dir = outdir / "logs"
    ensure_dir(results_dir)
    ensure_dir(logs_dir)
    return results_dir, logs_dir


def _results_table(result: AnalysisResult, alpha: float, lfc: float) -> pd.DataFrame:
    table = result.fit.top_table(sort_by="p")
    table["decision"] = result.fit.decide(alpha=alpha, lfc=lfc).reindex(table.index)
    if result.external_ids is not None:
        table["external_id"] = result.external_ids.reindex(table.index)
    return table


def _sample_table(result: AnalysisResult) -> pd.DataFrame:
    normalized = result.normalized
    frame = pd.DataFrame(
        {
            "group": result.metadata.groups.reindex(normalized.samples).to_numpy(),
            "lib_size": np.asarray(normalized.lib_sizes, dtype=np.int64),
            "norm_factor": np.asarray(normalized.norm_factors),
            "effective_lib_size": np.asarray(normalized.effective_lib_sizes),
        },
        index=normalized.samples,
    )
    if result.voom is not None and result.voom.sample_weights is not None:
        frame["sample_weight"] = np.asarray(result.voom.sample_weights)
    return frame


def _run_summary(cfg: PipelineConfig, counts: CountMatrix, result: AnalysisResult) -> dict[str, Any]:
    filtered = result.filter_result
    payload: dict[str, Any] = {
        "version": __version__,
        "timestamp_utc": _now_utc_iso(),
        "status": result.status,
        "n_samples": int(counts.n_samples),
        "n_genes_input": int(counts.n_genes),
        "n_genes_kept": filtered.n_kept,
        "cpm_cutoff": float(filtered.cpm_cutoff),
        "filter_min_samples": int(filtered.min_samples),
        "coefficient": result.design.coef_name,
        "design_columns": result.design.columns,
        "alpha": float(cfg.correction.alpha),
        "adjust_method": cfg.correction.method,
    }
    if result.fit is not None:
        payload.update(
            {
                "lfc_threshold": float(result.fit.lfc_threshold),
                "df_prior": float(result.fit.df_prior),
                "s2_prior": float(result.fit.s2_prior),
                "normalization": result.normalized.method,
                "reference_sample": result.normalized.reference_sample,
                "counts": dict(result.summary),
                "enrichment_sets_tested": {
                    mode: int(table.shape[0]) for mode, table in result.enrichment.items()
                },
            }
        )
    return payload


def run_pipeline(config_path: str | Path) -> AnalysisResult:
    """Run the analysis described by a JSON config and write its outputs."""
    cfg = load_pipeline_config(config_path)
    outdir = Path(cfg.output_dir)
    results_dir, logs_dir = _prepare_dirs(outdir)
    logger = setup_logger(logs_dir / "dexpipe.log", "dexpipe")
    logger.info("dexpipe %s: config %s", __version__, config_path)

    if not cfg.counts_dir:
        raise ValueError("Config is missing 'counts_dir'.")
    if not cfg.metadata_path:
        raise ValueError("Config is missing 'metadata_path'.")

    counts = read_count_directory(
        cfg.counts_dir,
        cfg.count_pattern,
        replicate_pattern=cfg.replicate_pattern,
        logger=logger,
    )
    metadata = read_metadata(cfg.metadata_path, cfg.sample_column, cfg.group_column)
    annotation = None
    if cfg.annotation_path:
        annotation = TableAnnotationProvider(cfg.annotation_path)
    gene_sets = None
    if cfg.gene_sets_path:
        gene_sets = read_gene_sets(cfg.gene_sets_path)
        logger.info("Loaded %d gene sets from %s.", len(gene_sets), cfg.gene_sets_path)

    result = analyze(counts, metadata, cfg, annotation=annotation, gene_sets=gene_sets, logger=logger)

    write_table(
        result.filter_result.keep.to_frame(),
        results_dir / "filter_mask.tsv",
        index_label="gene",
    )
    if result.status == STATUS_OK:
        write_table(
            _results_table(result, cfg.correction.alpha, cfg.correction.lfc),
            results_dir / "de_results.tsv",
            index_label="gene",
        )
        write_table(_sample_table(result), results_dir / "samples.tsv", index_label="sample")
        for mode, table in result.enrichment.items():
            write_table(table, results_dir / f"enrichment_{mode}.tsv", index_label="gene_set")
    else:
        logger.warning("No genes passed the expression filter; skipping model fit.")
    write_json(results_dir / "summary.json", _run_summary(cfg, counts, result))
    logger.info("Wrote results to %s", results_dir)
    return result
