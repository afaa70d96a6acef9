"""Pipeline I/O, logging, and utility helpers."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Mapping

import numpy as np
import pandas as pd

from dexpipe.core.types import CountMatrix, GeneSetCollection, SampleMetadata
from dexpipe.errors import InputShapeError, format_ids

SPECIAL_COUNTER_PREFIX = "__"

_log = logging.getLogger(__name__)


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def write_table(frame: pd.DataFrame, path: str | Path, index_label: str | None = None) -> Path:
    """Write a tab-delimited table, creating parent directories."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(out, sep="\t", index=True, index_label=index_label, float_format="%.6g")
    return out


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def default_sample_id(path: Path) -> str:
    """Sample id is the file name up to its first dot."""
    return path.name.split(".", 1)[0]


def read_count_file(path: str | Path, logger: logging.Logger | None = None) -> pd.Series:
    """Read a two-column (gene, count) file into an integer Series."""
    log = logger or _log
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Count file not found: {p}")
    raw = pd.read_csv(
        p,
        sep=r"\s+",
        header=None,
        names=["gene", "count"],
        usecols=[0, 1],
        dtype={"gene": str, "count": str},
        comment="#",
        engine="python",
    )
    if raw.empty:
        raise InputShapeError(f"Count file '{p}' contains no rows.")

    counts = pd.to_numeric(raw["count"], errors="coerce")
    if pd.isna(counts.iloc[0]) and counts.iloc[1:].notna().all():
        # header line
        raw = raw.iloc[1:]
        counts = counts.iloc[1:]
    bad = raw.loc[counts.isna(), "gene"].tolist()
    if bad:
        raise InputShapeError(f"Non-numeric counts in '{p}' for genes: {format_ids(bad)}.")
    values = counts.to_numpy(dtype=float)
    if np.any(values < 0) or np.any(values != np.round(values)):
        raise InputShapeError(f"Counts in '{p}' must be non-negative integers.")

    series = pd.Series(values.astype(np.int64), index=raw["gene"].astype(str).to_numpy(), name=p.name)
    special = series.index.str.startswith(SPECIAL_COUNTER_PREFIX)
    if special.any():
        log.info(
            "Dropped %d summary counter rows from %s (%d reads).",
            int(special.sum()),
            p.name,
            int(series[special].sum()),
        )
        series = series[~special]
    dup = series.index[series.index.duplicated()].unique().tolist()
    if dup:
        raise InputShapeError(f"Duplicate gene identifiers in '{p}': {format_ids(dup)}.")
    return series


def sum_technical_replicates(frame: pd.DataFrame, mapping: Mapping[str, str]) -> pd.DataFrame:
    """Sum columns that map to the same sample; unmapped columns keep their name."""
    targets = [str(mapping.get(str(c), str(c))) for c in frame.columns]
    order = list(dict.fromkeys(targets))
    summed = frame.T.groupby(np.asarray(targets), sort=False).sum().T
    return summed.loc[:, order]


def replicate_mapping(columns: list[str], replicate_pattern: str) -> dict[str, str]:
    """Map column names to sample ids by stripping `replicate_pattern`."""
    rx = re.compile(replicate_pattern)
    out: dict[str, str] = {}
    for col in columns:
        sample = rx.sub("", str(col))
        if sample == "":
            raise InputShapeError(
                f"Replicate pattern '{replicate_pattern}' leaves an empty sample id for '{col}'."
            )
        out[str(col)] = sample
    return out


def read_count_directory(
    directory: str | Path,
    pattern: str = "*.txt",
    *,
    sample_id: Callable[[Path], str] | None = None,
    replicate_pattern: str | None = None,
    logger: logging.Logger | None = None,
) -> CountMatrix:
    """Merge per-sample count files into a gene by sample CountMatrix."""
    log = logger or _log
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Count directory not found: {root}")
    files = sorted(p for p in root.glob(pattern) if p.is_file())
    if not files:
        raise FileNotFoundError(f"No count files matching '{pattern}' in {root}")

    name_of = sample_id or default_sample_id
    columns: dict[str, pd.Series] = {}
    for path in files:
        name = str(name_of(path))
        if name in columns:
            raise InputShapeError(f"Two count files resolve to column '{name}'.")
        columns[name] = read_count_file(path, logger=log)

    frame = pd.concat(columns, axis=1, join="outer", sort=True).fillna(0).astype(np.int64)
    log.info("Loaded %d count files covering %d genes.", len(files), frame.shape[0])

    if replicate_pattern:
        mapping = replicate_mapping(list(frame.columns), replicate_pattern)
        n_before = frame.shape[1]
        frame = sum_technical_replicates(frame, mapping)
        if frame.shape[1] != n_before:
            log.info(
                "Summed %d technical replicate columns into %d samples.",
                n_before,
                frame.shape[1],
            )
    return CountMatrix(frame)


def _read_delimited(path: Path) -> pd.DataFrame:
    return pd.read_csv(path, sep=None, engine="python", dtype=str, keep_default_na=True)


def read_metadata(
    path: str | Path,
    sample_column: str = "sample",
    group_column: str = "group",
) -> SampleMetadata:
    """Read a tab or comma delimited sample table keyed by `sample_column`."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Metadata file not found: {p}")
    frame = _read_delimited(p)
    if sample_column not in frame.columns:
        raise KeyError(f"Sample column '{sample_column}' not found in {p.name}.")
    frame[sample_column] = frame[sample_column].astype(str).str.strip()
    frame = frame.set_index(sample_column)
    for col in frame.columns:
        numeric = pd.to_numeric(frame[col], errors="coerce")
        if numeric.notna().sum() == frame[col].notna().sum() and frame[col].notna().any():
            frame[col] = numeric
    return SampleMetadata(frame, group_column)


def _read_gmt(path: Path) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            parts = line.rstrip("\n").split("\t")
            if not parts or parts[0].strip() == "":
                continue
            if len(parts) < 2:
                raise ValueError(f"Malformed GMT line {lineno} in {path.name}.")
            out[parts[0]] = [g for g in parts[2:] if g.strip()]
    return out


def read_gene_sets(path: str | Path) -> GeneSetCollection:
    """Read a JSON `{name: [ids]}` object or a GMT file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Gene set file not found: {p}")
    if p.suffix.lower() == ".gmt":
        mapping = _read_gmt(p)
    else:
        with p.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if not isinstance(payload, dict):
            raise ValueError(f"Gene set JSON '{p.name}' must be an object of lists.")
        mapping = {}
        for name, members in payload.items():
            if not isinstance(members, list):
                raise ValueError(f"Gene set '{name}' in {p.name} is not a list.")
            mapping[str(name)] = [str(g) for g in members]
    return GeneSetCollection.from_mapping(mapping)
