"""Gene annotation providers.

Annotation lookups are injected so that analyses never depend on a network
service; tests use `InMemoryAnnotationProvider` with a fixed table.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Iterable, Protocol

import pandas as pd

from dexpipe.core.types import GeneAnnotation
from dexpipe.errors import UnmappedGeneIdentifierWarning

_log = logging.getLogger(__name__)

GENE_ID_COLUMNS: tuple[str, ...] = ("gene_id", "ensembl_gene_id", "gene")


class AnnotationProvider(Protocol):
    def lookup(self, gene_ids: Iterable[str]) -> GeneAnnotation: ...


class InMemoryAnnotationProvider:
    """Serve annotation records from a DataFrame indexed by gene identifier."""

    def __init__(self, frame: pd.DataFrame) -> None:
        self._annotation = GeneAnnotation(frame)

    def lookup(self, gene_ids: Iterable[str]) -> GeneAnnotation:
        ids = [str(g) for g in gene_ids]
        table = self._annotation.frame
        present = [g for g in dict.fromkeys(ids) if g in table.index]
        return GeneAnnotation(table.loc[present])


class TableAnnotationProvider(InMemoryAnnotationProvider):
    """Annotation records read from a tab or comma delimited file."""

    def __init__(self, path: str | Path, id_column: str | None = None) -> None:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Annotation file not found: {p}")
        frame = pd.read_csv(p, sep=None, engine="python", dtype=str)
        key = id_column
        if key is None:
            key = next((c for c in GENE_ID_COLUMNS if c in frame.columns), None)
        if key is None or key not in frame.columns:
            raise KeyError(
                f"No gene identifier column in {p.name}. Tried: {', '.join(GENE_ID_COLUMNS)}"
            )
        super().__init__(frame.set_index(key))


def map_external_ids(
    gene_ids: Iterable[str],
    provider: AnnotationProvider,
    logger: logging.Logger | None = None,
) -> pd.Series:
    """Map gene ids to external ids, dropping and reporting unmapped genes."""
    log = logger or _log
    ids = list(dict.fromkeys(str(g) for g in gene_ids))
    annotation = provider.lookup(ids)
    external = annotation.external_ids()
    mapped = external.reindex([g for g in ids if g in external.index])
    n_unmapped = len(ids) - int(mapped.size)
    if n_unmapped > 0:
        msg = f"{n_unmapped} of {len(ids)} genes have no external identifier and were dropped."
        log.warning(msg)
        warnings.warn(msg, UnmappedGeneIdentifierWarning, stacklevel=2)
    return mapped.rename("external_id")
