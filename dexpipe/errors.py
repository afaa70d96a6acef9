"""Error and warning taxonomy for differential-expression runs."""

from __future__ import annotations

from typing import Sequence


class InputShapeError(ValueError):
    """Sample or gene identifiers disagree between inputs."""


class RankDeficientDesignError(ValueError):
    """The design matrix cannot isolate the covariate of interest."""

    def __init__(
        self,
        message: str,
        *,
        gene: str | None = None,
        columns: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.gene = gene
        self.columns = tuple(str(c) for c in columns)


class EmptyResultAfterFiltering(RuntimeWarning):
    """Every gene was removed by the expression filter."""


class UnmappedGeneIdentifierWarning(UserWarning):
    """Genes without an external identifier were dropped."""


def format_ids(ids: Sequence[str], limit: int = 5) -> str:
    head = ", ".join(str(x) for x in list(ids)[:limit])
    if len(ids) > limit:
        return f"{head}, ... ({len(ids)} total)"
    return head
