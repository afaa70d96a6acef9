"""Command-line interface for dexpipe."""

from __future__ import annotations

import argparse
from typing import Iterable

from dexpipe.config import FilterConfig
from dexpipe.filtering import retained_counts
from dexpipe.metadata import join_metadata
from dexpipe.pipeline.io import read_count_directory, read_metadata
from dexpipe.pipeline.run import STATUS_OK, run_pipeline


def run_main(argv: Iterable[str] | None = None) -> int:
    """Run the full analysis from a JSON config.

    Returns 0 on success and 2 when no gene survived the expression filter.
    """
    parser = argparse.ArgumentParser(description="dexpipe differential expression run")
    parser.add_argument("--config", required=True, help="Path to JSON config")
    args = parser.parse_args(list(argv) if argv is not None else None)

    result = run_pipeline(args.config)
    if result.status != STATUS_OK:
        print(f"status={result.status}")
        return 2
    for key in ("n_tested", "up", "down", "not_significant"):
        print(f"{key}={result.summary[key]}")
    return 0


def filter_main(argv: Iterable[str] | None = None) -> int:
    """Print how many genes the CPM filter keeps for a range of `min_samples`."""
    parser = argparse.ArgumentParser(description="dexpipe expression filter preview")
    parser.add_argument("--counts-dir", required=True, help="Directory of per-sample count files")
    parser.add_argument("--metadata", required=True, help="Sample metadata table")
    parser.add_argument("--sample-column", default="sample")
    parser.add_argument("--group-column", default="group")
    parser.add_argument("--pattern", default="*.txt", help="Glob for count files")
    parser.add_argument("--replicate-pattern", default=None)
    parser.add_argument("--min-count", type=float, default=10.0)
    parser.add_argument("--lib-size-reference", choices=("min", "median"), default="min")
    args = parser.parse_args(list(argv) if argv is not None else None)

    counts = read_count_directory(
        args.counts_dir, args.pattern, replicate_pattern=args.replicate_pattern
    )
    metadata = join_metadata(
        counts, read_metadata(args.metadata, args.sample_column, args.group_column)
    )
    cfg = FilterConfig(min_count=args.min_count, lib_size_reference=args.lib_size_reference)
    grid = list(range(0, counts.n_samples + 1))
    table = retained_counts(counts, grid, cfg)
    smallest = metadata.smallest_group_size()

    print(f"n_genes={counts.n_genes}")
    print(f"smallest_group={smallest}")
    for n, kept in table.items():
        marker = " *" if n == smallest else ""
        print(f"min_samples={n}\tretained={kept}{marker}")
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="dexpipe CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the differential-expression pipeline")
    sub.add_parser("filter", help="Preview the expression filter")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "run":
        return run_main(remainder)
    if args.command == "filter":
        return filter_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
