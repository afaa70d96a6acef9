#!/usr/bin/env python3
"""Run the dexpipe differential-expression pipeline."""

from __future__ import annotations

import argparse

from dexpipe.pipeline.run import run_pipeline


def main() -> int:
    parser = argparse.ArgumentParser(description="dexpipe differential-expression pipeline")
    parser.add_argument(
        "--config",
        default="configs/dexpipe_example.json",
        help="Path to JSON config",
    )
    args = parser.parse_args()
    run_pipeline(args.config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
