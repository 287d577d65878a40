from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

from .config import WorkflowConfig, default_config
from .pipeline import PipelineStageError, run_pipeline


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fit the NH3 emission GAMM and report event trends.")
    parser.add_argument("--input", type=Path, default=None, help="CSV or parquet file with hourly observations.")
    parser.add_argument("--project-root", type=Path, default=None, help="Directory receiving figures/, tables/, intermediate/ and logs/.")
    parser.add_argument("--timestamp-format", type=str, default=None, help="strftime format of the timestamp column.")
    parser.add_argument("--sample-frac", type=float, default=None, help="Fraction of each 24 h block used for fitting.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed override.")
    parser.add_argument("--hour-k", type=int, default=None, help="Basis dimension of the cyclic hour smooth.")
    parser.add_argument("--smooth-k", type=int, default=None, help="Basis dimension of the wind and temperature smooths.")
    parser.add_argument("--day-k", type=int, default=None, help="Basis dimension of the day tensor smooth.")
    parser.add_argument("--arma-p", type=int, default=None, help="AR order of the residual correlation.")
    parser.add_argument("--arma-q", type=int, default=None, help="MA order of the residual correlation.")
    parser.add_argument("--max-pql-iter", type=int, default=None, help="Maximum PQL iterations.")
    parser.add_argument("--lags", type=int, default=None, help="Breusch-Godfrey lag order.")
    parser.add_argument("--no-figures", action="store_true", help="Skip figure rendering.")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> WorkflowConfig:
    cfg = default_config()
    overrides = {
        "input_path": args.input,
        "project_root": args.project_root.resolve() if args.project_root else None,
        "timestamp_format": args.timestamp_format,
        "sampling_fraction": args.sample_frac,
        "random_seed": args.seed,
        "hour_basis_dim": args.hour_k,
        "smooth_basis_dim": args.smooth_k,
        "day_basis_dim": args.day_k,
        "arma_p": args.arma_p,
        "arma_q": args.arma_q,
        "max_pql_iter": args.max_pql_iter,
        "diagnostic_lags": args.lags,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if args.no_figures:
        overrides["make_figures"] = False
    return replace(cfg, **overrides)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(args)
    except ValueError as exc:
        print(f"[run] invalid configuration: {exc}")
        return 1
    try:
        run_pipeline(cfg, verbose=not args.quiet)
    except PipelineStageError as exc:
        print(f"[run] stage '{exc.stage}' failed: {exc.cause}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
