#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from sccssim.study import load_config, run_study, with_overrides


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Monte Carlo evaluation of the SCCS incidence-rate-ratio estimator.")
    p.add_argument("--outdir", required=True, help="Output directory.")
    p.add_argument(
        "--config",
        default=str(ROOT / "configs" / "model_a_default.yaml"),
        help="Path to YAML config (default: configs/model_a_default.yaml).",
    )
    p.add_argument("--n-replicates", type=int, default=None, help="Override n_replicates.")
    p.add_argument("--n-subjects", type=int, default=None, help="Override n_subjects.")
    p.add_argument("--seed", type=int, default=None, help="Override the master seed.")
    p.add_argument("--execution-mode", choices=["sequential", "parallel"], default=None)
    p.add_argument("--n-workers", type=int, default=None, help="Worker processes for parallel mode.")
    p.add_argument("--verbose", action="store_true", help="Log progress.")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = with_overrides(
        load_config(args.config),
        n_replicates=args.n_replicates,
        n_subjects=args.n_subjects,
        seed=args.seed,
        execution_mode=args.execution_mode,
        n_workers=args.n_workers,
    )
    run = run_study(config=cfg, outdir=args.outdir, repo_root=ROOT)
    agg = run.aggregate
    print(f"Wrote outputs to: {args.outdir}")
    print(
        f"mean IRR={agg.mean_irr:.4f} (true {agg.true_irr:g}), bias={agg.bias_pct:.2f}%, "
        f"empirical SE={agg.empirical_se:.4f}, coverage={agg.coverage:.3f}, failed={agg.n_failed}"
    )


if __name__ == "__main__":
    main()
