#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from sccssim.io import write_table
from sccssim.replication import replay_replicate
from sccssim.rng import state_from_dict
from sccssim.study import load_run_states


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Regenerate the dataset of one replicate from a finished run.")
    p.add_argument("--run-dir", required=True, help="Output directory of scripts/run_simulation.py.")
    p.add_argument("--replicate", type=int, required=True, help="Replicate id (1-based).")
    p.add_argument("--out", required=True, help="Output path (.csv or .parquet).")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    cfg, states = load_run_states(args.run_dir)
    if args.replicate not in states:
        raise SystemExit(f"No stored state for replicate {args.replicate} in {args.run_dir}")
    df = replay_replicate(cfg, state_from_dict(states[args.replicate]))
    write_table(df, args.out)
    print(f"Wrote {len(df)} event rows for replicate {args.replicate} to: {args.out}")


if __name__ == "__main__":
    main()
