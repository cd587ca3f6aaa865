from __future__ import annotations

import hashlib
import json
import os
import platform
import subprocess
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import numpy as np

if TYPE_CHECKING:
    from .errors import ReplicateFailedError
    from .replication import SimulationRun
    from .study import SimulationConfig

AUDITED_PACKAGES = ["numpy", "pandas", "scipy", "statsmodels", "pyyaml", "pyarrow"]

# How replicate i's stream is derived when each replicate has its own stream.
STREAM_DERIVATION = "PCG64(seed).jumped(replicate_id + 1)"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def sha256_file(path: str | Path, *, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def git_revision(repo_root: str | Path) -> dict[str, Any]:
    """HEAD commit and dirty flag, or {"present": False} outside a checkout."""
    repo_root = Path(repo_root)
    if not (repo_root / ".git").exists():
        return {"present": False}

    def _git(*args: str) -> Optional[str]:
        try:
            return subprocess.check_output(["git", *args], cwd=repo_root, stderr=subprocess.DEVNULL, text=True).strip()
        except (OSError, subprocess.CalledProcessError):
            return None

    status = _git("status", "--porcelain=v1")
    return {
        "present": True,
        "head": _git("rev-parse", "HEAD"),
        "dirty": None if status is None else bool(status),
    }


def collect_environment(packages: Optional[list[str]] = None) -> dict[str, Any]:
    """Interpreter, platform and versions of the packages a replay depends on."""
    versions: dict[str, Optional[str]] = {}
    for p in packages or AUDITED_PACKAGES:
        try:
            versions[p] = metadata.version(p)
        except metadata.PackageNotFoundError:
            versions[p] = None

    return {
        "python": sys.version.replace("\n", " "),
        "platform": platform.platform(),
        "cpu_count": os.cpu_count(),
        "packages": versions,
    }


def replay_info(config: "SimulationConfig") -> dict[str, Any]:
    """
    What a later process needs to regenerate any replicate of the run.

    Stored RNG states can only be restored by a numpy that provides the same
    bit generator, so its name is recorded next to the seed and stream layout.
    """
    return {
        "seed": int(config.seed),
        "stream_policy": config.stream_policy,
        "stream_derivation": STREAM_DERIVATION if config.stream_policy == "per_replicate" else "PCG64(seed), shared",
        "bit_generator": np.random.PCG64.__name__,
        "numpy": np.__version__,
        "states_file": "rng_states.json",
    }


def output_hashes(outdir: str | Path, *, exclude: tuple[str, ...] = ()) -> list[dict[str, Any]]:
    """Size and sha256 of every file under `outdir`, keyed by path relative to it."""
    outdir = Path(outdir)
    records = []
    for p in sorted(outdir.rglob("*")):
        rel = p.relative_to(outdir).as_posix()
        if not p.is_file() or rel in exclude:
            continue
        records.append({"path": rel, "size_bytes": p.stat().st_size, "sha256": sha256_file(p)})
    return records


def build_run_manifest(
    config: "SimulationConfig",
    run: "SimulationRun",
    outdir: str | Path,
    *,
    repo_root: str | Path,
    started: str,
) -> dict[str, Any]:
    """Manifest for audit/run_audit.json; call after every other output is written."""
    assert run.aggregate is not None
    return {
        "run_started_utc": started,
        "config": asdict(config),
        "replay": replay_info(config),
        "replicates": {
            "requested": int(config.n_replicates),
            "succeeded": len(run.results),
            "failed_ids": [f.replicate_id for f in run.failures],
        },
        "aggregate": run.aggregate.as_dict(),
        "environment": collect_environment(),
        "git": git_revision(repo_root),
        "outputs": output_hashes(outdir, exclude=("audit/run_audit.json",)),
        "run_finished_utc": utc_now_iso(),
    }


def failure_manifest(config: "SimulationConfig", err: "ReplicateFailedError") -> dict[str, Any]:
    """audit/failure.json for a run stopped by the abort policy."""
    return {
        "replicate_id": err.replicate_id,
        "error_type": type(err.cause).__name__,
        "message": str(err.cause),
        "completed_ids": [r.replicate_id for r in err.partial],
        "replay": replay_info(config),
    }


def write_json(obj: Any, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)
