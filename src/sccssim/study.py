from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

import pandas as pd
import yaml

from .audit import build_run_manifest, failure_manifest, utc_now_iso, write_json
from .errors import ConfigurationError, ReplicateFailedError
from .estimator import SOLVERS
from .exposure import check_window_lengths
from .io import write_table
from .replication import ReplicationEngine, SimulationRun, results_frame
from .rng import state_to_dict

logger = logging.getLogger(__name__)

GENERATIVE_MODELS = ("A", "B")
EXECUTION_MODES = ("sequential", "parallel")
RNG_STREAMS = ("shared", "per_replicate")
FAILURE_POLICIES = ("abort", "exclude")


@dataclass(frozen=True)
class SimulationConfig:
    n_subjects: int = 1000
    obs_time: int = 500
    baseline_rate: float = 1e-5
    true_irr: float = 2.0
    risk_length: int = 28
    n_replicates: int = 2000
    generative_model: str = "A"
    execution_mode: str = "sequential"
    seed: int = 20240101
    exposure_probability: float = 0.8
    solver: str = "newton"
    ci_level: float = 0.95
    rng_streams: str = "shared"
    n_workers: Optional[int] = None
    on_failure: str = "abort"

    @property
    def true_log_effect(self) -> float:
        return math.log(self.true_irr)

    @property
    def stream_policy(self) -> str:
        """Stream layout actually used; parallel runs always get one stream per replicate."""
        if self.execution_mode == "parallel":
            return "per_replicate"
        return self.rng_streams

    def validate(self) -> None:
        """Raise ConfigurationError before any simulation work if a setting is invalid."""
        if self.n_subjects < 1:
            raise ConfigurationError(f"n_subjects must be >= 1, got {self.n_subjects}")
        if self.obs_time < 2:
            raise ConfigurationError(f"obs_time must be >= 2, got {self.obs_time}")
        check_window_lengths(self.obs_time, self.risk_length)
        if not (0.0 < self.baseline_rate < 1.0):
            raise ConfigurationError(f"baseline_rate must lie strictly between 0 and 1, got {self.baseline_rate}")
        if not (self.true_irr > 0 and math.isfinite(self.true_irr)):
            raise ConfigurationError(f"true_irr must be a positive finite number, got {self.true_irr}")
        if self.seed < 0:
            raise ConfigurationError(f"seed must be a non-negative integer, got {self.seed}")
        if self.n_replicates < 1:
            raise ConfigurationError(f"n_replicates must be >= 1, got {self.n_replicates}")
        if self.generative_model not in GENERATIVE_MODELS:
            raise ConfigurationError(f"generative_model must be one of {GENERATIVE_MODELS}, got {self.generative_model!r}")
        if self.execution_mode not in EXECUTION_MODES:
            raise ConfigurationError(f"execution_mode must be one of {EXECUTION_MODES}, got {self.execution_mode!r}")
        if self.rng_streams not in RNG_STREAMS:
            raise ConfigurationError(f"rng_streams must be one of {RNG_STREAMS}, got {self.rng_streams!r}")
        if self.on_failure not in FAILURE_POLICIES:
            raise ConfigurationError(f"on_failure must be one of {FAILURE_POLICIES}, got {self.on_failure!r}")
        if self.solver not in SOLVERS:
            raise ConfigurationError(f"solver must be one of {sorted(SOLVERS)}, got {self.solver!r}")
        if not (0.0 < self.ci_level < 1.0):
            raise ConfigurationError(f"ci_level must lie strictly between 0 and 1, got {self.ci_level}")
        if not (0.0 <= self.exposure_probability <= 1.0):
            raise ConfigurationError(f"exposure_probability must lie in [0, 1], got {self.exposure_probability}")
        if self.n_workers is not None and self.n_workers < 1:
            raise ConfigurationError(f"n_workers must be >= 1 when given, got {self.n_workers}")


_INT_KEYS = ("n_subjects", "obs_time", "risk_length", "n_replicates", "seed")
_FLOAT_KEYS = ("baseline_rate", "exposure_probability", "ci_level")
_STR_KEYS = ("generative_model", "execution_mode", "solver", "rng_streams", "on_failure")
_EFFECT_KEYS = ("true_irr", "true_effect", "true_log_effect")


def _as_int(key: str, v: Any) -> int:
    if isinstance(v, bool) or float(v) != int(v):
        raise ConfigurationError(f"{key} must be an integer, got {v!r}")
    return int(v)


def config_from_mapping(raw: dict[str, Any]) -> SimulationConfig:
    known = set(_INT_KEYS) | set(_FLOAT_KEYS) | set(_STR_KEYS) | set(_EFFECT_KEYS) | {"n_workers"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {unknown}")

    kwargs: dict[str, Any] = {}
    try:
        for k in _INT_KEYS:
            if k in raw:
                kwargs[k] = _as_int(k, raw[k])
        for k in _FLOAT_KEYS:
            if k in raw:
                kwargs[k] = float(raw[k])
        for k in _STR_KEYS:
            if k in raw:
                kwargs[k] = str(raw[k])
        if raw.get("n_workers") is not None:
            kwargs["n_workers"] = _as_int("n_workers", raw["n_workers"])
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(f"Malformed config value: {e}") from e

    effects = [k for k in _EFFECT_KEYS if raw.get(k) is not None]
    if len(effects) > 1:
        raise ConfigurationError(f"Give the true effect once, got {effects}")
    if effects:
        k = effects[0]
        try:
            v = float(raw[k])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{k} must be a number, got {raw[k]!r}") from e
        kwargs["true_irr"] = math.exp(v) if k == "true_log_effect" else v

    if "generative_model" in kwargs:
        kwargs["generative_model"] = kwargs["generative_model"].upper()

    cfg = SimulationConfig(**kwargs)
    cfg.validate()
    return cfg


def load_config(path: str | Path) -> SimulationConfig:
    path = Path(path)
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ConfigurationError("Config must be a YAML mapping.")
    return config_from_mapping(raw)


def with_overrides(config: SimulationConfig, **overrides: Any) -> SimulationConfig:
    cfg = replace(config, **{k: v for k, v in overrides.items() if v is not None})
    cfg.validate()
    return cfg


def run_study(
    *,
    config: SimulationConfig,
    outdir: str | Path,
    repo_root: Optional[str | Path] = None,
) -> SimulationRun:
    """
    Run all replicates and write the per-replicate table, the aggregate,
    every replicate's RNG state and an audit manifest under `outdir`.
    """
    outdir = Path(outdir)
    tables_dir = outdir / "tables"
    audit_dir = outdir / "audit"
    tables_dir.mkdir(parents=True, exist_ok=True)
    audit_dir.mkdir(parents=True, exist_ok=True)
    started = utc_now_iso()

    try:
        run = ReplicationEngine(config).run()
    except ReplicateFailedError as e:
        # Completed replicates are kept for inspection; no aggregate is written.
        write_table(results_frame(e.partial), tables_dir / "replicates_partial.csv")
        write_json(failure_manifest(config, e), audit_dir / "failure.json")
        raise
    assert run.aggregate is not None

    write_table(results_frame(run.results), tables_dir / "replicates.csv")
    write_table(pd.DataFrame([run.aggregate.as_dict()]), tables_dir / "aggregate.csv")
    if run.failures:
        write_table(
            pd.DataFrame([{k: v for k, v in asdict(f).items() if k != "rng_state"} for f in run.failures]),
            tables_dir / "failures.csv",
        )

    states = {str(r.replicate_id): state_to_dict(r.rng_state) for r in run.results}
    states.update({str(f.replicate_id): state_to_dict(f.rng_state) for f in run.failures})
    write_json(
        {"config": asdict(config), "states": dict(sorted(states.items(), key=lambda kv: int(kv[0])))},
        outdir / "rng_states.json",
    )

    repo_root = Path(repo_root) if repo_root is not None else outdir.parent
    manifest = build_run_manifest(config, run, outdir, repo_root=repo_root, started=started)
    write_json(manifest, audit_dir / "run_audit.json")
    logger.info("Wrote simulation outputs to %s", outdir)
    return run


def load_run_states(run_dir: str | Path) -> tuple[SimulationConfig, dict[int, dict[str, Any]]]:
    """Config and raw per-replicate RNG states stored by `run_study`."""
    raw = json.loads((Path(run_dir) / "rng_states.json").read_text(encoding="utf-8"))
    cfg = SimulationConfig(**raw["config"])
    cfg.validate()
    return cfg, {int(k): v for k, v in raw["states"].items()}
