from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Sequence

import numpy as np
import pandas as pd

from .daily import expected_event_count
from .dataset import generate_dataset
from .errors import DomainError, FitError, InsufficientEventsError, ReplicateFailedError, SCCSSimError
from .estimator import FitResult, make_estimator
from .rng import RNGState, capture_state, make_generator, restore_state, spawn_worker_streams, stream_for_replicate

if TYPE_CHECKING:
    from .study import SimulationConfig

logger = logging.getLogger(__name__)

# Errors that belong to one replicate; anything else is a bug and propagates as is.
REPLICATE_ERRORS = (DomainError, FitError)

RESULT_COLUMNS = ["replicate_id", "log_estimate", "se", "irr", "ci_lower", "ci_upper", "event_count"]


@dataclass(frozen=True)
class ReplicateResult:
    replicate_id: int
    fit: FitResult
    rng_state: RNGState


@dataclass(frozen=True)
class ReplicateFailure:
    replicate_id: int
    error_type: str
    message: str
    rng_state: RNGState


@dataclass(frozen=True)
class AggregateResult:
    n_replicates: int
    n_failed: int
    true_irr: float
    mean_irr: float
    bias_pct: float
    mean_log_estimate: float
    empirical_se: float
    mean_model_se: float
    coverage: float

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class SimulationRun:
    results: list[ReplicateResult]
    failures: list[ReplicateFailure] = field(default_factory=list)
    aggregate: Optional[AggregateResult] = None

    def rng_state_for(self, replicate_id: int) -> RNGState:
        for r in self.results:
            if r.replicate_id == replicate_id:
                return r.rng_state
        for f in self.failures:
            if f.replicate_id == replicate_id:
                return f.rng_state
        raise KeyError(f"No replicate with id {replicate_id}")


def default_worker_count() -> int:
    # One unit stays with the coordinating process.
    return max(1, (os.cpu_count() or 2) - 1)


def run_replicate(
    config: "SimulationConfig",
    replicate_id: int,
    rng: np.random.Generator,
    *,
    stream_id: Optional[int] = None,
) -> ReplicateResult:
    """Capture the stream state, then generate and fit one dataset."""
    state = capture_state(rng, stream_id=stream_id)
    dataset = generate_dataset(config, rng)
    fit = make_estimator(config.solver, ci_level=config.ci_level).fit(dataset)
    return ReplicateResult(replicate_id=int(replicate_id), fit=fit, rng_state=state)


def _run_from_state(config: "SimulationConfig", replicate_id: int, state: RNGState) -> ReplicateResult:
    # Top-level so ProcessPoolExecutor can pickle it.
    return run_replicate(config, replicate_id, restore_state(state), stream_id=state.stream_id)


def replay_replicate(config: "SimulationConfig", state: RNGState) -> pd.DataFrame:
    """Regenerate the exact dataset of a replicate from its captured state."""
    return generate_dataset(config, restore_state(state))


def check_expected_events(config: "SimulationConfig") -> None:
    if config.generative_model != "B":
        return
    expected = expected_event_count(
        n_subjects=config.n_subjects,
        obs_time=config.obs_time,
        risk_length=config.risk_length,
        baseline_rate=config.baseline_rate,
        log_effect=config.true_log_effect,
        exposure_probability=config.exposure_probability,
    )
    if expected < 1.0:
        raise InsufficientEventsError(
            f"Model B expects {expected:.3g} events per replicate with n_subjects={config.n_subjects}; "
            "increase n_subjects, obs_time or baseline_rate."
        )


class ReplicationEngine:
    """
    Runs generate + fit for replicates 1..n_replicates and aggregates them.

    Sequential runs draw from one shared stream unless
    `rng_streams == "per_replicate"`; parallel runs always give replicate i
    its own skip-ahead stream, so a sequential per-replicate run and a
    parallel run produce identical results.
    """

    def __init__(self, config: "SimulationConfig") -> None:
        self.config = config
        self.status = "idle"
        self.run_result: Optional[SimulationRun] = None

    def run(self) -> SimulationRun:
        if self.status != "idle":
            raise RuntimeError(f"Engine already used (status={self.status}).")
        cfg = self.config
        cfg.validate()
        check_expected_events(cfg)

        self.status = "running"
        logger.info(
            "Running %d replicates (model %s, %s, streams=%s)",
            cfg.n_replicates,
            cfg.generative_model,
            cfg.execution_mode,
            cfg.stream_policy,
        )
        if cfg.execution_mode == "parallel":
            results, failures = self._run_parallel()
        else:
            results, failures = self._run_sequential()

        results.sort(key=lambda r: r.replicate_id)
        failures.sort(key=lambda f: f.replicate_id)
        if failures:
            logger.warning("%d of %d replicates failed and were excluded", len(failures), cfg.n_replicates)

        run = SimulationRun(results=results, failures=failures)
        try:
            run.aggregate = aggregate_results(results, true_irr=cfg.true_irr, n_failed=len(failures))
        except SCCSSimError:
            self.status = "failed"
            raise
        self.status = "aggregated"
        self.run_result = run
        return run

    def _failure(self, replicate_id: int, err: BaseException, state: RNGState, done: list[ReplicateResult]) -> ReplicateFailure:
        if self.config.on_failure == "abort":
            self.status = "failed"
            done = sorted(done, key=lambda r: r.replicate_id)
            raise ReplicateFailedError(replicate_id, err, partial=done) from err
        logger.warning("Replicate %d failed: %s", replicate_id, err)
        return ReplicateFailure(
            replicate_id=int(replicate_id),
            error_type=type(err).__name__,
            message=str(err),
            rng_state=state,
        )

    def _run_sequential(self) -> tuple[list[ReplicateResult], list[ReplicateFailure]]:
        cfg = self.config
        shared = make_generator(cfg.seed) if cfg.stream_policy == "shared" else None
        results: list[ReplicateResult] = []
        failures: list[ReplicateFailure] = []
        for i in range(1, cfg.n_replicates + 1):
            if shared is not None:
                rng, stream_id = shared, None
            else:
                rng, stream_id = stream_for_replicate(cfg.seed, i), i
            state = capture_state(rng, stream_id=stream_id)
            try:
                results.append(run_replicate(cfg, i, rng, stream_id=stream_id))
            except REPLICATE_ERRORS as e:
                failures.append(self._failure(i, e, state, results))
            if i % 100 == 0:
                logger.info("Completed %d/%d replicates", i, cfg.n_replicates)
        return results, failures

    def _run_parallel(self) -> tuple[list[ReplicateResult], list[ReplicateFailure]]:
        cfg = self.config
        n_workers = int(cfg.n_workers) if cfg.n_workers else default_worker_count()
        states = {s.stream_id: s for s in spawn_worker_streams(cfg.seed, cfg.n_replicates, start=1)}

        results: list[ReplicateResult] = []
        failures: list[ReplicateFailure] = []
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(_run_from_state, cfg, i, state): i for i, state in states.items()}
            try:
                completed = 0
                for future in as_completed(futures):
                    i = futures[future]
                    try:
                        results.append(future.result())
                    except REPLICATE_ERRORS as e:
                        if cfg.on_failure == "abort":
                            executor.shutdown(wait=True, cancel_futures=True)
                            i, e, results = _settled_outcomes(futures)
                        failures.append(self._failure(i, e, states[i], results))
                    completed += 1
                    if completed % 100 == 0:
                        logger.info("Completed %d/%d replicates", completed, cfg.n_replicates)
            except BaseException:
                # Queued replicates are dropped, not run, before the error surfaces.
                executor.shutdown(wait=True, cancel_futures=True)
                self.status = "failed"
                raise
        return results, failures


def _settled_outcomes(futures: dict[Future, int]) -> tuple[int, BaseException, list[ReplicateResult]]:
    """Lowest failed replicate and every successful result of a stopped pool."""
    failed: dict[int, BaseException] = {}
    done: list[ReplicateResult] = []
    for future, i in futures.items():
        if future.cancelled():
            continue
        err = future.exception()
        if err is None:
            done.append(future.result())
        elif isinstance(err, REPLICATE_ERRORS):
            failed[i] = err
    first = min(failed)
    return first, failed[first], done


def aggregate_results(
    results: Sequence[ReplicateResult],
    *,
    true_irr: float,
    n_failed: int = 0,
) -> AggregateResult:
    """
    Bias, empirical SE and CI coverage over the given replicates.

    bias_pct is relative to the true IRR on the ratio scale; empirical_se is
    the sample SD (ddof=1) of the log estimates; coverage counts replicates
    whose CI contains the true log effect.
    """
    if not results:
        raise SCCSSimError(f"No successful replicates to aggregate ({n_failed} failed).")
    true_irr = float(true_irr)
    true_log = float(np.log(true_irr))

    log_est = np.array([r.fit.log_estimate for r in results], dtype=float)
    irr = np.array([r.fit.irr for r in results], dtype=float)
    se = np.array([r.fit.standard_error for r in results], dtype=float)
    lo = np.log(np.array([r.fit.ci_lower for r in results], dtype=float))
    hi = np.log(np.array([r.fit.ci_upper for r in results], dtype=float))

    mean_irr = float(np.mean(irr))
    empirical_se = float(np.std(log_est, ddof=1)) if log_est.size > 1 else float("nan")
    covered = (lo <= true_log) & (true_log <= hi)
    return AggregateResult(
        n_replicates=int(log_est.size),
        n_failed=int(n_failed),
        true_irr=true_irr,
        mean_irr=mean_irr,
        bias_pct=100.0 * (mean_irr - true_irr) / true_irr,
        mean_log_estimate=float(np.mean(log_est)),
        empirical_se=empirical_se,
        mean_model_se=float(np.mean(se)),
        coverage=float(np.mean(covered)),
    )


def results_frame(results: Sequence[ReplicateResult]) -> pd.DataFrame:
    rows = [
        {
            "replicate_id": r.replicate_id,
            "log_estimate": r.fit.log_estimate,
            "se": r.fit.standard_error,
            "irr": r.fit.irr,
            "ci_lower": r.fit.ci_lower,
            "ci_upper": r.fit.ci_upper,
            "event_count": r.fit.event_count,
        }
        for r in sorted(results, key=lambda r: r.replicate_id)
    ]
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)
