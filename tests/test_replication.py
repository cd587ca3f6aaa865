from __future__ import annotations

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

import sccssim.replication as replication
from sccssim.errors import (
    ConfigurationError,
    FitError,
    InsufficientEventsError,
    ReplicateFailedError,
    SCCSSimError,
)
from sccssim.estimator import FitResult, SCCSEstimator
from sccssim.replication import (
    ReplicateResult,
    ReplicationEngine,
    aggregate_results,
    replay_replicate,
    results_frame,
)
from sccssim.rng import RNGState
from sccssim.study import SimulationConfig

SMALL = SimulationConfig(
    n_subjects=200,
    obs_time=120,
    risk_length=14,
    baseline_rate=5e-3,
    true_irr=2.0,
    n_replicates=6,
    seed=4242,
)

_DUMMY_STATE = RNGState(bit_generator="PCG64", state={}, stream_id=None)


def _result(i: int, log_est: float, lo: float, hi: float) -> ReplicateResult:
    fit = FitResult(
        log_estimate=log_est,
        standard_error=0.1,
        irr=math.exp(log_est),
        ci_lower=math.exp(lo),
        ci_upper=math.exp(hi),
        event_count=10,
    )
    return ReplicateResult(replicate_id=i, fit=fit, rng_state=_DUMMY_STATE)


def test_aggregate_matches_hand_computed_values() -> None:
    true_log = math.log(2.0)
    results = [
        _result(1, 0.5, 0.3, 0.7),  # covered
        _result(2, 0.7, 0.5, 0.9),  # covered
        _result(3, 0.9, 0.75, 1.05),  # not covered
    ]
    agg = aggregate_results(results, true_irr=2.0)

    mean_irr = (math.exp(0.5) + math.exp(0.7) + math.exp(0.9)) / 3
    assert agg.n_replicates == 3
    assert agg.n_failed == 0
    assert agg.mean_irr == pytest.approx(mean_irr)
    assert agg.bias_pct == pytest.approx(100 * (mean_irr - 2.0) / 2.0)
    assert agg.mean_log_estimate == pytest.approx(0.7)
    assert agg.empirical_se == pytest.approx(0.2)
    assert agg.mean_model_se == pytest.approx(0.1)
    assert 0.3 < true_log < 0.7
    assert agg.coverage == pytest.approx(2 / 3)


def test_aggregate_single_replicate_has_undefined_empirical_se() -> None:
    agg = aggregate_results([_result(1, 0.6, 0.4, 0.8)], true_irr=2.0)
    assert math.isnan(agg.empirical_se)
    assert agg.coverage == 1.0


def test_aggregate_is_order_invariant() -> None:
    results = [_result(i, 0.1 * i, 0.1 * i - 0.3, 0.1 * i + 0.3) for i in range(1, 8)]
    a = aggregate_results(results, true_irr=1.5)
    b = aggregate_results(list(reversed(results)), true_irr=1.5)
    assert a == b


def test_results_frame_is_sorted_by_replicate() -> None:
    results = [_result(3, 0.3, 0.0, 1.0), _result(1, 0.1, 0.0, 1.0), _result(2, 0.2, 0.0, 1.0)]
    df = results_frame(results)
    assert df["replicate_id"].tolist() == [1, 2, 3]
    assert list(df.columns) == ["replicate_id", "log_estimate", "se", "irr", "ci_lower", "ci_upper", "event_count"]


def test_sequential_run_records_state_per_replicate() -> None:
    engine = ReplicationEngine(SMALL)
    run = engine.run()
    assert engine.status == "aggregated"
    assert [r.replicate_id for r in run.results] == list(range(1, 7))
    assert len({r.fit.log_estimate for r in run.results}) == 6
    assert run.aggregate is not None and run.aggregate.n_replicates == 6


def test_engine_runs_once() -> None:
    engine = ReplicationEngine(replace(SMALL, n_replicates=1))
    engine.run()
    with pytest.raises(RuntimeError):
        engine.run()


@pytest.mark.parametrize("streams", ["shared", "per_replicate"])
def test_replay_reproduces_replicate(streams: str) -> None:
    cfg = replace(SMALL, rng_streams=streams)
    run = ReplicationEngine(cfg).run()
    target = run.results[3]
    dataset = replay_replicate(cfg, run.rng_state_for(target.replicate_id))
    refit = SCCSEstimator(ci_level=cfg.ci_level).fit(dataset)
    assert refit == target.fit


def test_parallel_matches_sequential_per_replicate_streams() -> None:
    seq = ReplicationEngine(replace(SMALL, rng_streams="per_replicate")).run()
    par = ReplicationEngine(replace(SMALL, execution_mode="parallel", n_workers=2)).run()

    pd.testing.assert_frame_equal(results_frame(seq.results), results_frame(par.results))
    assert [r.rng_state for r in seq.results] == [r.rng_state for r in par.results]
    assert seq.aggregate == par.aggregate


def test_parallel_model_b_matches_sequential() -> None:
    cfg = replace(SMALL, generative_model="B", baseline_rate=0.01, n_replicates=4)
    seq = ReplicationEngine(replace(cfg, rng_streams="per_replicate")).run()
    par = ReplicationEngine(replace(cfg, execution_mode="parallel", n_workers=2)).run()
    for a, b in zip(seq.results, par.results):
        pd.testing.assert_frame_equal(
            replay_replicate(cfg, a.rng_state),
            replay_replicate(cfg, b.rng_state),
        )
    assert seq.aggregate == par.aggregate


def test_invalid_configuration_fails_before_sampling() -> None:
    engine = ReplicationEngine(replace(SMALL, risk_length=SMALL.obs_time))
    with pytest.raises(ConfigurationError):
        engine.run()
    assert engine.status == "idle"


def test_model_b_with_too_few_expected_events_is_signalled() -> None:
    cfg = replace(SMALL, generative_model="B", n_subjects=1, obs_time=100, baseline_rate=1e-5)
    with pytest.raises(InsufficientEventsError):
        ReplicationEngine(cfg).run()


class _FailOnCall:
    def __init__(self, fail_at: int) -> None:
        self.calls = 0
        self.fail_at = fail_at

    def __call__(self, solver: str = "newton", *, ci_level: float = 0.95):
        outer = self

        class _Estimator:
            def fit(self, dataset: pd.DataFrame) -> FitResult:
                outer.calls += 1
                if outer.calls == outer.fail_at:
                    raise FitError("degenerate dataset")
                return SCCSEstimator(ci_level=ci_level).fit(dataset)

        return _Estimator()


def test_abort_policy_reports_failed_replicate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(replication, "make_estimator", _FailOnCall(3))
    engine = ReplicationEngine(SMALL)
    with pytest.raises(ReplicateFailedError) as excinfo:
        engine.run()
    err = excinfo.value
    assert err.replicate_id == 3
    assert isinstance(err.cause, FitError)
    assert [r.replicate_id for r in err.partial] == [1, 2]
    assert engine.status == "failed"


def test_exclude_policy_discloses_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(replication, "make_estimator", _FailOnCall(2))
    run = ReplicationEngine(replace(SMALL, on_failure="exclude")).run()
    assert [f.replicate_id for f in run.failures] == [2]
    assert run.failures[0].error_type == "FitError"
    assert run.aggregate is not None
    assert run.aggregate.n_replicates == 5
    assert run.aggregate.n_failed == 1


def test_negative_seed_is_rejected_before_running() -> None:
    engine = ReplicationEngine(replace(SMALL, seed=-1))
    with pytest.raises(ConfigurationError):
        engine.run()
    assert engine.status == "idle"


_NO_RISK_TIME = replace(
    SMALL,
    generative_model="B",
    exposure_probability=0.0,
    execution_mode="parallel",
    n_workers=2,
    n_replicates=200,
)


def test_parallel_abort_reports_lowest_failed_replicate() -> None:
    # No subject is exposed, so every replicate fails at fit time.
    engine = ReplicationEngine(_NO_RISK_TIME)
    with pytest.raises(ReplicateFailedError) as excinfo:
        engine.run()
    err = excinfo.value
    assert err.replicate_id == 1
    assert isinstance(err.cause, FitError)
    assert err.partial == []
    assert engine.status == "failed"


def test_parallel_exclude_with_no_successes_fails_aggregation() -> None:
    engine = ReplicationEngine(replace(_NO_RISK_TIME, n_replicates=4, on_failure="exclude"))
    with pytest.raises(SCCSSimError, match="No successful replicates"):
        engine.run()
    assert engine.status == "failed"


def test_parallel_unexpected_error_cancels_queued_replicates(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    def fake_run(config, replicate_id, state):
        calls.append(replicate_id)
        if replicate_id == 1:
            raise KeyError("bug in worker")
        time.sleep(0.05)
        return _result(replicate_id, 0.7, 0.5, 0.9)

    # Threads see the patched worker function; a process pool would not.
    monkeypatch.setattr(replication, "ProcessPoolExecutor", ThreadPoolExecutor)
    monkeypatch.setattr(replication, "_run_from_state", fake_run)
    engine = ReplicationEngine(replace(SMALL, execution_mode="parallel", n_workers=1, n_replicates=100))
    with pytest.raises(KeyError):
        engine.run()
    assert engine.status == "failed"
    assert len(calls) < 10


def test_parallel_abort_waits_for_earlier_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    third_failed = threading.Event()

    def fake_run(config, replicate_id, state):
        if replicate_id == 1:
            third_failed.wait(timeout=5)
            time.sleep(0.2)
            raise FitError("replicate 1")
        if replicate_id == 3:
            third_failed.set()
            raise FitError("replicate 3")
        return _result(replicate_id, 0.7, 0.5, 0.9)

    monkeypatch.setattr(replication, "ProcessPoolExecutor", ThreadPoolExecutor)
    monkeypatch.setattr(replication, "_run_from_state", fake_run)
    engine = ReplicationEngine(replace(SMALL, execution_mode="parallel", n_workers=2, n_replicates=20))
    with pytest.raises(ReplicateFailedError) as excinfo:
        engine.run()
    err = excinfo.value
    assert err.replicate_id == 1
    ids = [r.replicate_id for r in err.partial]
    assert 2 in ids
    assert ids == sorted(ids)
    assert 1 not in ids and 3 not in ids


@pytest.mark.slow
def test_model_a_reference_scenario_recovers_irr_and_coverage() -> None:
    cfg = SimulationConfig(
        n_subjects=1000,
        obs_time=500,
        baseline_rate=1e-5,
        true_irr=2.0,
        risk_length=28,
        n_replicates=2000,
        generative_model="A",
        seed=20240101,
    )
    run = ReplicationEngine(cfg).run()
    agg = run.aggregate
    assert agg is not None
    assert agg.n_replicates == 2000
    assert abs(agg.mean_irr - 2.0) / 2.0 < 0.05
    assert 0.93 <= agg.coverage <= 0.97
    assert np.isfinite(agg.empirical_se)
