from __future__ import annotations

import math

import numpy as np
import pytest

from sccssim.allocation import (
    allocate_events,
    allocation_probabilities,
    allocation_rates,
    sample_zero_truncated_poisson,
)
from sccssim.daily import daily_event_probabilities, expected_event_count, sample_daily_outcomes
from sccssim.errors import ConfigurationError, DomainError
from sccssim.exposure import NO_EXPOSURE, sample_exposure_windows


def test_model_a_exposes_everyone_within_window() -> None:
    rng = np.random.default_rng(1)
    w = sample_exposure_windows("A", n_subjects=2000, obs_time=500, risk_length=28, rng=rng)
    assert w.exposed.all()
    assert w.exposure_start.min() >= 1
    assert w.exposure_start.max() <= 500 - 28
    np.testing.assert_array_equal(w.exposure_end, w.exposure_start + 27)
    assert w.exposure_end.max() <= w.obs_end
    assert (w.obs_start, w.obs_end) == (1, 500)


def test_model_b_exposure_fraction_and_missing_windows() -> None:
    rng = np.random.default_rng(2)
    w = sample_exposure_windows("B", n_subjects=5000, obs_time=100, risk_length=10, rng=rng)
    assert abs(w.exposed.mean() - 0.8) < 0.03
    assert (w.exposure_start[~w.exposed] == NO_EXPOSURE).all()
    assert (w.exposure_end[~w.exposed] == NO_EXPOSURE).all()
    assert (w.exposure_days()[~w.exposed] == 0).all()
    assert (w.exposure_days()[w.exposed] == 10).all()


@pytest.mark.parametrize("risk_length", [500, 501])
def test_risk_length_not_below_obs_time_is_rejected(risk_length: int) -> None:
    rng = np.random.default_rng(3)
    state = rng.bit_generator.state
    with pytest.raises(ConfigurationError):
        sample_exposure_windows("A", n_subjects=10, obs_time=500, risk_length=risk_length, rng=rng)
    assert rng.bit_generator.state == state


@pytest.mark.parametrize(
    "baseline_rate,log_effect,risk_length",
    [(1e-5, math.log(2), 28), (0.3, -1.5, 1), (1e-3, 4.0, 250), (0.01, 0.0, 499)],
)
def test_allocation_probabilities_sum_to_one(baseline_rate: float, log_effect: float, risk_length: int) -> None:
    rates = allocation_rates(baseline_rate=baseline_rate, log_effect=log_effect, obs_time=500, risk_length=risk_length)
    p0, p1 = allocation_probabilities(rates)
    assert abs(p0 + p1 - 1.0) < 1e-9
    assert p0 > 0 and p1 > 0


@pytest.mark.parametrize("baseline_rate", [0.0, -1e-5])
def test_non_positive_rate_is_domain_error(baseline_rate: float) -> None:
    with pytest.raises(DomainError):
        allocation_rates(baseline_rate=baseline_rate, log_effect=0.0, obs_time=500, risk_length=28)


def test_zero_truncated_poisson_support_and_mean() -> None:
    rng = np.random.default_rng(4)
    mu = 2.0
    x = sample_zero_truncated_poisson(mu, 200_000, rng)
    assert x.min() >= 1
    assert abs(x.mean() - mu / (1 - math.exp(-mu))) < 0.02


def test_zero_truncated_poisson_small_rate() -> None:
    rng = np.random.default_rng(5)
    mu = 5e-3
    x = sample_zero_truncated_poisson(mu, 100_000, rng)
    assert x.min() == 1
    # E[X | X >= 1] = mu / (1 - exp(-mu)) ~ 1 + mu / 2
    assert abs(x.mean() - mu / -math.expm1(-mu)) < 1e-3


def test_zero_truncated_poisson_rejects_zero_mean() -> None:
    with pytest.raises(DomainError):
        sample_zero_truncated_poisson(0.0, 3, np.random.default_rng(0))


def test_model_a_every_subject_has_an_event_inside_window() -> None:
    rng = np.random.default_rng(6)
    w = sample_exposure_windows("A", n_subjects=1000, obs_time=500, risk_length=28, rng=rng)
    ev = allocate_events(w, baseline_rate=1e-5, log_effect=math.log(2), rng=rng)

    counts = np.bincount(ev.subject_index, minlength=w.n_subjects)
    assert counts.min() >= 1
    assert ev.event_day.min() >= w.obs_start
    assert ev.event_day.max() <= w.obs_end

    order = np.lexsort((ev.event_day, ev.subject_index))
    np.testing.assert_array_equal(order, np.arange(ev.n_events))


def test_model_a_risk_share_matches_allocation_probability() -> None:
    rng = np.random.default_rng(7)
    w = sample_exposure_windows("A", n_subjects=20_000, obs_time=100, risk_length=20, rng=rng)
    ev = allocate_events(w, baseline_rate=0.01, log_effect=math.log(3), rng=rng)

    start = w.exposure_start[ev.subject_index]
    end = w.exposure_end[ev.subject_index]
    in_risk = (ev.event_day >= start) & (ev.event_day <= end)
    _, p1 = allocation_probabilities(
        allocation_rates(baseline_rate=0.01, log_effect=math.log(3), obs_time=100, risk_length=20)
    )
    assert abs(in_risk.mean() - p1) < 0.01


def test_model_a_control_days_cover_both_sides_of_window() -> None:
    rng = np.random.default_rng(8)
    w = sample_exposure_windows("A", n_subjects=5000, obs_time=30, risk_length=5, rng=rng)
    ev = allocate_events(w, baseline_rate=0.05, log_effect=0.0, rng=rng)
    start = w.exposure_start[ev.subject_index]
    end = w.exposure_end[ev.subject_index]
    assert np.any(ev.event_day < start)
    assert np.any(ev.event_day > end)
    assert np.bincount(ev.event_day, minlength=31)[1:].min() > 0


def test_daily_probabilities_follow_logistic_model() -> None:
    p_off, p_on = daily_event_probabilities(baseline_rate=0.01, log_effect=math.log(2))
    assert p_off == pytest.approx(0.01)
    odds_off = p_off / (1 - p_off)
    odds_on = p_on / (1 - p_on)
    assert odds_on / odds_off == pytest.approx(2.0)


@pytest.mark.parametrize("baseline_rate", [0.0, 1.0])
def test_daily_probabilities_reject_degenerate_rate(baseline_rate: float) -> None:
    with pytest.raises(DomainError):
        daily_event_probabilities(baseline_rate=baseline_rate, log_effect=0.0)


def test_model_b_events_and_expected_count() -> None:
    rng = np.random.default_rng(9)
    w = sample_exposure_windows("B", n_subjects=2000, obs_time=100, risk_length=10, rng=rng)
    ev = sample_daily_outcomes(w, baseline_rate=0.01, log_effect=math.log(2), rng=rng)

    assert ev.event_day.min() >= 1
    assert ev.event_day.max() <= 100
    counts = np.bincount(ev.subject_index, minlength=w.n_subjects)
    # Daily draws are not truncated: some subjects have no events, some several.
    assert counts.min() == 0
    assert counts.max() >= 2

    expected = expected_event_count(
        n_subjects=2000,
        obs_time=100,
        risk_length=10,
        baseline_rate=0.01,
        log_effect=math.log(2),
        exposure_probability=0.8,
    )
    assert abs(ev.n_events - expected) / expected < 0.1


def test_model_b_unexposed_subject_days_use_baseline() -> None:
    rng = np.random.default_rng(10)
    w = sample_exposure_windows("B", n_subjects=3000, obs_time=50, risk_length=5, rng=rng, exposure_probability=0.0)
    assert not w.exposed.any()
    ev = sample_daily_outcomes(w, baseline_rate=0.02, log_effect=math.log(5), rng=rng)
    assert abs(ev.n_events / (3000 * 50) - 0.02) < 0.003
