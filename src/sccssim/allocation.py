from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import DomainError
from .exposure import ExposureWindows


@dataclass(frozen=True)
class EventDraws:
    """Event rows as aligned arrays, sorted by subject then day."""

    subject_index: np.ndarray
    event_day: np.ndarray

    @property
    def n_events(self) -> int:
        return int(self.event_day.size)


@dataclass(frozen=True)
class AllocationRates:
    lambda0: float
    lambda1: float
    control_days: int
    risk_days: int

    @property
    def total_rate(self) -> float:
        return self.lambda0 * self.control_days + self.lambda1 * self.risk_days


def allocation_rates(*, baseline_rate: float, log_effect: float, obs_time: int, risk_length: int) -> AllocationRates:
    lambda0 = float(baseline_rate)
    lambda1 = lambda0 * float(np.exp(float(log_effect)))
    rates = AllocationRates(
        lambda0=lambda0,
        lambda1=lambda1,
        control_days=int(obs_time) - int(risk_length),
        risk_days=int(risk_length),
    )
    mu = rates.total_rate
    if not np.isfinite(mu) or mu <= 0 or lambda0 <= 0:
        raise DomainError(f"Total event rate must be finite and positive (baseline_rate={baseline_rate}, mu={mu}).")
    return rates


def allocation_probabilities(rates: AllocationRates) -> tuple[float, float]:
    """Multinomial probabilities (control, risk) of an event given the subject's total."""
    mu = rates.total_rate
    p0 = rates.lambda0 * rates.control_days / mu
    p1 = rates.lambda1 * rates.risk_days / mu
    return float(p0), float(p1)


def sample_zero_truncated_poisson(mu: float, size: int, rng: np.random.Generator) -> np.ndarray:
    """
    Exact draws from Poisson(mu) conditioned on being >= 1.

    The first arrival of a unit-rate process on [0, mu], given at least one
    arrival, has CDF (1 - exp(-t)) / (1 - exp(-mu)); the remaining arrivals are
    Poisson(mu - t). Using log1p/expm1 keeps small rates (mu ~ 1e-3) accurate
    and there is no rejection loop.
    """
    mu = float(mu)
    if not np.isfinite(mu) or mu <= 0:
        raise DomainError(f"Zero-truncated Poisson requires a positive finite mean, got {mu}.")
    u = rng.random(size)
    first_arrival = -np.log1p(u * np.expm1(-mu))
    remaining = np.maximum(mu - first_arrival, 0.0)
    return 1 + rng.poisson(remaining)


def allocate_events(
    windows: ExposureWindows,
    *,
    baseline_rate: float,
    log_effect: float,
    rng: np.random.Generator,
) -> EventDraws:
    """
    Model A event generator.

    Each subject gets a zero-truncated Poisson number of events, split between
    control and risk period by a multinomial draw and placed uniformly (with
    replacement) on the days of each period.
    """
    obs_time = int(windows.obs_end - windows.obs_start + 1)
    risk_days = windows.exposure_days()
    if not np.all(windows.exposed) or np.any(risk_days != risk_days[0]):
        raise DomainError("Model A requires every subject to be exposed with a common risk length.")
    risk_length = int(risk_days[0])

    rates = allocation_rates(
        baseline_rate=baseline_rate,
        log_effect=log_effect,
        obs_time=obs_time,
        risk_length=risk_length,
    )
    p0, p1 = allocation_probabilities(rates)

    n = windows.n_subjects
    totals = sample_zero_truncated_poisson(rates.total_rate, n, rng)
    counts = rng.multinomial(totals, [p0, p1])
    n0 = counts[:, 0]
    n1 = counts[:, 1]

    idx = np.arange(n, dtype=np.int64)
    idx0 = np.repeat(idx, n0)
    idx1 = np.repeat(idx, n1)

    # Control days are the observation days outside the risk window; the k-th
    # control day (0-based) maps past the window once it reaches its start.
    k0 = rng.integers(0, rates.control_days, size=idx0.size)
    start0 = windows.exposure_start[idx0]
    day0 = windows.obs_start + k0
    day0 = np.where(day0 >= start0, day0 + risk_length, day0)

    k1 = rng.integers(0, rates.risk_days, size=idx1.size)
    day1 = windows.exposure_start[idx1] + k1

    subject_index = np.concatenate([idx0, idx1])
    event_day = np.concatenate([day0, day1]).astype(np.int64)
    order = np.lexsort((event_day, subject_index))
    return EventDraws(subject_index=subject_index[order], event_day=event_day[order])
