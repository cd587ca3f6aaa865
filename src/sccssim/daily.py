from __future__ import annotations

import numpy as np
from scipy.special import expit, logit

from .allocation import EventDraws
from .errors import DomainError
from .exposure import ExposureWindows


def daily_event_probabilities(*, baseline_rate: float, log_effect: float) -> tuple[float, float]:
    """Daily event probability off and on exposure under the logistic model."""
    rate = float(baseline_rate)
    if not (0.0 < rate < 1.0):
        raise DomainError(f"baseline_rate must lie strictly between 0 and 1, got {baseline_rate}.")
    beta0 = float(logit(rate))
    beta1 = float(log_effect)
    return float(expit(beta0)), float(expit(beta0 + beta1))


def exposure_matrix(windows: ExposureWindows) -> np.ndarray:
    """Boolean (subject x day) matrix of exposure status over the observation period."""
    days = np.arange(windows.obs_start, windows.obs_end + 1, dtype=np.int64)
    start = windows.exposure_start[:, None]
    end = windows.exposure_end[:, None]
    return windows.exposed[:, None] & (days[None, :] >= start) & (days[None, :] <= end)


def sample_daily_outcomes(
    windows: ExposureWindows,
    *,
    baseline_rate: float,
    log_effect: float,
    rng: np.random.Generator,
) -> EventDraws:
    """
    Model B event generator.

    Every subject-day is an independent Bernoulli trial with
    logit(p) = logit(baseline_rate) + log_effect * exposed(day). Subjects may
    end up with zero, one or several events; those with none are absent from
    the returned rows.
    """
    p_off, p_on = daily_event_probabilities(baseline_rate=baseline_rate, log_effect=log_effect)
    exposed = exposure_matrix(windows)
    p = np.where(exposed, p_on, p_off)
    outcome = rng.random(p.shape) < p

    # Row-major nonzero keeps rows sorted by subject, then day.
    subject_index, day_offset = np.nonzero(outcome)
    return EventDraws(
        subject_index=subject_index.astype(np.int64),
        event_day=(windows.obs_start + day_offset).astype(np.int64),
    )


def expected_event_count(
    *,
    n_subjects: int,
    obs_time: int,
    risk_length: int,
    baseline_rate: float,
    log_effect: float,
    exposure_probability: float,
) -> float:
    """Expected total number of Model B events across all subjects."""
    p_off, p_on = daily_event_probabilities(baseline_rate=baseline_rate, log_effect=log_effect)
    per_exposed = p_on * risk_length + p_off * (obs_time - risk_length)
    per_unexposed = p_off * obs_time
    q = float(exposure_probability)
    return float(n_subjects) * (q * per_exposed + (1.0 - q) * per_unexposed)
