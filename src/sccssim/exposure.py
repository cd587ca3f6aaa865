from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np

from .errors import ConfigurationError

GenerativeModel = Literal["A", "B"]

# Marker stored in exposure_start/exposure_end for unexposed subjects.
NO_EXPOSURE = -1


@dataclass(frozen=True)
class ExposureWindows:
    """
    Per-subject exposure windows on the common observation period [obs_start, obs_end].

    Arrays are aligned by position; `subject_id` runs 1..n.
    """

    subject_id: np.ndarray
    exposed: np.ndarray
    exposure_start: np.ndarray
    exposure_end: np.ndarray
    obs_start: int
    obs_end: int

    @property
    def n_subjects(self) -> int:
        return int(self.subject_id.size)

    def exposure_days(self) -> np.ndarray:
        return np.where(self.exposed, self.exposure_end - self.exposure_start + 1, 0)


def check_window_lengths(obs_time: int, risk_length: int) -> None:
    if int(risk_length) < 1:
        raise ConfigurationError(f"risk_length must be >= 1, got {risk_length}")
    if int(risk_length) >= int(obs_time):
        raise ConfigurationError(
            f"risk_length ({risk_length}) must be smaller than obs_time ({obs_time}); "
            "the exposure start range would be empty."
        )


def sample_exposure_windows(
    model: GenerativeModel,
    *,
    n_subjects: int,
    obs_time: int,
    risk_length: int,
    rng: np.random.Generator,
    exposure_probability: float = 0.8,
) -> ExposureWindows:
    """
    Draw exposure status and risk window for every subject.

    Model A exposes every subject; Model B exposes each subject with
    probability `exposure_probability`. Exposure starts uniformly on
    {1, ..., obs_time - risk_length} and lasts `risk_length` days.
    """
    check_window_lengths(obs_time, risk_length)
    n = int(n_subjects)
    if n < 1:
        raise ConfigurationError(f"n_subjects must be >= 1, got {n_subjects}")

    if model == "A":
        exposed = np.ones(n, dtype=bool)
    elif model == "B":
        if not (0.0 <= float(exposure_probability) <= 1.0):
            raise ConfigurationError(f"exposure_probability must lie in [0, 1], got {exposure_probability}")
        exposed = rng.binomial(1, float(exposure_probability), size=n).astype(bool)
    else:
        raise ConfigurationError(f"Unknown generative model: {model!r}")

    # Starts are drawn for exposed subjects only.
    starts = np.full(n, NO_EXPOSURE, dtype=np.int64)
    n_exposed = int(np.sum(exposed))
    if n_exposed:
        starts[exposed] = rng.integers(1, int(obs_time) - int(risk_length), size=n_exposed, endpoint=True)
    ends = np.where(exposed, starts + int(risk_length) - 1, NO_EXPOSURE)

    return ExposureWindows(
        subject_id=np.arange(1, n + 1, dtype=np.int64),
        exposed=exposed,
        exposure_start=starts,
        exposure_end=ends,
        obs_start=1,
        obs_end=int(obs_time),
    )
