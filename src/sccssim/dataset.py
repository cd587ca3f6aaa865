from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from .allocation import EventDraws, allocate_events
from .daily import sample_daily_outcomes
from .errors import ConfigurationError, DomainError
from .exposure import ExposureWindows, sample_exposure_windows

if TYPE_CHECKING:
    from .study import SimulationConfig


SCCS_COLUMNS = ["subject_id", "obs_start", "obs_end", "exposure_start", "exposure_end", "event_day"]


def build_sccs_dataset(windows: ExposureWindows, events: EventDraws) -> pd.DataFrame:
    """
    Canonical SCCS long format: one row per (subject, event day).

    Observation and exposure windows are copied onto every event row; the
    exposure columns are missing (nullable Int64) for unexposed subjects.
    """
    idx = events.subject_index
    n_rows = int(idx.size)
    exposed = windows.exposed[idx]

    df = pd.DataFrame(
        {
            "subject_id": windows.subject_id[idx].astype(np.int64),
            "obs_start": np.full(n_rows, windows.obs_start, dtype=np.int64),
            "obs_end": np.full(n_rows, windows.obs_end, dtype=np.int64),
            "exposure_start": _nullable_int(windows.exposure_start[idx], exposed),
            "exposure_end": _nullable_int(windows.exposure_end[idx], exposed),
            "event_day": events.event_day.astype(np.int64),
        },
        columns=SCCS_COLUMNS,
    )
    check_sccs_dataset(df)
    return df


def _nullable_int(values: np.ndarray, present: np.ndarray) -> pd.arrays.IntegerArray:
    values = np.where(present, values, 0).astype(np.int64)
    return pd.arrays.IntegerArray(values, ~present.astype(bool))


def check_sccs_dataset(df: pd.DataFrame) -> None:
    missing = [c for c in SCCS_COLUMNS if c not in df.columns]
    if missing:
        raise DomainError(f"SCCS dataset is missing columns: {missing}")
    if df.empty:
        return

    obs_start = df["obs_start"].to_numpy(dtype=np.int64)
    obs_end = df["obs_end"].to_numpy(dtype=np.int64)
    day = df["event_day"].to_numpy(dtype=np.int64)
    if np.any((day < obs_start) | (day > obs_end)):
        raise DomainError("Event day outside the observation window.")

    has_expo = df["exposure_start"].notna().to_numpy()
    if np.any(has_expo != df["exposure_end"].notna().to_numpy()):
        raise DomainError("exposure_start and exposure_end must be both present or both missing.")
    if has_expo.any():
        es = df.loc[has_expo, "exposure_start"].to_numpy(dtype=np.int64)
        ee = df.loc[has_expo, "exposure_end"].to_numpy(dtype=np.int64)
        bad = (es < obs_start[has_expo]) | (ee > obs_end[has_expo]) | (ee < es)
        if np.any(bad):
            raise DomainError("Exposure window outside the observation window or reversed.")


def generate_dataset(config: "SimulationConfig", rng: np.random.Generator) -> pd.DataFrame:
    """Draw one replicate's dataset under the configured generative model."""
    windows = sample_exposure_windows(
        config.generative_model,
        n_subjects=config.n_subjects,
        obs_time=config.obs_time,
        risk_length=config.risk_length,
        rng=rng,
        exposure_probability=config.exposure_probability,
    )
    if config.generative_model == "A":
        events = allocate_events(
            windows,
            baseline_rate=config.baseline_rate,
            log_effect=config.true_log_effect,
            rng=rng,
        )
    elif config.generative_model == "B":
        events = sample_daily_outcomes(
            windows,
            baseline_rate=config.baseline_rate,
            log_effect=config.true_log_effect,
            rng=rng,
        )
    else:
        raise ConfigurationError(f"Unknown generative model: {config.generative_model!r}")
    return build_sccs_dataset(windows, events)
