from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.stats import norm

from .dataset import SCCS_COLUMNS
from .errors import ConfigurationError, FitError, InsufficientEventsError


@dataclass(frozen=True)
class FitResult:
    log_estimate: float
    standard_error: float
    irr: float
    ci_lower: float
    ci_upper: float
    event_count: int
    n_subjects: int = 0


class ConditionalPoissonSolver(Protocol):
    def fit(self, dataset: pd.DataFrame) -> FitResult:
        ...


def period_table(dataset: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse event rows to one row per subject.

    Columns: subject_id, n_events, risk_events, risk_days, control_days.
    Risk days are the exposure window clipped to the observation window.
    """
    missing = [c for c in SCCS_COLUMNS if c not in dataset.columns]
    if missing:
        raise FitError(f"Dataset is missing columns: {missing}")
    if dataset.empty:
        raise InsufficientEventsError("Dataset has no events; nothing to fit.")

    obs_start = dataset["obs_start"].to_numpy(dtype=np.int64)
    obs_end = dataset["obs_end"].to_numpy(dtype=np.int64)
    has_expo = dataset["exposure_start"].notna().to_numpy()
    es = dataset["exposure_start"].fillna(0).to_numpy(dtype=np.int64)
    ee = dataset["exposure_end"].fillna(-1).to_numpy(dtype=np.int64)
    day = dataset["event_day"].to_numpy(dtype=np.int64)

    obs_days = obs_end - obs_start + 1
    risk_days = np.where(has_expo, np.clip(np.minimum(ee, obs_end) - np.maximum(es, obs_start) + 1, 0, None), 0)
    in_risk = has_expo & (day >= es) & (day <= ee)

    work = pd.DataFrame(
        {
            "subject_id": dataset["subject_id"].to_numpy(),
            "in_risk": in_risk.astype(np.int64),
            "obs_days": obs_days,
            "risk_days": risk_days,
        }
    )
    per = (
        work.groupby("subject_id", sort=True)
        .agg(
            n_events=("in_risk", "size"),
            risk_events=("in_risk", "sum"),
            obs_days=("obs_days", "first"),
            risk_days=("risk_days", "first"),
        )
        .reset_index()
    )
    if (per["obs_days"] <= 0).any():
        bad = per.loc[per["obs_days"] <= 0, "subject_id"].tolist()
        raise FitError(f"Subjects with zero observation time: {bad[:10]}")
    per["control_days"] = per["obs_days"] - per["risk_days"]
    return per.loc[:, ["subject_id", "n_events", "risk_events", "risk_days", "control_days"]]


def informative_subjects(per: pd.DataFrame) -> pd.DataFrame:
    """Subjects with both risk and control time; only they carry information on the effect."""
    info = per[(per["risk_days"] > 0) & (per["control_days"] > 0)]
    if info.empty:
        raise FitError("No subject has both risk and control time; the effect is not identifiable.")
    n_risk = int(info["risk_events"].sum())
    n_total = int(info["n_events"].sum())
    if n_risk == 0 or n_risk == n_total:
        raise FitError(
            f"Effect not identifiable: {n_risk} of {n_total} informative events fall in risk periods."
        )
    return info


def _wald_ci(beta: float, se: float, ci_level: float) -> tuple[float, float]:
    z = float(norm.ppf(0.5 + float(ci_level) / 2.0))
    return float(np.exp(beta - z * se)), float(np.exp(beta + z * se))


@dataclass(frozen=True)
class SCCSEstimator:
    """
    Conditional Poisson fit for one binary exposure.

    Conditioning on each subject's event total removes the subject's baseline
    rate; each subject's events are then multinomial over control and risk
    time with probabilities proportional to e0 and e1 * exp(beta). The
    log-likelihood is concave in beta and is maximised by Newton-Raphson.
    """

    ci_level: float = 0.95
    max_iter: int = 100
    tol: float = 1e-10

    def fit(self, dataset: pd.DataFrame) -> FitResult:
        per = period_table(dataset)
        info = informative_subjects(per)

        n = info["n_events"].to_numpy(dtype=float)
        r = info["risk_events"].to_numpy(dtype=float)
        e0 = info["control_days"].to_numpy(dtype=float)
        e1 = info["risk_days"].to_numpy(dtype=float)
        n_risk = float(np.sum(r))
        n_control = float(np.sum(n) - n_risk)

        # Crude rate ratio as starting value.
        beta = float(np.log((n_risk / np.sum(e1)) / (n_control / np.sum(e0))))
        converged = False
        for _ in range(self.max_iter):
            eb = float(np.exp(beta))
            denom = e0 + e1 * eb
            u = n_risk - float(np.sum(n * e1 * eb / denom))
            h = float(np.sum(n * e0 * e1 * eb / denom**2))
            if not np.isfinite(h) or h <= 0:
                raise FitError("Observed information is not positive during Newton-Raphson.")
            step = float(np.clip(u / h, -5.0, 5.0))
            beta += step
            if abs(step) < self.tol:
                converged = True
                break
        if not converged:
            raise FitError(f"Newton-Raphson did not converge in {self.max_iter} iterations.")

        eb = float(np.exp(beta))
        denom = e0 + e1 * eb
        i_obs = float(np.sum(n * e0 * e1 * eb / denom**2))
        se = float(1.0 / np.sqrt(i_obs))
        lo, hi = _wald_ci(beta, se, self.ci_level)
        return FitResult(
            log_estimate=beta,
            standard_error=se,
            irr=float(np.exp(beta)),
            ci_lower=lo,
            ci_upper=hi,
            event_count=int(dataset.shape[0]),
            n_subjects=int(per.shape[0]),
        )


@dataclass(frozen=True)
class FixedEffectsPoissonEstimator:
    """
    Poisson GLM with one indicator per subject and log(days) offset.

    The exposure coefficient equals the conditional Poisson estimate, so this
    is an interchangeable (slower) solver.
    """

    ci_level: float = 0.95

    def fit(self, dataset: pd.DataFrame) -> FitResult:
        per = period_table(dataset)
        info = informative_subjects(per)

        control = pd.DataFrame(
            {
                "subject_id": info["subject_id"],
                "count": info["n_events"] - info["risk_events"],
                "days": info["control_days"],
                "exposed": 0.0,
            }
        )
        risk = pd.DataFrame(
            {
                "subject_id": info["subject_id"],
                "count": info["risk_events"],
                "days": info["risk_days"],
                "exposed": 1.0,
            }
        )
        long = pd.concat([control, risk], ignore_index=True)
        dummies = pd.get_dummies(long["subject_id"], prefix="s", dtype=float)
        exog = pd.concat([long[["exposed"]], dummies], axis=1)

        model = sm.GLM(
            long["count"].to_numpy(dtype=float),
            exog.to_numpy(dtype=float),
            family=sm.families.Poisson(),
            offset=np.log(long["days"].to_numpy(dtype=float)),
        )
        try:
            res = model.fit()
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FitError(f"Poisson GLM fit failed: {e}") from e

        beta = float(res.params[0])
        se = float(res.bse[0])
        if not (np.isfinite(beta) and np.isfinite(se) and se > 0):
            raise FitError(f"Poisson GLM returned a degenerate estimate (beta={beta}, se={se}).")
        lo, hi = _wald_ci(beta, se, self.ci_level)
        return FitResult(
            log_estimate=beta,
            standard_error=se,
            irr=float(np.exp(beta)),
            ci_lower=lo,
            ci_upper=hi,
            event_count=int(dataset.shape[0]),
            n_subjects=int(per.shape[0]),
        )


SOLVERS = {
    "newton": SCCSEstimator,
    "glm": FixedEffectsPoissonEstimator,
}


def make_estimator(solver: str = "newton", *, ci_level: float = 0.95) -> ConditionalPoissonSolver:
    try:
        cls = SOLVERS[solver]
    except KeyError as e:
        raise ConfigurationError(f"Unknown solver {solver!r}; expected one of {sorted(SOLVERS)}") from e
    return cls(ci_level=ci_level)
