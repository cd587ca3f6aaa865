"""
Exception hierarchy for the SCCS simulation study.

Configuration problems are raised before any sampling starts; domain and fit
errors are raised inside a single replicate and surfaced by the replication
engine together with the replicate index.
"""

from __future__ import annotations

from typing import Any, Optional


class SCCSSimError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(SCCSSimError, ValueError):
    """Invalid parameter or parameter combination (e.g. risk_length >= obs_time)."""


class DomainError(SCCSSimError, ArithmeticError):
    """Invalid intermediate numeric state while generating a dataset."""


class FitError(SCCSSimError):
    """The conditional Poisson fit cannot be computed for a dataset."""


class InsufficientEventsError(FitError):
    """A dataset (or a configuration, in expectation) has no events to fit."""


class ReplicateFailedError(SCCSSimError):
    """
    A replicate failed and the batch was aborted.

    `partial` holds the results of the replicates that completed before the
    failure, sorted by replicate index, for diagnostic inspection.
    """

    def __init__(self, replicate_id: int, cause: BaseException, partial: Optional[list[Any]] = None) -> None:
        self.replicate_id = int(replicate_id)
        self.cause = cause
        self.partial = list(partial or [])
        super().__init__(f"Replicate {self.replicate_id} failed: {type(cause).__name__}: {cause}")
