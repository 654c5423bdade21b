"""
ScoredSystem Abstract Base Class

Defines the minimal interface a system must implement to be optimized.
Every worker owns an independent clone, so implementations may keep mutable
run state on the instance as long as ``reset()`` clears it.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any

import pandas as pd


@dataclass(frozen=True)
class TimeRange:
    """
    Evaluation time range ``[start, stop]`` walked in ``step`` increments.
    """
    start: pd.Timestamp
    stop: pd.Timestamp
    step: pd.Timedelta

    def __post_init__(self):
        object.__setattr__(self, 'start', pd.Timestamp(self.start))
        object.__setattr__(self, 'stop', pd.Timestamp(self.stop))
        object.__setattr__(self, 'step', pd.Timedelta(self.step))
        if self.step <= pd.Timedelta(0):
            raise ValueError(f"TimeRange step must be positive, got {self.step}")
        if self.stop < self.start:
            raise ValueError(f"TimeRange stop {self.stop} is before start {self.start}")

    @property
    def span(self) -> pd.Timedelta:
        return self.stop - self.start

    def __len__(self) -> int:
        """Number of steps in the range"""
        return int(self.span // self.step)

    def with_bounds(self, start=None, stop=None) -> "TimeRange":
        return TimeRange(
            start=self.start if start is None else start,
            stop=self.stop if stop is None else stop,
            step=self.step,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'start': self.start.isoformat(),
            'stop': self.stop.isoformat(),
            'step': str(self.step),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "TimeRange":
        return cls(start=data['start'], stop=data['stop'], step=data['step'])


@dataclass
class TrialMetrics:
    """Raw outcome of one evaluation run"""
    cash: float
    initial_cash: float
    trades: int
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def pnl(self) -> float:
        if not self.initial_cash:
            return 0.0
        return self.cash / self.initial_cash - 1.0


class ScoredSystem(ABC):
    """
    Abstract base class for systems evaluated by the optimizer.

    Lifecycle per trial: ``reset()`` -> ``apply_params()`` -> ``run(window)``
    -> ``score(metrics)``. ``setup()`` runs once per clone when the worker
    pool is built.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Subject name used in session keys."""
        pass

    def setup(self) -> None:
        """One-time preparation of a fresh clone."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Clear all state left by a previous run."""
        pass

    @abstractmethod
    def apply_params(self, values: Dict[str, Any]) -> None:
        """Set parameter values for the next run."""
        pass

    @abstractmethod
    def run(self, window: TimeRange) -> TrialMetrics:
        """Evaluate the system over ``window``."""
        pass

    def score(self, metrics: TrialMetrics) -> float:
        """Objective value of a finished run (defaults to pnl)."""
        return metrics.pnl

    def clone(self) -> "ScoredSystem":
        return copy.deepcopy(self)

    def warmup_period(self) -> pd.Timedelta:
        return pd.Timedelta(0)

    def default_params(self) -> Dict[str, Any]:
        return {}
