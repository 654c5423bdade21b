"""
Trial Runner
============

Executes one parameter tuple against one worker clone and records the row.

Protocol per trial: lock the worker slot -> reset -> apply parameters ->
pick the evaluation window -> run -> score -> append the row under the
results lock -> update the best cell. A failing trial is logged with its
parameters and dropped without a row.
"""

import hashlib
import logging
import threading
from typing import Dict, Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from optsession.session.model import Session
from optsession.systems.base import TimeRange
from optsession.utils.exceptions import TrialFailureError, ConfigurationError
from .pool import CancellationToken

logger = logging.getLogger(__name__)

# Failures kept for the end-of-run summary
MAX_RECORDED_FAILURES = 100


def window_steps(time_range: TimeRange, warmup: pd.Timedelta, splits: int) -> Tuple[pd.Timedelta, pd.Timedelta]:
    """
    Small and big steps used to jitter evaluation windows.

    The small step is the range step; the big step divides the range left
    after warmup into ``max(2, splits)`` parts.
    """
    parts = max(2, splits)
    small_step = time_range.step
    timespan = time_range.span - warmup
    if timespan < pd.Timedelta(0):
        timespan = pd.Timedelta(0)
    big_step = _scale(timespan, 1.0 / (parts - 1))
    return small_step, big_step


def _scale(delta: pd.Timedelta, factor: float) -> pd.Timedelta:
    """``delta * factor`` rounded to the millisecond"""
    return pd.Timedelta(milliseconds=round(delta / pd.Timedelta(milliseconds=1) * factor))


def full_window(time_range: TimeRange, warmup: pd.Timedelta) -> TimeRange:
    """Whole range after warmup"""
    start = min(time_range.start + warmup, time_range.stop)
    return time_range.with_bounds(start=start)


def random_window(time_range: TimeRange, warmup: pd.Timedelta, splits: int,
                  rng: np.random.Generator) -> TimeRange:
    """
    Randomized sub-window of ``time_range``.

    Start and length are built from the small and big steps scaled by draws
    from ``{1..parts}/parts``. Start stays inside the range, stop is capped at
    the range stop.
    """
    parts = max(2, splits)
    small_step, big_step = window_steps(time_range, warmup, splits)

    def draw() -> float:
        return int(rng.integers(1, parts + 1)) / parts

    start = (time_range.start + warmup
             + _scale(time_range.step, draw())
             + _scale(big_step, draw() - 1.0 / parts)
             + _scale(small_step, draw()))
    lowest = min(time_range.start + warmup, time_range.stop - time_range.step)
    highest = max(time_range.start, time_range.stop - time_range.step)
    start = min(max(start, lowest), highest)

    split_len = max(1, round(len(time_range) / parts))
    length = (_scale(time_range.step, split_len * draw())
              + _scale(big_step, draw())
              + _scale(small_step, draw()))
    stop = min(start + length, time_range.stop)
    return time_range.with_bounds(start=start, stop=stop)


def params_digest(params: Sequence[Any]) -> int:
    """Stable 32-bit digest of a parameter tuple"""
    return int(hashlib.sha256(repr(tuple(params)).encode()).hexdigest()[:8], 16)


class TrialRunner:
    """
    Runs trials of a session on its worker pool.

    Args:
        session: Session receiving the rows (must carry a worker pool)
        token: Cancellation token checked by callers before each trial
        randomize_window: Jitter the evaluation window per repeat
    """

    def __init__(self, session: Session,
                 token: Optional[CancellationToken] = None,
                 randomize_window: bool = True):
        if session.pool is None:
            raise ConfigurationError("trial runner", "session has no worker pool")
        self.session = session
        self.pool = session.pool
        self.token = token or CancellationToken()
        self.randomize_window = randomize_window

        self.failures: List[TrialFailureError] = []
        self.failure_count = 0
        self.executed = 0
        self._stats_lock = threading.Lock()

    def window_for(self, system, params: Sequence[Any], repeat: int) -> TimeRange:
        """Evaluation window of one repeat, independent of the worker running it"""
        time_range = self.session.time_range
        warmup = system.warmup_period()
        if not self.randomize_window:
            return full_window(time_range, warmup)
        attrs = self.session.attrs
        entropy = [attrs.seed & 0xFFFFFFFF, attrs.offset, int(repeat) & 0xFFFFFFFF, params_digest(params)]
        rng = np.random.default_rng(entropy)
        return random_window(time_range, warmup, attrs.splits, rng)

    def run_trial(self, params: Sequence[Any], repeat: int, worker_id: int = 0) -> Optional[float]:
        """
        Run one repeat of ``params`` on worker ``worker_id``.

        Returns the objective, or None when the trial failed.
        """
        params = tuple(params)
        values = dict(zip(self.session.param_names, params))

        with self.pool.acquire(worker_id) as system:
            try:
                system.reset()
                system.apply_params(values)
                window = self.window_for(system, params, repeat)
                metrics = system.run(window)
                obj = float(system.score(metrics))
            except Exception as e:
                self._record_failure(TrialFailureError(values, e, repeat=repeat))
                return None

            row = self.session.make_row(repeat, obj, float(metrics.cash), float(metrics.pnl),
                                        int(metrics.trades), params)
            self.session.append_row(row)

        self.session.best.offer(obj, params)
        with self._stats_lock:
            self.executed += 1
        return obj

    def evaluate(self, params: Sequence[Any], worker_id: int = 0,
                 repeats: Optional[Sequence[int]] = None) -> Optional[float]:
        """
        Run every repeat of ``params`` sequentially on one worker.

        Returns the median objective of the successful repeats, None when all
        of them failed.
        """
        if repeats is None:
            repeats = range(1, self.session.attrs.splits + 1)
        scores = []
        for repeat in repeats:
            obj = self.run_trial(params, repeat, worker_id)
            if obj is not None:
                scores.append(obj)
        if not scores:
            return None
        return float(np.median(scores))

    def _record_failure(self, error: TrialFailureError) -> None:
        logger.warning(f"Trial dropped: {error.message}")
        logger.debug(error.get_detailed_message())
        with self._stats_lock:
            self.failure_count += 1
            if len(self.failures) < MAX_RECORDED_FAILURES:
                self.failures.append(error)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {'executed': self.executed, 'failed': self.failure_count}
