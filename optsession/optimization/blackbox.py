"""
Black-Box Adapter
=================

Drives a session with Optuna TPE studies instead of an exhaustive grid.

Every suggested vector is quantized to the declared precision, looked up in
a result cache and only executed on a miss, with a monotonic trial counter
used as the repeat index. Several studies may run concurrently from
different initial guesses; the best final value wins.
"""

import math
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Sequence, Tuple, Callable

import numpy as np
import optuna
from optuna import Study
from optuna.samplers import TPESampler
from optuna.trial import FrozenTrial, TrialState

from optsession.config.search_config import (
    SessionAttrs, BlackBoxConfig, TPESamplerConfig, SearchSpace, PRECISION_INTEGER,
)
from optsession.session.checkpoint import CheckpointManager, ResumeStatus
from optsession.session.model import Session
from optsession.systems.base import TimeRange
from optsession.utils.exceptions import SessionMismatchError, ParameterSpaceError, describe_failures
from optsession.utils.logger import log_performance
from .pool import WorkerPool, CancellationToken
from .runner import TrialRunner

logger = logging.getLogger(__name__)

Vector = Tuple[float, ...]


def quantize(space: SearchSpace, vector: Sequence[float]) -> Vector:
    """
    Clamp, round to each parameter's precision, clamp again.

    Categorical and ``-1`` precision parameters round half up to the
    nearest whole number inside the bounds.
    """
    values = np.clip(np.asarray(vector, dtype=float), space.lows, space.highs)
    result = []
    for bound, value in zip(space.bounds, values):
        value = float(value)
        if bound.is_categorical or bound.precision == PRECISION_INTEGER:
            lowest, highest = math.ceil(bound.low), math.floor(bound.high)
            value = float(min(max(math.floor(value + 0.5), lowest), highest))
        elif bound.precision is not None:
            value = round(value, bound.precision)
        result.append(min(max(value, bound.low), bound.high))
    return tuple(result)


def space_domains(space: SearchSpace) -> Dict[str, List[Any]]:
    """Session parameter space describing black-box bounds"""
    return {b.name: list(b.categories) if b.is_categorical else [b.low, b.high]
            for b in space.bounds}


class CachedObjective:
    """
    Quantize -> cache lookup -> run trial on a miss.

    Concurrent queries of one vector wait for the first execution instead of
    running it twice. Failed trials score ``failure_value``.
    """

    def __init__(self, space: SearchSpace, runner: TrialRunner,
                 failure_value: float, start_counter: int = 0):
        self.space = space
        self.runner = runner
        self.failure_value = failure_value

        self._cache: Dict[Vector, float] = {}
        self._pending: Dict[Vector, threading.Event] = {}
        self._cache_lock = threading.Lock()

        self._counter = start_counter
        self._counter_lock = threading.Lock()

        self.execution_count = 0
        self.cache_hits = 0

    def next_repeat(self) -> int:
        with self._counter_lock:
            self._counter += 1
            return self._counter

    @property
    def counter(self) -> int:
        return self._counter

    def prime(self, vector: Vector, value: float) -> None:
        """Seed the cache with a known score"""
        with self._cache_lock:
            self._cache.setdefault(vector, value)

    def __call__(self, vector: Sequence[float], worker_id: int = 0) -> float:
        key = quantize(self.space, vector)

        with self._cache_lock:
            if key in self._cache:
                self.cache_hits += 1
                return self._cache[key]
            event = self._pending.get(key)
            owner = event is None
            if owner:
                event = self._pending[key] = threading.Event()

        if not owner:
            event.wait()
            with self._cache_lock:
                self.cache_hits += 1
                return self._cache[key]

        value = self.failure_value
        try:
            params = tuple(self.space.decode(key).values())
            obj = self.runner.run_trial(params, self.next_repeat(), worker_id)
            if obj is not None:
                value = obj
        finally:
            with self._cache_lock:
                self.execution_count += 1
                self._cache[key] = value
                self._pending.pop(key).set()
        return value


class EarlyStopCallback:
    """
    Stops a study once a score crosses ``threshold`` (``>=`` when maximizing,
    ``<=`` when minimizing) or after ``max_failures`` consecutive failed or
    non-finite scores.
    """

    def __init__(self, threshold: Optional[float] = None,
                 max_failures: Optional[int] = None,
                 direction: str = "maximize"):
        self.threshold = threshold
        self.max_failures = max_failures
        self.direction = direction
        self.consecutive_failures = 0
        self.reason: Optional[str] = None

    def crossed(self, value: float) -> bool:
        if self.threshold is None:
            return False
        if self.direction == "minimize":
            return value <= self.threshold
        return value >= self.threshold

    def __call__(self, study: Study, trial: FrozenTrial) -> None:
        value = trial.value if trial.state == TrialState.COMPLETE else None
        if value is None or not math.isfinite(value):
            self.consecutive_failures += 1
            if self.max_failures is not None and self.consecutive_failures >= self.max_failures:
                self.reason = f"{self.consecutive_failures} consecutive failed trials"
                logger.info(f"Stopping study {study.study_name}: {self.reason}")
                study.stop()
            return

        self.consecutive_failures = 0
        if self.crossed(value):
            self.reason = f"threshold {self.threshold} reached with {value:.6g}"
            logger.info(f"Stopping study {study.study_name}: {self.reason}")
            study.stop()


class SaveCallback:
    """Periodic checkpoint and cancellation check after every trial"""

    def __init__(self, session: Session, checkpoint: Optional[CheckpointManager],
                 token: CancellationToken):
        self.session = session
        self.checkpoint = checkpoint
        self.token = token

    def __call__(self, study: Study, trial: FrozenTrial) -> None:
        if self.checkpoint is not None:
            try:
                self.checkpoint.maybe_save(self.session)
            except Exception as e:
                logger.error(f"Checkpoint failed during study {study.study_name}: {e}")
                self.token.cancel("checkpoint failure")
                raise
        if self.token.cancelled:
            logger.info(f"Stopping study {study.study_name}: {self.token.reason}")
            study.stop()


@dataclass
class BlackBoxResult:
    """Outcome of a black-box run"""
    session: Session
    best_params: Optional[Dict[str, Any]] = None
    best_value: Optional[float] = None
    best_start: Optional[int] = None
    studies: List[Study] = field(default_factory=list)
    executed: int = 0
    cache_hits: int = 0
    stop_reasons: List[Optional[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_key': self.session.key,
            'best_params': self.best_params,
            'best_value': self.best_value,
            'best_start': self.best_start,
            'trials': sum(len(s.trials) for s in self.studies),
            'executed': self.executed,
            'cache_hits': self.cache_hits,
            'stop_reasons': self.stop_reasons,
        }


class BlackBoxAdapter:
    """
    Optuna-driven search over continuous / integer / categorical bounds.

    The session records ``splits = n_starts * attrs.splits``. A resumed
    session continues the trial counter after its largest stored repeat and
    pre-fills the cache with its stored scores. When the stored session does
    not match, ``confirm(error)`` decides whether to start fresh (no callback:
    warn and start fresh).

    Args:
        pool: Worker pool; start ``j`` runs on slot ``j % pool.size``
        time_range: Evaluation range
        space: Declared bounds and precisions
        attrs: Session attributes
        config: Trial budget, starts and early termination
        tpe: TPE sampler settings
    """

    def __init__(self, pool: WorkerPool, time_range: TimeRange, space: SearchSpace,
                 attrs: Optional[SessionAttrs] = None,
                 config: Optional[BlackBoxConfig] = None,
                 tpe: Optional[TPESamplerConfig] = None,
                 checkpoint: Optional[CheckpointManager] = None,
                 token: Optional[CancellationToken] = None,
                 confirm: Optional[Callable[[SessionMismatchError], bool]] = None,
                 resume: bool = True,
                 randomize_window: bool = True,
                 subject: Optional[str] = None):
        self.space = space
        self.config = config or BlackBoxConfig()
        self.tpe = tpe or TPESamplerConfig()
        self.checkpoint = checkpoint
        self.token = token or CancellationToken()
        self.confirm = confirm
        self.resume = resume
        self.direction = self.config.direction or "maximize"

        attrs = attrs or SessionAttrs()
        precision = {b.name: b.precision for b in space.bounds if not b.is_categorical}
        metadata = dict(attrs.metadata)
        metadata['precision'] = precision
        self.session_attrs = SessionAttrs(
            splits=self.config.n_starts * attrs.splits,
            seed=attrs.seed,
            offset=attrs.offset,
            metadata=metadata,
        )
        self.session = Session(
            subject=subject or pool.template.name,
            time_range=time_range,
            param_space=space_domains(space),
            attrs=self.session_attrs,
            pool=pool,
            direction=self.direction,
        )
        self.runner = TrialRunner(self.session, self.token, randomize_window)
        self.objective: Optional[CachedObjective] = None

    def initial_guesses(self) -> List[Vector]:
        """
        First guess from the system defaults (midpoint where missing), the
        others uniform within bounds.
        """
        defaults = self.session.pool.template.default_params()
        midpoint = self.space.midpoint()
        first = []
        for i, bound in enumerate(self.space.bounds):
            if bound.name in defaults:
                first.append(bound.encode(defaults[bound.name]))
            else:
                first.append(float(midpoint[i]))
        guesses = [quantize(self.space, first)]

        rng = np.random.default_rng(self.session_attrs.seed)
        for _ in range(1, self.config.n_starts):
            guesses.append(quantize(self.space, rng.uniform(self.space.lows, self.space.highs)))
        return guesses

    def _resume_session(self) -> int:
        """Replay stored rows; returns the largest stored repeat index"""
        if self.checkpoint is None:
            return 0
        if not self.resume:
            # a fresh run replaces whatever rows the store holds for this key
            self.checkpoint.rewrite(self.session)
            return 0

        result = self.checkpoint.resume(self.session)
        if result.status is ResumeStatus.MISMATCH:
            if self.confirm is not None and not self.confirm(result.error):
                raise result.error
            logger.warning(f"{result.error.message}; starting a fresh session")
            self.checkpoint.rewrite(self.session)
            return 0
        if not result.resumed or not self.session.row_count():
            return 0
        return int(max(row['repeat'] for row in self.session.rows()))

    def _prime_cache(self, objective: CachedObjective) -> None:
        results = self.session.results
        if not len(results):
            return
        names = self.session.param_names
        for values, group in results.groupby(names, sort=False):
            if not isinstance(values, tuple):
                values = (values,)
            try:
                vector = tuple(b.encode(v) for b, v in zip(self.space.bounds, values))
            except ParameterSpaceError as e:
                logger.debug(f"Stored row not cached: {e}")
                continue
            objective.prime(quantize(self.space, vector), float(np.median(group['obj'])))

    def _create_study(self, start: int) -> Study:
        seed = self.tpe.seed if self.tpe.seed is not None else self.session_attrs.seed
        sampler = TPESampler(
            n_startup_trials=self.tpe.n_startup_trials,
            multivariate=self.tpe.multivariate,
            seed=seed + start,
        )
        return optuna.create_study(
            study_name=f"{self.session.key}#{start}",
            sampler=sampler,
            direction=self.direction,
        )

    def _optimize(self, study: Study, start: int, guess: Vector) -> Optional[str]:
        objective = self.objective
        worker_id = start % self.session.pool.size
        bounds = self.space.bounds

        def study_objective(trial: optuna.Trial) -> float:
            vector = [trial.suggest_float(b.name, b.low, b.high) for b in bounds]
            return objective(vector, worker_id)

        study.enqueue_trial({b.name: v for b, v in zip(bounds, guess)})
        early_stop = EarlyStopCallback(self.config.early_threshold, self.config.max_failures, self.direction)
        save = SaveCallback(self.session, self.checkpoint, self.token)

        study.optimize(
            study_objective,
            n_trials=self.config.max_trials,
            timeout=self.config.timeout_seconds,
            callbacks=[early_stop, save],
            n_jobs=1,
            gc_after_trial=True,
            show_progress_bar=False,
        )
        logger.info(f"Study {study.study_name} finished after {len(study.trials)} trials")
        return early_stop.reason or (self.token.reason if self.token.cancelled else None)

    def run(self) -> BlackBoxResult:
        """Run every start and return the best outcome"""
        optuna.logging.set_verbosity(optuna.logging.WARNING)
        start_time = time.time()
        n_starts = self.config.n_starts

        with self.token.handle_signals():
            last_repeat = self._resume_session()
            self.objective = CachedObjective(self.space, self.runner, self.session.best.worst(),
                                             start_counter=last_repeat)
            self._prime_cache(self.objective)

            guesses = self.initial_guesses()
            studies = [self._create_study(j) for j in range(n_starts)]
            reasons: List[Optional[str]] = [None] * n_starts
            logger.info(f"Black-box search {self.session.key}: {n_starts} starts, "
                        f"{self.config.max_trials} trials each")

            executor = ThreadPoolExecutor(max_workers=n_starts, thread_name_prefix="optsession-bb")
            try:
                futures = {executor.submit(self._optimize, studies[j], j, guesses[j]): j
                           for j in range(n_starts)}
                for future in as_completed(futures):
                    reasons[futures[future]] = future.result()
            except KeyboardInterrupt:
                logger.info("Black-box search interrupted by user")
                self.token.cancel("keyboard interrupt")
            except Exception:
                self.token.cancel("black-box error")
                executor.shutdown(wait=True, cancel_futures=True)
                self._final_save(raise_errors=False)
                raise
            finally:
                executor.shutdown(wait=True, cancel_futures=True)

            self._final_save()

        if self.runner.failures:
            logger.warning(describe_failures(self.runner.failures))

        result = self._build_result(studies, reasons)
        log_performance("blackbox_search", start_time, time.time(),
                        executed=result.executed, cache_hits=result.cache_hits,
                        best=result.best_value)
        return result

    def _build_result(self, studies: List[Study], reasons: List[Optional[str]]) -> BlackBoxResult:
        result = BlackBoxResult(
            session=self.session,
            studies=studies,
            executed=self.objective.execution_count,
            cache_hits=self.objective.cache_hits,
            stop_reasons=reasons,
        )
        best = self.session.best
        for j, study in enumerate(studies):
            completed = [t for t in study.trials
                         if t.state == TrialState.COMPLETE and t.value is not None and math.isfinite(t.value)]
            if not completed:
                continue
            trial = study.best_trial
            if result.best_value is None or best.is_better(trial.value, result.best_value):
                vector = quantize(self.space, [trial.params[b.name] for b in self.space.bounds])
                result.best_params = self.space.decode(vector)
                result.best_value = float(trial.value)
                result.best_start = j
        return result

    def _final_save(self, raise_errors: bool = True) -> None:
        if self.checkpoint is None:
            return
        try:
            self.checkpoint.final_save(self.session)
        except Exception as e:
            if raise_errors:
                raise
            logger.error(f"Final save of {self.session.key} failed: {e}")
