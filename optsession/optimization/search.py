"""
Search Orchestrators
====================

Grid, progressive, broad and sliding-window searches over a worker pool.

Key Features:
- Resumable grid search with periodic and final checkpoints
- Progressive rounds at successive time offsets narrowed by a result filter
- Broad search over contiguous time slices carrying filtered candidates
- Sliding-window re-runs of fixed parameters (walk-forward table)
- Cooperative cancellation: in-flight trials finish, nothing new starts
"""

import time
import logging
import threading
import dataclasses
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Sequence

import pandas as pd

from optsession.config.search_config import SessionAttrs
from optsession.session.checkpoint import CheckpointManager, ResumeStatus
from optsession.session.model import Session, METRIC_COLUMNS, META_COLUMNS
from optsession.systems.base import TimeRange
from optsession.utils.exceptions import (
    ConfigurationError,
    SearchCancelled,
    TrialFailureError,
    describe_failures,
)
from optsession.utils.logger import ProgressTracker, log_performance
from .grid import GridBuilder, ParamTuple
from .filters import ResultFilter, ProfitableTopFilter, TopBySortFilter
from .pool import WorkerPool, CancellationToken
from .runner import TrialRunner

logger = logging.getLogger(__name__)


@dataclass
class SearchSetup:
    """
    Everything needed to open sessions for one subject.

    The worker pool is shared by every session opened from the setup.
    """
    pool: WorkerPool
    time_range: TimeRange
    param_space: Dict[str, List[Any]]
    attrs: SessionAttrs = field(default_factory=SessionAttrs)
    direction: str = "maximize"
    subject: Optional[str] = None

    def session(self, time_range: Optional[TimeRange] = None, **attr_overrides) -> Session:
        attrs = dataclasses.replace(self.attrs, **attr_overrides)
        return Session(
            subject=self.subject or self.pool.template.name,
            time_range=time_range or self.time_range,
            param_space=self.param_space,
            attrs=attrs,
            pool=self.pool,
            direction=self.direction,
        )


class GridSearch:
    """
    Runs every remaining tuple of a session's grid on the worker pool.

    States: resume -> build grid -> parallel execution with periodic
    checkpoints -> final save. Repeats of one tuple run sequentially on one
    worker; tuples run in any order.

    Args:
        session: Session to fill
        checkpoint: Checkpoint manager (None disables persistence)
        token: Cancellation token shared with callers
        resume: Replay stored rows before running
        random_search: Shuffle the remaining tuples with the session seed
        randomize_window: Jitter the evaluation window per repeat
    """

    def __init__(self, session: Session,
                 checkpoint: Optional[CheckpointManager] = None,
                 token: Optional[CancellationToken] = None,
                 resume: bool = True,
                 random_search: bool = False,
                 randomize_window: bool = True):
        self.session = session
        self.checkpoint = checkpoint
        self.token = token or CancellationToken()
        self.resume = resume
        self.random_search = random_search
        self.runner = TrialRunner(session, self.token, randomize_window)

        self._errors: List[BaseException] = []
        self._errors_lock = threading.Lock()

    def run(self, grid_itr: Optional[Sequence[ParamTuple]] = None) -> Session:
        """
        Execute the search and return the session.

        ``grid_itr`` replaces the full grid with an explicit tuple sequence.
        Raises SessionMismatchError when the stored session differs.
        """
        session = self.session
        start_time = time.time()

        with self.token.handle_signals():
            self._resume_session()

            try:
                todo = self._build_todo(grid_itr)
                self._execute(todo)
            except KeyboardInterrupt:
                logger.info("Grid search interrupted by user")
                self.token.cancel("keyboard interrupt")
            except Exception:
                self._final_save(raise_errors=False)
                raise

            self._final_save()

        if self.runner.failures:
            logger.warning(describe_failures(self.runner.failures))
        if self.token.cancelled:
            logger.info(f"Grid search stopped early: {self.token.reason}")

        stats = self.runner.stats()
        log_performance("grid_search", start_time, time.time(),
                        rows=session.row_count(), executed=stats['executed'],
                        failed=stats['failed'], best=session.best.value)
        return session

    def _resume_session(self) -> None:
        if self.checkpoint is None:
            return
        if self.resume:
            result = self.checkpoint.resume(self.session)
            if result.status is ResumeStatus.MISMATCH:
                raise result.error
        else:
            # a fresh run replaces whatever rows the store holds for this key
            self.checkpoint.rewrite(self.session)

    def _build_todo(self, grid_itr: Optional[Sequence[ParamTuple]]) -> List[ParamTuple]:
        session = self.session
        names = session.param_names
        splits = session.attrs.splits

        if grid_itr is None:
            grid = GridBuilder.build(session.param_space)
        else:
            grid = [tuple(p) for p in grid_itr]

        if session.row_count():
            if GridBuilder.prune_incomplete(session) and self.checkpoint is not None:
                self.checkpoint.rewrite(session)
            todo = GridBuilder.remaining(grid, session.results, names, splits)
        else:
            todo = list(grid)

        if self.random_search:
            todo = GridBuilder.shuffle(todo, session.attrs.seed)

        logger.info(f"Grid search {session.key}: {len(todo)} of {len(grid)} tuples to run, "
                    f"{splits} repeats each, {session.pool.size} workers")
        return todo

    def _execute(self, todo: List[ParamTuple]) -> None:
        if not todo:
            return
        session = self.session
        splits = session.attrs.splits
        tracker = ProgressTracker(len(todo) * splits, name=f"Grid {session.subject}")

        def cell(params: ParamTuple) -> None:
            try:
                self.token.raise_if_cancelled()
                with session.pool.checkout() as worker_id:
                    self.runner.evaluate(params, worker_id)
                tracker.update(splits)
                if self.checkpoint is not None:
                    self.checkpoint.maybe_save(session)
            except SearchCancelled as e:
                logger.debug(f"Grid cell {params} skipped: {e}")
            except Exception as e:
                logger.error(f"Grid cell {params} failed: {e}", exc_info=True)
                with self._errors_lock:
                    self._errors.append(e)
                self.token.cancel("grid cell error")

        executor = ThreadPoolExecutor(max_workers=session.pool.size, thread_name_prefix="optsession")
        try:
            futures = [executor.submit(cell, params) for params in todo]
            for future in as_completed(futures):
                future.result()
        except BaseException:
            self.token.cancel("interrupted")
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        tracker.finish()
        if self._errors:
            raise self._errors[0]

    def _final_save(self, raise_errors: bool = True) -> None:
        if self.checkpoint is None:
            return
        try:
            self.checkpoint.final_save(self.session)
        except Exception as e:
            if raise_errors:
                raise
            logger.error(f"Final save of {self.session.key} failed: {e}")


class ProgressiveSearch:
    """
    Single-repeat grid searches at successive time offsets.

    After every round ``result_filter`` narrows the results; the surviving
    tuples form the next round's grid. Stops once fewer than
    ``min_candidates`` remain or after ``rounds`` rounds.
    """

    def __init__(self, setup: SearchSetup, rounds: int,
                 result_filter: Optional[ResultFilter] = None,
                 min_candidates: int = 3,
                 checkpoint: Optional[CheckpointManager] = None,
                 token: Optional[CancellationToken] = None,
                 **grid_kwargs):
        if rounds < 1:
            raise ConfigurationError("progressive search", f"rounds must be >= 1, got {rounds}")
        self.setup = setup
        self.rounds = rounds
        self.result_filter = result_filter or ProfitableTopFilter()
        self.min_candidates = min_candidates
        self.checkpoint = checkpoint
        self.token = token or CancellationToken()
        self.grid_kwargs = grid_kwargs
        self.sessions: List[Session] = []

    def _candidates(self, session: Session) -> List[ParamTuple]:
        filtered = self.result_filter(session.results, session.param_names)
        return GridBuilder.from_results(filtered, session.param_names)

    def _round(self, offset: int, grid_itr: Optional[List[ParamTuple]]) -> Session:
        session = self.setup.session(offset=offset, splits=1)
        logger.info(f"Progressive round at offset {offset}: "
                    f"{'full grid' if grid_itr is None else f'{len(grid_itr)} candidates'}")
        GridSearch(session, self.checkpoint, self.token, **self.grid_kwargs).run(grid_itr)
        self.sessions.append(session)
        return session

    def run(self, initial_session: Optional[Session] = None) -> Session:
        """
        Run the rounds; ``initial_session`` continues a previous search from
        its offset + 1 with its filtered results.
        """
        if initial_session is None:
            offset = 0
            grid_itr = None
        else:
            offset = initial_session.attrs.offset + 1
            grid_itr = self._candidates(initial_session)
            if not grid_itr:
                logger.info("No candidates left in the initial session")
                return initial_session

        session = self._round(offset, grid_itr)
        for next_offset in range(offset + 1, offset + self.rounds):
            if self.token.cancelled:
                break
            grid_itr = self._candidates(session)
            if len(grid_itr) < self.min_candidates:
                logger.info(f"Progressive search stopped: {len(grid_itr)} candidates left "
                            f"(minimum {self.min_candidates})")
                break
            session = self._round(next_offset, grid_itr)
        return session


class BroadSearch:
    """
    Grid searches over contiguous time slices.

    The first slice runs the full grid; every later slice runs the tuples
    that survived the filter on the previous slice, best first. A failing
    slice ends the search keeping earlier results.

    ``slice_size`` in (0, 1) is a fraction of the range steps, otherwise an
    absolute step count.
    """

    def __init__(self, setup: SearchSetup, slice_size: float = 0.2, sort_by: str = "pnl",
                 result_filter: Optional[ResultFilter] = None,
                 checkpoint: Optional[CheckpointManager] = None,
                 token: Optional[CancellationToken] = None,
                 **grid_kwargs):
        self.setup = setup
        self.result_filter = result_filter or TopBySortFilter(sort_by)
        self.checkpoint = checkpoint
        self.token = token or CancellationToken()
        self.grid_kwargs = grid_kwargs
        self.sessions: List[Session] = []

        total_steps = len(setup.time_range)
        if slice_size <= 0:
            raise ConfigurationError("broad search", f"slice_size must be positive, got {slice_size}")
        if 0 < slice_size < 1:
            self.slice_steps = max(1, int(total_steps * slice_size))
        else:
            self.slice_steps = int(slice_size)
        self.total_steps = total_steps

    def slice_range(self, current_step: int) -> TimeRange:
        tr = self.setup.time_range
        start = tr.start + current_step * tr.step
        stop = min(start + self.slice_steps * tr.step, tr.stop)
        return tr.with_bounds(start=start, stop=stop)

    def _slice(self, current_step: int, grid_itr: Optional[List[ParamTuple]]) -> Session:
        session = self.setup.session(time_range=self.slice_range(current_step), splits=1)
        GridSearch(session, self.checkpoint, self.token, **self.grid_kwargs).run(grid_itr)
        self.sessions.append(session)
        return session

    def run(self) -> Session:
        logger.info(f"Broad search: {self.total_steps} steps in slices of {self.slice_steps}")
        session = self._slice(0, None)
        names = session.param_names
        candidates = self.result_filter(session.results, names)
        current_step = self.slice_steps

        while current_step < self.total_steps:
            if self.token.cancelled:
                break
            if len(candidates) == 0:
                logger.info("No valid parameter combinations left, stopping broad search")
                break
            grid_itr = GridBuilder.from_results(candidates, names)
            try:
                session = self._slice(current_step, grid_itr)
                candidates = self.result_filter(session.results, names)
            except Exception as e:
                logger.error(f"Broad search slice at step {current_step} failed: {e}", exc_info=True)
                break
            current_step += self.slice_steps

        return session


class SlidingWindowSearch:
    """
    Re-runs one parameter set over successive non-overlapping windows.

    Window ``n`` starts ``(n - 1) * split_len`` steps after the warmup, with
    ``split_len = round(len(range) * step_ratio)``. Produces one row per
    window: ``{step, obj, cash, pnl, trades}``.
    """

    RESULT_COLUMNS = ["step"] + list(METRIC_COLUMNS)

    def __init__(self, pool: WorkerPool, time_range: TimeRange,
                 step_ratio: Optional[float] = None,
                 token: Optional[CancellationToken] = None):
        if step_ratio is None:
            step_ratio = 1.0 / max(2, pool.size)
        if not 0 < step_ratio < 1:
            raise ConfigurationError("sliding window", f"step_ratio must be between 0 and 1, got {step_ratio}")
        self.pool = pool
        self.time_range = time_range
        self.step_ratio = step_ratio
        self.token = token or CancellationToken()

        self.split_len = round(len(time_range) * step_ratio)
        if self.split_len < 1:
            raise ConfigurationError("sliding window", "time range too short for the step ratio")
        self.n_iters = len(time_range) // self.split_len

    def windows(self) -> List[TimeRange]:
        tr = self.time_range
        warmup = self.pool.template.warmup_period()
        result = []
        for n in range(1, self.n_iters + 1):
            start = tr.start + warmup + (n - 1) * self.split_len * tr.step
            if start >= tr.stop:
                break
            stop = min(start + self.split_len * tr.step, tr.stop)
            result.append(tr.with_bounds(start=start, stop=stop))
        return result

    def run(self, params: Dict[str, Any]) -> pd.DataFrame:
        windows = self.windows()
        rows: List[Dict[str, Any]] = []
        rows_lock = threading.Lock()
        tracker = ProgressTracker(len(windows), name="Sliding windows")

        def window_task(step: int, window: TimeRange) -> None:
            try:
                self.token.raise_if_cancelled()
            except SearchCancelled as e:
                logger.debug(f"Window {step} skipped: {e}")
                return
            with self.pool.checkout() as worker_id, self.pool.acquire(worker_id) as system:
                try:
                    system.reset()
                    system.apply_params(params)
                    metrics = system.run(window)
                    obj = float(system.score(metrics))
                except Exception as e:
                    error = TrialFailureError(params, e, repeat=step)
                    logger.warning(f"Window {step} dropped: {error.message}")
                    return
            with rows_lock:
                rows.append({"step": step, "obj": obj, "cash": float(metrics.cash),
                             "pnl": float(metrics.pnl), "trades": int(metrics.trades)})
            tracker.update()

        with ThreadPoolExecutor(max_workers=self.pool.size, thread_name_prefix="optsession-slide") as executor:
            futures = [executor.submit(window_task, n, w) for n, w in enumerate(windows, 1)]
            for future in as_completed(futures):
                future.result()
        tracker.finish()

        df = pd.DataFrame(rows, columns=self.RESULT_COLUMNS)
        return df.sort_values("step").reset_index(drop=True)

    def run_many(self, params_df: pd.DataFrame) -> pd.DataFrame:
        """Sliding-window table for every parameter row of ``params_df``"""
        param_cols = [c for c in params_df.columns if c not in META_COLUMNS and c != "step"]
        frames = []
        for values in params_df[param_cols].to_dict("records"):
            if self.token.cancelled:
                break
            df = self.run(values)
            for name in param_cols:
                df[name] = values[name]
            frames.append(df)
        if not frames:
            return pd.DataFrame(columns=self.RESULT_COLUMNS + param_cols)
        return pd.concat(frames, ignore_index=True)
