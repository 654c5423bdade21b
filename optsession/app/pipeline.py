"""
Search Pipeline
===============

Orchestration of one command-line search without business logic.
Builds the system, worker pool, store and checkpoint manager, then
delegates to the requested search.
"""

import logging
from typing import Dict, Any, Optional

from optsession.config.search_config import build_param_space, SearchSpace
from optsession.optimization.blackbox import BlackBoxAdapter
from optsession.optimization.filters import ProfitableTopFilter, TopBySortFilter
from optsession.optimization.pool import WorkerPool, CancellationToken, resolve_worker_count
from optsession.optimization.search import (
    SearchSetup, GridSearch, ProgressiveSearch, BroadSearch, SlidingWindowSearch,
)
from optsession.optimization.selection import aggregate, get_params
from optsession.session.checkpoint import CheckpointManager
from optsession.session.model import Session
from optsession.session.store import create_store
from optsession.systems.base import TimeRange
from optsession.systems.synthetic import create_synthetic_system
from optsession.utils.error_handling import ErrorResultFactory
from optsession.utils.exceptions import OptSessionError
from optsession.utils.logger import setup_logging

from .core.state import SearchRequest

logger = logging.getLogger(__name__)

TOP_RESULTS = 10


def orchestrate_search(request: SearchRequest, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
    """
    Run the search described by ``request``.

    Returns:
        Result dictionary with ``success`` and either the search outcome or
        ``error``
    """
    try:
        setup_logging(log_dir=request.log_dir, level=request.log_level, files=request.log_files)
        logger.info(f"Starting {request.mode} search")
        config = request.config
        token = token or CancellationToken()

        # Phase 1: System and worker pool
        request.update_phase("setup")
        system = create_synthetic_system(bars=request.bars, seed=request.data_seed,
                                         start=request.start_date, freq=request.freq)
        time_range = system.full_range().with_bounds(start=request.range_start, stop=request.range_stop)
        workers = resolve_worker_count(config.limits.max_workers, config.limits.memory_per_worker_mb)
        pool = WorkerPool(system, size=workers)

        # Phase 2: Store
        request.update_phase("storage")
        store = create_store(config.storage.backend, config.storage.root_dir)
        checkpoint = CheckpointManager(store, save_interval=config.limits.save_interval_seconds,
                                       memory_limit_mb=config.limits.memory_per_worker_mb * workers)

        # Phase 3: Search
        request.update_phase(request.mode)
        grid_kwargs = {
            'resume': config.resume,
            'random_search': config.random_search,
            'randomize_window': config.limits.randomize_window,
        }

        if request.mode == "slide":
            params = request.params or system.default_params()
            search = SlidingWindowSearch(pool, time_range, request.step_ratio, token=token)
            table = search.run(params)
            outcome = {
                'params': params,
                'windows': table.to_dict("records"),
                'mean_pnl': float(table["pnl"].mean()) if len(table) else None,
            }
        elif request.mode == "blackbox":
            space = SearchSpace.from_dict(request.bounds, request.precision)
            adapter = BlackBoxAdapter(
                pool, time_range, space,
                attrs=config.attrs,
                config=config.blackbox,
                tpe=config.tpe_sampler,
                checkpoint=checkpoint,
                token=token,
                resume=config.resume,
                randomize_window=config.limits.randomize_window,
                subject=request.subject,
            )
            bb_result = adapter.run()
            request.session_key = adapter.session.key
            outcome = bb_result.to_dict()
        else:
            setup = SearchSetup(
                pool=pool,
                time_range=time_range,
                param_space=build_param_space(request.param_space),
                attrs=config.attrs,
                direction=config.direction,
                subject=request.subject,
            )
            session = _run_grid_mode(request, setup, checkpoint, token, grid_kwargs)
            request.session_key = session.key
            outcome = _session_outcome(session)

        if token.cancelled:
            request.add_warning(f"Search stopped early: {token.reason}")

        # Phase 4: Final Assembly
        request.update_phase("complete")
        request.result = outcome
        result = ErrorResultFactory.create_success_result({
            'mode': request.mode,
            'session_key': request.session_key,
            'cancelled': token.cancelled,
            'result': outcome,
            'summary': request.get_summary(),
        })
        logger.info(request.get_summary())
        return result

    except OptSessionError as e:
        request.add_error(e.message)
        logger.error(e.get_detailed_message())
        return _create_error_result(request, e.message)
    except Exception as e:
        error_msg = f"Search pipeline failed: {str(e)}"
        request.add_error(error_msg)
        logger.error(error_msg, exc_info=True)
        return _create_error_result(request, error_msg)


def _run_grid_mode(request: SearchRequest, setup: SearchSetup, checkpoint: CheckpointManager,
                   token: CancellationToken, grid_kwargs: Dict[str, Any]) -> Session:
    config = request.config
    if request.mode == "grid":
        session = setup.session()
        return GridSearch(session, checkpoint, token, **grid_kwargs).run()

    if request.mode == "progressive":
        result_filter = ProfitableTopFilter(cut=config.filters.cut, min_results=config.filters.min_results)
        search = ProgressiveSearch(setup, request.rounds, result_filter=result_filter,
                                   min_candidates=config.filters.min_candidates,
                                   checkpoint=checkpoint, token=token, **grid_kwargs)
        return search.run()

    base = ProfitableTopFilter(cut=config.filters.cut, min_results=config.filters.min_results)
    search = BroadSearch(setup, slice_size=config.broad.slice_size, sort_by=config.broad.sort_by,
                         result_filter=TopBySortFilter(config.broad.sort_by, base=base),
                         checkpoint=checkpoint, token=token, **grid_kwargs)
    return search.run()


def _session_outcome(session: Session) -> Dict[str, Any]:
    names = session.param_names
    table = aggregate(session.results, names)
    best_params = None
    if session.best.params is not None:
        best_params = dict(zip(names, session.best.params))
    elif len(table):
        best_params = get_params(table, 0)
    return {
        'session_key': session.key,
        'rows': session.row_count(),
        'best_value': session.best.value,
        'best_params': best_params,
        'top': table.head(TOP_RESULTS).to_dict("records"),
    }


def _create_error_result(request: SearchRequest, error_message: str) -> Dict[str, Any]:
    """Create standardized error result with request context"""
    additional_data = {
        'request': request.to_dict(),
        'errors': request.errors,
        'warnings': request.warnings,
        'phase_failed': request.phase,
        'session_key': request.session_key,
    }
    return ErrorResultFactory.create_error_result(
        error_message=error_message,
        error_context="search_pipeline",
        additional_data=additional_data,
    )
