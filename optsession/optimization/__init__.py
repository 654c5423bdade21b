"""
Optimization: grid construction, trial execution, searches and the
black-box adapter.
"""

from .grid import GridBuilder, tuples_of
from .pool import WorkerPool, CancellationToken, resolve_worker_count
from .runner import TrialRunner
from .selection import (
    summarize,
    aggregate,
    select_best,
    select_diverse,
    select_balanced,
    get_params,
)
from .filters import ResultFilter, ProfitableTopFilter, TopBySortFilter
from .search import SearchSetup, GridSearch, ProgressiveSearch, BroadSearch, SlidingWindowSearch
from .blackbox import (
    quantize,
    CachedObjective,
    EarlyStopCallback,
    SaveCallback,
    BlackBoxResult,
    BlackBoxAdapter,
)

__all__ = [
    'GridBuilder',
    'tuples_of',
    'WorkerPool',
    'CancellationToken',
    'resolve_worker_count',
    'TrialRunner',
    'summarize',
    'aggregate',
    'select_best',
    'select_diverse',
    'select_balanced',
    'get_params',
    'ResultFilter',
    'ProfitableTopFilter',
    'TopBySortFilter',
    'SearchSetup',
    'GridSearch',
    'ProgressiveSearch',
    'BroadSearch',
    'SlidingWindowSearch',
    'quantize',
    'CachedObjective',
    'EarlyStopCallback',
    'SaveCallback',
    'BlackBoxResult',
    'BlackBoxAdapter',
]
