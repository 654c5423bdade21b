"""
optsession
==========

Resumable parameter optimization sessions: exhaustive, progressive, broad
and sliding-window grid searches plus an Optuna-driven black-box adapter,
all checkpointed to a key/value store.
"""

__version__ = "1.0.0"

from optsession.config import SessionAttrs, SearchConfig, SearchSpace, build_param_space
from optsession.systems import ScoredSystem, TimeRange, TrialMetrics
from optsession.session import Session, CheckpointManager, create_store
from optsession.optimization import (
    WorkerPool,
    CancellationToken,
    SearchSetup,
    GridSearch,
    ProgressiveSearch,
    BroadSearch,
    SlidingWindowSearch,
    BlackBoxAdapter,
)

__all__ = [
    '__version__',
    'SessionAttrs',
    'SearchConfig',
    'SearchSpace',
    'build_param_space',
    'ScoredSystem',
    'TimeRange',
    'TrialMetrics',
    'Session',
    'CheckpointManager',
    'create_store',
    'WorkerPool',
    'CancellationToken',
    'SearchSetup',
    'GridSearch',
    'ProgressiveSearch',
    'BroadSearch',
    'SlidingWindowSearch',
    'BlackBoxAdapter',
]
