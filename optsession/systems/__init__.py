"""
Scored systems: the interface the optimizer drives and a built-in synthetic system.
"""

from .base import ScoredSystem, TimeRange, TrialMetrics
from .synthetic import SyntheticSystem, create_synthetic_system

__all__ = [
    'ScoredSystem',
    'TimeRange',
    'TrialMetrics',
    'SyntheticSystem',
    'create_synthetic_system',
]
