"""
Shared utilities: exceptions, logging and standardized result dictionaries.
"""

from .exceptions import (
    OptSessionError,
    SessionError,
    SessionMismatchError,
    SearchCancelled,
    TrialError,
    TrialFailureError,
    PersistenceError,
    ConfigurationError,
    ParameterSpaceError,
    describe_failures,
)
from .logger import setup_logging, ProgressTracker, log_performance
from .error_handling import ErrorResultFactory

__all__ = [
    'OptSessionError',
    'SessionError',
    'SessionMismatchError',
    'SearchCancelled',
    'TrialError',
    'TrialFailureError',
    'PersistenceError',
    'ConfigurationError',
    'ParameterSpaceError',
    'describe_failures',
    'setup_logging',
    'ProgressTracker',
    'log_performance',
    'ErrorResultFactory',
]
