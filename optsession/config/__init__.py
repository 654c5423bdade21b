"""
Configuration for optimization sessions and searches.
"""

from .search_config import (
    SessionAttrs,
    ExecutionLimits,
    FilterConfig,
    BroadSearchConfig,
    TPESamplerConfig,
    BlackBoxConfig,
    StorageConfig,
    SearchConfig,
    get_search_config,
    expand_domain,
    build_param_space,
    ParameterBound,
    SearchSpace,
    PRECISION_INTEGER,
)

__all__ = [
    'SessionAttrs',
    'ExecutionLimits',
    'FilterConfig',
    'BroadSearchConfig',
    'TPESamplerConfig',
    'BlackBoxConfig',
    'StorageConfig',
    'SearchConfig',
    'get_search_config',
    'expand_domain',
    'build_param_space',
    'ParameterBound',
    'SearchSpace',
    'PRECISION_INTEGER',
]
