"""
Request state and argument collection for the command-line application.
"""

from .state import SearchRequest, SEARCH_MODES
from .config_collector import build_parser, collect_cli_config

__all__ = [
    'SearchRequest',
    'SEARCH_MODES',
    'build_parser',
    'collect_cli_config',
]
