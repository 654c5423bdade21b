"""
Configuration Collection
========================

Builds a SearchRequest from command-line arguments.

Parameter specifications:
    --param fast=5,10,20        explicit values
    --param fast=5:50:5         inclusive (min, max, step) range
    --bound fast=2:60           black-box bounds
    --bound mode=long,both      black-box categories
    --precision fast=-1         decimals (-1 = integer)
    --value fast=10             fixed value (sliding window)
"""

import argparse
import logging
from typing import Optional, List, Tuple, Any, Sequence

from optsession.config.search_config import SearchConfig, SessionAttrs, DIRECTIONS, STORE_BACKENDS
from optsession.utils.exceptions import OptSessionError
from .state import SearchRequest, SEARCH_MODES

logger = logging.getLogger(__name__)


def _coerce(token: str) -> Any:
    """int, float or the stripped string"""
    token = token.strip()
    for cast in (int, float):
        try:
            return cast(token)
        except ValueError:
            continue
    return token


def _split_assignment(text: str) -> Tuple[str, str]:
    name, sep, value = text.partition("=")
    if not sep or not name.strip() or not value.strip():
        raise argparse.ArgumentTypeError(f"expected name=value, got {text!r}")
    return name.strip(), value.strip()


def parse_domain_arg(text: str) -> Tuple[str, Any]:
    """``name=a,b,c`` -> list, ``name=min:max[:step]`` -> (min, max, step)"""
    name, value = _split_assignment(text)
    if ":" in value:
        parts = [_coerce(p) for p in value.split(":")]
        if len(parts) == 2:
            parts.append(1)
        if len(parts) != 3 or any(isinstance(p, str) for p in parts):
            raise argparse.ArgumentTypeError(f"range for {name!r} must be min:max[:step]")
        return name, tuple(parts)
    return name, [_coerce(v) for v in value.split(",")]


def parse_bound_arg(text: str) -> Tuple[str, Any]:
    """``name=low:high`` -> (low, high), ``name=a,b`` -> categories"""
    name, value = _split_assignment(text)
    if ":" in value:
        parts = [_coerce(p) for p in value.split(":")]
        if len(parts) != 2 or any(isinstance(p, str) for p in parts):
            raise argparse.ArgumentTypeError(f"bounds for {name!r} must be low:high")
        return name, (float(parts[0]), float(parts[1]))
    return name, [_coerce(v) for v in value.split(",")]


def parse_precision_arg(text: str) -> Tuple[str, int]:
    name, value = _split_assignment(text)
    try:
        return name, int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"precision for {name!r} must be an integer, got {value!r}")


def parse_value_arg(text: str) -> Tuple[str, Any]:
    name, value = _split_assignment(text)
    return name, _coerce(value)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    # System arguments
    parser.add_argument('--subject', help='Session subject name (default: system name)')
    parser.add_argument('--bars', type=int, default=2000, help='Synthetic bars to generate (default: 2000)')
    parser.add_argument('--data-seed', type=int, default=7, help='Seed of the synthetic price series (default: 7)')
    parser.add_argument('--start-date', default='2024-01-01', help='First bar timestamp (default: 2024-01-01)')
    parser.add_argument('--freq', default='1h', help='Bar frequency (default: 1h)')
    parser.add_argument('--range-start', help='Restrict the search range start')
    parser.add_argument('--range-stop', help='Restrict the search range stop')

    # Session arguments
    parser.add_argument('--splits', type=int, default=1, help='Repeats per parameter tuple (default: 1)')
    parser.add_argument('--seed', type=int, default=1, help='Session seed (default: 1)')
    parser.add_argument('--offset', type=int, default=0, help='Session time offset (default: 0)')
    parser.add_argument('--direction', choices=DIRECTIONS, default='maximize', help='Objective direction')
    parser.add_argument('--random-search', action='store_true', help='Shuffle the grid before execution')
    parser.add_argument('--no-window-randomization', action='store_true',
                        help='Evaluate every repeat on the whole range')

    # Execution arguments
    parser.add_argument('--max-workers', type=int, help='Parallel workers (0 = all cores, default from environment)')
    parser.add_argument('--memory-per-worker-mb', type=int, default=1500,
                        help='Memory budget per worker in MB (default: 1500)')
    parser.add_argument('--save-interval', type=float, help='Seconds between periodic checkpoints')
    parser.add_argument('--resume', dest='resume', action='store_true', default=True,
                        help='Resume a stored session (default)')
    parser.add_argument('--no-resume', dest='resume', action='store_false', help='Start a fresh session')

    # Storage arguments
    parser.add_argument('--store-dir', help='Directory store root')
    parser.add_argument('--store-backend', choices=STORE_BACKENDS, help='Store backend')

    # Logging arguments
    parser.add_argument('--log-level', default='INFO', help='Logging level (default: INFO)')
    parser.add_argument('--log-dir', default='logs', help='Log directory (default: logs)')
    parser.add_argument('--no-log-files', action='store_true', help='Log to the console only')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='optsession', description='Resumable parameter optimization sessions')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    grid = subparsers.add_parser('grid', help='Exhaustive grid search')
    progressive = subparsers.add_parser('progressive', help='Grid rounds at successive time offsets')
    broad = subparsers.add_parser('broad', help='Grid search over contiguous time slices')
    for sub in (grid, progressive, broad):
        sub.add_argument('--param', dest='param_specs', type=parse_domain_arg, action='append', required=True,
                         help='Parameter domain: name=a,b,c or name=min:max[:step]')

    progressive.add_argument('--rounds', type=int, default=3, help='Number of rounds (default: 3)')
    progressive.add_argument('--cut', type=float, default=0.8, help='Share of candidates kept per round (default: 0.8)')
    progressive.add_argument('--min-results', type=int, default=100,
                             help='Rows above which only the top candidates are kept (default: 100)')
    progressive.add_argument('--min-candidates', type=int, default=3,
                             help='Stop once fewer candidates remain (default: 3)')

    broad.add_argument('--slice-size', type=float, default=0.2,
                       help='Slice length: fraction of the range in (0, 1) or a step count (default: 0.2)')
    broad.add_argument('--sort-by', default='pnl', help='Candidate ordering column (default: pnl)')

    slide = subparsers.add_parser('slide', help='Re-run fixed parameters over sliding windows')
    slide.add_argument('--value', dest='values', type=parse_value_arg, action='append', default=[],
                       help='Fixed parameter value: name=value (default: system defaults)')
    slide.add_argument('--step-ratio', type=float, help='Window length as a share of the range')

    blackbox = subparsers.add_parser('blackbox', help='Optuna TPE search over bounds')
    blackbox.add_argument('--bound', dest='bound_specs', type=parse_bound_arg, action='append', required=True,
                          help='Bounds: name=low:high or categories name=a,b')
    blackbox.add_argument('--precision', dest='precision_specs', type=parse_precision_arg, action='append',
                          default=[], help='Decimals per parameter: name=n (-1 = integer)')
    blackbox.add_argument('--max-trials', type=int, default=100, help='Trials per start (default: 100)')
    blackbox.add_argument('--timeout', type=float, help='Seconds per start')
    blackbox.add_argument('--n-starts', type=int, default=1, help='Concurrent studies (default: 1)')
    blackbox.add_argument('--threshold', type=float, help='Stop once a score crosses this value')
    blackbox.add_argument('--max-failures', type=int, help='Stop after this many consecutive failed trials')
    blackbox.add_argument('--n-startup-trials', type=int, default=10, help='Random trials before TPE (default: 10)')
    blackbox.add_argument('--multivariate', action='store_true', help='Multivariate TPE')

    for sub in (grid, progressive, broad, slide, blackbox):
        _add_common_arguments(sub)
    return parser


def _to_dict(pairs: Sequence[Tuple[str, Any]], what: str) -> dict:
    result = {}
    for name, value in pairs or []:
        if name in result:
            raise argparse.ArgumentTypeError(f"{what} {name!r} given twice")
        result[name] = value
    return result


def _build_config(args: argparse.Namespace) -> SearchConfig:
    config = SearchConfig(
        attrs=SessionAttrs(splits=args.splits, seed=args.seed, offset=args.offset),
        resume=args.resume,
        random_search=args.random_search,
        direction=args.direction,
    )
    if args.max_workers is not None:
        config.limits.max_workers = args.max_workers
    if args.save_interval is not None:
        config.limits.save_interval_seconds = args.save_interval if args.save_interval > 0 else None
    config.limits.memory_per_worker_mb = args.memory_per_worker_mb
    config.limits.randomize_window = not args.no_window_randomization
    if args.store_dir:
        config.storage.root_dir = args.store_dir
    if args.store_backend:
        config.storage.backend = args.store_backend

    if args.mode == 'progressive':
        config.filters.cut = args.cut
        config.filters.min_results = args.min_results
        config.filters.min_candidates = args.min_candidates
    elif args.mode == 'broad':
        config.broad.slice_size = args.slice_size
        config.broad.sort_by = args.sort_by
    elif args.mode == 'blackbox':
        config.blackbox.max_trials = args.max_trials
        config.blackbox.timeout_seconds = args.timeout
        config.blackbox.n_starts = args.n_starts
        config.blackbox.early_threshold = args.threshold
        config.blackbox.max_failures = args.max_failures
        config.blackbox.direction = args.direction
        config.tpe_sampler.n_startup_trials = args.n_startup_trials
        config.tpe_sampler.multivariate = args.multivariate
        config.tpe_sampler.seed = args.seed

    config.validate()
    return config


def collect_cli_config(argv: Optional[List[str]] = None) -> Optional[SearchRequest]:
    """
    Collect configuration from command line arguments

    Returns:
        SearchRequest if the arguments are valid, None otherwise
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit:
        # argparse calls sys.exit on --help or invalid args
        return None

    try:
        request = SearchRequest(
            mode=args.mode,
            config=_build_config(args),
            subject=args.subject,
            bars=args.bars,
            data_seed=args.data_seed,
            start_date=args.start_date,
            freq=args.freq,
            range_start=args.range_start,
            range_stop=args.range_stop,
            log_level=args.log_level.upper(),
            log_dir=args.log_dir,
            log_files=not args.no_log_files,
        )
        if args.mode in ('grid', 'progressive', 'broad'):
            request.param_space = _to_dict(args.param_specs, "parameter")
        if args.mode == 'progressive':
            request.rounds = args.rounds
        if args.mode == 'slide':
            request.params = _to_dict(args.values, "value")
            request.step_ratio = args.step_ratio
        if args.mode == 'blackbox':
            request.bounds = _to_dict(args.bound_specs, "bound")
            request.precision = _to_dict(args.precision_specs, "precision")
    except (argparse.ArgumentTypeError, OptSessionError) as e:
        parser.print_usage()
        logger.error(f"Invalid arguments: {e}")
        return None

    if request.mode not in SEARCH_MODES:
        return None
    return request
