"""
Search Configuration
====================

Typed configuration for optimization sessions and the search orchestrators.

This module defines:
- Session attributes that take part in the session identity
- Execution limits (parallelism, memory, checkpoint interval)
- Result filter and broad-search slicing settings
- TPE sampler and black-box adapter settings
- Storage backend selection
- Parameter-space helpers for grid domains and black-box bounds

``SearchConfig`` is the single entry point and applies environment variable
overrides on creation.
"""

import os
import math
import numbers
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional, Sequence, Union
from pathlib import Path

import numpy as np

from optsession.utils.exceptions import ConfigurationError, ParameterSpaceError

DIRECTIONS = ("maximize", "minimize")
STORE_BACKENDS = ("directory", "memory")

# Precision markers for black-box parameters
PRECISION_INTEGER = -1


@dataclass
class SessionAttrs:
    """
    Session attributes that are part of the session identity.

    Two sessions with different attributes never resume into each other.
    """
    # Number of repeats per parameter tuple
    splits: int = 1

    # Seed for window randomization and random-search shuffling
    seed: int = 1

    # Time offset (progressive search round)
    offset: int = 0

    # Free-form optimizer metadata (must be JSON serializable)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not isinstance(self.splits, int) or self.splits < 1:
            raise ConfigurationError("session attrs", f"splits must be a positive integer, got {self.splits!r}")
        if not isinstance(self.seed, int):
            raise ConfigurationError("session attrs", f"seed must be an integer, got {self.seed!r}")
        if not isinstance(self.offset, int) or self.offset < 0:
            raise ConfigurationError("session attrs", f"offset must be a non-negative integer, got {self.offset!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionAttrs":
        return cls(
            splits=int(data.get("splits", 1)),
            seed=int(data.get("seed", 1)),
            offset=int(data.get("offset", 0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ExecutionLimits:
    """
    Resource and execution limits for a search run.
    """
    # Worker threads (0 = auto-detect from CPU count and memory)
    max_workers: int = 0

    # Memory budget per worker clone (MB), used to cap auto-detected workers
    memory_per_worker_mb: int = 1500

    # Minimum seconds between periodic checkpoints (None = no periodic saves)
    save_interval_seconds: Optional[float] = None

    # Randomize the evaluation window of each repeat
    randomize_window: bool = True


@dataclass
class FilterConfig:
    """
    Settings for the profitable-top result filter used between progressive rounds.
    """
    # Fraction of summarized rows kept across the three orderings
    cut: float = 0.8

    # Summarized row count above which the top cut is applied
    min_results: int = 100

    # Fewer surviving candidates than this ends a progressive search
    min_candidates: int = 3


@dataclass
class BroadSearchConfig:
    """
    Time slicing for broad search.

    ``slice_size`` in (0, 1) is a fraction of the total range, otherwise an
    absolute number of range steps.
    """
    slice_size: float = 0.2
    sort_by: str = "pnl"


@dataclass
class TPESamplerConfig:
    """
    Tree-structured Parzen Estimator settings for the black-box adapter.
    """
    # Random trials before TPE starts
    n_startup_trials: int = 10

    # Model parameter correlations
    multivariate: bool = False

    # Base sampler seed (each multi-start study adds its index)
    seed: Optional[int] = None


@dataclass
class BlackBoxConfig:
    """
    Black-box adapter limits and early termination.
    """
    # Trials per study
    max_trials: int = 100

    # Wall-clock limit per study (seconds)
    timeout_seconds: Optional[float] = None

    # Concurrent studies with different initial guesses
    n_starts: int = 1

    # Stop once a score crosses this value
    early_threshold: Optional[float] = None

    # Stop after this many consecutive failed or non-finite scores
    max_failures: Optional[int] = None

    # "maximize" / "minimize" (None = session direction)
    direction: Optional[str] = None


@dataclass
class StorageConfig:
    """
    Persistent store selection.
    """
    # "directory" (CSV/JSON files) or "memory"
    backend: str = "directory"

    # Root folder for the directory backend
    root_dir: str = field(default_factory=lambda: str(Path.cwd() / "optsession_store"))


@dataclass
class SearchConfig:
    """
    Master configuration combining all search settings.

    Provides a single entry point with validation and environment variable
    overrides.
    """
    attrs: SessionAttrs = field(default_factory=SessionAttrs)
    limits: ExecutionLimits = field(default_factory=ExecutionLimits)
    filters: FilterConfig = field(default_factory=FilterConfig)
    broad: BroadSearchConfig = field(default_factory=BroadSearchConfig)
    tpe_sampler: TPESamplerConfig = field(default_factory=TPESamplerConfig)
    blackbox: BlackBoxConfig = field(default_factory=BlackBoxConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Resume from the store when a matching session exists
    resume: bool = True

    # Shuffle the grid before execution
    random_search: bool = False

    # Session ordering for the best-score cell
    direction: str = "maximize"

    def __post_init__(self):
        """Apply environment variable overrides"""
        if 'OPTSESSION_MAX_WORKERS' in os.environ:
            self.limits.max_workers = int(os.environ['OPTSESSION_MAX_WORKERS'])

        if 'OPTSESSION_SAVE_INTERVAL' in os.environ:
            interval = float(os.environ['OPTSESSION_SAVE_INTERVAL'])
            self.limits.save_interval_seconds = interval if interval > 0 else None

        if 'OPTSESSION_STORE_DIR' in os.environ:
            self.storage.root_dir = os.environ['OPTSESSION_STORE_DIR']

        if 'OPTSESSION_STORE_BACKEND' in os.environ:
            self.storage.backend = os.environ['OPTSESSION_STORE_BACKEND'].strip().lower()

    def validate(self) -> bool:
        """Validate configuration consistency, raising ConfigurationError on bad values"""
        self.attrs.validate()

        if self.limits.max_workers < 0:
            raise ConfigurationError("limits", f"max_workers must be >= 0, got {self.limits.max_workers}")
        if self.limits.memory_per_worker_mb <= 0:
            raise ConfigurationError("limits", "memory_per_worker_mb must be positive")
        if self.limits.save_interval_seconds is not None and self.limits.save_interval_seconds < 0:
            raise ConfigurationError("limits", "save_interval_seconds must be >= 0")

        if not 0 < self.filters.cut <= 1:
            raise ConfigurationError("filters", f"cut must be in (0, 1], got {self.filters.cut}")
        if self.filters.min_candidates < 1:
            raise ConfigurationError("filters", "min_candidates must be >= 1")

        if self.broad.slice_size <= 0:
            raise ConfigurationError("broad search", f"slice_size must be positive, got {self.broad.slice_size}")

        if self.blackbox.max_trials < 1:
            raise ConfigurationError("black-box", "max_trials must be >= 1")
        if self.blackbox.n_starts < 1:
            raise ConfigurationError("black-box", "n_starts must be >= 1")
        if self.blackbox.max_failures is not None and self.blackbox.max_failures < 1:
            raise ConfigurationError("black-box", "max_failures must be >= 1")
        if self.blackbox.direction is not None and self.blackbox.direction not in DIRECTIONS:
            raise ConfigurationError("black-box", f"direction must be one of {DIRECTIONS}")

        if self.direction not in DIRECTIONS:
            raise ConfigurationError("session", f"direction must be one of {DIRECTIONS}, got {self.direction!r}")

        if self.storage.backend not in STORE_BACKENDS:
            raise ConfigurationError(
                "storage",
                f"unknown backend {self.storage.backend!r}",
                recovery_suggestion=f"Use one of {STORE_BACKENDS}",
            )

        # Keep startup trials reasonable
        if self.tpe_sampler.n_startup_trials > self.blackbox.max_trials // 2:
            self.tpe_sampler.n_startup_trials = max(1, self.blackbox.max_trials // 10)

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for serialization"""
        return {
            'attrs': self.attrs.to_dict(),
            'limits': asdict(self.limits),
            'filters': asdict(self.filters),
            'broad': asdict(self.broad),
            'tpe_sampler': asdict(self.tpe_sampler),
            'blackbox': asdict(self.blackbox),
            'storage': asdict(self.storage),
            'resume': self.resume,
            'random_search': self.random_search,
            'direction': self.direction,
        }


def get_search_config(**overrides) -> SearchConfig:
    """
    Get search configuration with validation.

    Returns:
        Validated SearchConfig instance
    """
    config = SearchConfig(**overrides)
    config.validate()
    return config


# =============================================================================
# PARAMETER SPACE
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _to_native(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def expand_domain(name: str, spec: Union[Sequence[Any], range]) -> List[Any]:
    """
    Expand a domain specification into its explicit list of values.

    Accepted forms:
        list of values          explicit or categorical values
        range(...)              integer range
        (min, max, step) tuple  inclusive numeric range
    """
    if isinstance(spec, range):
        values = list(spec)
    elif isinstance(spec, tuple) and len(spec) == 3 and all(_is_number(v) for v in spec):
        low, high, step = spec
        if step <= 0:
            raise ParameterSpaceError(name, f"step must be positive, got {step}")
        if high < low:
            raise ParameterSpaceError(name, f"max {high} is below min {low}")
        count = int(math.floor((high - low) / step + 1e-9)) + 1
        if all(isinstance(v, numbers.Integral) for v in spec):
            values = [int(low + i * step) for i in range(count)]
        else:
            values = [float(v) for v in np.round(low + np.arange(count) * step, 10)]
    elif isinstance(spec, (list, tuple, np.ndarray)):
        values = [_to_native(v) for v in spec]
    else:
        raise ParameterSpaceError(name, f"unsupported domain type {type(spec).__name__}")

    if not values:
        raise ParameterSpaceError(name, "domain is empty")
    if len(set(map(repr, values))) != len(values):
        raise ParameterSpaceError(name, "domain contains duplicate values")
    return values


def build_param_space(spec: Dict[str, Any]) -> Dict[str, List[Any]]:
    """Ordered mapping of parameter name to its explicit domain"""
    if not spec:
        raise ParameterSpaceError("<space>", "no parameters declared")
    return {str(name): expand_domain(str(name), domain) for name, domain in spec.items()}


@dataclass
class ParameterBound:
    """
    Black-box bounds for one parameter.

    ``precision``: None keeps the value continuous, ``-1`` rounds to an
    integer, ``n >= 0`` rounds to ``n`` decimals. Categorical parameters carry
    their ``categories`` and are searched as an index in ``[0, len - 1]``.
    """
    name: str
    low: float
    high: float
    precision: Optional[int] = None
    categories: Optional[List[Any]] = None

    @property
    def is_categorical(self) -> bool:
        return self.categories is not None

    def decode(self, value: float) -> Any:
        """Map a quantized search value to the value applied to the system"""
        if self.is_categorical:
            return self.categories[int(value)]
        if self.precision == PRECISION_INTEGER:
            return int(value)
        return float(value)

    def encode(self, value: Any) -> float:
        """Map a system value into search coordinates"""
        if self.is_categorical:
            if value in self.categories:
                return float(self.categories.index(value))
            raise ParameterSpaceError(self.name, f"{value!r} is not one of {self.categories}")
        return float(value)


class SearchSpace:
    """
    Declared bounds for the black-box adapter, in parameter order.
    """

    def __init__(self, bounds: List[ParameterBound]):
        self.bounds = list(bounds)
        self.validate()

    @classmethod
    def from_dict(cls, bounds: Dict[str, Any],
                  precision: Optional[Dict[str, int]] = None) -> "SearchSpace":
        """
        Build from ``{name: (low, high)}`` or ``{name: [category, ...]}``.
        """
        precision = precision or {}
        unknown = set(precision) - set(bounds)
        if unknown:
            raise ParameterSpaceError(sorted(unknown)[0], "precision given for an undeclared parameter")

        params = []
        for name, spec in bounds.items():
            if isinstance(spec, list):
                if not spec:
                    raise ParameterSpaceError(name, "category list is empty")
                params.append(ParameterBound(name, 0.0, float(len(spec) - 1),
                                             precision=PRECISION_INTEGER, categories=list(spec)))
            elif isinstance(spec, tuple) and len(spec) == 2:
                params.append(ParameterBound(name, float(spec[0]), float(spec[1]),
                                             precision=precision.get(name)))
            else:
                raise ParameterSpaceError(name, "bounds must be a (low, high) tuple or a category list")
        return cls(params)

    def validate(self) -> None:
        if not self.bounds:
            raise ParameterSpaceError("<space>", "no parameters declared")
        seen = set()
        for b in self.bounds:
            if b.name in seen:
                raise ParameterSpaceError(b.name, "declared twice")
            seen.add(b.name)
            if not (math.isfinite(b.low) and math.isfinite(b.high)):
                raise ParameterSpaceError(b.name, "bounds must be finite")
            if b.low > b.high:
                raise ParameterSpaceError(b.name, f"lower bound {b.low} exceeds upper bound {b.high}")
            if b.precision is not None and b.precision < PRECISION_INTEGER:
                raise ParameterSpaceError(b.name, f"invalid precision {b.precision}")
            if b.precision == PRECISION_INTEGER and math.ceil(b.low) > math.floor(b.high):
                raise ParameterSpaceError(b.name, f"no integer between {b.low} and {b.high}")

    @property
    def names(self) -> List[str]:
        return [b.name for b in self.bounds]

    @property
    def lows(self) -> np.ndarray:
        return np.array([b.low for b in self.bounds], dtype=float)

    @property
    def highs(self) -> np.ndarray:
        return np.array([b.high for b in self.bounds], dtype=float)

    def midpoint(self) -> np.ndarray:
        return (self.lows + self.highs) / 2.0

    def decode(self, vector: Sequence[float]) -> Dict[str, Any]:
        if len(vector) != len(self.bounds):
            raise ParameterSpaceError("<space>", f"vector has {len(vector)} values for {len(self.bounds)} parameters")
        return {b.name: b.decode(v) for b, v in zip(self.bounds, vector)}

    def __len__(self) -> int:
        return len(self.bounds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            b.name: {'low': b.low, 'high': b.high, 'precision': b.precision, 'categories': b.categories}
            for b in self.bounds
        }
