"""
Search Request State
====================

Central dataclass describing one command-line search run.
Flows from argument collection through the search pipeline, collecting
results, errors and warnings on the way.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List

from optsession.config.search_config import SearchConfig

SEARCH_MODES = ("grid", "progressive", "broad", "slide", "blackbox")


@dataclass
class SearchRequest:
    """
    Everything needed to run one search from the command line.

    Populated by the config collector, consumed and updated by the pipeline.
    """

    # Core Configuration
    mode: str
    config: SearchConfig = field(default_factory=SearchConfig)
    subject: Optional[str] = None

    # Synthetic system
    bars: int = 2000
    data_seed: int = 7
    start_date: str = "2024-01-01"
    freq: str = "1h"

    # Optional sub-range of the series
    range_start: Optional[str] = None
    range_stop: Optional[str] = None

    # Grid modes: {name: domain spec}
    param_space: Dict[str, Any] = field(default_factory=dict)

    # Black-box mode: {name: (low, high) or [categories]} and precisions
    bounds: Dict[str, Any] = field(default_factory=dict)
    precision: Dict[str, int] = field(default_factory=dict)

    # Sliding-window mode: fixed parameter values
    params: Dict[str, Any] = field(default_factory=dict)
    step_ratio: Optional[float] = None

    # Progressive mode
    rounds: int = 3

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_files: bool = True

    # Runtime State (populated during the run)
    session_key: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    # Metadata
    created_at: Optional[datetime] = None
    phase: str = "initialized"
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()

    def add_error(self, error: str) -> None:
        self.errors.append(f"[{datetime.now().isoformat()}] {error}")

    def add_warning(self, warning: str) -> None:
        self.warnings.append(f"[{datetime.now().isoformat()}] {warning}")

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def update_phase(self, phase: str) -> None:
        self.phase = phase

    def to_dict(self) -> Dict[str, Any]:
        """Convert request to dictionary for serialization"""
        return {
            'mode': self.mode,
            'subject': self.subject,
            'bars': self.bars,
            'data_seed': self.data_seed,
            'freq': self.freq,
            'range_start': self.range_start,
            'range_stop': self.range_stop,
            'param_space': self.param_space,
            'bounds': {k: list(v) for k, v in self.bounds.items()},
            'precision': self.precision,
            'params': self.params,
            'step_ratio': self.step_ratio,
            'rounds': self.rounds,
            'config': self.config.to_dict(),
            'phase': self.phase,
            'session_key': self.session_key,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'has_errors': self.has_errors(),
            'error_count': len(self.errors),
            'warning_count': len(self.warnings),
        }

    def get_summary(self) -> str:
        """Human-readable summary of the request"""
        attrs = self.config.attrs
        summary = f"""
Search Request Summary:
======================
Mode: {self.mode}
Subject: {self.subject or 'synthetic'} ({self.bars} bars, {self.freq})
Attributes: splits={attrs.splits}, seed={attrs.seed}, offset={attrs.offset}
Workers: {self.config.limits.max_workers or 'auto'}
Store: {self.config.storage.backend}
Phase: {self.phase}
Status: {'ERROR: Has Errors' if self.has_errors() else 'CLEAN'}"""

        if self.session_key:
            summary += f"""
Session: {self.session_key}"""
        if self.result and self.result.get('best_value') is not None:
            summary += f"""
Best: {self.result['best_value']:.6g} with {self.result.get('best_params')}"""

        return summary.strip()
