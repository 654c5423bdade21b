"""
Session Data Model
==================

The optimization session: identity, results table and best-score cell.

Rows are plain dictionaries ``{repeat, obj, cash, pnl, trades, <params>...}``
appended under ``results_lock``. Consumers treat the table as a set grouped
by parameter tuple; append order carries no meaning across tuples.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from optsession.config.search_config import SessionAttrs, DIRECTIONS
from optsession.systems.base import TimeRange
from optsession.utils.exceptions import SessionMismatchError, ConfigurationError
from .store import session_key

META_COLUMNS = ("repeat", "obj", "cash", "pnl", "trades")
METRIC_COLUMNS = ("obj", "cash", "pnl", "trades")


def _native(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def normalize_space(param_space: Dict[str, Sequence[Any]]) -> Dict[str, List[Any]]:
    """Plain-list copy of a parameter space with native Python values"""
    return {str(name): [_native(v) for v in domain] for name, domain in param_space.items()}


@dataclass(frozen=True)
class SessionIdentity:
    """
    Everything that must match for a persisted session to resume.

    Fields are compared in declaration order.
    """
    subject: str
    time_range: TimeRange
    param_space: Dict[str, List[Any]]
    attrs: SessionAttrs

    COMPARE_ORDER = ("subject", "time_range", "param_space", "attrs")

    def compare(self, other: "SessionIdentity", key: Optional[str] = None) -> Optional[SessionMismatchError]:
        """First mismatching field as an error, None when identical"""
        for field_name in self.COMPARE_ORDER:
            expected = getattr(other, field_name)
            actual = getattr(self, field_name)
            if field_name == "param_space":
                # parameter order is part of the identity
                if list(expected.items()) != list(actual.items()):
                    return SessionMismatchError("params", expected, actual, key=key)
            elif expected != actual:
                return SessionMismatchError(field_name.replace("_", " "), expected, actual, key=key)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject': self.subject,
            'time_range': self.time_range.to_dict(),
            'param_space': {name: list(domain) for name, domain in self.param_space.items()},
            'attrs': self.attrs.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionIdentity":
        return cls(
            subject=data['subject'],
            time_range=TimeRange.from_dict(data['time_range']),
            param_space=normalize_space(data['param_space']),
            attrs=SessionAttrs.from_dict(data['attrs']),
        )


class BestCell:
    """
    Atomically updated best score with a maximize / minimize ordering.

    ``value`` stays None until the first finite score is offered.
    """

    def __init__(self, direction: str = "maximize"):
        if direction not in DIRECTIONS:
            raise ConfigurationError("session", f"direction must be one of {DIRECTIONS}, got {direction!r}")
        self.direction = direction
        self.value: Optional[float] = None
        self.params: Optional[Tuple[Any, ...]] = None
        self._lock = threading.Lock()

    def is_better(self, candidate: float, incumbent: Optional[float]) -> bool:
        if incumbent is None:
            return True
        if self.direction == "maximize":
            return candidate > incumbent
        return candidate < incumbent

    def offer(self, value: Optional[float], params: Optional[Tuple[Any, ...]] = None) -> bool:
        """Record ``value`` if it improves the best; returns True on improvement"""
        if value is None:
            return False
        try:
            value = float(value)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(value):
            return False

        with self._lock:
            if self.is_better(value, self.value):
                self.value = value
                self.params = params
                return True
            return False

    def worst(self) -> float:
        """Score reported for failed evaluations"""
        return -math.inf if self.direction == "maximize" else math.inf


class Session:
    """
    The unit of optimization work.

    Holds the identity, the results rows, the best-score cell and the worker
    pool used to evaluate trials. ``saved_rows`` is the persistence watermark
    maintained by the checkpoint manager.
    """

    def __init__(self, subject: str,
                 time_range: TimeRange,
                 param_space: Dict[str, Sequence[Any]],
                 attrs: Optional[SessionAttrs] = None,
                 pool=None,
                 direction: str = "maximize"):
        attrs = attrs or SessionAttrs()
        attrs.validate()
        space = normalize_space(param_space)
        if not space:
            raise ConfigurationError("session", "parameter space is empty")
        for name in space:
            if name in META_COLUMNS:
                raise ConfigurationError("session", f"parameter name {name!r} clashes with a result column")

        self.identity = SessionIdentity(subject=subject, time_range=time_range,
                                        param_space=space, attrs=attrs)
        self.best = BestCell(direction)
        self.pool = pool
        self.results_lock = threading.Lock()
        self._rows: List[Dict[str, Any]] = []

        self.saved_rows = 0
        self.last_save_time: Optional[float] = None

    # Identity shortcuts

    @property
    def subject(self) -> str:
        return self.identity.subject

    @property
    def time_range(self) -> TimeRange:
        return self.identity.time_range

    @property
    def param_space(self) -> Dict[str, List[Any]]:
        return self.identity.param_space

    @property
    def attrs(self) -> SessionAttrs:
        return self.identity.attrs

    @property
    def param_names(self) -> List[str]:
        return list(self.identity.param_space)

    @property
    def columns(self) -> List[str]:
        return list(META_COLUMNS) + self.param_names

    @property
    def key(self) -> str:
        return session_key(self.identity)

    # Results table

    def make_row(self, repeat: int, obj: float, cash: float, pnl: float, trades: int,
                 params: Sequence[Any]) -> Dict[str, Any]:
        names = self.param_names
        if len(params) != len(names):
            raise ConfigurationError("session", f"expected {len(names)} parameter values, got {len(params)}")
        row = {"repeat": repeat, "obj": obj, "cash": cash, "pnl": pnl, "trades": trades}
        row.update(zip(names, params))
        return row

    def append_row(self, row: Dict[str, Any]) -> int:
        """Append one row, returns the new row count"""
        with self.results_lock:
            self._rows.append(row)
            return len(self._rows)

    def extend_rows(self, rows: Sequence[Dict[str, Any]]) -> int:
        with self.results_lock:
            self._rows.extend(rows)
            return len(self._rows)

    def replace_rows(self, rows: Sequence[Dict[str, Any]]) -> None:
        """Swap the whole table (incomplete-repeat pruning)"""
        with self.results_lock:
            self._rows = list(rows)

    def row_count(self) -> int:
        with self.results_lock:
            return len(self._rows)

    def rows(self, start: int = 0, stop: Optional[int] = None) -> List[Dict[str, Any]]:
        """Snapshot of rows ``[start, stop)``"""
        with self.results_lock:
            return [dict(r) for r in self._rows[start:stop]]

    @property
    def results(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows(), columns=self.columns)

    def param_tuple(self, row: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(_native(row[name]) for name in self.param_names)

    def __repr__(self) -> str:
        return (f"Session(subject={self.subject!r}, params={self.param_names}, "
                f"rows={self.row_count()}, best={self.best.value})")
