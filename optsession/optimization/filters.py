"""
Result Filters
==============

Strategies that reduce a round's results to the candidates carried into the
next round (progressive search) or the next time slice (broad search).

Filters work on the summarized table (one row per parameter tuple). Sorting
is stable and breaks ties on objective, cash, trades, then the parameter
values, so equal inputs always give equal outputs.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import pandas as pd

from optsession.utils.exceptions import ConfigurationError
from .selection import summarize

logger = logging.getLogger(__name__)

TIE_BREAK = ("obj", "cash", "trades")

# Orderings used to pick the profitable top
TOP_ORDERINGS = (
    ("cash", "obj", "trades"),
    ("trades", "obj", "cash"),
    ("obj", "cash", "trades"),
)


def deterministic_sort(df: pd.DataFrame, keys: Sequence[str], names: Sequence[str]) -> pd.DataFrame:
    """Descending stable sort on ``keys`` then the tie-break metrics, ascending on parameters"""
    metric_keys: List[str] = []
    for key in list(keys) + list(TIE_BREAK):
        if key in df.columns and key not in metric_keys:
            metric_keys.append(key)
    param_keys = [n for n in names if n not in metric_keys]
    by = metric_keys + param_keys
    ascending = [False] * len(metric_keys) + [True] * len(param_keys)
    return df.sort_values(by=by, ascending=ascending, kind="mergesort")


class ResultFilter(ABC):
    """Reduces session results to a summarized candidate table"""

    @abstractmethod
    def apply(self, results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
        pass

    def __call__(self, results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
        return self.apply(results, names)


class ProfitableTopFilter(ResultFilter):
    """
    Keep profitable tuples, then the best of them by three orderings.

    With more than one summarized row only ``pnl > 0`` survives. Above
    ``min_results`` rows, the top ``trunc(n * cut / 3)`` rows of each
    ordering are concatenated, dropping repeated tuples.
    """

    def __init__(self, cut: float = 0.8, min_results: int = 100):
        self.cut = cut
        self.min_results = min_results

    def apply(self, results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
        names = list(names)
        summary = summarize(results, names)
        if len(summary) > 1:
            summary = summary[summary["pnl"] > 0]

        if len(summary) > self.min_results:
            top_n = max(1, int(len(summary) * self.cut / 3))
            parts = [deterministic_sort(summary, ordering, names).head(top_n) for ordering in TOP_ORDERINGS]
            summary = pd.concat(parts).drop_duplicates(subset=names, keep="first")

        logger.debug(f"ProfitableTopFilter kept {len(summary)} candidates")
        return summary.reset_index(drop=True)


class TopBySortFilter(ResultFilter):
    """
    Sort the output of ``base`` by ``sort_by`` (best first), optionally
    keeping only ``top_n`` rows.
    """

    def __init__(self, sort_by: str = "pnl", top_n: Optional[int] = None,
                 base: Optional[ResultFilter] = None):
        self.sort_by = sort_by
        self.top_n = top_n
        self.base = base or ProfitableTopFilter()

    def apply(self, results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
        names = list(names)
        candidates = self.base.apply(results, names)
        if len(candidates) and self.sort_by not in candidates.columns:
            raise ConfigurationError("result filter", f"cannot sort by unknown column {self.sort_by!r}")
        ordered = deterministic_sort(candidates, [self.sort_by], names)
        if self.top_n is not None:
            ordered = ordered.head(self.top_n)
        return ordered.reset_index(drop=True)
