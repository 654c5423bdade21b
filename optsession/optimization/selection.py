"""
Result Aggregation and Parameter Selection
==========================================

Helpers to turn a session results table into candidate parameter sets:

- summarize: per-tuple mean of the metric columns (input of the filters)
- aggregate: per-tuple avg / median / min / max of every metric
- select_best / select_diverse / select_balanced: pick parameter rows
- get_params: parameter dictionary of one row

Selection functions only consider rows with at least one trade and keep the
first row of each parameter tuple.
"""

import logging
import re
from typing import Dict, Any, List, Sequence

import numpy as np
import pandas as pd

from optsession.session.model import META_COLUMNS, METRIC_COLUMNS

logger = logging.getLogger(__name__)

AGGREGATES = {"avg": "mean", "med": "median", "min": "min", "max": "max"}
DISTANCE_METRICS = ("euclidean", "manhattan", "cosine")
_AGG_SUFFIX = re.compile(r"_(avg|med|min|max)$")


def summarize(results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
    """Mean of each metric per parameter tuple, in first-appearance order"""
    names = list(names)
    if results is None or len(results) == 0:
        return pd.DataFrame(columns=names + list(METRIC_COLUMNS))
    metrics = [c for c in METRIC_COLUMNS if c in results.columns]
    summary = results.groupby(names, sort=False, dropna=False)[metrics].mean().reset_index()
    return summary[names + metrics]


def aggregate(results: pd.DataFrame, names: Sequence[str],
              sort_by: str = "pnl_avg", filter_zero_trades: bool = True,
              ascending: bool = False) -> pd.DataFrame:
    """
    Per-tuple statistics of every metric.

    Columns: parameters, then ``{metric}_avg``, ``_med``, ``_min``, ``_max``.
    """
    names = list(names)
    if results is None or len(results) == 0:
        logger.warning("No results to aggregate")
        return pd.DataFrame()

    grouped = results.groupby(names, sort=False, dropna=False)
    columns = {}
    for metric in METRIC_COLUMNS:
        if metric not in results.columns:
            continue
        for suffix, func in AGGREGATES.items():
            columns[f"{metric}_{suffix}"] = grouped[metric].agg(func)
    agg_df = pd.DataFrame(columns).reset_index()

    if filter_zero_trades and "trades_avg" in agg_df.columns:
        agg_df = agg_df[agg_df["trades_avg"] > 0]

    if sort_by in agg_df.columns:
        agg_df = agg_df.sort_values(sort_by, ascending=ascending, kind="mergesort")
    return agg_df.reset_index(drop=True)


def traded_unique(results: pd.DataFrame, names: Sequence[str]) -> pd.DataFrame:
    """Rows with trades, one per parameter tuple"""
    if results is None or len(results) == 0:
        return pd.DataFrame(columns=list(results.columns) if results is not None else [])
    traded = results[results["trades"] > 0]
    return traded.drop_duplicates(subset=list(names), keep="first").reset_index(drop=True)


def select_best(results: pd.DataFrame, names: Sequence[str], n: int = 10,
                sort_by: str = "pnl", ascending: bool = False) -> pd.DataFrame:
    """Top ``n`` rows by ``sort_by``"""
    filtered = traded_unique(results, names)
    if len(filtered) == 0:
        logger.warning("No results with trades found")
        return filtered
    ordered = filtered.sort_values(sort_by, ascending=ascending, kind="mergesort")
    return ordered.head(n).reset_index(drop=True)


def _param_matrix(df: pd.DataFrame, names: Sequence[str]) -> np.ndarray:
    """Parameters as floats normalized to [0, 1] per column"""
    data = np.zeros((len(df), len(names)), dtype=float)
    for i, name in enumerate(names):
        numeric = pd.to_numeric(df[name], errors="coerce")
        if numeric.isna().any():
            # categorical values are compared by their order of appearance
            codes, _ = pd.factorize(df[name])
            numeric = pd.Series(codes, index=df.index, dtype=float)
        data[:, i] = numeric.to_numpy(dtype=float)

    col_min = data.min(axis=0)
    col_max = data.max(axis=0)
    spread = np.where(col_max > col_min, col_max - col_min, 1.0)
    return np.where(col_max > col_min, (data - col_min) / spread, data)


def _distances(points: np.ndarray, metric: str) -> np.ndarray:
    if metric == "euclidean":
        diff = points[:, None, :] - points[None, :, :]
        return np.sqrt((diff ** 2).sum(axis=2))
    if metric == "manhattan":
        diff = points[:, None, :] - points[None, :, :]
        return np.abs(diff).sum(axis=2)
    if metric == "cosine":
        norms = np.linalg.norm(points, axis=1)
        dots = points @ points.T
        denom = np.outer(norms, norms)
        with np.errstate(divide="ignore", invalid="ignore"):
            dist = np.where(denom > 0, 1.0 - dots / np.where(denom > 0, denom, 1.0), 1.0)
        np.fill_diagonal(dist, 0.0)
        return dist
    raise ValueError(f"Unknown metric {metric!r}, expected one of {DISTANCE_METRICS}")


def select_diverse(results: pd.DataFrame, names: Sequence[str], n: int = 10,
                   metric: str = "euclidean") -> pd.DataFrame:
    """
    ``n`` parameter rows spread as far apart as possible.

    Greedy max-min selection on normalized parameters, starting from the
    row with the largest mean distance to all others.
    """
    if metric not in DISTANCE_METRICS:
        raise ValueError(f"Unknown metric {metric!r}, expected one of {DISTANCE_METRICS}")
    filtered = traded_unique(results, names)
    if len(filtered) == 0:
        logger.warning("No results with trades found")
        return filtered
    if len(filtered) <= n:
        return filtered

    dist = _distances(_param_matrix(filtered, list(names)), metric)
    selected = [int(np.argmax(dist.mean(axis=1)))]
    remaining = [i for i in range(len(filtered)) if i != selected[0]]
    while len(selected) < n and remaining:
        min_dist = dist[np.ix_(remaining, selected)].min(axis=1)
        pick = remaining[int(np.argmax(min_dist))]
        selected.append(pick)
        remaining.remove(pick)
    return filtered.iloc[selected].reset_index(drop=True)


def select_balanced(results: pd.DataFrame, names: Sequence[str], n: int = 10,
                    sort_by: str = "pnl") -> pd.DataFrame:
    """Half diverse, half best, topped up from the remaining rows"""
    names = list(names)
    filtered = traded_unique(results, names)
    if len(filtered) <= n:
        return filtered

    combined = pd.concat([
        select_diverse(filtered, names, n=n // 2),
        select_best(filtered, names, n=n // 2, sort_by=sort_by),
    ], ignore_index=True).drop_duplicates(subset=names, keep="first")

    if len(combined) < n:
        chosen = set(map(tuple, combined[names].itertuples(index=False, name=None)))
        mask = [tuple(row) not in chosen for row in filtered[names].itertuples(index=False, name=None)]
        extra = filtered[mask].head(n - len(combined))
        combined = pd.concat([combined, extra], ignore_index=True)
    return combined.head(n).reset_index(drop=True)


def get_params(df: pd.DataFrame, row_idx: int = 0) -> Dict[str, Any]:
    """
    Parameter values of one row (negative indexes count from the end).

    Result and aggregate columns are left out.
    """
    if df is None or len(df) == 0:
        raise ValueError("DataFrame is empty")
    if row_idx < 0:
        row_idx += len(df)
    if not 0 <= row_idx < len(df):
        raise IndexError(f"Row index {row_idx} is out of bounds for DataFrame with {len(df)} rows")
    param_cols: List[str] = [c for c in df.columns
                             if c not in META_COLUMNS and c != "step" and not _AGG_SUFFIX.search(str(c))]
    row = df.iloc[row_idx]
    return {c: (row[c].item() if isinstance(row[c], np.generic) else row[c]) for c in param_cols}
