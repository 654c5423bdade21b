"""
Grid Builder
============

Enumerates parameter grids and works out which tuples still need to run.
"""

import logging
import itertools
from typing import Dict, Any, List, Sequence, Tuple

import numpy as np
import pandas as pd

from optsession.utils.exceptions import ParameterSpaceError

logger = logging.getLogger(__name__)

ParamTuple = Tuple[Any, ...]


def _native(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def tuples_of(results: pd.DataFrame, names: Sequence[str]) -> List[ParamTuple]:
    """Parameter tuple of every row, in row order"""
    if results is None or len(results) == 0:
        return []
    return [tuple(_native(v) for v in row) for row in results[list(names)].itertuples(index=False, name=None)]


class GridBuilder:
    """Grid enumeration and resume bookkeeping"""

    @staticmethod
    def build(param_space: Dict[str, Sequence[Any]]) -> List[ParamTuple]:
        """Cartesian product of all domains, in declaration order"""
        if not param_space:
            raise ParameterSpaceError("<space>", "no parameters declared")
        for name, domain in param_space.items():
            if len(domain) == 0:
                raise ParameterSpaceError(name, "domain is empty")
        return [tuple(_native(v) for v in combo) for combo in itertools.product(*param_space.values())]

    @staticmethod
    def size(param_space: Dict[str, Sequence[Any]]) -> int:
        total = 1
        for domain in param_space.values():
            total *= len(domain)
        return total

    @staticmethod
    def completed(results: pd.DataFrame, names: Sequence[str], splits: int) -> set:
        """Tuples having at least ``splits`` rows"""
        counts: Dict[ParamTuple, int] = {}
        for params in tuples_of(results, names):
            counts[params] = counts.get(params, 0) + 1
        return {params for params, n in counts.items() if n >= splits}

    @staticmethod
    def remaining(grid: Sequence[ParamTuple], results: pd.DataFrame,
                  names: Sequence[str], splits: int) -> List[ParamTuple]:
        """Grid minus every tuple whose repeats are all in ``results``"""
        done = GridBuilder.completed(results, names, splits)
        return [params for params in grid if tuple(params) not in done]

    @staticmethod
    def shuffle(seq: Sequence[ParamTuple], seed: int) -> List[ParamTuple]:
        """Seeded uniform permutation"""
        order = np.random.default_rng(seed).permutation(len(seq))
        return [seq[i] for i in order]

    @staticmethod
    def prune_incomplete(session) -> int:
        """
        Drop rows of tuples with fewer than ``splits`` repeats.

        Returns the number of rows removed.
        """
        splits = session.attrs.splits
        rows = session.rows()
        counts: Dict[ParamTuple, int] = {}
        for row in rows:
            params = session.param_tuple(row)
            counts[params] = counts.get(params, 0) + 1

        kept = [row for row in rows if counts[session.param_tuple(row)] >= splits]
        removed = len(rows) - len(kept)
        if removed:
            session.replace_rows(kept)
            logger.info(f"Pruned {removed} rows from incomplete repeat groups")
        return removed

    @staticmethod
    def from_results(results: pd.DataFrame, names: Sequence[str]) -> List[ParamTuple]:
        """Unique parameter tuples in first-appearance order"""
        seen = set()
        grid = []
        for params in tuples_of(results, names):
            if params not in seen:
                seen.add(params)
                grid.append(params)
        return grid
