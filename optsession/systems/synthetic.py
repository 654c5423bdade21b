"""
Synthetic Moving-Average System
===============================

Self-contained scored system used by the CLI and the test suite.

Prices are a seeded geometric random walk; the system trades a fast/slow
moving-average crossover. Vectorized pandas operations with positions shifted
one bar to avoid look-ahead.
"""

import logging
from typing import Dict, Any

import numpy as np
import pandas as pd

from .base import ScoredSystem, TimeRange, TrialMetrics

logger = logging.getLogger(__name__)

MODES = ("long", "both")


class SyntheticSystem(ScoredSystem):
    """
    Moving-average crossover over a synthetic price series.

    Parameters:
        fast: fast moving-average window (bars)
        slow: slow moving-average window (bars), must exceed ``fast``
        mode: "long" (long/flat) or "both" (long/short)
    """

    def __init__(self, bars: int = 2000, seed: int = 7,
                 start: str = "2024-01-01", freq: str = "1h",
                 initial_cash: float = 10_000.0, max_lookback: int = 50,
                 name: str = "synthetic"):
        self._name = name
        self.initial_cash = float(initial_cash)
        self.max_lookback = int(max_lookback)
        self.freq = pd.Timedelta(freq)

        rng = np.random.default_rng(seed)
        returns = rng.normal(0.0002, 0.01, size=bars)
        index = pd.date_range(start=start, periods=bars, freq=self.freq)
        self.prices = pd.Series(100.0 * np.exp(np.cumsum(returns)), index=index, name="close")

        self.params: Dict[str, Any] = {}
        self.cash = self.initial_cash
        self.trades = 0
        self.runs = 0

    @property
    def name(self) -> str:
        return self._name

    def full_range(self) -> TimeRange:
        """Time range covered by the price series"""
        return TimeRange(self.prices.index[0], self.prices.index[-1], self.freq)

    def reset(self) -> None:
        self.params = {}
        self.cash = self.initial_cash
        self.trades = 0

    def apply_params(self, values: Dict[str, Any]) -> None:
        fast = int(values.get("fast", 10))
        slow = int(values.get("slow", 30))
        mode = values.get("mode", "long")
        if fast < 1 or slow <= fast:
            raise ValueError(f"slow ({slow}) must exceed fast ({fast}) and fast must be >= 1")
        if mode not in MODES:
            raise ValueError(f"unknown mode {mode!r}")
        self.params = {"fast": fast, "slow": slow, "mode": mode}

    def run(self, window: TimeRange) -> TrialMetrics:
        if not self.params:
            raise RuntimeError("apply_params() must be called before run()")

        history_start = window.start - self.warmup_period()
        prices = self.prices.loc[history_start:window.stop]
        if len(prices) < 2:
            raise ValueError(f"window {window.start} - {window.stop} holds no data")

        fast_ma = prices.rolling(self.params["fast"]).mean()
        slow_ma = prices.rolling(self.params["slow"]).mean()
        signal = (fast_ma > slow_ma).astype(float)
        if self.params["mode"] == "both":
            signal = signal.where(fast_ma > slow_ma, -1.0)
        signal = signal.where(slow_ma.notna(), 0.0)

        # Trade on the next bar
        position = signal.shift(1).fillna(0.0).loc[window.start:]
        bar_returns = prices.pct_change().fillna(0.0).loc[window.start:]
        strategy_returns = position * bar_returns

        self.cash = self.initial_cash * float((1.0 + strategy_returns).prod())
        self.trades = int((position.diff().fillna(position) != 0).sum())
        self.runs += 1

        std = float(strategy_returns.std())
        sharpe = float(strategy_returns.mean() / std * np.sqrt(len(strategy_returns))) if std > 0 else 0.0

        return TrialMetrics(cash=self.cash, initial_cash=self.initial_cash,
                            trades=self.trades, extra={"sharpe": sharpe})

    def score(self, metrics: TrialMetrics) -> float:
        return metrics.extra.get("sharpe", 0.0)

    def warmup_period(self) -> pd.Timedelta:
        return self.freq * self.max_lookback

    def default_params(self) -> Dict[str, Any]:
        return {"fast": 10, "slow": 30, "mode": "long"}


def create_synthetic_system(bars: int = 2000, seed: int = 7, **kwargs) -> SyntheticSystem:
    """Factory used by the CLI"""
    system = SyntheticSystem(bars=bars, seed=seed, **kwargs)
    logger.info(f"Created synthetic system: {bars} bars, seed {seed}, range {system.full_range().to_dict()}")
    return system
