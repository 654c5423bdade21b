import threading

import pytest

from optsession.config.search_config import SessionAttrs
from optsession.optimization.pool import WorkerPool
from optsession.session.checkpoint import CheckpointManager
from optsession.session.model import Session
from optsession.session.store import MemoryStore
from optsession.systems.base import ScoredSystem, TimeRange, TrialMetrics


class RunCounter:
    """Run count shared by every clone of a system"""

    def __init__(self):
        self.count = 0
        self._lock = threading.Lock()

    def increment(self):
        with self._lock:
            self.count += 1


class QuadraticSystem(ScoredSystem):
    """
    Deterministic score peaking at x=2, y=20, independent of the window.

    ``fail_when(values)`` makes selected trials raise.
    """

    def __init__(self, counter=None, fail_when=None, subject="quad"):
        self.counter = counter or RunCounter()
        self.fail_when = fail_when
        self.subject = subject
        self.values = {}
        self.windows = []

    @property
    def name(self):
        return self.subject

    def reset(self):
        self.values = {}

    def apply_params(self, values):
        self.values = dict(values)

    def run(self, window):
        self.counter.increment()
        self.windows.append(window)
        if self.fail_when is not None and self.fail_when(self.values):
            raise RuntimeError("boom")
        x = float(self.values.get("x", 0))
        y = float(self.values.get("y", 0))
        score = 10.0 - (x - 2) ** 2 - ((y - 20) / 10) ** 2
        cash = 1000.0 * (1.0 + score / 100.0)
        return TrialMetrics(cash=cash, initial_cash=1000.0, trades=int(x) + 1, extra={"score": score})

    def score(self, metrics):
        return metrics.extra["score"]

    def clone(self):
        return QuadraticSystem(self.counter, self.fail_when, self.subject)

    def default_params(self):
        return {"x": 1, "y": 10}


@pytest.fixture
def time_range():
    return TimeRange("2024-01-01", "2024-01-31", "1h")


@pytest.fixture
def system():
    return QuadraticSystem()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def checkpoint(store):
    return CheckpointManager(store)


def make_session(system, time_range, space=None, workers=1, **attrs):
    space = space or {"x": [1, 2, 3], "y": [10, 20]}
    pool = WorkerPool(system, size=workers)
    return Session(system.name, time_range, space, SessionAttrs(**attrs), pool=pool)
