import pandas as pd
import pytest

from optsession.config.search_config import SessionAttrs
from optsession.optimization.filters import ResultFilter
from optsession.optimization.pool import WorkerPool
from optsession.optimization.search import SearchSetup, ProgressiveSearch, BroadSearch, SlidingWindowSearch
from optsession.session.checkpoint import CheckpointManager
from optsession.utils.exceptions import ConfigurationError

from conftest import QuadraticSystem

# x = 6 is unprofitable for every y
SPACE = {"x": [1, 2, 3, 6], "y": [10, 20]}


class EmptyFilter(ResultFilter):
    def apply(self, results, names):
        return pd.DataFrame(columns=list(names))


def make_setup(system, time_range, space=SPACE, workers=2):
    return SearchSetup(pool=WorkerPool(system, size=workers), time_range=time_range,
                       param_space=space, attrs=SessionAttrs(seed=3))


def test_progressive_stops_when_filter_empties(system, time_range):
    search = ProgressiveSearch(make_setup(system, time_range), rounds=3, result_filter=EmptyFilter())
    session = search.run()

    assert len(search.sessions) == 1
    assert session.attrs.offset == 0
    assert session.row_count() == 8
    assert system.counter.count == 8


def test_progressive_rounds_narrow_candidates(system, time_range, store):
    search = ProgressiveSearch(make_setup(system, time_range), rounds=3, checkpoint=CheckpointManager(store))
    session = search.run()

    assert [s.attrs.offset for s in search.sessions] == [0, 1, 2]
    assert all(s.attrs.splits == 1 for s in search.sessions)
    assert session.row_count() == 6
    assert all(r["x"] != 6 for r in session.rows())
    assert system.counter.count == 8 + 6 + 6
    assert len(CheckpointManager(store).list_sessions("quad")) == 3


def test_progressive_continues_from_previous_session(system, time_range):
    setup = make_setup(system, time_range)
    first = ProgressiveSearch(setup, rounds=2).run()
    assert first.attrs.offset == 1

    follow_up = ProgressiveSearch(setup, rounds=1)
    session = follow_up.run(initial_session=first)
    assert session.attrs.offset == 2
    assert session.row_count() == 6


def test_progressive_stops_below_min_candidates(system, time_range):
    search = ProgressiveSearch(make_setup(system, time_range), rounds=3, min_candidates=7)
    search.run()
    assert len(search.sessions) == 1


def test_progressive_rejects_zero_rounds(system, time_range):
    with pytest.raises(ConfigurationError):
        ProgressiveSearch(make_setup(system, time_range), rounds=0)


def test_broad_search_walks_slices(system, time_range):
    search = BroadSearch(make_setup(system, time_range), slice_size=0.25)
    session = search.run()

    assert search.slice_steps == 180
    assert len(search.sessions) == 4
    starts = [s.time_range.start for s in search.sessions]
    assert starts == [time_range.start + i * 180 * time_range.step for i in range(4)]
    assert session.time_range.stop == time_range.stop
    assert system.counter.count == 8 + 6 * 3


def test_broad_search_absolute_slice_size(system, time_range):
    search = BroadSearch(make_setup(system, time_range), slice_size=500)
    search.run()
    assert len(search.sessions) == 2
    assert search.sessions[1].time_range.stop == time_range.stop


def test_broad_search_stops_without_candidates(time_range):
    system = QuadraticSystem()
    search = BroadSearch(make_setup(system, time_range, space={"x": [6, 7], "y": [10]}), slice_size=0.25)
    search.run()
    assert len(search.sessions) == 1


def test_broad_search_slice_failure_keeps_earlier_results(system, time_range, monkeypatch):
    search = BroadSearch(make_setup(system, time_range), slice_size=0.25)
    original = search._slice
    calls = []

    def failing_slice(current_step, grid_itr):
        calls.append(current_step)
        if len(calls) == 2:
            raise RuntimeError("slice exploded")
        return original(current_step, grid_itr)

    monkeypatch.setattr(search, "_slice", failing_slice)
    session = search.run()
    assert calls == [0, 180]
    assert session.time_range.start == time_range.start
    assert len(search.sessions) == 1


def test_sliding_window_rows(system, time_range):
    pool = WorkerPool(system, size=2)
    search = SlidingWindowSearch(pool, time_range, step_ratio=0.25)
    table = search.run({"x": 2, "y": 20})

    assert list(table.columns) == ["step", "obj", "cash", "pnl", "trades"]
    assert table["step"].tolist() == [1, 2, 3, 4]
    assert table["obj"].tolist() == pytest.approx([10.0] * 4)
    windows = sorted(w.start for slot in pool.slots for w in slot.system.windows)
    assert windows == [time_range.start + i * 180 * time_range.step for i in range(4)]


def test_sliding_window_run_many_drops_metric_columns(system, time_range):
    search = SlidingWindowSearch(WorkerPool(system, size=1), time_range, step_ratio=0.5)
    params = pd.DataFrame({"x": [1, 2], "y": [10, 20], "obj": [0.1, 0.2], "pnl": [0.0, 0.1]})
    table = search.run_many(params)

    assert len(table) == 4
    assert set(table.columns) == {"step", "obj", "cash", "pnl", "trades", "x", "y"}
    assert table[table["x"] == 2]["obj"].tolist() == pytest.approx([10.0, 10.0])


def test_sliding_window_failures_are_dropped(time_range):
    system = QuadraticSystem(fail_when=lambda values: True)
    table = SlidingWindowSearch(WorkerPool(system), time_range, step_ratio=0.5).run({"x": 1, "y": 10})
    assert len(table) == 0


@pytest.mark.parametrize("ratio", [0, 1, 1.5])
def test_sliding_window_rejects_bad_ratio(system, time_range, ratio):
    with pytest.raises(ConfigurationError) as exc:
        SlidingWindowSearch(WorkerPool(system), time_range, step_ratio=ratio)
    assert "step_ratio" in exc.value.message
