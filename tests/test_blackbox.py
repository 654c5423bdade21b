import math
import threading
import time

import optuna
import pytest

from optsession.config.search_config import SessionAttrs, BlackBoxConfig, TPESamplerConfig, SearchSpace
from optsession.optimization.blackbox import (
    BlackBoxAdapter,
    CachedObjective,
    EarlyStopCallback,
    quantize,
    space_domains,
)
from optsession.optimization.pool import WorkerPool
from optsession.session.checkpoint import CheckpointManager, results_key
from optsession.session.store import MemoryStore
from optsession.utils.exceptions import ParameterSpaceError, SessionMismatchError

from conftest import QuadraticSystem

optuna.logging.set_verbosity(optuna.logging.WARNING)


@pytest.fixture
def space():
    return SearchSpace.from_dict({"x": (0, 4), "y": (10, 30)}, precision={"x": -1, "y": 0})


def make_adapter(system, time_range, space, workers=1, checkpoint=None, **config):
    config.setdefault("max_trials", 8)
    return BlackBoxAdapter(
        WorkerPool(system, size=workers), time_range, space,
        attrs=SessionAttrs(seed=5),
        config=BlackBoxConfig(**config),
        tpe=TPESamplerConfig(n_startup_trials=4),
        checkpoint=checkpoint,
    )


def test_quantize_rounds_and_clamps(space):
    assert quantize(space, [1.6, 12.4]) == (2.0, 12.0)
    assert quantize(space, [-3.0, 99.0]) == (0.0, 30.0)

    fine = SearchSpace.from_dict({"w": (0.0, 1.0)}, precision={"w": 2})
    assert quantize(fine, [0.12345]) == (0.12,)
    assert quantize(SearchSpace.from_dict({"w": (0.0, 1.0)}), [0.12345]) == (0.12345,)


def test_categorical_bounds_search_an_index():
    space = SearchSpace.from_dict({"mode": ["a", "b", "c"], "w": (0.0, 1.0)})
    assert quantize(space, [1.6, 0.5]) == (2.0, 0.5)
    assert space.decode((2.0, 0.5)) == {"mode": "c", "w": 0.5}
    assert space_domains(space) == {"mode": ["a", "b", "c"], "w": [0.0, 1.0]}


def test_whole_number_rounding_goes_half_up():
    space = SearchSpace.from_dict({"mode": ["a", "b", "c"]})
    assert quantize(space, [0.5]) == (1.0,)
    assert quantize(space, [1.5]) == (2.0,)
    assert quantize(space, [1.49]) == (1.0,)


def test_integer_rounding_stays_inside_fractional_bounds():
    space = SearchSpace.from_dict({"n": (0.5, 10.5)}, precision={"n": -1})
    assert quantize(space, [0.5]) == (1.0,)
    assert quantize(space, [10.5]) == (10.0,)
    assert quantize(space, [4.5]) == (5.0,)


def test_integer_bounds_without_whole_numbers_are_rejected():
    with pytest.raises(ParameterSpaceError):
        SearchSpace.from_dict({"n": (0.2, 0.8)}, precision={"n": -1})


def test_cached_objective_runs_each_vector_once(system, time_range, space):
    adapter = make_adapter(system, time_range, space)
    objective = CachedObjective(space, adapter.runner, failure_value=-math.inf)

    first = objective([1.2, 10.3])
    second = objective([0.8, 9.7])

    assert first == second == pytest.approx(8.0)
    assert objective.execution_count == 1
    assert objective.cache_hits == 1
    assert objective.counter == 1
    assert system.counter.count == 1
    assert adapter.session.rows()[0]["x"] == 1


def test_cached_objective_scores_failures(time_range, space):
    system = QuadraticSystem(fail_when=lambda values: True)
    adapter = make_adapter(system, time_range, space)
    objective = CachedObjective(space, adapter.runner, failure_value=-math.inf)

    assert objective([2, 20]) == -math.inf
    assert objective([2, 20]) == -math.inf
    assert objective.execution_count == 1
    assert adapter.session.row_count() == 0


def test_concurrent_calls_share_one_execution(time_range, space):
    system = QuadraticSystem(fail_when=lambda values: time.sleep(0.05) or False)
    adapter = make_adapter(system, time_range, space)
    objective = CachedObjective(space, adapter.runner, failure_value=-math.inf)
    barrier = threading.Barrier(4)
    values = []

    def call():
        barrier.wait()
        values.append(objective([1, 10]))

    threads = [threading.Thread(target=call) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert values == [pytest.approx(8.0)] * 4
    assert objective.execution_count == 1
    assert objective.cache_hits == 3
    assert system.counter.count == 1
    assert adapter.session.row_count() == 1


def test_early_stop_on_threshold():
    study = optuna.create_study(direction="maximize")
    callback = EarlyStopCallback(threshold=5.0)
    study.optimize(lambda t: t.suggest_float("w", 0, 1) + 5, n_trials=10, callbacks=[callback])
    assert len(study.trials) == 1
    assert "threshold" in callback.reason


def test_early_stop_threshold_follows_direction():
    assert EarlyStopCallback(threshold=1.0, direction="minimize").crossed(0.5)
    assert not EarlyStopCallback(threshold=1.0, direction="minimize").crossed(1.5)
    assert not EarlyStopCallback().crossed(1e9)


def test_early_stop_after_consecutive_failures():
    study = optuna.create_study(direction="maximize")
    callback = EarlyStopCallback(max_failures=3)
    study.optimize(lambda t: t.suggest_float("w", 0, 1) - math.inf, n_trials=10, callbacks=[callback])
    assert len(study.trials) == 3
    assert callback.consecutive_failures == 3


def test_initial_guesses_start_from_defaults(system, time_range, space):
    adapter = make_adapter(system, time_range, space, n_starts=3)
    guesses = adapter.initial_guesses()

    assert len(guesses) == 3
    assert guesses[0] == (1.0, 10.0)
    for x, y in guesses:
        assert x == int(x) and 0 <= x <= 4
        assert y == int(y) and 10 <= y <= 30
    assert guesses == adapter.initial_guesses()


def test_multi_start_run(time_range, space):
    system = QuadraticSystem()
    adapter = make_adapter(system, time_range, space, workers=2, n_starts=2)
    result = adapter.run()

    assert adapter.session.attrs.splits == 2
    assert len(result.studies) == 2
    assert all(len(s.trials) == 8 for s in result.studies)
    assert result.executed + result.cache_hits == 16
    assert system.counter.count == result.executed == adapter.session.row_count()

    assert result.best_value >= 8.0
    assert isinstance(result.best_params["x"], int)
    assert isinstance(result.best_params["y"], float)
    assert result.to_dict()["trials"] == 16


def test_threshold_stops_run_on_first_guess(system, time_range, space):
    result = make_adapter(system, time_range, space, max_trials=50, early_threshold=7.5).run()
    assert len(result.studies[0].trials) == 1
    assert "threshold" in result.stop_reasons[0]
    assert result.best_params == {"x": 1, "y": 10.0}


def test_resume_continues_counter_and_cache(time_range, space):
    store = MemoryStore()
    first = make_adapter(QuadraticSystem(), time_range, space, checkpoint=CheckpointManager(store), max_trials=5)
    first.run()
    stored_rows = first.session.row_count()
    last_repeat = max(r["repeat"] for r in first.session.rows())

    system = QuadraticSystem()
    second = make_adapter(system, time_range, space, checkpoint=CheckpointManager(store), max_trials=5)
    result = second.run()

    rows = second.session.rows()
    assert len(rows) == stored_rows + result.executed
    assert all(r["repeat"] > last_repeat for r in rows[stored_rows:])
    # the enqueued default guess was already scored
    assert result.cache_hits >= 1
    assert system.counter.count == result.executed


def test_mismatch_refused_by_confirm(time_range, space):
    store = MemoryStore()
    make_adapter(QuadraticSystem(), time_range, space, checkpoint=CheckpointManager(store), max_trials=3).run()

    later = time_range.with_bounds(stop=time_range.stop + (time_range.step * 2))
    system = QuadraticSystem()
    adapter = BlackBoxAdapter(
        WorkerPool(system), later, space,
        attrs=SessionAttrs(seed=5),
        config=BlackBoxConfig(max_trials=3),
        checkpoint=CheckpointManager(store),
        confirm=lambda error: False,
    )
    with pytest.raises(SessionMismatchError):
        adapter.run()
    assert system.counter.count == 0


def test_mismatch_without_confirm_starts_fresh(time_range, space):
    store = MemoryStore()
    make_adapter(QuadraticSystem(), time_range, space, checkpoint=CheckpointManager(store), max_trials=3).run()

    later = time_range.with_bounds(stop=time_range.stop + (time_range.step * 2))
    adapter = make_adapter(QuadraticSystem(), later, space, checkpoint=CheckpointManager(store), max_trials=3)
    result = adapter.run()
    assert min(r["repeat"] for r in adapter.session.rows()) == 1
    assert result.executed == adapter.session.row_count()
    assert len(store.get(results_key(adapter.session.key)).value) == result.executed


def test_fresh_run_replaces_stored_rows(time_range, space):
    store = MemoryStore()
    make_adapter(QuadraticSystem(), time_range, space, checkpoint=CheckpointManager(store), max_trials=5).run()

    system = QuadraticSystem()
    adapter = BlackBoxAdapter(
        WorkerPool(system), time_range, space,
        attrs=SessionAttrs(seed=5),
        config=BlackBoxConfig(max_trials=2),
        tpe=TPESamplerConfig(n_startup_trials=4),
        checkpoint=CheckpointManager(store),
        resume=False,
    )
    result = adapter.run()

    assert min(r["repeat"] for r in adapter.session.rows()) == 1
    assert system.counter.count == result.executed == adapter.session.row_count()
    assert len(store.get(results_key(adapter.session.key)).value) == adapter.session.row_count()
