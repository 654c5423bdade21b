import time

import pandas as pd
import pytest

from optsession.config.search_config import SessionAttrs
from optsession.session.checkpoint import CheckpointManager, ResumeStatus, meta_key, results_key
from optsession.session.model import Session
from optsession.session.store import MemoryStore, DirectoryStore
from optsession.utils.exceptions import PersistenceError, SessionMismatchError

SPACE = {"x": [1, 2, 3], "y": [10, 20]}


def new_session(time_range, space=SPACE, **attrs):
    return Session("quad", time_range, space, SessionAttrs(**attrs))


def fill(session, count, start=0):
    for i in range(start, start + count):
        x = SPACE["x"][i % 3]
        y = SPACE["y"][(i // 3) % 2]
        session.append_row(session.make_row(1, float(i), 1000.0 + i, i / 1000.0, i, (x, y)))


def test_save_and_resume_replays_rows(time_range, checkpoint):
    session = new_session(time_range)
    fill(session, 4)
    assert checkpoint.save(session) == 4
    assert session.saved_rows == 4

    fresh = new_session(time_range)
    result = checkpoint.resume(fresh)
    assert result.status is ResumeStatus.RESUMED
    assert result.rows == 4
    assert fresh.rows() == session.rows()
    assert fresh.best.value == 3.0
    assert fresh.saved_rows == 4


def test_resume_not_found(time_range, checkpoint):
    result = checkpoint.resume(new_session(time_range))
    assert result.status is ResumeStatus.NOT_FOUND
    assert not result.resumed


@pytest.mark.parametrize("changed, field", [
    ({"splits": 2}, "attrs"),
    ({"seed": 5}, "attrs"),
])
def test_resume_mismatching_attrs(time_range, checkpoint, changed, field):
    stored = new_session(time_range)
    fill(stored, 2)
    checkpoint.save(stored)

    other = new_session(time_range, **changed)
    result = checkpoint.resume(other, key=stored.key)
    assert result.status is ResumeStatus.MISMATCH
    assert isinstance(result.error, SessionMismatchError)
    assert result.error.field == field
    assert other.row_count() == 0
    assert stored.row_count() == 2


def test_resume_mismatching_time_range_and_params(time_range, checkpoint):
    stored = new_session(time_range)
    fill(stored, 2)
    checkpoint.save(stored)

    shifted = new_session(time_range.with_bounds(stop=time_range.stop - pd.Timedelta("1h")))
    result = checkpoint.resume(shifted, key=stored.key)
    assert result.error.message == "Can't resume session, mismatching time range"

    reordered = new_session(time_range, space={"y": [10, 20], "x": [1, 2, 3]})
    result = checkpoint.resume(reordered, key=stored.key)
    assert result.error.message == "Can't resume session, mismatching params"
    assert reordered.row_count() == 0


def test_incremental_save_equals_single_save(time_range):
    whole_store, split_store = MemoryStore(), MemoryStore()
    session = new_session(time_range)
    fill(session, 6)
    CheckpointManager(whole_store).save(session, 0, 6)

    crashed = new_session(time_range)
    fill(crashed, 4)
    CheckpointManager(split_store).save(crashed, 0, 4)

    resumed = new_session(time_range)
    manager = CheckpointManager(split_store)
    manager.resume(resumed)
    fill(resumed, 2, start=4)
    manager.save(resumed, 4, 6)

    expected = whole_store.get(results_key(session.key)).value
    actual = split_store.get(results_key(session.key)).value
    pd.testing.assert_frame_equal(actual, expected)


def test_save_with_gap_raises(time_range, checkpoint):
    session = new_session(time_range)
    fill(session, 4)
    with pytest.raises(PersistenceError) as exc:
        checkpoint.save(session, 2, 4)
    assert "only 0 rows stored" in exc.value.message


def test_rewrite_truncates_stored_rows(time_range, checkpoint, store):
    session = new_session(time_range)
    fill(session, 4)
    checkpoint.save(session)
    session.replace_rows(session.rows(0, 2))
    checkpoint.rewrite(session)
    assert len(store.get(results_key(session.key)).value) == 2
    assert session.saved_rows == 2


def test_maybe_save_is_time_gated(time_range, store):
    manager = CheckpointManager(store, save_interval=3600)
    session = new_session(time_range)
    fill(session, 2)
    assert manager.maybe_save(session) is True
    fill(session, 1, start=2)
    assert manager.maybe_save(session) is False
    assert session.saved_rows == 2

    session.last_save_time = time.monotonic() - 7200
    assert manager.maybe_save(session) is True
    assert session.saved_rows == 3


def test_maybe_save_disabled_without_interval(time_range, checkpoint):
    session = new_session(time_range)
    fill(session, 2)
    assert checkpoint.maybe_save(session) is False


def test_final_save_flushes_remaining_rows(time_range, checkpoint, store):
    session = new_session(time_range)
    fill(session, 3)
    checkpoint.save(session, 0, 1)
    assert checkpoint.final_save(session) == 2
    assert len(store.get(results_key(session.key)).value) == 3


def test_directory_store_resume(tmp_path, time_range):
    manager = CheckpointManager(DirectoryStore(str(tmp_path)))
    session = new_session(time_range, space={"x": [1, 2, 3], "mode": ["long", "both"]})
    session.append_row(session.make_row(1, 0.5, 1010.0, 0.01, 3, (2, "both")))
    manager.save(session)

    fresh = new_session(time_range, space={"x": [1, 2, 3], "mode": ["long", "both"]})
    assert manager.resume(fresh).resumed
    assert fresh.param_tuple(fresh.rows()[0]) == (2, "both")


def test_directory_store_load_keeps_domain_types(tmp_path, time_range):
    manager = CheckpointManager(DirectoryStore(str(tmp_path)))
    space = {"x": ["auto", 5], "y": ["10", 20]}
    session = new_session(time_range, space=space)
    session.append_row(session.make_row(1, 1.0, 1010.0, 0.01, 1, ("auto", "10")))
    session.append_row(session.make_row(1, 2.0, 1020.0, 0.02, 2, (5, 20)))
    manager.save(session)

    _, results = manager.load(session.key)
    assert results["x"].tolist() == ["auto", 5]
    assert results["y"].tolist() == ["10", 20]


def test_load_unreadable_meta_raises(time_range, tmp_path):
    store = DirectoryStore(str(tmp_path))
    manager = CheckpointManager(store)
    session = new_session(time_range)
    manager.save(session)

    base = store._base_path(meta_key(session.key))
    base.with_name(base.name + ".json").write_text("{broken")
    with pytest.raises(PersistenceError):
        manager.load(session.key)


def test_list_and_delete_sessions(time_range, checkpoint):
    first = new_session(time_range)
    second = new_session(time_range, splits=2)
    other = Session("other", time_range, SPACE, SessionAttrs())
    for s in (first, second, other):
        checkpoint.save(s)

    assert checkpoint.list_sessions("quad") == sorted([first.key, second.key])
    assert len(checkpoint.list_sessions()) == 3

    deleted = checkpoint.delete_sessions("quad", keep={"splits": 2})
    assert deleted == [first.key]
    assert checkpoint.list_sessions("quad") == [second.key]
    assert checkpoint.load(first.key) is None
