import pandas as pd
import pytest

from optsession.optimization.filters import ProfitableTopFilter, TopBySortFilter, deterministic_sort
from optsession.optimization.selection import (
    summarize,
    aggregate,
    select_best,
    select_diverse,
    select_balanced,
    get_params,
)
from optsession.utils.exceptions import ConfigurationError

NAMES = ["a", "b"]


def make_results(rows):
    """rows: (a, b, obj, pnl, trades) per repeat"""
    return pd.DataFrame([
        {"repeat": 1, "obj": obj, "cash": 1000.0 * (1 + pnl), "pnl": pnl, "trades": trades, "a": a, "b": b}
        for a, b, obj, pnl, trades in rows
    ])


def test_summarize_means_per_tuple():
    results = make_results([(1, 1, 1.0, 0.1, 2), (1, 1, 3.0, 0.3, 4), (2, 1, 5.0, -0.1, 0)])
    summary = summarize(results, NAMES)
    assert list(summary.columns) == ["a", "b", "obj", "cash", "pnl", "trades"]
    assert len(summary) == 2
    assert summary.iloc[0]["obj"] == pytest.approx(2.0)
    assert summary.iloc[0]["trades"] == pytest.approx(3.0)


def test_aggregate_statistics_and_zero_trade_filter():
    results = make_results([(1, 1, 1.0, 0.1, 2), (1, 1, 3.0, 0.3, 4), (2, 1, 5.0, 0.5, 0)])
    table = aggregate(results, NAMES)
    assert len(table) == 1
    row = table.iloc[0]
    assert row["obj_avg"] == pytest.approx(2.0)
    assert row["obj_min"] == 1.0 and row["obj_max"] == 3.0
    assert row["pnl_med"] == pytest.approx(0.2)

    unfiltered = aggregate(results, NAMES, filter_zero_trades=False)
    assert unfiltered.iloc[0]["a"] == 2


def test_aggregate_empty_results():
    assert aggregate(pd.DataFrame(), NAMES).empty


def test_profitable_filter_keeps_positive_pnl():
    results = make_results([(1, 1, 1.0, 0.1, 2), (2, 1, 2.0, -0.1, 2), (3, 1, 0.5, 0.0, 2)])
    kept = ProfitableTopFilter()(results, NAMES)
    assert kept["a"].tolist() == [1]


def test_profitable_filter_single_row_is_kept():
    results = make_results([(1, 1, -1.0, -0.1, 2)])
    assert len(ProfitableTopFilter()(results, NAMES)) == 1


def test_profitable_filter_top_cut():
    rows = [(i, 0, float(i), 0.01 * (i + 1), 100 - i) for i in range(12)]
    kept = ProfitableTopFilter(cut=0.5, min_results=10)(make_results(rows), NAMES)
    # top 2 by cash, top 2 by trades, top 2 by obj; cash and obj overlap
    assert sorted(kept["a"].tolist()) == [0, 1, 10, 11]
    assert not kept.duplicated(subset=NAMES).any()


def test_deterministic_sort_breaks_ties_on_params():
    df = pd.DataFrame({"a": [3, 1, 2], "b": [0, 0, 0], "pnl": [0.1, 0.1, 0.1],
                       "obj": [1.0, 1.0, 1.0], "cash": [1.0, 1.0, 1.0], "trades": [1, 1, 1]})
    assert deterministic_sort(df, ["pnl"], NAMES)["a"].tolist() == [1, 2, 3]


def test_top_by_sort_filter():
    rows = [(1, 1, 3.0, 0.1, 2), (2, 1, 1.0, 0.3, 2), (3, 1, 2.0, 0.2, 2)]
    ordered = TopBySortFilter("pnl")(make_results(rows), NAMES)
    assert ordered["a"].tolist() == [2, 3, 1]
    assert TopBySortFilter("obj", top_n=1)(make_results(rows), NAMES)["a"].tolist() == [1]

    with pytest.raises(ConfigurationError) as exc:
        TopBySortFilter("sharpe")(make_results(rows), NAMES)
    assert "sharpe" in exc.value.message


def test_select_best_skips_untraded_and_duplicates():
    results = make_results([(1, 1, 1.0, 0.5, 0), (2, 1, 1.0, 0.3, 2), (2, 1, 1.0, 0.3, 2), (3, 1, 1.0, 0.1, 2)])
    best = select_best(results, NAMES, n=5)
    assert best["a"].tolist() == [2, 3]


def test_select_diverse_spreads_choices():
    rows = [(a, b, 1.0, 0.1, 1) for a in range(5) for b in range(5)]
    chosen = select_diverse(make_results(rows), NAMES, n=4)
    corners = {(0, 0), (0, 4), (4, 0), (4, 4)}
    assert set(zip(chosen["a"], chosen["b"])) == corners


def test_select_diverse_unknown_metric():
    with pytest.raises(ValueError):
        select_diverse(make_results([(1, 1, 1.0, 0.1, 1)]), NAMES, metric="hamming")


def test_select_balanced_returns_n_unique_rows():
    rows = [(a, b, float(a), 0.01 * a, 1) for a in range(5) for b in range(5)]
    chosen = select_balanced(make_results(rows), NAMES, n=6)
    assert len(chosen) == 6
    assert not chosen.duplicated(subset=NAMES).any()


def test_get_params_excludes_result_columns():
    table = aggregate(make_results([(1, 2, 1.0, 0.1, 2), (3, 4, 2.0, 0.2, 2)]), NAMES)
    assert get_params(table, 0) == {"a": 3, "b": 4}
    assert get_params(table, -1) == {"a": 1, "b": 2}

    with pytest.raises(IndexError):
        get_params(table, 5)
    with pytest.raises(ValueError):
        get_params(pd.DataFrame(), 0)
