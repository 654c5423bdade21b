import pytest

from optsession.config.search_config import (
    SessionAttrs,
    SearchConfig,
    SearchSpace,
    ParameterBound,
    get_search_config,
    expand_domain,
    build_param_space,
    PRECISION_INTEGER,
)
from optsession.utils.exceptions import ConfigurationError, ParameterSpaceError


def test_session_attrs_defaults_and_round_trip():
    attrs = SessionAttrs(splits=3, seed=9, offset=2, metadata={"tag": "a"})
    assert SessionAttrs.from_dict(attrs.to_dict()) == attrs
    assert SessionAttrs() == SessionAttrs(splits=1, seed=1, offset=0, metadata={})


def test_session_attrs_validation():
    with pytest.raises(ConfigurationError) as exc:
        SessionAttrs(splits=0).validate()
    assert "splits" in str(exc.value)

    with pytest.raises(ConfigurationError):
        SessionAttrs(offset=-1).validate()


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("OPTSESSION_MAX_WORKERS", "3")
    monkeypatch.setenv("OPTSESSION_SAVE_INTERVAL", "15")
    monkeypatch.setenv("OPTSESSION_STORE_DIR", str(tmp_path))
    monkeypatch.setenv("OPTSESSION_STORE_BACKEND", "Memory")

    config = SearchConfig()
    assert config.limits.max_workers == 3
    assert config.limits.save_interval_seconds == 15.0
    assert config.storage.root_dir == str(tmp_path)
    assert config.storage.backend == "memory"


def test_non_positive_save_interval_disables_saving(monkeypatch):
    monkeypatch.setenv("OPTSESSION_SAVE_INTERVAL", "0")
    assert SearchConfig().limits.save_interval_seconds is None


def test_validate_rejects_unknown_backend(monkeypatch):
    monkeypatch.delenv("OPTSESSION_STORE_BACKEND", raising=False)
    config = SearchConfig()
    config.storage.backend = "postgres"
    with pytest.raises(ConfigurationError) as exc:
        config.validate()
    assert "unknown backend" in exc.value.message


def test_validate_lowers_startup_trials():
    config = get_search_config()
    config.blackbox.max_trials = 10
    config.tpe_sampler.n_startup_trials = 10
    config.validate()
    assert config.tpe_sampler.n_startup_trials == 1


def test_to_dict_contains_sections():
    data = get_search_config().to_dict()
    for key in ("attrs", "limits", "filters", "broad", "tpe_sampler", "blackbox", "storage"):
        assert key in data


def test_expand_domain_forms():
    assert expand_domain("a", [3, 1, 2]) == [3, 1, 2]
    assert expand_domain("b", range(2, 5)) == [2, 3, 4]
    assert expand_domain("c", (5, 20, 5)) == [5, 10, 15, 20]
    assert expand_domain("d", (0.1, 0.3, 0.1)) == [0.1, 0.2, 0.3]
    assert expand_domain("mode", ["long", "both"]) == ["long", "both"]


def test_expand_domain_errors():
    with pytest.raises(ParameterSpaceError) as exc:
        expand_domain("a", [])
    assert "'a'" in exc.value.message

    with pytest.raises(ParameterSpaceError):
        expand_domain("a", (1, 5, 0))
    with pytest.raises(ParameterSpaceError):
        expand_domain("a", [1, 1])


def test_build_param_space_keeps_order():
    space = build_param_space({"y": [10, 20], "x": (1, 3, 1)})
    assert list(space) == ["y", "x"]
    assert space["x"] == [1, 2, 3]


def test_search_space_from_dict():
    space = SearchSpace.from_dict({"x": (0, 10), "mode": ["long", "both"]}, precision={"x": PRECISION_INTEGER})
    assert space.names == ["x", "mode"]
    assert list(space.lows) == [0.0, 0.0]
    assert list(space.highs) == [10.0, 1.0]
    assert space.decode([4.0, 1.0]) == {"x": 4, "mode": "both"}


def test_search_space_rejects_bad_bounds():
    with pytest.raises(ParameterSpaceError):
        SearchSpace.from_dict({"x": (5, 1)})
    with pytest.raises(ParameterSpaceError):
        SearchSpace.from_dict({"x": (0, 1)}, precision={"y": 2})
    with pytest.raises(ParameterSpaceError):
        SearchSpace.from_dict({"x": "0:1"})


def test_parameter_bound_encode():
    bound = ParameterBound("mode", 0.0, 1.0, precision=PRECISION_INTEGER, categories=["long", "both"])
    assert bound.encode("both") == 1.0
    with pytest.raises(ParameterSpaceError):
        bound.encode("short")
