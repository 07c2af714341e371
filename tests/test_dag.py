from __future__ import annotations

import pytest

from replayci.dag import build_dag, order_stages, topo_levels
from replayci.dsl import cmd, stage
from replayci.errors import ConfigurationError


def _names(stages):
    return [s.name for s in stages]


def test_declaration_order_kept_without_dependencies() -> None:
    stages = [stage(n, cmd("true")) for n in ("c", "a", "b")]
    assert _names(order_stages(stages)) == ["c", "a", "b"]


def test_dependencies_run_first() -> None:
    stages = [
        stage("test", cmd("true"), needs=["build"]),
        stage("lint", cmd("true")),
        stage("build", cmd("true"), needs=["configure"]),
        stage("configure", cmd("true")),
    ]
    order = _names(order_stages(stages))
    assert order.index("configure") < order.index("build") < order.index("test")
    assert order == ["lint", "configure", "build", "test"]


def test_ordering_is_stable_across_calls() -> None:
    stages = [
        stage("a", cmd("true")),
        stage("b", cmd("true"), needs=["a"]),
        stage("c", cmd("true"), needs=["a"]),
        stage("d", cmd("true")),
    ]
    assert _names(order_stages(stages)) == _names(order_stages(stages)) == ["a", "b", "c", "d"]


def test_cycle_is_a_configuration_error() -> None:
    stages = [
        stage("a", cmd("true"), needs=["b"]),
        stage("b", cmd("true"), needs=["a"]),
    ]
    with pytest.raises(ConfigurationError) as exc:
        order_stages(stages)
    assert "cycle" in exc.value.message


def test_missing_dependency_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as exc:
        build_dag([stage("test", cmd("true"), needs=["build"])])
    assert "build" in exc.value.message


def test_duplicate_names_rejected() -> None:
    with pytest.raises(ConfigurationError):
        build_dag([stage("a", cmd("true")), stage("a", cmd("false"))])


def test_topo_levels_groups_independent_stages() -> None:
    stages = [
        stage("configure", cmd("true")),
        stage("list-devices", cmd("true")),
        stage("build", cmd("true"), needs=["configure"]),
        stage("unit_tests", cmd("true"), needs=["build"]),
        stage("examples", cmd("true"), needs=["build"]),
    ]
    assert topo_levels(stages) == [
        ["configure", "list-devices"],
        ["build"],
        ["unit_tests", "examples"],
    ]
