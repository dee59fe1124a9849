"""Tests for stage dependency validation and ordering."""

import pytest

from conftest import stage
from shipline_common.dag import StageDAG
from shipline_common.errors import InvalidPipeline
from shipline_common.schemas import PipelineConfig


def _dag(*stages):
    return StageDAG.from_config(PipelineConfig(stages=list(stages)))


def test_order_respects_dependencies():
    dag = _dag(stage("propagate", ["publish"]), stage("publish", ["build"]), stage("build"))
    assert dag.order() == ["build", "publish", "propagate"]


def test_ready_waits_for_every_dependency():
    dag = _dag(stage("a"), stage("b", ["a"]), stage("c", ["a"]), stage("d", ["b", "c"]))

    assert dag.ready(set(), set()) == ["a"]
    assert sorted(dag.ready({"a"}, {"a"})) == ["b", "c"]
    assert dag.ready({"a", "b"}, {"a", "b", "c"}) == []
    assert dag.ready({"a", "b", "c"}, {"a", "b", "c"}) == ["d"]


def test_descendants_are_transitive():
    dag = _dag(stage("a"), stage("b", ["a"]), stage("c", ["b"]), stage("x"))
    assert dag.descendants("a") == {"b", "c"}
    assert dag.descendants("x") == set()


@pytest.mark.parametrize("stages,reason", [
    ([stage("a", ["b"]), stage("b", ["a"])], "dependency_cycle"),
    ([stage("a", ["a"])], "self_dependency"),
    ([stage("a", ["ghost"])], "unknown_dependency"),
    ([stage("a"), stage("a")], "duplicate_stage"),
])
def test_invalid_graphs_are_rejected(stages, reason):
    with pytest.raises(InvalidPipeline, match=reason):
        _dag(*stages)


def test_blank_stage_name_is_rejected():
    with pytest.raises(ValueError):
        stage("  ")
