import pytest

from wright.errors import BuildError
from wright.graph import (
    CycleCandidate,
    PlanGraph,
    PlanNode,
    RebuildReason,
    build_plan_graph,
    collect_phase_deps,
    cycle_candidates,
    find_cycles,
    inject_bootstrap_passes,
    package_to_plan_map,
    pick_candidate,
)


def _cycle_plans():
    a = PlanNode("a", build=["b"])
    b = PlanNode("b", link=["a"], build=["c"], mvp={"link": []})
    c = PlanNode("c")
    return {"a": a, "b": b, "c": c}


def test_package_to_plan_map_includes_splits():
    plans = {
        "gcc": PlanNode("gcc", splits=["libgcc", "libstdcxx"]),
        "zlib": PlanNode("zlib"),
    }
    mapping = package_to_plan_map(plans)
    assert mapping == {
        "gcc": "gcc",
        "libgcc": "gcc",
        "libstdcxx": "gcc",
        "zlib": "zlib",
    }


def test_collect_phase_deps_maps_splits_and_skips_self():
    node = PlanNode("app", build=["libgcc >= 12", "app-doc"], runtime=["zlib"], link=["unknown"])
    pkg_to_plan = {"libgcc": "gcc", "app-doc": "app", "zlib": "zlib"}
    assert collect_phase_deps(node, pkg_to_plan, False) == ["gcc", "zlib", "unknown"]


def test_collect_phase_deps_mvp_overrides_only_given_kinds():
    node = PlanNode("p", build=["x"], runtime=["y"], link=["z"], mvp={"link": []})
    assert collect_phase_deps(node, {}, True) == ["x", "y"]
    assert collect_phase_deps(node, {}, False) == ["x", "y", "z"]


def test_collect_phase_deps_mvp_without_table_uses_full():
    node = PlanNode("p", build=["x"], link=["z"])
    assert collect_phase_deps(node, {}, True) == collect_phase_deps(node, {}, False)


def test_find_cycles_acyclic():
    assert find_cycles({"a": ["b"], "b": ["c"], "c": []}) == []


def test_find_cycles_self_loop_not_reported():
    assert find_cycles({"a": ["a"]}) == []


def test_find_cycles_two_cycles():
    graph = {"a": ["b"], "b": ["a"], "c": ["d"], "d": ["c", "a"], "e": ["a"]}
    cycles = sorted(sorted(c) for c in find_cycles(graph))
    assert cycles == [["a", "b"], ["c", "d"]]


def test_find_cycles_neighbour_without_entry():
    assert find_cycles({"a": ["missing"]}) == []


def test_find_cycles_long_chain_is_iterative():
    size = 5000
    graph = {f"n{i}": [f"n{(i + 1) % size}"] for i in range(size)}
    cycles = find_cycles(graph)
    assert len(cycles) == 1
    assert set(cycles[0]) == set(graph)


def test_pick_candidate_fewest_then_name():
    candidates = [
        CycleCandidate("zeta", ["a"]),
        CycleCandidate("beta", ["a", "b"]),
        CycleCandidate("alpha", ["c"]),
    ]
    chosen = pick_candidate(candidates)
    assert chosen.pkg == "alpha"
    assert chosen.excluded == ["c"]


def test_pick_candidate_empty():
    assert pick_candidate([]) is None


def test_cycle_candidates_only_mvp_plans():
    plans = _cycle_plans()
    graph = build_plan_graph(plans.values(), plans)
    result = cycle_candidates(["a", "b"], graph)
    assert result == [CycleCandidate("b", ["a"])]


def test_build_plan_graph_basic():
    plans = _cycle_plans()
    reasons = {"a": RebuildReason.EXPLICIT}
    graph = build_plan_graph([plans["a"], plans["b"]], plans, reasons=reasons)
    assert graph.build_set == {"a", "b"}
    assert graph.deps_map == {"a": ["b"], "b": ["c", "a"]}
    assert graph.rebuild_reasons == reasons
    assert graph.bootstrap_excluded == {}


def test_build_plan_graph_checksum_has_no_deps():
    plans = _cycle_plans()
    graph = build_plan_graph(plans.values(), plans, checksum=True)
    assert all(deps == [] for deps in graph.deps_map.values())
    assert set(graph.deps_map) == set(plans)


def test_build_plan_graph_mvp_records_excluded():
    plans = _cycle_plans()
    graph = build_plan_graph(plans.values(), plans, mvp=True)
    assert graph.deps_map["b"] == ["c"]
    assert graph.bootstrap_excluded == {"b": ["a"]}


def test_inject_bootstrap_passes():
    plans = _cycle_plans()
    graph = build_plan_graph(plans.values(), plans)
    inject_bootstrap_passes(graph)
    assert "b:bootstrap" in graph.build_set
    assert graph.deps_map["b:bootstrap"] == ["c"]
    assert graph.deps_map["b"] == ["c", "a", "b:bootstrap"]
    assert graph.deps_map["a"] == ["b:bootstrap"]
    assert graph.bootstrap_excluded["b:bootstrap"] == ["a"]
    assert graph.nodes["b:bootstrap"] is plans["b"]
    assert find_cycles(graph.deps_map) == []


def test_inject_bootstrap_passes_acyclic_unchanged():
    plans = {"a": PlanNode("a", build=["b"]), "b": PlanNode("b")}
    graph = build_plan_graph(plans.values(), plans)
    before = {k: list(v) for k, v in graph.deps_map.items()}
    inject_bootstrap_passes(graph)
    assert graph.deps_map == before
    assert graph.build_set == {"a", "b"}


def test_inject_bootstrap_passes_unresolvable():
    plans = {"a": PlanNode("a", build=["b"]), "b": PlanNode("b", build=["a"])}
    graph = build_plan_graph(plans.values(), plans)
    with pytest.raises(BuildError, match="cannot be automatically resolved"):
        inject_bootstrap_passes(graph)


def test_inject_bootstrap_passes_mvp_that_keeps_edge_is_no_candidate():
    plans = {
        "a": PlanNode("a", build=["b"]),
        "b": PlanNode("b", build=["a"], mvp={"runtime": []}),
    }
    graph = build_plan_graph(plans.values(), plans)
    assert cycle_candidates(["a", "b"], graph) == []
    with pytest.raises(BuildError):
        inject_bootstrap_passes(graph)


def test_empty_plan_graph_defaults():
    graph = PlanGraph()
    inject_bootstrap_passes(graph)
    assert graph.build_set == set()
    assert graph.deps_map == {}