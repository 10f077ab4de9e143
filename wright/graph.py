"""Plan dependency graphs, cycle detection and bootstrap-pass injection."""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import BuildError

log = logging.getLogger(__name__)

BOOTSTRAP_SUFFIX = ":bootstrap"

_DEP_NAME = re.compile(r"\s*([^\s<>=!]+)")


def _dependency_name(dep: str) -> str:
    """The package name of a dependency string such as `foo >= 1.2`."""
    match = _DEP_NAME.match(dep)
    return match.group(1) if match else dep


class RebuildReason(enum.Enum):
    EXPLICIT = "explicit"
    LINK_DEPENDENCY = "link"
    TRANSITIVE = "transitive"


@dataclass
class PlanNode:
    """What the graph needs to know about one plan.

    *mvp* holds the `[mvp.dependencies]` table when the plan declares one;
    its `build`, `runtime` and `link` keys override the full dependency lists.
    """

    name: str
    path: Path | None = None
    build: list[str] = field(default_factory=list)
    link: list[str] = field(default_factory=list)
    runtime: list[str] = field(default_factory=list)
    splits: list[str] = field(default_factory=list)
    mvp: dict[str, list[str]] | None = None

    @property
    def has_mvp(self) -> bool:
        return self.mvp is not None


@dataclass
class CycleCandidate:
    pkg: str
    excluded: list[str]


@dataclass
class PlanGraph:
    nodes: dict[str, PlanNode] = field(default_factory=dict)
    deps_map: dict[str, list[str]] = field(default_factory=dict)
    build_set: set[str] = field(default_factory=set)
    rebuild_reasons: dict[str, RebuildReason] = field(default_factory=dict)
    pkg_to_plan: dict[str, str] = field(default_factory=dict)
    # For each bootstrap task, the dependencies left out to break its cycle.
    bootstrap_excluded: dict[str, list[str]] = field(default_factory=dict)


def package_to_plan_map(plans: Mapping[str, PlanNode]) -> dict[str, str]:
    """Map every package name, main and split, to the plan that provides it."""
    mapping: dict[str, str] = {}
    for plan_name, node in plans.items():
        mapping[plan_name] = plan_name
        for split in node.splits:
            mapping[split] = plan_name
    return mapping


def collect_phase_deps(
    node: PlanNode, pkg_to_plan: Mapping[str, str], mvp: bool
) -> list[str]:
    """Plan-level dependencies of *node* (build, runtime, link), using MVP overrides when *mvp*."""
    overrides = node.mvp if mvp and node.mvp is not None else {}

    def pick(kind: str, base: list[str]) -> list[str]:
        value = overrides.get(kind)
        return list(value) if value is not None else list(base)

    raw = [
        *pick("build", node.build),
        *pick("runtime", node.runtime),
        *pick("link", node.link),
    ]

    deps: list[str] = []
    for dep in raw:
        name = _dependency_name(dep)
        parent = pkg_to_plan.get(name)
        if parent is None:
            deps.append(name)
        elif parent != node.name:
            deps.append(parent)
    return deps


def find_cycles(graph: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Strongly connected components with more than one node (Tarjan)."""
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    sccs: list[list[str]] = []
    counter = 0

    def enter(node: str) -> None:
        nonlocal counter
        index[node] = lowlink[node] = counter
        counter += 1
        stack.append(node)
        on_stack.add(node)

    for root in graph:
        if root in index:
            continue
        enter(root)
        work = [(root, iter(list(graph.get(root, ()))))]
        while work:
            node, neighbours = work[-1]
            for succ in neighbours:
                if succ not in index:
                    enter(succ)
                    work.append((succ, iter(list(graph.get(succ, ())))))
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], index[succ])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index[node]:
                    component: list[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1:
                        sccs.append(component)
    return sccs


def cycle_candidates(cycle: Iterable[str], graph: PlanGraph) -> list[CycleCandidate]:
    """Packages in *cycle* whose MVP dependency set drops at least one cyclic edge."""
    cycle = list(cycle)
    members = set(cycle)
    candidates: list[CycleCandidate] = []
    for pkg in cycle:
        node = graph.nodes.get(pkg)
        if node is None or not node.has_mvp:
            continue
        full = collect_phase_deps(node, graph.pkg_to_plan, False)
        mvp = collect_phase_deps(node, graph.pkg_to_plan, True)
        excluded = [dep for dep in full if dep in members and dep not in mvp]
        if excluded:
            candidates.append(CycleCandidate(pkg, excluded))
    return candidates


def pick_candidate(candidates: Iterable[CycleCandidate]) -> CycleCandidate | None:
    """The candidate excluding the fewest edges, ties broken by name."""
    return min(candidates, key=lambda c: (len(c.excluded), c.pkg), default=None)


def build_plan_graph(
    targets: Iterable[PlanNode],
    plans: Mapping[str, PlanNode],
    checksum: bool = False,
    mvp: bool = False,
    reasons: Mapping[str, RebuildReason] | None = None,
) -> PlanGraph:
    """Build the dependency graph for *targets*, resolving packages through all *plans*."""
    graph = PlanGraph(
        rebuild_reasons=dict(reasons or {}),
        pkg_to_plan=package_to_plan_map(plans),
    )
    for node in targets:
        graph.nodes[node.name] = node
        graph.build_set.add(node.name)
        deps: list[str] = []
        if not checksum:
            deps = collect_phase_deps(node, graph.pkg_to_plan, mvp)
            if mvp:
                full = collect_phase_deps(node, graph.pkg_to_plan, False)
                excluded = [dep for dep in full if dep not in deps]
                if excluded:
                    graph.bootstrap_excluded[node.name] = excluded
        graph.deps_map[node.name] = deps
    return graph


def inject_bootstrap_passes(graph: PlanGraph) -> None:
    """Break every dependency cycle by building one member twice.

    The chosen package first builds as `<pkg>:bootstrap` with its MVP
    dependencies; the rest of the cycle waits on that, and the full build of
    the package waits on its own bootstrap.
    """
    cycles = find_cycles(graph.deps_map)
    if not cycles:
        log.debug("Dependency graph is acyclic.")
        return

    for cycle in cycles:
        chain = " → ".join(cycle)
        log.info("Dependency cycle detected: %s", chain)

        chosen = pick_candidate(cycle_candidates(cycle, graph))
        if chosen is None:
            raise BuildError(
                "Dependency cycle cannot be automatically resolved.\n"
                f"Cycle: {chain}\n"
                "Add '[mvp.dependencies]' in one of these plans to declare "
                "an acyclic MVP dependency set."
            )

        pkg = chosen.pkg
        key = f"{pkg}{BOOTSTRAP_SUFFIX}"
        node = graph.nodes[pkg]
        graph.deps_map[key] = collect_phase_deps(node, graph.pkg_to_plan, True)
        graph.build_set.add(key)
        graph.nodes[key] = node
        graph.bootstrap_excluded[key] = list(chosen.excluded)

        if pkg in graph.deps_map:
            graph.deps_map[pkg].append(key)

        for other in cycle:
            if other == pkg or other not in graph.deps_map:
                continue
            graph.deps_map[other] = [key if dep == pkg else dep for dep in graph.deps_map[other]]

        log.info(
            "Cycle resolved: '%s' will be built twice (first as MVP without [%s], then fully)",
            pkg,
            ", ".join(chosen.excluded),
        )