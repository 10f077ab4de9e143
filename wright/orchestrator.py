"""Build-run presentation and bootstrap settings: environment, plan summary and lint report."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping

from .graph import (
    BOOTSTRAP_SUFFIX,
    PlanGraph,
    RebuildReason,
    cycle_candidates,
    find_cycles,
    pick_candidate,
)

_REASON_TAGS = {
    RebuildReason.EXPLICIT: "[NEW]",
    RebuildReason.LINK_DEPENDENCY: "[LINK-REBUILD]",
    RebuildReason.TRANSITIVE: "[REV-REBUILD]",
}


def bootstrap_env(excluded: Iterable[str], mvp: bool = False) -> dict[str, str]:
    """Extra variables for a build: MVP markers for bootstrap passes, else the full phase."""
    excluded = list(excluded)
    if not excluded and not mvp:
        return {"WRIGHT_BUILD_PHASE": "full"}
    env = {"WRIGHT_BOOTSTRAP_BUILD": "1", "WRIGHT_BUILD_PHASE": "mvp"}
    for dep in excluded:
        env[f"WRIGHT_BOOTSTRAP_WITHOUT_{dep.upper().replace('-', '_')}"] = "1"
    return env


def summary_tag(
    name: str,
    build_set: Collection[str],
    reasons: Mapping[str, RebuildReason],
    mvp: bool = False,
) -> str:
    """The tag shown next to a task in the construction plan."""
    is_bootstrap = name.endswith(BOOTSTRAP_SUFFIX)
    if is_bootstrap or mvp:
        return "[MVP]"
    if f"{name}{BOOTSTRAP_SUFFIX}" in build_set:
        return "[FULL]"
    reason = reasons.get(name)
    return _REASON_TAGS.get(reason, "") if reason is not None else ""


def plan_summary(
    build_set: Collection[str],
    reasons: Mapping[str, RebuildReason],
    mvp: bool = False,
) -> str:
    """The construction plan: one tagged line per task, sorted by task name."""
    lines = ["Construction Plan:"]
    for name in sorted(build_set):
        tag = summary_tag(name, build_set, reasons, mvp)
        lines.append(f"  {tag:<15} {name.removesuffix(BOOTSTRAP_SUFFIX)}")
    return "\n".join(lines) + "\n\n"


def lint_report(graph: PlanGraph) -> str:
    """Dependency analysis: whether the graph is cyclic, and the MVP candidates per cycle."""
    cycles = find_cycles(graph.deps_map)
    lines = [
        "Dependency Analysis Report",
        f"Status: {'cyclic' if cycles else 'acyclic'}",
    ]
    if not cycles:
        return "\n".join(lines) + "\n"

    lines += ["", f"Cycles ({len(cycles)}):"]
    lines += [f"{number}: {' → '.join(cycle)}" for number, cycle in enumerate(cycles, 1)]
    lines += [
        "",
        "MVP Candidates (deterministic pick = fewest excluded edges, then name):",
        "Cycle | Candidate | Excludes | Selected",
        "----- | --------- | -------- | --------",
    ]
    for number, cycle in enumerate(cycles, 1):
        candidates = cycle_candidates(cycle, graph)
        if not candidates:
            lines.append(f"{number} | - | - | no candidates")
            continue
        chosen = pick_candidate(candidates)
        for candidate in candidates:
            selected = "yes" if candidate == chosen else "no"
            lines.append(
                f"{number} | {candidate.pkg} | {', '.join(candidate.excluded)} | {selected}"
            )
    return "\n".join(lines) + "\n"