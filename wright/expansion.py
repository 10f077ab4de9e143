"""Expansion of a build set upward (missing dependencies) and downward (dependents)."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping

from .graph import PlanNode, RebuildReason, _dependency_name

log = logging.getLogger(__name__)

# Core tools never pulled in automatically by a cascade.
SYSTEM_TOOLCHAIN = frozenset({
    "gcc", "glibc", "binutils", "make", "bison", "flex", "perl", "python", "texinfo",
    "m4", "sed", "gawk",
})


def _unlimited(max_depth: int | None) -> bool:
    return max_depth is None or max_depth <= 0


def expand_missing_dependencies(
    targets: Iterable[PlanNode],
    plans: Mapping[str, PlanNode],
    is_installed: Callable[[str], bool],
    force_all: bool = False,
    max_depth: int | None = None,
) -> dict[str, PlanNode]:
    """Add upstream plans the targets need, level by level.

    Normally build and link dependencies that are not installed are added.
    With *force_all*, runtime dependencies are covered too and every one is
    added whether installed or not, except the system toolchain. A
    *max_depth* of None or 0 means no limit. Returns the whole build set by
    plan name.
    """
    build_set: dict[str, PlanNode] = {node.name: node for node in targets}
    depth = 0
    while _unlimited(max_depth) or depth < max_depth:
        to_add: dict[str, PlanNode] = {}
        for node in build_set.values():
            deps = [*node.build, *node.link]
            if force_all:
                deps.extend(node.runtime)
            for dep in deps:
                name = _dependency_name(dep)
                if force_all and name in SYSTEM_TOOLCHAIN:
                    continue
                if name in build_set or name in to_add:
                    continue
                if not force_all and is_installed(name):
                    continue
                plan = plans.get(name)
                if plan is None:
                    continue
                log.info(
                    "%s dependency (depth %d): %s",
                    "Forcing rebuild of" if force_all else "Auto-resolving missing",
                    depth + 1,
                    name,
                )
                to_add[name] = plan
        if not to_add:
            break
        build_set.update(to_add)
        depth += 1
    return build_set


def expand_rebuild_deps(
    targets: Iterable[PlanNode],
    plans: Mapping[str, PlanNode],
    rebuild_all: bool = False,
    max_depth: int | None = None,
) -> tuple[dict[str, PlanNode], dict[str, RebuildReason]]:
    """Add plans downstream of the targets.

    A plan joins when it links against something in the set; with
    *rebuild_all*, a build or runtime dependency is enough too. Without
    *rebuild_all* the system toolchain is never added. A *max_depth* of None
    or 0 means no limit. Returns the build set by name and why each entry is in it.
    """
    link_deps = {
        name: [_dependency_name(d) for d in node.link] for name, node in plans.items()
    }
    other_deps = {
        name: [_dependency_name(d) for d in (*node.runtime, *node.build)]
        for name, node in plans.items()
    }

    build_set: dict[str, PlanNode] = {}
    reasons: dict[str, RebuildReason] = {}
    for node in targets:
        build_set[node.name] = node
        reasons[node.name] = RebuildReason.EXPLICIT

    depth = 0
    while _unlimited(max_depth) or depth < max_depth:
        added = False
        for name in sorted(plans):
            if name in build_set:
                continue
            link_changed = any(dep in build_set for dep in link_deps[name])
            other_changed = rebuild_all and any(dep in build_set for dep in other_deps[name])
            if not (link_changed or other_changed):
                continue
            if not rebuild_all and name in SYSTEM_TOOLCHAIN:
                continue
            build_set[name] = plans[name]
            reasons[name] = (
                RebuildReason.LINK_DEPENDENCY if link_changed else RebuildReason.TRANSITIVE
            )
            added = True
        if not added:
            break
        depth += 1
    return build_set, reasons