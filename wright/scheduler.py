"""Build options, CPU budgeting and the parallel dependency-ordered scheduler."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from .errors import BuildError

log = logging.getLogger(__name__)

# CPUs left to the operating system when no explicit cap is configured.
OS_RESERVED_CPUS = 4


@dataclass
class BuildOptions:
    """Options for one build run.

    *dockyards* is the maximum number of concurrent builds (0 = one per
    usable CPU). *depth* limits cascade expansion (0 = unlimited).
    *nproc_per_dockyard* is a static per-build thread budget; None lets the
    scheduler divide CPUs among active builds.
    """

    stages: list[str] = field(default_factory=list)
    fetch_only: bool = False
    clean: bool = False
    lint: bool = False
    force: bool = False
    checksum: bool = False
    dockyards: int = 0
    rebuild_dependents: bool = False
    rebuild_dependencies: bool = False
    install: bool = False
    depth: int | None = None
    verbose: bool = False
    quiet: bool = False
    include_self: bool = False
    include_deps: bool = False
    include_dependents: bool = False
    mvp: bool = False
    nproc_per_dockyard: int | None = None

    def is_build_op(self) -> bool:
        """True for a real build; checksum, lint and fetch runs skip dependency expansion."""
        return not self.checksum and not self.lint and not self.fetch_only


@dataclass(frozen=True)
class Scope:
    """Which parts of the build set a run covers."""

    include_self: bool
    include_deps: bool
    include_dependents: bool


def resolve_scope(options: BuildOptions) -> Scope:
    """The effective scope: without explicit flags, the targets and their missing deps."""
    explicit = options.include_self or options.include_deps or options.include_dependents
    if not explicit:
        return Scope(include_self=True, include_deps=True, include_dependents=False)
    return Scope(
        include_self=options.include_self,
        include_deps=options.include_deps,
        include_dependents=options.include_dependents,
    )


def cpu_budget(available_cpus: int | None = None, max_cpus: int | None = None) -> int:
    """Total CPUs builds may use: capped by *max_cpus*, else all but four (at least one)."""
    if available_cpus is None:
        available_cpus = os.cpu_count() or 1
    if max_cpus is not None:
        return min(available_cpus, max(max_cpus, 1))
    return max(available_cpus - OS_RESERVED_CPUS, 1)


def dockyard_count(requested: int, total_cpus: int) -> int:
    """Concurrent builds: *requested*, at most *total_cpus*; 0 means *total_cpus*."""
    return total_cpus if requested == 0 else min(requested, total_cpus)


def nproc_share(total_cpus: int, active: int) -> int:
    """Compiler threads for one build when *active* builds share *total_cpus*."""
    return max(total_cpus // max(active, 1), 1)


BuildFunction = Callable[[str, int], object]


class BuildScheduler:
    """Runs builds in parallel threads, starting each only once its dependencies are done.

    *build* is called as `build(name, active)`, where *active* is the number
    of builds running including this one; it signals failure by raising.
    With *keep_going*, failures are recorded in `failed` and dependency
    ordering is not enforced; otherwise the first failure raises BuildError.
    """

    def __init__(
        self,
        deps_map: Mapping[str, Iterable[str]],
        build_set: Iterable[str],
        build: BuildFunction,
        max_parallel: int = 1,
        keep_going: bool = False,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.deps_map = {name: list(deps) for name, deps in deps_map.items()}
        self.build_set = set(build_set)
        self.build = build
        self.max_parallel = max_parallel
        self.keep_going = keep_going
        self.completed: list[str] = []
        self.failed: dict[str, BaseException] = {}

    def _deps_in_set(self, name: str) -> list[str]:
        return [dep for dep in self.deps_map.get(name, ()) if dep in self.build_set]

    def _ready(self, done: set[str], running: set[str]) -> list[str]:
        ready = []
        for name in sorted(self.build_set):
            if name in done or name in running or name in self.failed:
                continue
            if self.keep_going or all(dep in done for dep in self._deps_in_set(name)):
                ready.append(name)
        return ready

    def _deadlock_message(self, done: set[str]) -> str:
        lines = ["Deadlock detected or dependency missing from plan set:"]
        for name in sorted(self.build_set):
            if name in done or name in self.failed:
                continue
            missing = [dep for dep in self._deps_in_set(name) if dep not in done]
            lines.append(f"  - {name} is waiting for: {', '.join(missing)}")
        return "\n".join(lines) + "\n"

    def _worker(self, name: str, active: int, results: queue.Queue) -> None:
        try:
            self.build(name, active)
        except Exception as exc:  # reported back to the scheduling loop
            log.error("Failed to process %s: %s", name, exc)
            results.put((name, exc))
        else:
            results.put((name, None))

    def run(self) -> list[str]:
        """Build everything; return the names in the order they completed."""
        self.completed = []
        self.failed = {}
        done: set[str] = set()
        running: set[str] = set()
        results: queue.Queue = queue.Queue()

        while True:
            for name in self._ready(done, running):
                if len(running) >= self.max_parallel:
                    break
                running.add(name)
                active = len(running)
                log.info("[dockyard %d] %s", active, name)
                threading.Thread(
                    target=self._worker, args=(name, active, results), daemon=True
                ).start()

            finished = len(done) + len(self.failed)
            if not running:
                if finished == len(self.build_set):
                    break
                raise BuildError(self._deadlock_message(done))

            name, error = results.get()
            running.discard(name)
            if error is None:
                done.add(name)
                self.completed.append(name)
                log.info("[done] %s", name)
            else:
                self.failed[name] = error
                if not self.keep_going:
                    raise BuildError(f"Construction failed due to error in {name}") from error

        if self.failed:
            log.warning(
                "Construction finished with %d successes and %d failures.",
                len(self.completed),
                len(self.failed),
            )
        else:
            log.info("All %d tasks completed successfully.", len(self.completed))
        return list(self.completed)