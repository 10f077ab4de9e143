"""The lifecycle pipeline: ordered build stages with pre/post hooks."""

from __future__ import annotations

import contextlib
import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import BuildError
from .executor import ExecutorOptions, ExecutorRegistry, Runner, execute_script
from .variables import substitute

log = logging.getLogger(__name__)

DEFAULT_STAGES = (
    "fetch", "verify", "extract", "prepare", "configure", "compile", "check", "package",
    "post_package",
)

# Stages the builder performs itself rather than through scripts.
BUILTIN_STAGES = frozenset({"fetch", "verify", "extract"})

SNIPPET_LINES = 40


@dataclass
class LifecycleStage:
    script: str = ""
    executor: str = "shell"
    dockyard: str = "none"
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class LifecycleSpec:
    """A plan's stages, with optional overrides used during an MVP pass."""

    lifecycle: dict[str, LifecycleStage] = field(default_factory=dict)
    lifecycle_order: list[str] | None = None
    mvp_lifecycle: dict[str, LifecycleStage] = field(default_factory=dict)
    mvp_lifecycle_order: list[str] | None = None


def failure_snippet(stdout: str, stderr: str) -> str:
    """The part of a failed stage's output worth showing: stderr, else stdout, last 40 lines."""
    relevant = stderr.strip() if stderr.strip() else stdout.strip()
    lines = relevant.splitlines()
    if len(lines) > SNIPPET_LINES:
        omitted = len(lines) - SNIPPET_LINES
        return f"... ({omitted} lines omitted) ...\n" + "\n".join(lines[-SNIPPET_LINES:])
    return relevant


def format_stage_log(
    stage_name: str,
    exit_code: int,
    elapsed: float,
    working_dir: str | os.PathLike[str],
    script: str,
    stdout: str,
    stderr: str,
) -> str:
    return (
        f"=== Stage: {stage_name} ===\n"
        f"=== Exit code: {exit_code} ===\n"
        f"=== Duration: {elapsed:.1f}s ===\n"
        f"=== Working dir: {working_dir} ===\n\n"
        f"--- script ---\n{script.strip()}\n"
        f"--- stdout ---\n{stdout}\n"
        f"--- stderr ---\n{stderr}\n"
    )


class LifecyclePipeline:
    """Runs a plan's script stages in order, writing one log per stage."""

    def __init__(
        self,
        spec: LifecycleSpec,
        variables: Mapping[str, str],
        working_dir: str | os.PathLike[str],
        log_dir: str | os.PathLike[str],
        options: ExecutorOptions,
        stages: Sequence[str] | None = None,
        executors: ExecutorRegistry | None = None,
        runner: Runner | None = None,
    ) -> None:
        self.spec = spec
        self.variables = dict(variables)
        self.working_dir = Path(working_dir)
        self.log_dir = Path(log_dir)
        self.options = options
        self.stages = list(stages or ())
        self.executors = executors if executors is not None else ExecutorRegistry()
        self.runner = runner

    def is_mvp_pass(self) -> bool:
        return self.variables.get("WRIGHT_BUILD_PHASE") == "mvp"

    def stage_order(self) -> list[str]:
        if self.is_mvp_pass() and self.spec.mvp_lifecycle_order is not None:
            return list(self.spec.mvp_lifecycle_order)
        if self.spec.lifecycle_order is not None:
            return list(self.spec.lifecycle_order)
        return list(DEFAULT_STAGES)

    def get_stage(self, name: str) -> LifecycleStage | None:
        if self.is_mvp_pass() and name in self.spec.mvp_lifecycle:
            return self.spec.mvp_lifecycle[name]
        return self.spec.lifecycle.get(name)

    def run(self) -> None:
        """Run the requested stages, or every non-built-in stage, in pipeline order."""
        pipeline = self.stage_order()

        if self.stages:
            for stage in self.stages:
                if stage in BUILTIN_STAGES:
                    raise BuildError(
                        f"cannot use --stage with built-in stage '{stage}' (handled internally)"
                    )
                if stage not in pipeline:
                    raise BuildError(f"stage '{stage}' not found in lifecycle pipeline")
            for stage_name in pipeline:
                if stage_name in self.stages:
                    self._run_with_hooks(stage_name)
            return

        for stage_name in pipeline:
            if stage_name in BUILTIN_STAGES:
                log.debug("Built-in stage %s is handled by the builder", stage_name)
                continue
            self._run_with_hooks(stage_name)

    def _run_with_hooks(self, stage_name: str) -> None:
        pre_hook = f"pre_{stage_name}"
        if (stage := self.get_stage(pre_hook)) is not None:
            log.debug("Running hook: %s", pre_hook)
            self.run_stage(pre_hook, stage)

        if (stage := self.get_stage(stage_name)) is not None:
            started = time.monotonic()
            log.info("Running stage: %s", stage_name)
            self.run_stage(stage_name, stage)
            log.info("Stage %s finished in %.1fs", stage_name, time.monotonic() - started)
        else:
            log.debug("Skipping undefined stage: %s", stage_name)

        post_hook = f"post_{stage_name}"
        if (stage := self.get_stage(post_hook)) is not None:
            log.debug("Running hook: %s", post_hook)
            self.run_stage(post_hook, stage)

    def run_stage(self, stage_name: str, stage: LifecycleStage) -> None:
        """Run one stage's script; raise BuildError if it exits non-zero."""
        if not stage.script:
            log.debug("Stage %s has empty script, skipping", stage_name)
            return

        executor = self.executors.get(stage.executor)
        if executor is None:
            raise BuildError(f"executor not found: {stage.executor}")

        options = replace(self.options, level=stage.dockyard, main_pkg_dir=None)
        started = time.monotonic()
        result = execute_script(
            executor, stage.script, self.working_dir, stage.env, self.variables,
            options, self.runner,
        )
        elapsed = time.monotonic() - started

        log_path = self.log_dir / f"{stage_name}.log"
        content = format_stage_log(
            stage_name, result.exit_code, elapsed, self.working_dir,
            substitute(stage.script, self.variables), result.stdout, result.stderr,
        )
        with contextlib.suppress(OSError):
            log_path.write_text(content, encoding="utf-8")

        if result.exit_code != 0:
            raise BuildError(
                f"stage '{stage_name}' failed with exit code {result.exit_code}\n"
                f"Log: {log_path}\n\n{failure_snippet(result.stdout, result.stderr)}"
            )