"""Script executors: how a stage's script is handed to an interpreter and run."""

from __future__ import annotations

import logging
import os
import subprocess
import time
import tomllib
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import BuildError, ConfigError
from .variables import substitute

log = logging.getLogger(__name__)

HOST_LEVEL = "none"
SANDBOX_BUILD_DIR = "/build"
SANDBOX_PKG_DIR = "/output"
SANDBOX_FILES_DIR = "/files"
SANDBOX_MAIN_PKG_DIR = "/main-pkg"

# Host variables forwarded to build scripts unless the stage sets them itself.
PASSTHROUGH_ENV = (
    "CC", "CXX", "AR", "AS", "LD", "NM", "RANLIB", "STRIP", "OBJCOPY", "OBJDUMP",
    "CFLAGS", "CXXFLAGS", "CPPFLAGS", "LDFLAGS",
    "C_INCLUDE_PATH", "CPLUS_INCLUDE_PATH", "LIBRARY_PATH",
    "PKG_CONFIG_PATH", "PKG_CONFIG_SYSROOT_DIR",
    "MAKEFLAGS", "JOBS",
)


def _text(data: Mapping[str, Any], key: str, default: str | None = None) -> str:
    if key not in data:
        if default is None:
            raise ConfigError(f"executor: missing field '{key}'")
        return default
    value = data[key]
    if not isinstance(value, str):
        raise ConfigError(f"executor: field '{key}' must be a string")
    return value


def _text_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"executor: field '{key}' must be a list of strings")
    return list(value)


@dataclass
class ExecutorConfig:
    """How to run a script; the defaults describe the built-in bash executor."""

    name: str = "shell"
    description: str = "Bash shell executor"
    command: str = "/bin/bash"
    args: list[str] = field(default_factory=lambda: ["-e", "-o", "pipefail"])
    delivery: str = "tempfile"
    tempfile_extension: str = ".sh"
    required_paths: list[str] = field(default_factory=list)
    default_dockyard: str = "strict"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutorConfig:
        if not isinstance(data, Mapping):
            raise ConfigError("executor must be a table")
        return cls(
            name=_text(data, "name"),
            description=_text(data, "description", ""),
            command=_text(data, "command"),
            args=_text_list(data, "args"),
            delivery=_text(data, "delivery", "tempfile"),
            tempfile_extension=_text(data, "tempfile_extension", ".sh"),
            required_paths=_text_list(data, "required_paths"),
            default_dockyard=_text(data, "default_dockyard", ""),
        )


class ExecutorRegistry:
    """Executors by name; always holds the default `shell` executor."""

    def __init__(self) -> None:
        self._executors: dict[str, ExecutorConfig] = {"shell": ExecutorConfig()}

    def load_from_dir(self, directory: str | os.PathLike[str]) -> None:
        """Register every executor described by a *.toml file in *directory*."""
        directory = Path(directory)
        if not directory.exists():
            return
        try:
            entries = sorted(directory.iterdir())
        except OSError as exc:
            raise ConfigError(f"failed to read {directory}: {exc}") from exc
        for entry in entries:
            if entry.suffix != ".toml":
                continue
            try:
                data = tomllib.loads(entry.read_text(encoding="utf-8"))
            except OSError as exc:
                raise ConfigError(f"failed to read {entry}: {exc}") from exc
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"invalid TOML in {entry}: {exc}") from exc
            if "executor" not in data:
                raise ConfigError(f"{entry}: missing [executor] table")
            config = ExecutorConfig.from_dict(data["executor"])
            log.debug("Loaded executor: %s from %s", config.name, entry)
            self._executors[config.name] = config

    def get(self, name: str) -> ExecutorConfig | None:
        return self._executors.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._executors


@dataclass
class ExecutorOptions:
    """Where and how a script runs.

    *level* is the dockyard level; "none" runs directly on the host.
    *main_pkg_dir* is the main package's output, exposed to split-package stages.
    *cpu_count* is the CPU share a sandbox runner should pin the process to.
    """

    level: str
    src_dir: Path
    pkg_dir: Path
    files_dir: Path | None = None
    main_pkg_dir: Path | None = None
    verbose: bool = False
    cpu_count: int | None = None


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int


Runner = Callable[[str, Sequence[str], Mapping[str, str], Path], ExecutionResult]


def sandbox_variables(
    variables: Mapping[str, str],
    files_dir: Path | None = None,
    main_pkg_dir: Path | None = None,
) -> dict[str, str]:
    """Remap path variables to the mount points seen inside a sandbox."""
    remapped = dict(variables)
    host_build = variables.get("BUILD_DIR")
    host_src = variables.get("SRC_DIR")
    if host_build is not None and host_src is not None:
        if host_build.startswith(host_src):
            remapped["BUILD_DIR"] = SANDBOX_BUILD_DIR + host_build[len(host_src):]
        else:
            remapped["BUILD_DIR"] = SANDBOX_BUILD_DIR
    remapped["SRC_DIR"] = SANDBOX_BUILD_DIR
    remapped["PKG_DIR"] = SANDBOX_PKG_DIR
    if files_dir is not None:
        remapped["FILES_DIR"] = SANDBOX_FILES_DIR
    if main_pkg_dir is not None:
        remapped["MAIN_PKG_DIR"] = SANDBOX_MAIN_PKG_DIR
    return remapped


def build_environment(
    stage_env: Mapping[str, str], variables: Mapping[str, str]
) -> dict[str, str]:
    """Compose a script's environment.

    Stage variables (expanded) come first and win; build variables fill in
    the rest, then a fixed set of toolchain variables from the host.
    """
    env = {key: substitute(value, variables) for key, value in stage_env.items()}
    for key, value in variables.items():
        env.setdefault(key, value)
    for key in PASSTHROUGH_ENV:
        value = os.environ.get(key)
        if value is not None:
            env.setdefault(key, value)
    return env


def run_on_host(
    command: str, args: Sequence[str], env: Mapping[str, str], cwd: str | os.PathLike[str]
) -> ExecutionResult:
    """Run *command* directly on the host, with *env* layered over the current environment."""
    try:
        completed = subprocess.run(
            [command, *args],
            cwd=cwd,
            env={**os.environ, **env},
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        raise BuildError(f"failed to run {command}: {exc}") from exc
    code = completed.returncode if completed.returncode >= 0 else -1
    return ExecutionResult(completed.stdout, completed.stderr, code)


def execute_script(
    executor: ExecutorConfig,
    script: str,
    working_dir: str | os.PathLike[str],
    env_vars: Mapping[str, str],
    variables: Mapping[str, str],
    options: ExecutorOptions,
    runner: Runner | None = None,
) -> ExecutionResult:
    """Expand *script*, write it into *working_dir* and run it with *executor*.

    Without a *runner*, only host execution (level "none") is possible; a
    sandbox runner receives sandbox paths in its arguments and environment.
    """
    sandboxed = options.level != HOST_LEVEL
    if runner is None:
        if sandboxed:
            raise BuildError(
                f"dockyard level '{options.level}' needs a sandbox runner"
            )
        runner = run_on_host

    effective = (
        sandbox_variables(variables, options.files_dir, options.main_pkg_dir)
        if sandboxed
        else dict(variables)
    )
    expanded = substitute(script, effective)

    working_dir = Path(working_dir)
    script_name = f".wright_script{executor.tempfile_extension}"
    script_path = working_dir / script_name
    try:
        script_path.write_text(expanded, encoding="utf-8")
    except OSError as exc:
        raise BuildError(f"failed to write build script: {exc}") from exc

    env = build_environment(env_vars, effective)

    args = list(executor.args)
    if executor.delivery == "tempfile":
        args.append(f"{SANDBOX_BUILD_DIR}/{script_name}" if sandboxed else str(script_path))

    task = f"{variables.get('PKG_NAME', 'unknown')}-{time.time_ns()}"
    log.debug("Running %s for task %s at level %s", executor.name, task, options.level)
    return runner(executor.command, args, env, working_dir)