"""Build workspace layout, build-cache keys and cleanup."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

from .errors import BuildError
from .lifecycle import LifecycleStage

log = logging.getLogger(__name__)


def build_root(build_dir: str | os.PathLike[str], name: str, version: str) -> Path:
    """Absolute working directory for one package: `<build_dir>/<name>-<version>`.

    A relative *build_dir* is taken from the current directory, since tools
    such as libtool need absolute paths.
    """
    base = Path(build_dir)
    if not base.is_absolute():
        try:
            base = Path.cwd() / base
        except OSError as exc:
            raise BuildError(f"failed to get cwd: {exc}") from exc
    return base / f"{name}-{version}"


def ensure_clean_dir(directory: str | os.PathLike[str]) -> None:
    """Remove *directory* if it exists (warning on failure), then create it afresh."""
    directory = Path(directory)
    if directory.exists():
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            log.warning("Failed to clean directory %s: %s", directory, exc)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise BuildError(f"failed to create build directory {directory}: {exc}") from exc


def detect_build_dir(src_dir: str | os.PathLike[str]) -> Path:
    """The top-level source directory.

    When *src_dir* holds exactly one visible entry and it is a directory,
    that directory is returned; otherwise *src_dir* itself.
    """
    src_dir = Path(src_dir)
    try:
        entries = [entry for entry in src_dir.iterdir() if not entry.name.startswith(".")]
    except OSError as exc:
        raise BuildError(f"failed to read {src_dir}: {exc}") from exc
    if len(entries) == 1 and entries[0].is_dir():
        log.debug("Source directory: %s", entries[0])
        return entries[0]
    return src_dir


def compute_build_key(
    name: str,
    version: str,
    release: int,
    uris: Sequence[str],
    sha256: Sequence[str],
    lifecycle: Mapping[str, LifecycleStage],
    cflags: str,
    cxxflags: str,
) -> str:
    """SHA-256 hex digest over everything that determines a build's output.

    Covers the plan identity, source URIs with their expected hashes, every
    lifecycle stage (by sorted name) and the global compiler flags.
    """
    hasher = hashlib.sha256()
    hasher.update(name.encode())
    hasher.update(version.encode())
    hasher.update(str(release).encode())

    for position, uri in enumerate(uris):
        hasher.update(uri.encode())
        if position < len(sha256):
            hasher.update(sha256[position].encode())

    for stage_name in sorted(lifecycle):
        stage = lifecycle[stage_name]
        hasher.update(stage_name.encode())
        hasher.update(stage.script.encode())
        hasher.update(stage.executor.encode())

    hasher.update(cflags.encode())
    hasher.update(cxxflags.encode())
    return hasher.hexdigest()


def cache_file_path(cache_dir: str | os.PathLike[str], name: str, build_key: str) -> Path:
    """Location of a package's cached build: `<cache_dir>/builds/<name>-<key>.tar.zst`."""
    return Path(cache_dir) / "builds" / f"{name}-{build_key}.tar.zst"


def clean_workspace(
    root: str | os.PathLike[str], cache_file: str | os.PathLike[str]
) -> None:
    """Remove a package's working directory and its build-cache entry, if present."""
    root = Path(root)
    cache_file = Path(cache_file)
    if root.exists():
        try:
            shutil.rmtree(root)
        except OSError as exc:
            raise BuildError(f"failed to clean build directory {root}: {exc}") from exc
        log.debug("Removed build directory: %s", root)

    if cache_file.exists():
        try:
            cache_file.unlink()
        except OSError as exc:
            raise BuildError(f"failed to remove build cache {cache_file}: {exc}") from exc
        log.info("Cleared build cache %s", cache_file)