"""The package builder: fetch, verify and extract sources, run the lifecycle, cache the output."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
import urllib.error
import urllib.request
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

import zstandard

from .checksums import SKIP, rewrite_sha256, sha256_file, verify_sources
from .errors import BuildError, ValidationError
from .executor import ExecutorOptions, ExecutorRegistry, Runner, execute_script
from .lifecycle import LifecyclePipeline, LifecycleSpec, LifecycleStage
from .sources import (
    git_cache_dir_name,
    is_archive,
    is_git_uri,
    is_remote_uri,
    parse_git_ref,
    process_uri,
    source_cache_filename,
    validate_local_path,
)
from .variables import standard_variables
from .workspace import (
    build_root,
    cache_file_path,
    clean_workspace,
    compute_build_key,
    detect_build_dir,
    ensure_clean_dir,
)

log = logging.getLogger(__name__)

HOST_LEVEL = "none"


@dataclass
class BuildPlan:
    """Everything the builder needs from a plan.

    *splits* maps each split package to its lifecycle stages; each must
    define a `package` stage. *env* is injected into every stage.
    """

    name: str
    version: str
    release: int = 1
    arch: str = "x86_64"
    uris: list[str] = field(default_factory=list)
    sha256: list[str] = field(default_factory=list)
    spec: LifecycleSpec = field(default_factory=LifecycleSpec)
    splits: dict[str, dict[str, LifecycleStage]] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class BuildResult:
    pkg_dir: Path
    src_dir: Path
    log_dir: Path
    build_dir: Path
    split_pkg_dirs: dict[str, Path] = field(default_factory=dict)


def _extract_all(tar: tarfile.TarFile, dest: Path) -> None:
    if hasattr(tarfile, "tar_filter"):
        tar.extractall(dest, filter="tar")
    else:
        tar.extractall(dest)


def _extract_archive(path: Path, dest: Path) -> None:
    """Unpack a tar archive (gz, xz, bz2 or zst) into *dest*."""
    try:
        dest.mkdir(parents=True, exist_ok=True)
        if path.name.endswith(".tar.zst"):
            with open(path, "rb") as handle, \
                    zstandard.ZstdDecompressor().stream_reader(handle) as reader, \
                    tarfile.open(fileobj=reader, mode="r|") as tar:
                _extract_all(tar, dest)
        else:
            with tarfile.open(path, "r:*") as tar:
                _extract_all(tar, dest)
    except (OSError, tarfile.TarError, zstandard.ZstdError) as exc:
        raise BuildError(f"failed to extract {path}: {exc}") from exc


def _create_tar_zst(src_dir: Path, dest: Path) -> None:
    """Pack the entries of *src_dir* into a zstd-compressed tar at *dest*."""
    try:
        with open(dest, "wb") as handle, \
                zstandard.ZstdCompressor().stream_writer(handle) as writer, \
                tarfile.open(fileobj=writer, mode="w|") as tar:
            for entry in sorted(src_dir.iterdir()):
                tar.add(entry, arcname=entry.name)
    except (OSError, tarfile.TarError, zstandard.ZstdError) as exc:
        raise BuildError(f"failed to create {dest}: {exc}") from exc


def _download(url: str, dest: Path, timeout: float) -> None:
    partial = dest.with_name(dest.name + ".part")
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response, open(partial, "wb") as out:
            shutil.copyfileobj(response, out)
        partial.replace(dest)
    except (OSError, urllib.error.URLError) as exc:
        partial.unlink(missing_ok=True)
        raise BuildError(f"failed to download {url}: {exc}") from exc


def _git(*args: str) -> str:
    try:
        completed = subprocess.run(
            ["git", *args], capture_output=True, text=True, check=False
        )
    except OSError as exc:
        raise BuildError(f"failed to run git: {exc}") from exc
    if completed.returncode != 0:
        raise BuildError(f"git {args[0]} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()


class Builder:
    """Builds plans inside per-package working directories under the configured build dir."""

    def __init__(self, config, executors: ExecutorRegistry | None = None) -> None:
        self.config = config
        if executors is None:
            executors = ExecutorRegistry()
            executors_dir = Path(config.general.executors_dir)
            try:
                executors.load_from_dir(executors_dir)
            except Exception as exc:  # a broken executor file must not stop builds
                log.warning("Failed to load executors from %s: %s", executors_dir, exc)
        self.executors = executors
        self.runner: Runner | None = None

    @property
    def _sources_dir(self) -> Path:
        return Path(self.config.general.cache_dir) / "sources"

    def _process(self, uri: str, plan: BuildPlan) -> str:
        return process_uri(uri, plan.name, plan.version, plan.release, plan.arch)

    def _root(self, plan: BuildPlan) -> Path:
        return build_root(self.config.build.build_dir, plan.name, plan.version)

    def _cache_file(self, plan: BuildPlan) -> Path:
        return cache_file_path(self.config.general.cache_dir, plan.name, self.build_key(plan))

    def build_key(self, plan: BuildPlan) -> str:
        """Hash of everything that determines this plan's build output."""
        return compute_build_key(
            plan.name, plan.version, plan.release, plan.uris, plan.sha256,
            plan.spec.lifecycle, self.config.build.cflags, self.config.build.cxxflags,
        )

    def _fetch_git_repo(self, uri: str, dest: Path) -> str:
        url, ref = parse_git_ref(uri)
        if not dest.exists():
            log.info("Cloning Git repository: %s", url)
            _git("init", "--bare", str(dest))
        log.debug("Fetching from remote: %s", url)
        _git(
            "--git-dir", str(dest), "fetch", "--tags", url,
            "+refs/heads/*:refs/heads/*", "+refs/tags/*:refs/tags/*",
        )
        return _git("--git-dir", str(dest), "rev-parse", "--verify", f"{ref}^{{commit}}")

    def fetch(self, plan: BuildPlan, plan_dir: str | os.PathLike[str]) -> None:
        """Download remote sources and copy local ones into the source cache."""
        cache_dir = self._sources_dir
        cache_dir.mkdir(parents=True, exist_ok=True)
        timeout = self.config.network.download_timeout

        for position, uri in enumerate(plan.uris):
            processed = self._process(uri, plan)

            if is_git_uri(processed):
                git_dir = cache_dir / "git"
                git_dir.mkdir(parents=True, exist_ok=True)
                name = git_cache_dir_name(processed)
                commit = self._fetch_git_repo(processed, git_dir / name)
                log.debug("Fetched Git commit: %s for %s", commit, name)
                continue

            filename = source_cache_filename(plan.name, processed)
            dest = cache_dir / filename

            if not is_remote_uri(processed):
                local = validate_local_path(plan_dir, processed)
                if dest.exists():
                    log.debug("Local file %s already in cache", filename)
                    continue
                try:
                    shutil.copyfile(local, dest)
                except OSError as exc:
                    raise BuildError(
                        f"failed to copy local file {local} to cache: {exc}"
                    ) from exc
                log.debug("Copied local file %s to cache", processed)
                continue

            expected = plan.sha256[position] if position < len(plan.sha256) else None
            skip_verify = expected == SKIP
            needs_download = True
            if dest.exists():
                if skip_verify or expected is None:
                    log.debug("Source %s already cached", filename)
                    needs_download = False
                else:
                    try:
                        actual = sha256_file(dest)
                    except BuildError:
                        actual = None
                    if actual == expected:
                        log.debug("Source %s already cached and verified", filename)
                        needs_download = False
                    elif actual is not None:
                        log.warning("Cached source %s hash mismatch, re-downloading...", filename)
                        dest.unlink(missing_ok=True)

            if needs_download:
                log.info("Fetching %s to %s", processed, dest)
                _download(processed, dest, timeout)
                if not skip_verify and expected is not None:
                    actual = sha256_file(dest)
                    if actual != expected:
                        raise ValidationError(
                            f"Downloaded file {filename} failed verification!\n"
                            f"  Expected: {expected}\n"
                            f"  Actual:   {actual}"
                        )

    def verify(self, plan: BuildPlan) -> list[Path]:
        """Check cached sources against the plan's hashes; return the verified paths."""
        uris = [self._process(uri, plan) for uri in plan.uris]
        return verify_sources(self._sources_dir, plan.name, uris, plan.sha256)

    def extract(
        self,
        plan: BuildPlan,
        dest_dir: str | os.PathLike[str],
        files_dir: str | os.PathLike[str],
    ) -> Path:
        """Unpack archives into *dest_dir*, copy other sources to *files_dir*; return BUILD_DIR."""
        dest_dir = Path(dest_dir)
        files_dir = Path(files_dir)
        cache_dir = self._sources_dir

        for uri in plan.uris:
            processed = self._process(uri, plan)

            if is_git_uri(processed):
                name = git_cache_dir_name(processed)
                _, ref = parse_git_ref(processed)
                target = dest_dir / name
                log.debug("Extracting Git repo to %s (ref: %s)...", target, ref)
                _git("clone", "--quiet", str(cache_dir / "git" / name), str(target))
                try:
                    _git("-C", str(target), "checkout", "--quiet", ref)
                except BuildError:
                    try:
                        _git("-C", str(target), "checkout", "--quiet", f"origin/{ref}")
                    except BuildError as exc:
                        raise BuildError(f"failed to resolve ref {ref}: {exc}") from exc
                continue

            filename = source_cache_filename(plan.name, processed)
            path = cache_dir / filename
            if is_archive(filename):
                log.debug("Extracting %s...", filename)
                _extract_archive(path, dest_dir)
                continue

            dest_name = processed.rsplit("/", 1)[-1]
            dest = files_dir / dest_name
            try:
                files_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(path, dest)
            except OSError as exc:
                raise BuildError(f"failed to copy {path} to {dest}: {exc}") from exc
            log.debug("Copied %s to files directory as %s", filename, dest_name)

        return detect_build_dir(dest_dir)

    def clean(self, plan: BuildPlan) -> None:
        """Remove the plan's working directory and build-cache entry."""
        clean_workspace(self._root(plan), self._cache_file(plan))

    def update_hashes(self, plan: BuildPlan, manifest_path: str | os.PathLike[str]) -> list[str]:
        """Rewrite the plan file's sha256 list; local and git sources get SKIP."""
        cache_dir = self._sources_dir
        cache_dir.mkdir(parents=True, exist_ok=True)
        hashes: list[str] = []
        for uri in plan.uris:
            processed = self._process(uri, plan)
            if not is_remote_uri(processed) or is_git_uri(processed):
                hashes.append(SKIP)
                continue
            path = cache_dir / source_cache_filename(plan.name, processed)
            if path.exists():
                log.debug("Using cached source: %s", path.name)
            else:
                log.info("Downloading %s...", processed)
                _download(processed, path, self.config.network.download_timeout)
            hashes.append(sha256_file(path))

        if not hashes:
            log.info("No sources to update.")
            return hashes

        manifest_path = Path(manifest_path)
        try:
            content = manifest_path.read_text(encoding="utf-8")
            manifest_path.write_text(rewrite_sha256(content, hashes), encoding="utf-8")
        except OSError as exc:
            raise BuildError(f"failed to update {manifest_path}: {exc}") from exc
        return hashes

    def _restore_from_cache(self, plan: BuildPlan, root: Path, cache_file: Path) -> BuildResult:
        log.debug("Cache hit for %s: using pre-built artifacts", plan.name)
        for directory in (root / "src", root / "pkg", root / "log"):
            ensure_clean_dir(directory)
        _extract_archive(cache_file, root)
        splits = {
            name: root / f"pkg-{name}"
            for name in plan.splits
            if (root / f"pkg-{name}").exists()
        }
        return BuildResult(root / "pkg", root / "src", root / "log", root, splits)

    def _save_cache(self, plan: BuildPlan, root: Path, cache_file: Path) -> None:
        try:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning("Failed to create build cache directory %s: %s", cache_file.parent, exc)
        with tempfile.TemporaryDirectory() as staging:
            staging_dir = Path(staging)
            for entry in root.iterdir():
                keep = entry.name in ("pkg", "log") or entry.name.startswith("pkg-")
                if keep and entry.is_dir():
                    try:
                        shutil.copytree(entry, staging_dir / entry.name, symlinks=True)
                    except OSError as exc:
                        log.warning("Failed to copy %s to build cache: %s", entry, exc)
            try:
                _create_tar_zst(staging_dir, cache_file)
            except BuildError as exc:
                log.warning("Failed to create build cache for %s: %s", plan.name, exc)
            else:
                log.debug("Saved build cache for %s at %s", plan.name, cache_file)

    def build(
        self,
        plan: BuildPlan,
        plan_dir: str | os.PathLike[str],
        stages: Sequence[str] = (),
        fetch_only: bool = False,
        extra_env: Mapping[str, str] | None = None,
        verbose: bool = False,
        force: bool = False,
        nproc_per_dockyard: int | None = None,
    ) -> BuildResult:
        """Run the whole pipeline for *plan* and return where its output went."""
        extra_env = dict(extra_env or {})
        stages = list(stages)
        root = self._root(plan)
        src_dir, pkg_dir, log_dir = root / "src", root / "pkg", root / "log"
        files_dir = root / "files"

        partial = bool(stages) or fetch_only
        is_bootstrap = "WRIGHT_BOOTSTRAP_BUILD" in extra_env
        cache_file = self._cache_file(plan)

        if not force and not is_bootstrap and not partial and cache_file.exists():
            return self._restore_from_cache(plan, root, cache_file)

        if stages:
            if not src_dir.exists():
                raise BuildError(
                    "cannot use --stage: no previous build found (src/ does not exist). "
                    "Run a full build first."
                )
            for directory in (pkg_dir, log_dir):
                ensure_clean_dir(directory)
        else:
            for directory in (src_dir, pkg_dir, log_dir):
                ensure_clean_dir(directory)
        log.debug("Build directory: %s", root)

        if not stages:
            self.fetch(plan, plan_dir)
            self.verify(plan)
            self.extract(plan, src_dir, files_dir)

        if fetch_only:
            return BuildResult(pkg_dir, src_dir, log_dir, root)

        source_dir = detect_build_dir(src_dir)
        cpu_count = (
            nproc_per_dockyard
            or self.config.build.nproc_per_dockyard
            or os.cpu_count()
            or 1
        )

        variables = standard_variables(
            plan.name, plan.version, plan.release, plan.arch, str(src_dir), str(pkg_dir),
            str(files_dir), self.config.build.cflags, self.config.build.cxxflags,
        )
        variables["BUILD_DIR"] = str(source_dir)
        variables.update(plan.env)
        variables.update(extra_env)

        options = ExecutorOptions(
            level=HOST_LEVEL,
            src_dir=src_dir,
            pkg_dir=pkg_dir,
            files_dir=files_dir if files_dir.exists() else None,
            verbose=verbose,
            cpu_count=cpu_count,
        )
        LifecyclePipeline(
            plan.spec, variables, src_dir, log_dir, options, stages, self.executors, self.runner
        ).run()

        split_dirs: dict[str, Path] = {}
        for split_name, split_stages in plan.splits.items():
            split_dir = root / f"pkg-{split_name}"
            try:
                split_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise BuildError(
                    f"failed to create split package directory {split_dir}: {exc}"
                ) from exc
            stage = split_stages.get("package")
            if stage is None:
                raise ValidationError(
                    f"split package '{split_name}': lifecycle.package stage is required"
                )
            split_vars = {
                **variables,
                "PKG_DIR": str(split_dir),
                "PKG_NAME": split_name,
                "MAIN_PKG_DIR": str(pkg_dir),
            }
            executor = self.executors.get(stage.executor)
            if executor is None:
                raise BuildError(f"executor not found: {stage.executor}")
            log.debug("Running package stage for split: %s", split_name)
            split_options = replace(
                options, level=stage.dockyard, pkg_dir=split_dir, main_pkg_dir=pkg_dir
            )
            result = execute_script(
                executor, stage.script, src_dir, stage.env, split_vars, split_options, self.runner
            )
            log_path = log_dir / f"package-{split_name}.log"
            try:
                log_path.write_text(
                    f"=== Split package: {split_name} ===\n"
                    f"=== Exit code: {result.exit_code} ===\n\n"
                    f"--- stdout ---\n{result.stdout}\n--- stderr ---\n{result.stderr}\n",
                    encoding="utf-8",
                )
            except OSError as exc:
                log.warning("Failed to write build log %s: %s", log_path, exc)
            if result.exit_code != 0:
                raise BuildError(
                    f"split package '{split_name}' packaging stage failed with exit code "
                    f"{result.exit_code}\nstderr: {result.stderr}"
                )
            split_dirs[split_name] = split_dir

        if not is_bootstrap and not partial:
            self._save_cache(plan, root, cache_file)

        return BuildResult(pkg_dir, src_dir, log_dir, root, split_dirs)