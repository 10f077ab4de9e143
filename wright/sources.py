"""Source URI helpers: classification, cache naming and local-path checks."""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path

from .errors import BuildError, ValidationError
from .variables import substitute

GIT_PREFIX = "git+"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".tar.bz2", ".tar.zst")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


def _sanitize_filename(name: str) -> str:
    """Make *name* safe to use as a single cache file name."""
    return _UNSAFE_CHARS.sub("_", name) or "source"


def _last_segment(uri: str) -> str:
    return uri.rsplit("/", 1)[-1]


def is_remote_uri(uri: str) -> bool:
    """True for http(s) downloads and git repositories."""
    return uri.startswith(("http://", "https://", GIT_PREFIX))


def is_git_uri(uri: str) -> bool:
    return uri.startswith(GIT_PREFIX)


def is_archive(filename: str) -> bool:
    """True when *filename* has a supported archive extension."""
    return filename.endswith(ARCHIVE_SUFFIXES)


def source_cache_filename(pkg_name: str, uri: str) -> str:
    """Cache file name for a source, prefixed with the package name to avoid clashes."""
    return _sanitize_filename(f"{pkg_name}-{_last_segment(uri)}")


def git_cache_dir_name(uri: str) -> str:
    """Stable cache directory name for a git URI: `<stem>-<8 hex chars of SHA-256 of the URL>`.

    The ref fragment does not take part, so every ref of a repository shares one cache.
    """
    url = uri.removeprefix(GIT_PREFIX).split("#", 1)[0]
    segment = _last_segment(url)
    stem = _sanitize_filename(segment.removesuffix(".git"))
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
    return f"{stem}-{digest[:8]}"


def parse_git_ref(uri: str) -> tuple[str, str]:
    """Split a `git+URL[#ref]` URI into the URL and the ref to check out.

    A fragment of the form `key=value` (such as `tag=v1.0`) yields the value;
    without a fragment the ref is `HEAD`.
    """
    if not is_git_uri(uri):
        raise BuildError(f"invalid git URI: {uri}")
    body = uri.removeprefix(GIT_PREFIX)
    url, sep, ref = body.partition("#")
    if not sep:
        return url, "HEAD"
    parts = ref.split("=")
    return url, parts[1] if len(parts) == 2 else ref


def process_uri(uri: str, name: str, version: str, release: int, arch: str) -> str:
    """Expand `${PKG_NAME}`, `${PKG_VERSION}`, `${PKG_RELEASE}` and `${PKG_ARCH}` in *uri*."""
    return substitute(
        uri,
        {
            "PKG_NAME": name,
            "PKG_VERSION": version,
            "PKG_RELEASE": str(release),
            "PKG_ARCH": arch,
        },
    )


def validate_local_path(
    plan_dir: str | os.PathLike[str], relative_path: str
) -> Path:
    """Resolve *relative_path* against *plan_dir*; it must exist and stay inside the plan directory."""
    plan_dir = Path(plan_dir)
    try:
        resolved = (plan_dir / relative_path).resolve(strict=True)
    except OSError as exc:
        raise ValidationError(f"local path not found: {relative_path} ({exc})") from exc
    try:
        plan_abs = plan_dir.resolve(strict=True)
    except OSError as exc:
        raise ValidationError(
            f"failed to resolve plan directory {plan_dir}: {exc}"
        ) from exc
    if not resolved.is_relative_to(plan_abs):
        raise ValidationError(f"local path escapes plan directory: {relative_path}")
    return resolved