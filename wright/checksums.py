"""SHA-256 checksums of sources and in-place updates of a plan's `sha256` list."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path

from .errors import BuildError, ValidationError
from .sources import source_cache_filename

log = logging.getLogger(__name__)

SKIP = "SKIP"

_CHUNK_SIZE = 1 << 16
_SHA256_FIELD = re.compile(r"^sha256\s*=\s*\[[\s\S]*?\]", re.MULTILINE)
_URIS_FIELD = re.compile(r"^uris\s*=\s*\[[\s\S]*?\]", re.MULTILINE)


def sha256_file(path: str | os.PathLike[str]) -> str:
    """Hex SHA-256 digest of the file at *path*."""
    hasher = hashlib.sha256()
    try:
        with open(path, "rb") as handle:
            while chunk := handle.read(_CHUNK_SIZE):
                hasher.update(chunk)
    except OSError as exc:
        raise BuildError(f"failed to read {path}: {exc}") from exc
    return hasher.hexdigest()


def rewrite_sha256(content: str, hashes: Sequence[str]) -> str:
    """Replace the `sha256 = [...]` list in plan text with *hashes*.

    The rest of the text, comments included, is left untouched. When the plan
    has no `sha256` list, one is inserted right after the `uris` list.
    """
    body = ",\n".join(f'    "{digest}"' for digest in hashes)
    replacement = f"sha256 = [\n{body},\n]"

    if _SHA256_FIELD.search(content):
        return _SHA256_FIELD.sub(lambda _match: replacement, content, count=1)

    uris = _URIS_FIELD.search(content)
    if uris is None:
        raise BuildError("could not find uris or sha256 field in plan.toml")
    return f"{content[:uris.end()]}\n{replacement}{content[uris.end():]}"


def verify_sources(
    cache_dir: str | os.PathLike[str],
    pkg_name: str,
    uris: Sequence[str],
    sha256: Sequence[str],
) -> list[Path]:
    """Check cached sources against their expected hashes.

    *cache_dir* is the source cache directory and *uris* are already
    expanded. Sources whose hash is `SKIP` are not checked. Returns the paths
    that were verified.
    """
    cache_dir = Path(cache_dir)
    verified: list[Path] = []
    for position, uri in enumerate(uris):
        if position >= len(sha256):
            raise ValidationError(f"no sha256 hash provided for source {position}")
        expected = sha256[position]
        if expected == SKIP:
            log.debug("Skipping verification for source %d", position)
            continue

        filename = source_cache_filename(pkg_name, uri)
        path = cache_dir / filename
        if not path.exists():
            raise ValidationError(f"source file missing: {filename}")

        actual = sha256_file(path)
        if actual != expected:
            raise ValidationError(
                f"SHA256 mismatch for {filename}:\n"
                f"  expected: {expected}\n"
                f"  actual:   {actual}"
            )
        log.debug("Verified source: %s", filename)
        verified.append(path)
    return verified