"""Build variable maps and `${NAME}` substitution."""

from __future__ import annotations

from collections.abc import Mapping


def substitute(script: str, variables: Mapping[str, str]) -> str:
    """Replace every `${NAME}` in *script* with its value; unknown names stay as they are."""
    result = script
    for key, value in variables.items():
        result = result.replace("${" + key + "}", value)
    return result


def standard_variables(
    pkg_name: str,
    pkg_version: str,
    pkg_release: int,
    pkg_arch: str,
    src_dir: str,
    pkg_dir: str,
    files_dir: str,
    cflags: str,
    cxxflags: str,
) -> dict[str, str]:
    """Return the variable map every build stage receives."""
    return {
        "PKG_NAME": pkg_name,
        "PKG_VERSION": pkg_version,
        "PKG_RELEASE": str(pkg_release),
        "PKG_ARCH": pkg_arch,
        "SRC_DIR": str(src_dir),
        "PKG_DIR": str(pkg_dir),
        "FILES_DIR": str(files_dir),
        "CFLAGS": cflags,
        "CXXFLAGS": cxxflags,
    }