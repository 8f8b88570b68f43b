"""Helpers for component version strings.

A component version is a semver string that may carry a sub-version
suffix separated by `~`, e.g. `1.30.2~3`. Sub-versions of the same base
version share one install/uninstall recipe.
"""

__all__ = [
    "expand_version",
    "trim_version",
]

SUBVERSION_SEPARATOR = "~"


def expand_version(version: str, default_version: str) -> str:
    """Expand a requested component version against the cluster version.

    An empty version means the cluster version itself, and a version that
    only holds a sub-version (e.g. `~2`) pins that sub-version on top of
    the cluster version.
    """
    if not version:
        return default_version
    if version.startswith(SUBVERSION_SEPARATOR):
        return default_version + version
    return version


def trim_version(version: str) -> str:
    """Return the base version, without any sub-version suffix."""
    return version.split(SUBVERSION_SEPARATOR, 1)[0]
