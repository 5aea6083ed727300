"""Version metadata stamped into a build of the CPU shaper."""

from __future__ import annotations

from dataclasses import dataclass

# Release tooling rewrites these values when producing a build.
VERSION = "dev"
GIT_COMMIT = "unknown"
BUILD_DATE = "unknown"


@dataclass(frozen=True)
class Info:
    """Identifying metadata for a build."""

    version: str
    git_commit: str
    build_date: str


def current() -> Info:
    """Return the build metadata for logging and diagnostics."""
    return Info(version=VERSION, git_commit=GIT_COMMIT, build_date=BUILD_DATE)