"""Shared type definitions for reprobuild.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BuildStage(str, Enum):
    """Stage of the per-target build pipeline."""

    PENDING = "pending"
    RESTORING_CACHE = "restoring_cache"
    BUILDING_DEPS = "building_deps"
    CONFIGURING = "configuring"
    COMPILING = "compiling"
    INSTALLING = "installing"
    STRIPPING = "stripping"
    PACKAGING = "packaging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in (BuildStage.SUCCEEDED, BuildStage.FAILED)


class ArchiveKind(str, Enum):
    """Archive format of a target's release artifact."""

    TAR_GZ = "tar.gz"
    ZIP = "zip"


class VerificationResult(str, Enum):
    """Result of a reproducibility verification."""

    MATCH = "match"
    MISMATCH = "mismatch"
    BUILD_FAILED = "build_failed"


@dataclass
class ArtifactInfo:
    """Information about a produced archive."""

    target_id: str
    filename: str
    path: str
    size_bytes: int
    sha256: str


__all__ = [
    "ArchiveKind",
    "ArtifactInfo",
    "BuildStage",
    "BuildStatus",
    "VerificationResult",
]
