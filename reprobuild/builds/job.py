"""Per-target build job state.

A BuildJob is created for every scheduled target and mutated only by the
executor that owns it. Stage transitions follow a fixed table; once a job is
Succeeded or Failed it can no longer change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from reprobuild.types import BuildStage, BuildStatus

if TYPE_CHECKING:
    from reprobuild.targets.schema import TargetSchema

# Allowed stage transitions. Any non-terminal stage may also move to FAILED.
TRANSITIONS: dict[BuildStage, tuple[BuildStage, ...]] = {
    BuildStage.PENDING: (BuildStage.RESTORING_CACHE,),
    BuildStage.RESTORING_CACHE: (BuildStage.BUILDING_DEPS, BuildStage.CONFIGURING),
    BuildStage.BUILDING_DEPS: (BuildStage.CONFIGURING,),
    BuildStage.CONFIGURING: (BuildStage.COMPILING,),
    BuildStage.COMPILING: (BuildStage.INSTALLING,),
    BuildStage.INSTALLING: (BuildStage.STRIPPING,),
    BuildStage.STRIPPING: (BuildStage.PACKAGING,),
    BuildStage.PACKAGING: (BuildStage.SUCCEEDED,),
    BuildStage.SUCCEEDED: (),
    BuildStage.FAILED: (),
}


class InvalidTransitionError(Exception):
    """Raised when a job is moved along a transition the pipeline forbids."""

    def __init__(
        self,
        target_id: str,
        current: BuildStage,
        requested: BuildStage,
        code: str = "invalid_transition",
    ) -> None:
        super().__init__(
            f"{target_id}: cannot move from {current.value} to {requested.value}"
        )
        self.current = current
        self.requested = requested
        self.code = code


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BuildJob:
    """State of one target's build within a run.

    Attributes:
        target: Target being built.
        commit: Resolved commit id.
        stage: Current pipeline stage.
        failed_stage: Stage in which the job failed, if it failed.
        started_at: When the job left PENDING.
        ended_at: When the job reached a terminal stage.
        archive_path: Produced archive (only on success).
        archive_sha256: SHA-256 of the archive (only on success).
        log_excerpt: Output tail of the failing step.
        log_dir: Directory holding the per-stage logs.
        cache_hit: Whether dependencies were restored from cache.
        object_cache_stats: ccache statistics collected after compiling.
    """

    target: TargetSchema
    commit: str
    stage: BuildStage = BuildStage.PENDING
    failed_stage: BuildStage | None = None
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    archive_path: Path | None = None
    archive_sha256: str | None = None
    log_excerpt: str = ""
    log_dir: Path | None = None
    cache_hit: bool = False
    object_cache_stats: dict[str, int] = field(default_factory=dict)

    @property
    def target_id(self) -> str:
        return self.target.id

    @property
    def status(self) -> BuildStatus:
        """Coarse status derived from the stage."""
        if self.stage == BuildStage.PENDING:
            return BuildStatus.PENDING
        if self.stage == BuildStage.SUCCEEDED:
            return BuildStatus.SUCCEEDED
        if self.stage == BuildStage.FAILED:
            return BuildStatus.FAILED
        return BuildStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.stage.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def advance(self, stage: BuildStage) -> None:
        """Move to the next pipeline stage.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if stage == BuildStage.FAILED or stage not in TRANSITIONS[self.stage]:
            raise InvalidTransitionError(self.target_id, self.stage, stage)
        if self.stage == BuildStage.PENDING:
            self.started_at = _now()
        self.stage = stage
        if stage.is_terminal:
            self.ended_at = _now()

    def succeed(self, archive_path: Path, archive_sha256: str) -> None:
        """Mark the job succeeded with its archive."""
        self.advance(BuildStage.SUCCEEDED)
        self.archive_path = archive_path
        self.archive_sha256 = archive_sha256

    def fail(
        self,
        stage: BuildStage,
        code: str,
        message: str,
        log_excerpt: str = "",
    ) -> None:
        """Mark the job failed, recording the originating stage.

        Raises:
            InvalidTransitionError: If the job is already terminal.
        """
        if self.stage.is_terminal:
            raise InvalidTransitionError(self.target_id, self.stage, BuildStage.FAILED)
        if self.started_at is None:
            self.started_at = _now()
        self.failed_stage = stage
        self.error_code = code
        self.error_message = message
        self.log_excerpt = log_excerpt
        self.stage = BuildStage.FAILED
        self.ended_at = _now()


__all__ = ["TRANSITIONS", "BuildJob", "InvalidTransitionError"]
