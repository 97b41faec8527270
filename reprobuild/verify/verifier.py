"""Reproducibility verification.

Builds the same (commit, target) twice into separate output directories and
compares the archive hashes. Any nondeterminism (embedded timestamps,
absolute paths, unsorted entries) surfaces as a mismatch, which is a
structured result and not an error.

Cold mode (default) clears the target's dependency cache entries and object
cache before each build. Warm mode clears them only before the first build,
so the second build reuses what the first one populated; a match then shows
the caches do not influence the output.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from reprobuild.builds.archive import diff_archives
from reprobuild.builds.service import JobSummary, Orchestrator, RunOptions
from reprobuild.types import BuildStatus, VerificationResult

logger = logging.getLogger(__name__)

VERIFY_DIR = "verify"
BUILD_LABELS = ("first", "second")


class VerificationReport(BaseModel):
    """Outcome of a reproducibility check."""

    commit: str
    target_id: str
    warm: bool
    result: VerificationResult
    first_hash: str | None = None
    second_hash: str | None = None
    first_path: str | None = None
    second_path: str | None = None
    differing_members: list[str] = Field(default_factory=list)
    failure: str | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.result == VerificationResult.MATCH else 1


class ReproducibilityVerifier:
    """Rebuild a target twice and compare the archives.

    Args:
        orchestrator: Orchestrator providing caches, pinning and execution.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator

    def verify(
        self, commit: str, target_id: str, warm: bool = False
    ) -> VerificationReport:
        """Verify that ``target_id`` builds reproducibly at ``commit``.

        Raises:
            ConfigurationError: On an unknown target or unresolvable commit.
        """
        target = self.orchestrator.registry.get(target_id)
        settings = self.orchestrator.settings

        with self.orchestrator.pinning.pinned(commit) as pinned:
            root = settings.output_dir / VERIFY_DIR / pinned.short_commit
            summaries: list[JobSummary] = []
            for index, label in enumerate(BUILD_LABELS):
                if index == 0 or not warm:
                    self.clear_caches(target_id)
                logger.info(
                    "Verification build %d/2 of %s at %s (%s)",
                    index + 1,
                    target_id,
                    pinned.short_commit,
                    "warm" if warm and index else "cold",
                )
                report = self.orchestrator.run_pinned(
                    pinned,
                    [target],
                    RunOptions(commit=commit),
                    output_root=root / label,
                )
                summary = report.job(target_id)
                summaries.append(summary)
                if summary.status != BuildStatus.SUCCEEDED:
                    return VerificationReport(
                        commit=pinned.resolved_commit,
                        target_id=target_id,
                        warm=warm,
                        result=VerificationResult.BUILD_FAILED,
                        failure=(
                            f"{label} build failed at "
                            f"{summary.failed_stage.value if summary.failed_stage else 'unknown'}: "
                            f"{summary.error_message}"
                        ),
                    )

            first, second = summaries
            result = (
                VerificationResult.MATCH
                if first.sha256 == second.sha256
                else VerificationResult.MISMATCH
            )
            differing: list[str] = []
            if result == VerificationResult.MISMATCH and first.archive_path and second.archive_path:
                differing = diff_archives(Path(first.archive_path), Path(second.archive_path))
                logger.warning(
                    "%s is not reproducible at %s: %s != %s",
                    target_id,
                    pinned.short_commit,
                    first.sha256,
                    second.sha256,
                )
            else:
                logger.info("%s reproduced at %s: %s", target_id, pinned.short_commit, first.sha256)

            return VerificationReport(
                commit=pinned.resolved_commit,
                target_id=target_id,
                warm=warm,
                result=result,
                first_hash=first.sha256,
                second_hash=second.sha256,
                first_path=first.archive_path,
                second_path=second.archive_path,
                differing_members=differing,
            )

    def clear_caches(self, target_id: str) -> None:
        """Remove the target's dependency cache entries and object cache."""
        self.orchestrator.dependency_cache.evict_target(target_id)
        self.orchestrator.object_cache.clear(target_id)


__all__ = ["ReproducibilityVerifier", "VerificationReport"]
