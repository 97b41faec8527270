"""Build orchestration service.

This module provides the high-level build API:
- Orchestrator.run(): pin a commit and build the selected targets
- Sequential (registry order) or bounded parallel fan-out
- Run reports, manifest and checksum generation
- Run history persistence

A failure in one target never cancels or blocks the others. An abort
(KeyboardInterrupt) terminates every in-flight process and container before
propagating.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from reprobuild.attest.manifest import (
    CHECKSUMS_FILENAME,
    MANIFEST_FILENAME,
    describe_archive,
    generate_manifest,
    remove_attestation,
    write_checksums,
    write_manifest,
)
from reprobuild.builds.executor import BuildExecutor
from reprobuild.builds.job import BuildJob
from reprobuild.builds.models import JobRecord, RunRecord
from reprobuild.builds.runner import terminate_active
from reprobuild.builds.sandbox import kill_running_containers
from reprobuild.cache.ccache import CompilerObjectCache
from reprobuild.cache.store import DependencyCacheManager
from reprobuild.source.pinning import CommitPinningController
from reprobuild.targets.registry import TargetRegistry, load_registry
from reprobuild.types import BuildStage, BuildStatus

if TYPE_CHECKING:
    from reprobuild.builds.runner import StepRunner
    from reprobuild.config import Settings
    from reprobuild.source.pinning import PinnedRevision
    from reprobuild.targets.schema import TargetSchema

logger = logging.getLogger(__name__)

DEPENDS_CACHE_DIR = "depends"
CCACHE_DIR = "ccache"
CHECKOUTS_DIR = "checkouts"


class RunNotFoundError(Exception):
    """Raised when a run is not found in the history."""

    def __init__(self, run_id: str, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


class ArchiveMissingError(Exception):
    """Raised when a recorded archive no longer exists on disk."""

    def __init__(
        self, target_id: str, path: Path, code: str = "archive_missing"
    ) -> None:
        super().__init__(f"Archive of {target_id} is missing: {path}")
        self.target_id = target_id
        self.path = path
        self.code = code


class RunOptions(BaseModel):
    """Options of one orchestrator run."""

    parallel: bool = False
    no_cache: bool = False
    commit: str = "HEAD"


class JobSummary(BaseModel):
    """Outcome of one target within a run."""

    target_id: str
    status: BuildStatus
    failed_stage: BuildStage | None = None
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: float | None = None
    archive_path: str | None = None
    sha256: str | None = None
    cache_hit: bool = False
    output_tail: str = ""
    object_cache_stats: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: BuildJob) -> JobSummary:
        return cls(
            target_id=job.target_id,
            status=job.status,
            failed_stage=job.failed_stage,
            error_code=job.error_code,
            error_message=job.error_message,
            started_at=job.started_at,
            ended_at=job.ended_at,
            duration_seconds=job.duration_seconds,
            archive_path=str(job.archive_path) if job.archive_path else None,
            sha256=job.archive_sha256,
            cache_hit=job.cache_hit,
            output_tail=job.log_excerpt,
            object_cache_stats=dict(job.object_cache_stats),
        )


class RunReport(BaseModel):
    """Aggregated outcome of a run; lists every target."""

    run_id: str
    requested_ref: str
    commit: str
    commit_timestamp: int
    parallel: bool
    no_cache: bool
    started_at: datetime
    ended_at: datetime
    output_root: str
    jobs: list[JobSummary]
    manifest_path: str | None = None
    checksums_path: str | None = None

    @property
    def succeeded(self) -> list[JobSummary]:
        return [j for j in self.jobs if j.status == BuildStatus.SUCCEEDED]

    @property
    def failed(self) -> list[JobSummary]:
        return [j for j in self.jobs if j.status != BuildStatus.SUCCEEDED]

    @property
    def exit_code(self) -> int:
        """0 iff every target succeeded."""
        return 0 if self.jobs and not self.failed else 1

    def job(self, target_id: str) -> JobSummary:
        for job in self.jobs:
            if job.target_id == target_id:
                return job
        raise KeyError(target_id)

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["exit_code"] = self.exit_code
        return data


def abort_builds() -> None:
    """Terminate every in-flight step process and build container."""
    processes = terminate_active()
    containers = kill_running_containers()
    logger.warning(
        "Aborted %d process(es) and %d container(s)", processes, containers
    )


class Orchestrator:
    """Fan out build executors across targets.

    Args:
        settings: Application settings.
        registry: Target registry (loaded from settings if None).
        dependency_cache: Dependency cache manager.
        object_cache: Compiler object cache.
        pinning: Commit pinning controller.
        runner: Step runner shared by every executor (created per executor
            if None).
    """

    def __init__(
        self,
        settings: Settings,
        registry: TargetRegistry | None = None,
        dependency_cache: DependencyCacheManager | None = None,
        object_cache: CompilerObjectCache | None = None,
        pinning: CommitPinningController | None = None,
        runner: StepRunner | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or load_registry(settings.registry_path)
        self.dependency_cache = dependency_cache or DependencyCacheManager(
            settings.cache_dir / DEPENDS_CACHE_DIR
        )
        self.object_cache = object_cache or CompilerObjectCache(
            settings.cache_dir / CCACHE_DIR,
            max_size=settings.ccache_max_size,
            enabled=settings.ccache_enabled,
            launcher_dir=settings.ccache_launcher_dir,
        )
        self.pinning = pinning or CommitPinningController(
            settings.source_dir,
            settings.work_dir / CHECKOUTS_DIR,
            mode=settings.pin_mode,
            timeout=settings.git_timeout,
        )
        self.runner = runner

    def run(
        self, targets: Sequence[str] | None, options: RunOptions | None = None
    ) -> RunReport:
        """Pin ``options.commit`` and build the selected targets.

        Args:
            targets: Target ids, or None/'all' for every target.
            options: Run options.

        Returns:
            Report listing every target's outcome.

        Raises:
            ConfigurationError: On unknown targets or an unresolvable commit,
                before any build starts.
        """
        options = options or RunOptions()
        selected = self.registry.select(targets)
        with self.pinning.pinned(options.commit) as pinned:
            return self.run_pinned(pinned, selected, options)

    def run_pinned(
        self,
        pinned: PinnedRevision,
        targets: Sequence[TargetSchema],
        options: RunOptions,
        output_root: Path | None = None,
    ) -> RunReport:
        """Build ``targets`` from an already materialized revision."""
        output_root = (output_root or self.settings.output_dir).absolute()
        output_root.mkdir(parents=True, exist_ok=True)
        # The archives an older manifest lists are about to be replaced
        remove_attestation(output_root)
        run_id = uuid.uuid4().hex
        started_at = datetime.now(timezone.utc)
        logger.info(
            "Run %s: building %d target(s) at %s (%s)",
            run_id[:8],
            len(targets),
            pinned.short_commit,
            "parallel" if options.parallel else "sequential",
        )

        if options.parallel and len(targets) > 1:
            jobs = self._run_parallel(pinned, targets, options, output_root)
        else:
            jobs = self._run_sequential(pinned, targets, options, output_root)

        report = RunReport(
            run_id=run_id,
            requested_ref=pinned.requested_ref,
            commit=pinned.resolved_commit,
            commit_timestamp=pinned.commit_timestamp,
            parallel=options.parallel,
            no_cache=options.no_cache,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            output_root=str(output_root),
            jobs=[JobSummary.from_job(job) for job in jobs],
        )
        self._write_attestation(report, output_root)

        for summary in report.failed:
            logger.error(
                "%s failed at %s: %s",
                summary.target_id,
                summary.failed_stage.value if summary.failed_stage else "unknown",
                summary.error_message,
            )
        logger.info(
            "Run %s finished: %d succeeded, %d failed",
            run_id[:8],
            len(report.succeeded),
            len(report.failed),
        )
        return report

    def build_target(
        self,
        target: TargetSchema,
        pinned: PinnedRevision,
        options: RunOptions,
        output_root: Path,
    ) -> BuildJob:
        """Build one target; any unexpected error becomes that job's failure."""
        executor: BuildExecutor | None = None
        try:
            executor = BuildExecutor(
                target=target,
                pinned=pinned,
                settings=self.settings,
                dependency_cache=self.dependency_cache,
                object_cache=self.object_cache,
                output_root=output_root,
                no_cache=options.no_cache,
                runner=self.runner,
            )
            return executor.execute()
        except Exception as e:
            logger.exception("[%s] Unexpected error during build", target.id)
            if executor is not None:
                job = executor.job
            else:
                job = BuildJob(target=target, commit=pinned.resolved_commit)
            if not job.is_finished:
                job.fail(job.stage, "internal_error", f"{type(e).__name__}: {e}")
            return job

    def _run_sequential(
        self,
        pinned: PinnedRevision,
        targets: Sequence[TargetSchema],
        options: RunOptions,
        output_root: Path,
    ) -> list[BuildJob]:
        jobs: list[BuildJob] = []
        try:
            for target in targets:
                jobs.append(self.build_target(target, pinned, options, output_root))
        except KeyboardInterrupt:
            abort_builds()
            raise
        return jobs

    def _run_parallel(
        self,
        pinned: PinnedRevision,
        targets: Sequence[TargetSchema],
        options: RunOptions,
        output_root: Path,
    ) -> list[BuildJob]:
        workers = min(self.settings.max_concurrent_builds, len(targets))
        results: dict[str, BuildJob] = {}
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="build")
        try:
            futures = {
                pool.submit(self.build_target, target, pinned, options, output_root): target
                for target in targets
            }
            for future in as_completed(futures):
                results[futures[future].id] = future.result()
        except KeyboardInterrupt:
            abort_builds()
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
        # Report in registry order regardless of completion order
        return [results[target.id] for target in targets]

    def _write_attestation(self, report: RunReport, output_root: Path) -> None:
        archives = [
            describe_archive(job.target_id, Path(job.archive_path))
            for job in report.succeeded
            if job.archive_path
        ]
        if not archives:
            return
        manifest = generate_manifest(
            report.commit, archives, timestamp=report.commit_timestamp
        )
        report.manifest_path = str(
            write_manifest(manifest, output_root / MANIFEST_FILENAME)
        )
        report.checksums_path = str(
            write_checksums(manifest, output_root / CHECKSUMS_FILENAME)
        )


def record_run(session: Session, report: RunReport) -> RunRecord:
    """Persist a run report to the run history.

    Args:
        session: Database session.
        report: Report to persist.

    Returns:
        The created RunRecord.
    """
    record = RunRecord(
        run_id=report.run_id,
        requested_ref=report.requested_ref,
        commit=report.commit,
        commit_timestamp=report.commit_timestamp,
        parallel=report.parallel,
        no_cache=report.no_cache,
        started_at=report.started_at,
        finished_at=report.ended_at,
        output_root=report.output_root,
        manifest_path=report.manifest_path,
        exit_code=report.exit_code,
    )
    for job in report.jobs:
        record.jobs.append(
            JobRecord(
                target_id=job.target_id,
                status=job.status.value,
                failed_stage=job.failed_stage.value if job.failed_stage else None,
                error_code=job.error_code,
                error_message=job.error_message,
                started_at=job.started_at,
                finished_at=job.ended_at,
                duration_seconds=job.duration_seconds,
                archive_path=job.archive_path,
                archive_sha256=job.sha256,
                cache_hit=job.cache_hit,
                log_excerpt=job.output_tail or None,
                object_cache_stats=job.object_cache_stats or None,
            )
        )
    session.add(record)
    session.flush()
    return record


def get_run(session: Session, run_id: str) -> RunRecord:
    """Get a run by id or unique id prefix.

    Raises:
        RunNotFoundError: If no single run matches.
    """
    stmt = (
        select(RunRecord)
        .where(RunRecord.run_id.startswith(run_id))
        .options(selectinload(RunRecord.jobs))
        .limit(2)
    )
    matches = list(session.execute(stmt).scalars())
    if len(matches) != 1:
        raise RunNotFoundError(run_id)
    return matches[0]


def get_latest_run(session: Session) -> RunRecord:
    """Get the most recent run.

    Raises:
        RunNotFoundError: If the history is empty.
    """
    stmt = (
        select(RunRecord)
        .options(selectinload(RunRecord.jobs))
        .order_by(RunRecord.id.desc())
        .limit(1)
    )
    record = session.execute(stmt).scalar_one_or_none()
    if record is None:
        raise RunNotFoundError("latest")
    return record


def list_runs(session: Session, limit: int = 20) -> list[RunRecord]:
    """List recent runs, newest first."""
    stmt = (
        select(RunRecord)
        .options(selectinload(RunRecord.jobs))
        .order_by(RunRecord.id.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def run_archives(record: RunRecord) -> Iterable[tuple[str, Path]]:
    """(target id, archive path) of every succeeded job.

    Raises:
        ArchiveMissingError: If a succeeded job's archive no longer exists.
    """
    for job in record.succeeded_jobs():
        if not job.archive_path:
            continue
        path = Path(job.archive_path)
        if not path.is_file():
            raise ArchiveMissingError(job.target_id, path)
        yield job.target_id, path


__all__ = [
    "ArchiveMissingError",
    "JobSummary",
    "Orchestrator",
    "RunNotFoundError",
    "RunOptions",
    "RunReport",
    "abort_builds",
    "get_latest_run",
    "get_run",
    "list_runs",
    "record_run",
    "run_archives",
]
