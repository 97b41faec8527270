"""Run history ORM models.

This module defines the RunRecord and JobRecord models storing one row per
orchestrator run and one row per target build within it.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reprobuild.db import Base
from reprobuild.types import BuildStatus


class RunRecord(Base):
    """ORM model for an orchestrator run.

    Attributes:
        id: Primary key.
        run_id: Public run identifier.
        requested_ref: Ref requested by the user.
        commit: Resolved commit id.
        commit_timestamp: Commit time used as the build timestamp.
        parallel: Whether targets were built concurrently.
        no_cache: Whether caches were bypassed.
        started_at: When the run started.
        finished_at: When the run finished.
        output_root: Directory holding per-target outputs.
        manifest_path: Manifest written for the run, if any.
        exit_code: Process exit code of the run.
    """

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    requested_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    commit: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    commit_timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    parallel: Mapped[bool] = mapped_column(nullable=False, default=False)
    no_cache: Mapped[bool] = mapped_column(nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    output_root: Mapped[str] = mapped_column(String(500), nullable=False)
    manifest_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    exit_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    jobs: Mapped[list["JobRecord"]] = relationship(
        "JobRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="JobRecord.id",
    )

    def __repr__(self) -> str:
        """Return string representation of RunRecord."""
        return (
            f"<RunRecord(run_id='{self.run_id}', commit='{self.commit[:12]}', "
            f"exit_code={self.exit_code})>"
        )

    def succeeded_jobs(self) -> list["JobRecord"]:
        """Jobs of this run that produced an archive."""
        return [job for job in self.jobs if job.is_succeeded()]


class JobRecord(Base):
    """ORM model for one target build within a run.

    Attributes:
        id: Primary key.
        run_pk: Foreign key to RunRecord.
        target_id: Target that was built.
        status: Final build status.
        failed_stage: Stage that failed, if any.
        error_code: Machine-readable error code.
        error_message: Error message.
        archive_path: Produced archive.
        archive_sha256: SHA-256 of the archive.
        cache_hit: Whether dependencies came from cache.
        log_excerpt: Output tail of the failing step.
        object_cache_stats: ccache statistics.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("runs.id"), nullable=False, index=True
    )

    target_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value
    )
    failed_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    archive_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    archive_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    log_excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    object_cache_stats: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    run: Mapped["RunRecord"] = relationship("RunRecord", back_populates="jobs")

    __table_args__ = (Index("ix_jobs_target_status", "target_id", "status"),)

    def __repr__(self) -> str:
        """Return string representation of JobRecord."""
        return f"<JobRecord(target_id='{self.target_id}', status='{self.status}')>"

    def is_succeeded(self) -> bool:
        """Check if this job succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["JobRecord", "RunRecord"]
