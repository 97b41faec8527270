"""Build executor: the staged pipeline for one target.

Pipeline::

    pending -> restoring_cache -> [building_deps] -> configuring -> compiling
            -> installing -> stripping -> packaging -> succeeded
                                    (any stage) -> failed

Every step runs through the target's sandbox with an explicit environment
(SOURCE_DATE_EPOCH from the commit, TZ=UTC, LC_ALL=C, ccache settings).
A stage failure raises a PipelineStageError which is recorded on the job;
later stages never run after a failure, so no archive exists unless
stripping succeeded.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from reprobuild.builds.archive import create_archive, hash_archive
from reprobuild.builds.job import BuildJob
from reprobuild.builds.runner import StepExecutionError, StepResult, StepRunner
from reprobuild.builds.sandbox import Sandbox, create_sandbox
from reprobuild.cache.fingerprint import DEPENDS_DIR, CacheKey, compute_cache_key
from reprobuild.errors import (
    CompileFailed,
    ConfigureFailed,
    DependencyBuildFailed,
    InstallFailed,
    PackageFailed,
    PipelineStageError,
    StripFailed,
)
from reprobuild.types import BuildStage

if TYPE_CHECKING:
    from reprobuild.cache.ccache import CompilerObjectCache
    from reprobuild.cache.store import DependencyCacheManager
    from reprobuild.config import Settings
    from reprobuild.source.pinning import PinnedRevision
    from reprobuild.targets.schema import TargetSchema

logger = logging.getLogger(__name__)

LOG_DIR_NAME = "logs"


@dataclass
class BuildPaths:
    """Host paths used by one target build.

    Attributes:
        workspace: Copy of the pinned source tree (stable per target).
        output_dir: Per-target output directory.
        install_root: Install tree; also the archive's top-level directory.
        log_dir: Per-stage log files.
        ccache_dir: Target's compiler object cache.
    """

    workspace: Path
    output_dir: Path
    install_root: Path
    log_dir: Path
    ccache_dir: Path

    @classmethod
    def for_target(
        cls,
        target_id: str,
        work_dir: Path,
        output_root: Path,
        ccache_dir: Path,
        root_name: str,
    ) -> BuildPaths:
        output_dir = (output_root / target_id).absolute()
        return cls(
            workspace=(work_dir / target_id / "source").absolute(),
            output_dir=output_dir,
            install_root=output_dir / root_name,
            log_dir=output_dir / LOG_DIR_NAME,
            ccache_dir=ccache_dir.absolute(),
        )

    def log_path(self, stage: BuildStage) -> Path:
        return self.log_dir / f"{stage.value}.log"


def archive_root_name(package_name: str, target_id: str) -> str:
    """Name of the single top-level directory in a target's archive."""
    return f"{package_name}-{target_id}"


class BuildExecutor:
    """Run the staged pipeline for one target.

    Args:
        target: Target to build.
        pinned: Materialized source revision.
        settings: Application settings.
        dependency_cache: Dependency cache manager.
        object_cache: Compiler object cache.
        output_root: Root of per-target output directories.
        no_cache: Skip dependency restore/save and bypass ccache.
        runner: Step runner (a default one is created if None).
        sandbox: Sandbox override (created from settings if None).
    """

    def __init__(
        self,
        target: TargetSchema,
        pinned: PinnedRevision,
        settings: Settings,
        dependency_cache: DependencyCacheManager,
        object_cache: CompilerObjectCache,
        output_root: Path,
        no_cache: bool = False,
        runner: StepRunner | None = None,
        sandbox: Sandbox | None = None,
    ) -> None:
        self.target = target
        self.pinned = pinned
        self.settings = settings
        self.dependency_cache = dependency_cache
        self.object_cache = object_cache
        self.no_cache = no_cache
        self.runner = runner or StepRunner(timeout=settings.build_timeout)
        self.paths = BuildPaths.for_target(
            target.id,
            work_dir=settings.work_dir,
            output_root=output_root,
            ccache_dir=object_cache.directory_for(target.id),
            root_name=archive_root_name(settings.package_name, target.id),
        )
        self.sandbox = sandbox or create_sandbox(
            runtime=settings.container_runtime,
            image=target.container_image,
            source_dir=self.paths.workspace,
            output_dir=self.paths.output_dir,
            ccache_dir=self.paths.ccache_dir,
        )
        self.job = BuildJob(target=target, commit=pinned.resolved_commit)
        self.job.log_dir = self.paths.log_dir

    @property
    def jobs(self) -> int:
        return self.settings.jobs or os.cpu_count() or 1

    @property
    def depends_prefix(self) -> Path:
        """Host directory where the dependency build installs its prefix."""
        return self.paths.workspace / DEPENDS_DIR / self.target.host_triple

    def execute(self) -> BuildJob:
        """Run the pipeline to a terminal state.

        Stage failures are recorded on the returned job, never raised.
        """
        job = self.job
        logger.info(
            "[%s] Building %s", self.target.id, self.pinned.short_commit
        )
        try:
            self._prepare_workspace()

            job.advance(BuildStage.RESTORING_CACHE)
            key = self._cache_key()
            job.cache_hit = self._restore_dependencies(key)

            if not job.cache_hit:
                job.advance(BuildStage.BUILDING_DEPS)
                self._build_dependencies(key)

            job.advance(BuildStage.CONFIGURING)
            self._configure()

            job.advance(BuildStage.COMPILING)
            job.object_cache_stats = self._compile()

            job.advance(BuildStage.INSTALLING)
            self._install()

            job.advance(BuildStage.STRIPPING)
            self._strip()

            job.advance(BuildStage.PACKAGING)
            archive_path, sha256 = self._package()
            job.succeed(archive_path, sha256)
        except PipelineStageError as e:
            logger.error("%s", e)
            job.fail(e.stage, e.code, str(e), e.output_tail)
            return job

        logger.info(
            "[%s] Succeeded in %.1fs: %s",
            self.target.id,
            job.duration_seconds or 0.0,
            job.archive_path,
        )
        return job

    # Stages

    def _prepare_workspace(self) -> None:
        try:
            if self.paths.workspace.exists():
                shutil.rmtree(self.paths.workspace)
            if self.paths.output_dir.exists():
                shutil.rmtree(self.paths.output_dir)
            self.paths.workspace.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                self.pinned.tree_dir,
                self.paths.workspace,
                symlinks=True,
                ignore=shutil.ignore_patterns(".git"),
            )
            self.paths.log_dir.mkdir(parents=True, exist_ok=True)
            self.paths.ccache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PipelineStageError(
                f"Failed to prepare workspace: {e}",
                self.target.id,
                stage=BuildStage.PENDING,
                code="workspace_failed",
            ) from e

    def _cache_key(self) -> CacheKey:
        try:
            return compute_cache_key(self.target, self.paths.workspace)
        except OSError as e:
            raise PipelineStageError(
                f"Failed to fingerprint dependency recipes: {e}",
                self.target.id,
                stage=BuildStage.RESTORING_CACHE,
                code="fingerprint_failed",
            ) from e

    def _restore_dependencies(self, key: CacheKey) -> bool:
        if self.no_cache:
            logger.info("[%s] No-cache mode: building dependencies", self.target.id)
            return False
        return self.dependency_cache.restore(key, self.depends_prefix) is not None

    def _build_dependencies(self, key: CacheKey) -> None:
        self._step(
            BuildStage.BUILDING_DEPS,
            [
                "make",
                "-C",
                DEPENDS_DIR,
                f"HOST={self.target.host_triple}",
                f"-j{self.jobs}",
                *self.target.depends_flags,
            ],
            DependencyBuildFailed,
        )
        if not self.depends_prefix.is_dir():
            raise DependencyBuildFailed(
                f"Dependency build produced no prefix at {self.depends_prefix}",
                self.target.id,
                code="missing_prefix",
            )
        if not self.no_cache:
            self.dependency_cache.save(key, self.depends_prefix)

    def _configure(self) -> None:
        if self.target.toolchain:
            self._step(
                BuildStage.CONFIGURING,
                [self.target.toolchain, "--version"],
                ConfigureFailed,
                code="toolchain_unavailable",
            )
        config_site = self.depends_prefix / "share" / "config.site"
        env = {"CONFIG_SITE": self.sandbox.path(config_site)}
        self._step(BuildStage.CONFIGURING, ["./autogen.sh"], ConfigureFailed)
        self._step(
            BuildStage.CONFIGURING,
            [
                "./configure",
                "--prefix=/",
                *self.settings.configure_flags,
                *self.target.extra_flags,
            ],
            ConfigureFailed,
            extra_env=env,
        )

    def _compile(self) -> dict[str, int]:
        use_ccache = not self.no_cache
        if use_ccache:
            self.object_cache.zero_stats(self._capture)
        self._step(BuildStage.COMPILING, ["make", f"-j{self.jobs}"], CompileFailed)
        if not use_ccache:
            return {}
        stats = self.object_cache.collect_stats(self._capture)
        if stats:
            logger.info("[%s] ccache: %s", self.target.id, stats)
        return stats

    def _install(self) -> None:
        install_root = self.paths.install_root
        self._step(
            BuildStage.INSTALLING,
            ["make", "install", f"DESTDIR={self.sandbox.path(install_root)}"],
            InstallFailed,
        )
        if not install_root.is_dir() or not any(install_root.iterdir()):
            raise InstallFailed(
                f"Install produced no files in {install_root}",
                self.target.id,
                code="empty_install",
            )

    def _strip(self) -> None:
        install_root = self.paths.install_root
        files = sorted(
            path
            for path in install_root.glob(self.target.strip_glob)
            if path.is_file() and not path.is_symlink()
        )
        if not files:
            raise StripFailed(
                f"No installed files match {self.target.strip_glob!r}",
                self.target.id,
                code="nothing_to_strip",
            )
        self._step(
            BuildStage.STRIPPING,
            [
                self.target.strip_tool,
                *self.target.strip_flags,
                *(self.sandbox.path(path) for path in files),
            ],
            StripFailed,
            cwd=install_root,
        )

    def _package(self) -> tuple[Path, str]:
        try:
            archive_path = create_archive(
                self.paths.install_root,
                self.paths.output_dir,
                self.target.archive_kind,
                mtime=self.pinned.commit_timestamp,
            )
            return archive_path, hash_archive(archive_path)
        except OSError as e:
            raise PackageFailed(
                f"Failed to create {self.target.archive_kind.value} archive: {e}",
                self.target.id,
            ) from e

    # Helpers

    def _environment(self) -> dict[str, str]:
        env = {
            "SOURCE_DATE_EPOCH": str(self.pinned.commit_timestamp),
            "TZ": "UTC",
            "LC_ALL": "C",
            "LANG": "C",
        }
        env.update(
            self.object_cache.environment(
                cache_dir=self.sandbox.path(self.paths.ccache_dir),
                base_dir=self.sandbox.path(self.paths.workspace),
                path=self.sandbox.base_path,
                disabled=self.no_cache,
            )
        )
        return env

    def _step(
        self,
        stage: BuildStage,
        argv: list[str],
        error_cls: type[PipelineStageError],
        code: str | None = None,
        cwd: Path | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> StepResult:
        env = self._environment()
        if extra_env:
            env.update(extra_env)
        command = self.sandbox.command(argv, cwd or self.paths.workspace, env)
        log_path = self.paths.log_path(stage)
        try:
            result = self.runner.run(
                stage,
                command.argv,
                log_path,
                cwd=command.cwd,
                env_override=command.env,
            )
        except StepExecutionError as e:
            if e.code == "step_timeout":
                self.sandbox.kill(command)
            raise error_cls(
                str(e),
                self.target.id,
                output_tail=e.output_tail,
                exit_code=e.exit_code,
                code=code,
            ) from e
        except KeyboardInterrupt:
            self.sandbox.kill(command)
            raise
        finally:
            self.sandbox.release(command)

        if not result.success:
            raise error_cls(
                f"{argv[0]} exited with code {result.exit_code} (log: {log_path})",
                self.target.id,
                output_tail=result.output_tail,
                exit_code=result.exit_code,
                code=code,
            )
        return result

    def _capture(self, argv: list[str]) -> tuple[int, str]:
        command = self.sandbox.command(argv, self.paths.workspace, self._environment())
        try:
            return self.runner.capture(
                command.argv, cwd=command.cwd, env_override=command.env
            )
        except (OSError, KeyboardInterrupt):
            self.sandbox.kill(command)
            raise
        finally:
            self.sandbox.release(command)


__all__ = ["BuildExecutor", "BuildPaths", "archive_root_name"]
