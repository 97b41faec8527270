"""Tests for builds/executor.py module."""

from pathlib import Path
from unittest.mock import patch

import pytest

from reprobuild.builds.archive import read_member, top_level_dirs
from reprobuild.builds.executor import BuildExecutor, BuildPaths, archive_root_name
from reprobuild.builds.runner import StepExecutionError
from reprobuild.cache.ccache import CompilerObjectCache
from reprobuild.cache.store import DependencyCacheManager
from reprobuild.config import Settings
from reprobuild.source.pinning import PinnedRevision
from reprobuild.targets.registry import TargetRegistry
from reprobuild.types import BuildStage, BuildStatus

from conftest import COMMIT_TIMESTAMP, FakeRunner


@pytest.fixture
def dependency_cache(settings: Settings) -> DependencyCacheManager:
    return DependencyCacheManager(settings.cache_dir / "depends")


@pytest.fixture
def object_cache(settings: Settings) -> CompilerObjectCache:
    return CompilerObjectCache(settings.cache_dir / "ccache")


@pytest.fixture
def make_executor(
    registry: TargetRegistry,
    pinned: PinnedRevision,
    settings: Settings,
    dependency_cache: DependencyCacheManager,
    object_cache: CompilerObjectCache,
    fake_runner: FakeRunner,
):
    def factory(
        target_id: str = "linux-x64",
        no_cache: bool = False,
        output_root: Path | None = None,
    ) -> BuildExecutor:
        return BuildExecutor(
            registry.get(target_id),
            pinned,
            settings,
            dependency_cache,
            object_cache,
            output_root=output_root or settings.output_dir,
            no_cache=no_cache,
            runner=fake_runner,  # type: ignore[arg-type]
        )

    return factory


class TestBuildPaths:
    """Test BuildPaths layout."""

    def test_layout(self, tmp_path: Path) -> None:
        """Paths should be stable per target and absolute."""
        paths = BuildPaths.for_target(
            "linux-x64",
            work_dir=tmp_path / "work",
            output_root=tmp_path / "out",
            ccache_dir=tmp_path / "ccache" / "linux-x64",
            root_name="app-linux-x64",
        )
        assert paths.workspace == tmp_path / "work" / "linux-x64" / "source"
        assert paths.install_root == tmp_path / "out" / "linux-x64" / "app-linux-x64"
        assert paths.log_path(BuildStage.COMPILING).name == "compiling.log"
        assert archive_root_name("app", "linux-x64") == "app-linux-x64"


class TestSuccessfulBuild:
    """Test a full pipeline run."""

    def test_linux_build(self, make_executor, fake_runner: FakeRunner, settings: Settings) -> None:
        """A successful build should produce a tar.gz with one root directory."""
        job = make_executor("linux-x64").execute()

        assert job.status == BuildStatus.SUCCEEDED
        assert job.cache_hit is False
        assert job.archive_path == settings.output_dir.absolute() / "linux-x64" / "app-linux-x64.tar.gz"
        assert job.archive_path.exists()
        assert len(job.archive_sha256 or "") == 64
        assert top_level_dirs(job.archive_path) == {"app-linux-x64"}
        assert read_member(job.archive_path, "app-linux-x64/bin/app") == b"binary for linux-x64"

        assert fake_runner.stages("linux-x64") == [
            BuildStage.BUILDING_DEPS,
            BuildStage.CONFIGURING,
            BuildStage.CONFIGURING,
            BuildStage.CONFIGURING,
            BuildStage.COMPILING,
            BuildStage.INSTALLING,
            BuildStage.STRIPPING,
        ]

    def test_commands(self, make_executor, fake_runner: FakeRunner) -> None:
        """Steps should pass host triple, configure flags and strip targets."""
        executor = make_executor("linux-x64")
        executor.execute()
        commands = fake_runner.commands("linux-x64")
        assert commands[0] == ["make", "-C", "depends", "HOST=x86_64-pc-linux-gnu", "-j2"]
        assert commands[1] == ["g++", "--version"]
        assert commands[2] == ["./autogen.sh"]
        assert commands[3] == [
            "./configure",
            "--prefix=/",
            "--disable-tests",
            "--disable-bench",
            "--enable-hardening",
        ]
        assert commands[4] == ["make", "-j2"]
        assert commands[5] == ["make", "install", f"DESTDIR={executor.paths.install_root}"]
        assert commands[6] == ["strip", str(executor.paths.install_root / "bin" / "app")]

    def test_windows_zip(self, make_executor) -> None:
        """Windows targets should produce a zip and strip only .exe files."""
        job = make_executor("windows-x64").execute()
        assert job.status == BuildStatus.SUCCEEDED
        assert job.archive_path is not None
        assert job.archive_path.name == "app-windows-x64.zip"
        assert top_level_dirs(job.archive_path) == {"app-windows-x64"}

    def test_reproducible_environment(self, make_executor, fake_runner: FakeRunner) -> None:
        """Every step should see the commit time and a fixed locale."""
        executor = make_executor("linux-x64")
        executor.execute()
        for _, _, _, env in fake_runner.calls:
            assert env["SOURCE_DATE_EPOCH"] == str(COMMIT_TIMESTAMP)
            assert env["TZ"] == "UTC"
            assert env["LC_ALL"] == "C"
            assert env["CCACHE_BASEDIR"] == str(executor.paths.workspace)
            assert env["CCACHE_DIR"] == str(executor.paths.ccache_dir)
        configure_env = fake_runner.calls[3][3]
        assert configure_env["CONFIG_SITE"].endswith(
            "depends/x86_64-pc-linux-gnu/share/config.site"
        )

    def test_object_cache_stats(self, make_executor, fake_runner: FakeRunner) -> None:
        """ccache statistics should be collected around compilation."""
        job = make_executor("linux-x64").execute()
        assert ["ccache", "--zero-stats"] in fake_runner.captures
        assert job.object_cache_stats == {
            "direct_cache_hit": 3,
            "preprocessed_cache_hit": 1,
            "cache_miss": 2,
        }

    def test_logs_written(self, make_executor) -> None:
        """Each stage should have its own log file."""
        job = make_executor("linux-x64").execute()
        assert job.log_dir is not None
        names = sorted(p.name for p in job.log_dir.iterdir())
        assert "configuring.log" in names
        assert "compiling.log" in names


class TestDependencyCache:
    """Test dependency cache integration."""

    def test_second_build_hits_cache(
        self,
        make_executor,
        fake_runner: FakeRunner,
        dependency_cache: DependencyCacheManager,
    ) -> None:
        """A second build should restore dependencies instead of building them."""
        first = make_executor("linux-x64").execute()
        assert len(dependency_cache.list_entries("linux-x64")) == 1
        calls_before = len(fake_runner.calls)

        second = make_executor("linux-x64").execute()
        assert second.cache_hit is True
        new_stages = [stage for _, stage, _, _ in fake_runner.calls[calls_before:]]
        assert BuildStage.BUILDING_DEPS not in new_stages
        assert second.archive_sha256 == first.archive_sha256

    def test_targets_do_not_share_entries(
        self, make_executor, dependency_cache: DependencyCacheManager
    ) -> None:
        """Each target should populate its own cache entry."""
        make_executor("linux-x64").execute()
        job = make_executor("windows-x64").execute()
        assert job.cache_hit is False
        assert len(dependency_cache.list_entries()) == 2

    def test_no_cache(
        self,
        make_executor,
        fake_runner: FakeRunner,
        dependency_cache: DependencyCacheManager,
    ) -> None:
        """no-cache builds should neither read nor write caches."""
        make_executor("linux-x64").execute()
        calls_before = len(fake_runner.calls)
        captures_before = len(fake_runner.captures)

        job = make_executor("linux-x64", no_cache=True).execute()
        assert job.status == BuildStatus.SUCCEEDED
        assert job.cache_hit is False
        assert job.object_cache_stats == {}
        new_calls = fake_runner.calls[calls_before:]
        assert new_calls[0][1] == BuildStage.BUILDING_DEPS
        assert all(env.get("CCACHE_DISABLE") == "1" for _, _, _, env in new_calls)
        assert len(fake_runner.captures) == captures_before


class TestFailures:
    """Test stage failures."""

    def test_missing_toolchain(self, make_executor, fake_runner: FakeRunner) -> None:
        """A missing cross toolchain should fail in configuring."""
        fake_runner.fail_on("windows-x64", "x86_64-w64-mingw32-g++", exit_code=127)
        job = make_executor("windows-x64").execute()
        assert job.status == BuildStatus.FAILED
        assert job.failed_stage == BuildStage.CONFIGURING
        assert job.error_code == "toolchain_unavailable"
        assert "simulated failure" in job.log_excerpt
        assert job.archive_path is None
        assert "./configure" not in [c[0] for c in fake_runner.commands("windows-x64")]

    def test_dependency_failure(self, make_executor, fake_runner: FakeRunner) -> None:
        """A failing depends build should stop the pipeline."""
        fake_runner.fail_on("linux-x64", "make")
        job = make_executor("linux-x64").execute()
        assert job.failed_stage == BuildStage.BUILDING_DEPS
        assert job.error_code == "dependency_build_failed"
        assert len(fake_runner.commands("linux-x64")) == 1

    def test_compile_failure_leaves_no_archive(
        self, make_executor, fake_runner: FakeRunner, settings: Settings
    ) -> None:
        """A compile failure should leave no archive behind."""
        make_executor("linux-x64").execute()
        fake_runner.fail_on("linux-x64", "make")

        job = make_executor("linux-x64").execute()
        assert job.cache_hit is True
        assert job.failed_stage == BuildStage.COMPILING
        assert job.error_code == "compile_failed"
        assert "[linux-x64:compiling]" in (job.error_message or "")
        output_dir = settings.output_dir / "linux-x64"
        assert not list(output_dir.glob("*.tar.gz"))

    def test_strip_failure(self, make_executor, fake_runner: FakeRunner) -> None:
        """A failing strip tool should fail in stripping."""
        fake_runner.fail_on("linux-x64", "strip", exit_code=1)
        job = make_executor("linux-x64").execute()
        assert job.failed_stage == BuildStage.STRIPPING
        assert job.error_code == "strip_failed"
        assert job.archive_path is None

    def test_missing_source_tree(self, make_executor, pinned: PinnedRevision, tmp_path: Path) -> None:
        """An unreadable source tree should fail before any stage."""
        executor = make_executor("linux-x64")
        executor.pinned = PinnedRevision(
            requested_ref="HEAD",
            resolved_commit=pinned.resolved_commit,
            tree_dir=tmp_path / "missing",
            commit_timestamp=COMMIT_TIMESTAMP,
            isolated=False,
        )
        job = executor.execute()
        assert job.status == BuildStatus.FAILED
        assert job.failed_stage == BuildStage.PENDING
        assert job.error_code == "workspace_failed"


class InterruptingRunner(FakeRunner):
    """FakeRunner whose compile step raises ``error``."""

    def __init__(self, error: BaseException) -> None:
        super().__init__()
        self.error = error

    def run(self, stage, argv, log_path, cwd=None, env_override=None):
        if stage == BuildStage.COMPILING:
            raise self.error
        return super().run(stage, argv, log_path, cwd=cwd, env_override=env_override)


class TestStepTermination:
    """Test that timed out and interrupted steps are killed in their sandbox."""

    def _executor(self, make_executor, runner: FakeRunner) -> BuildExecutor:
        executor = make_executor("linux-x64")
        executor.runner = runner
        return executor

    def test_timeout_kills_sandbox(self, make_executor) -> None:
        """A step timeout should kill the sandboxed command and fail the stage."""
        runner = InterruptingRunner(
            StepExecutionError("compiling step timed out", exit_code=-1, code="step_timeout")
        )
        executor = self._executor(make_executor, runner)
        with patch.object(executor.sandbox, "kill") as mock_kill:
            job = executor.execute()
        mock_kill.assert_called_once()
        assert job.status == BuildStatus.FAILED
        assert job.failed_stage == BuildStage.COMPILING
        assert job.error_code == "compile_failed"

    def test_interrupt_kills_sandbox(self, make_executor) -> None:
        """KeyboardInterrupt should kill the sandboxed command and propagate."""
        executor = self._executor(make_executor, InterruptingRunner(KeyboardInterrupt()))
        with patch.object(executor.sandbox, "kill") as mock_kill:
            with pytest.raises(KeyboardInterrupt):
                executor.execute()
        mock_kill.assert_called_once()

    def test_start_failure_does_not_kill(self, make_executor) -> None:
        """A step that never started has nothing to kill."""
        runner = InterruptingRunner(StepExecutionError("Failed to execute make"))
        executor = self._executor(make_executor, runner)
        with patch.object(executor.sandbox, "kill") as mock_kill:
            job = executor.execute()
        mock_kill.assert_not_called()
        assert job.failed_stage == BuildStage.COMPILING
