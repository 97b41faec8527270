"""Tests for verify/verifier.py module."""

from pathlib import Path

import pytest

from reprobuild.builds.service import Orchestrator
from reprobuild.config import Settings
from reprobuild.source.pinning import CommitPinningController, PinnedRevision
from reprobuild.targets.registry import RegistryError, TargetRegistry
from reprobuild.types import VerificationResult
from reprobuild.verify import ReproducibilityVerifier

from conftest import FAKE_COMMIT, FakeRunner


class StaticPinning(CommitPinningController):
    """Pinning controller that always hands out the same tree."""

    def __init__(self, pinned: PinnedRevision) -> None:
        super().__init__(pinned.tree_dir, pinned.tree_dir.parent / "checkouts")
        self._pinned = pinned
        self.materialized = 0
        self.restored = 0

    def materialize(self, ref: str = "HEAD") -> PinnedRevision:
        self.materialized += 1
        return self._pinned

    def restore(self, pinned: PinnedRevision) -> bool:
        self.restored += 1
        return True


def _verifier(
    settings: Settings,
    registry: TargetRegistry,
    pinned: PinnedRevision,
    runner: FakeRunner,
) -> tuple[ReproducibilityVerifier, StaticPinning]:
    pinning = StaticPinning(pinned)
    orchestrator = Orchestrator(
        settings,
        registry=registry,
        pinning=pinning,
        runner=runner,  # type: ignore[arg-type]
    )
    return ReproducibilityVerifier(orchestrator), pinning


class TestVerify:
    """Test reproducibility verification."""

    def test_match(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """Two cold builds of a deterministic target should match."""
        verifier, pinning = _verifier(settings, registry, pinned, fake_runner)
        report = verifier.verify("HEAD", "linux-x64")

        assert report.result == VerificationResult.MATCH
        assert report.exit_code == 0
        assert report.commit == FAKE_COMMIT
        assert report.first_hash == report.second_hash
        assert report.first_path != report.second_path
        assert report.differing_members == []
        assert pinning.materialized == 1
        assert pinning.restored == 1

    def test_cold_builds_dependencies_twice(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """Cold mode should rebuild dependencies for both builds."""
        verifier, _ = _verifier(settings, registry, pinned, fake_runner)
        verifier.verify("HEAD", "linux-x64")
        depends_builds = [
            argv for argv in fake_runner.commands("linux-x64") if argv[:3] == ["make", "-C", "depends"]
        ]
        assert len(depends_builds) == 2

    def test_warm_reuses_caches(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """Warm mode should restore dependencies in the second build."""
        verifier, _ = _verifier(settings, registry, pinned, fake_runner)
        report = verifier.verify("HEAD", "linux-x64", warm=True)
        assert report.result == VerificationResult.MATCH
        assert report.warm is True
        depends_builds = [
            argv for argv in fake_runner.commands("linux-x64") if argv[:3] == ["make", "-C", "depends"]
        ]
        assert len(depends_builds) == 1

    def test_mismatch(
        self, settings: Settings, registry: TargetRegistry, pinned: PinnedRevision
    ) -> None:
        """Nondeterministic output should be reported with the differing member."""
        runner = FakeRunner(nondeterministic=True)
        verifier, _ = _verifier(settings, registry, pinned, runner)
        report = verifier.verify("HEAD", "linux-x64")

        assert report.result == VerificationResult.MISMATCH
        assert report.exit_code == 1
        assert report.first_hash != report.second_hash
        assert report.differing_members == ["app-linux-x64/bin/app"]

    def test_build_failure(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """A failing build should be reported as build_failed, not mismatch."""
        fake_runner.fail_on("windows-x64", "x86_64-w64-mingw32-g++")
        verifier, pinning = _verifier(settings, registry, pinned, fake_runner)
        report = verifier.verify("HEAD", "windows-x64")

        assert report.result == VerificationResult.BUILD_FAILED
        assert report.exit_code == 1
        assert report.failure is not None
        assert report.failure.startswith("first build failed at configuring")
        assert report.first_hash is None
        assert pinning.restored == 1

    def test_output_layout(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """Both builds should land under the verify directory of the commit."""
        verifier, _ = _verifier(settings, registry, pinned, fake_runner)
        report = verifier.verify("HEAD", "linux-x64")
        root = settings.output_dir.absolute() / "verify" / pinned.short_commit
        assert Path(report.first_path or "").is_relative_to(root / "first")
        assert Path(report.second_path or "").is_relative_to(root / "second")

    def test_unknown_target(
        self,
        settings: Settings,
        registry: TargetRegistry,
        pinned: PinnedRevision,
        fake_runner: FakeRunner,
    ) -> None:
        """Unknown targets should raise before pinning."""
        verifier, pinning = _verifier(settings, registry, pinned, fake_runner)
        with pytest.raises(RegistryError):
            verifier.verify("HEAD", "bogus")
        assert pinning.materialized == 0
