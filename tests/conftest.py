"""Shared fixtures for reprobuild tests.

External processes are faked by FakeRunner, which plays the part of the
depends system, autotools, make and strip by writing the files they would
produce. Tests needing real git use the ``git_repo`` fixture, which is
skipped when git is not installed.
"""

import os
import shutil
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reprobuild.builds.runner import StepResult
from reprobuild.config import Settings
from reprobuild.db import create_all_tables
from reprobuild.source.pinning import PinnedRevision
from reprobuild.targets.registry import TargetRegistry
from reprobuild.types import BuildStage

COMMIT_TIMESTAMP = 1700000000
FAKE_COMMIT = "0123456789abcdef0123456789abcdef01234567"

CCACHE_STATS = "direct_cache_hit\t3\npreprocessed_cache_hit\t1\ncache_miss\t2\n"


class FakeRunner:
    """Stand-in for StepRunner that simulates a successful build.

    Failures are injected with :meth:`fail_on`. Every call is recorded as
    ``(target_id, stage, argv, env)``.
    """

    def __init__(self, nondeterministic: bool = False) -> None:
        self.calls: list[tuple[str, BuildStage, list[str], dict[str, str]]] = []
        self.captures: list[list[str]] = []
        self.failures: dict[tuple[str, str], tuple[int, BuildStage | None]] = {}
        self.nondeterministic = nondeterministic
        self._lock = threading.Lock()

    def fail_on(
        self,
        target_id: str,
        program: str,
        exit_code: int = 2,
        stage: BuildStage | None = None,
    ) -> None:
        """Make ``program`` exit with ``exit_code`` when building ``target_id``.

        With ``stage`` set, only invocations in that stage fail.
        """
        self.failures[(target_id, program)] = (exit_code, stage)

    def commands(self, target_id: str) -> list[list[str]]:
        return [argv for tid, _, argv, _ in self.calls if tid == target_id]

    def stages(self, target_id: str) -> list[BuildStage]:
        return [stage for tid, stage, _, _ in self.calls if tid == target_id]

    def run(
        self,
        stage: BuildStage,
        argv: list[str],
        log_path: Path,
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> StepResult:
        assert cwd is not None
        target_id = _target_of(cwd)
        with self._lock:
            self.calls.append((target_id, stage, list(argv), dict(env_override or {})))

        log_path.parent.mkdir(parents=True, exist_ok=True)
        started = datetime.now(timezone.utc)
        exit_code, failing_stage = self.failures.get((target_id, argv[0]), (0, None))
        if failing_stage is not None and failing_stage != stage:
            exit_code = 0
        if exit_code:
            output = f"{argv[0]}: error: simulated failure for {target_id}\n"
        else:
            output = self._simulate(target_id, argv, cwd)
        with log_path.open("a") as f:
            f.write(output)

        return StepResult(
            stage=stage,
            exit_code=exit_code,
            log_path=log_path,
            output_tail=output.strip(),
            started_at=started,
            finished_at=datetime.now(timezone.utc),
            command=" ".join(argv),
        )

    def capture(
        self,
        argv: list[str],
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> tuple[int, str]:
        with self._lock:
            self.captures.append(list(argv))
        if "--print-stats" in argv:
            return 0, CCACHE_STATS
        return 0, ""

    def _simulate(self, target_id: str, argv: list[str], cwd: Path) -> str:
        if argv[:3] == ["make", "-C", "depends"]:
            host = next(a.split("=", 1)[1] for a in argv if a.startswith("HOST="))
            prefix = cwd / "depends" / host
            (prefix / "share").mkdir(parents=True, exist_ok=True)
            (prefix / "share" / "config.site").write_text(f"# {host}\n")
            (prefix / "lib").mkdir(exist_ok=True)
            (prefix / "lib" / "libz.a").write_bytes(b"zlib for " + host.encode())
            return f"built dependencies for {host}\n"
        if argv[:2] == ["make", "install"]:
            destdir = Path(argv[2].split("=", 1)[1])
            binary = "app.exe" if target_id.startswith("windows") else "app"
            (destdir / "bin").mkdir(parents=True, exist_ok=True)
            payload = b"binary for " + target_id.encode()
            if self.nondeterministic:
                payload += str(time.time_ns()).encode()
            (destdir / "bin" / binary).write_bytes(payload)
            (destdir / "bin" / binary).chmod(0o755)
            (destdir / "share" / "doc").mkdir(parents=True, exist_ok=True)
            (destdir / "share" / "doc" / "README").write_text("readme\n")
            return "installed\n"
        return f"ok: {' '.join(argv)}\n"


def _target_of(cwd: Path) -> str:
    # Workspaces are <work>/<target>/source; strip runs in <out>/<target>/<root>
    return cwd.parent.name


needs_proc = pytest.mark.skipif(
    not Path("/proc/self/stat").exists(), reason="needs Linux /proc"
)


def process_alive(pid: int) -> bool:
    """True while ``pid`` exists and is not a zombie."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def wait_for_exit(pid: int, timeout: float = 5.0) -> bool:
    """Poll until ``pid`` is gone; False if it outlives ``timeout``."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not process_alive(pid):
            return True
        time.sleep(0.05)
    return not process_alive(pid)


def read_pid(path: Path, timeout: float = 5.0) -> int:
    """Wait for a step to write its pid to ``path`` and return it."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        text = path.read_text().strip() if path.exists() else ""
        if text:
            return int(text)
        time.sleep(0.05)
    raise AssertionError(f"no pid written to {path}")


def interrupt_after(delay: float) -> threading.Timer:
    """Deliver SIGINT to this process after ``delay`` seconds, as Ctrl-C would."""
    timer = threading.Timer(delay, os.kill, (os.getpid(), signal.SIGINT))
    timer.start()
    return timer


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A FakeRunner producing deterministic output."""
    return FakeRunner()


@pytest.fixture
def registry() -> TargetRegistry:
    """Registry with one Linux and one Windows target."""
    return TargetRegistry.from_data(
        {
            "targets": [
                {
                    "id": "linux-x64",
                    "host_triple": "x86_64-pc-linux-gnu",
                    "container_image": "builder:linux-x64",
                    "strip_tool": "strip",
                    "archive_kind": "tar.gz",
                    "toolchain": "g++",
                    "extra_flags": ["--enable-hardening"],
                },
                {
                    "id": "windows-x64",
                    "host_triple": "x86_64-w64-mingw32",
                    "container_image": "builder:windows-x64",
                    "strip_tool": "x86_64-w64-mingw32-strip",
                    "strip_glob": "bin/*.exe",
                    "archive_kind": "zip",
                    "toolchain": "x86_64-w64-mingw32-g++",
                },
            ]
        }
    )


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A plain application source tree with dependency recipes."""
    src = tmp_path / "src"
    (src / "depends" / "packages").mkdir(parents=True)
    (src / "depends" / "Makefile").write_text("all:\n\t@true\n")
    (src / "depends" / "packages" / "zlib.mk").write_text("zlib_version=1.3\n")
    (src / "autogen.sh").write_text("#!/bin/sh\n")
    (src / "autogen.sh").chmod(0o755)
    (src / "configure.ac").write_text("AC_INIT([app], [1.0])\n")
    (src / "main.cpp").write_text("int main() { return 0; }\n")
    return src


@pytest.fixture
def pinned(source_tree: Path) -> PinnedRevision:
    """A pinned revision backed by the plain source tree."""
    return PinnedRevision(
        requested_ref="HEAD",
        resolved_commit=FAKE_COMMIT,
        tree_dir=source_tree,
        commit_timestamp=COMMIT_TIMESTAMP,
        isolated=False,
    )


@pytest.fixture
def settings(tmp_path: Path, source_tree: Path) -> Settings:
    """Settings rooted in a temporary directory, running builds locally."""
    return Settings(
        source_dir=source_tree,
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "out",
        db_url="sqlite:///:memory:",
        container_runtime="none",
        jobs=2,
        max_concurrent_builds=2,
    )


def _git(repo: Path, *args: str, env: dict[str, str] | None = None) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        env=env,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def git_commit(repo: Path, message: str, timestamp: int = COMMIT_TIMESTAMP) -> str:
    """Commit everything in ``repo`` at a fixed time and return the commit id."""
    env = dict(os.environ)
    env["GIT_AUTHOR_DATE"] = f"{timestamp} +0000"
    env["GIT_COMMITTER_DATE"] = f"{timestamp} +0000"
    _git(repo, "add", "-A", env=env)
    _git(repo, "commit", "-q", "-m", message, env=env)
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(source_tree: Path) -> Path:
    """The source tree turned into a git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    _git(source_tree, "init", "-q", "-b", "main")
    git_commit(source_tree, "initial")
    return source_tree


class GitHelper:
    """Run git commands against the ``git_repo`` fixture."""

    def __init__(self, repo: Path) -> None:
        self.repo = repo

    def __call__(self, *args: str) -> str:
        return _git(self.repo, *args)

    def commit(self, message: str, timestamp: int = COMMIT_TIMESTAMP) -> str:
        return git_commit(self.repo, message, timestamp)


@pytest.fixture
def git(git_repo: Path) -> GitHelper:
    """Helper running git in the test repository."""
    return GitHelper(git_repo)


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
