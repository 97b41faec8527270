"""Tests for builds/sandbox.py module."""

from pathlib import Path
from unittest.mock import patch

import pytest

from reprobuild.builds import sandbox as sandbox_module
from reprobuild.builds.sandbox import (
    CONTAINER_CCACHE_DIR,
    CONTAINER_SOURCE_DIR,
    ContainerSandbox,
    LocalSandbox,
    SandboxError,
    create_sandbox,
    kill_running_containers,
)


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path, Path]:
    source = tmp_path / "work" / "linux-x64" / "source"
    output = tmp_path / "out" / "linux-x64"
    ccache = tmp_path / "cache" / "ccache" / "linux-x64"
    for path in (source, output, ccache):
        path.mkdir(parents=True)
    return source, output, ccache


class TestCreateSandbox:
    """Test sandbox selection."""

    def test_local(self, dirs: tuple[Path, Path, Path]) -> None:
        """Runtime 'none' should run on the host."""
        sandbox = create_sandbox("none", "img", *dirs)
        assert isinstance(sandbox, LocalSandbox)
        source = dirs[0]
        assert sandbox.path(source) == str(source)
        command = sandbox.command(["make"], source, {"A": "1"})
        assert command.argv == ["make"]
        assert command.cwd == source
        assert command.env == {"A": "1"}

    def test_container(self, dirs: tuple[Path, Path, Path]) -> None:
        """Other runtimes should produce a container sandbox."""
        sandbox = create_sandbox("podman", "builder:linux", *dirs)
        assert isinstance(sandbox, ContainerSandbox)
        assert sandbox.runtime == "podman"


class TestContainerSandbox:
    """Test container command construction."""

    def test_path_mapping(self, dirs: tuple[Path, Path, Path]) -> None:
        """Host paths under mounts should map to fixed container paths."""
        source, _, ccache = dirs
        sandbox = create_sandbox("docker", "img", *dirs)
        assert sandbox.path(source) == CONTAINER_SOURCE_DIR
        assert sandbox.path(source / "depends") == f"{CONTAINER_SOURCE_DIR}/depends"
        assert sandbox.path(ccache) == CONTAINER_CCACHE_DIR

    def test_unmounted_path(self, dirs: tuple[Path, Path, Path], tmp_path: Path) -> None:
        """Paths outside every mount should be rejected."""
        sandbox = create_sandbox("docker", "img", *dirs)
        with pytest.raises(SandboxError):
            sandbox.path(tmp_path / "elsewhere")

    def test_command(self, dirs: tuple[Path, Path, Path]) -> None:
        """The run command should carry workdir, user, env and mounts."""
        source = dirs[0]
        sandbox = ContainerSandbox(
            runtime="docker",
            image="builder:linux",
            mounts=[sandbox_module.Mount(source, CONTAINER_SOURCE_DIR)],
            user="1000:1000",
        )
        command = sandbox.command(["make", "-j2"], source, {"TZ": "UTC", "LANG": "C"})
        argv = command.argv
        assert argv[:3] == ["docker", "run", "--rm"]
        assert argv[argv.index("-w") + 1] == CONTAINER_SOURCE_DIR
        assert argv[argv.index("--user") + 1] == "1000:1000"
        env_args = [argv[i + 1] for i, a in enumerate(argv) if a == "-e"]
        assert env_args == ["LANG=C", "TZ=UTC"]
        assert f"{source.resolve()}:{CONTAINER_SOURCE_DIR}" in argv
        assert argv[-3:] == ["builder:linux", "make", "-j2"]
        assert command.cwd is None
        assert command.container_name is not None
        sandbox.release(command)

    def test_kill_running(self, dirs: tuple[Path, Path, Path]) -> None:
        """Unreleased containers should be killed on abort."""
        sandbox = create_sandbox("docker", "img", *dirs)
        command = sandbox.command(["make"], dirs[0], {})
        with patch("reprobuild.builds.sandbox.subprocess.run") as mock_run:
            assert kill_running_containers() == 1
        mock_run.assert_called_once()
        assert mock_run.call_args[0][0] == ["docker", "kill", command.container_name]
        assert kill_running_containers() == 0

    def test_release_forgets(self, dirs: tuple[Path, Path, Path]) -> None:
        """Released containers should not be killed."""
        sandbox = create_sandbox("docker", "img", *dirs)
        command = sandbox.command(["make"], dirs[0], {})
        sandbox.release(command)
        with patch("reprobuild.builds.sandbox.subprocess.run") as mock_run:
            assert kill_running_containers() == 0
        mock_run.assert_not_called()

    def test_kill_issues_runtime_kill(self, dirs: tuple[Path, Path, Path]) -> None:
        """kill should stop the container itself, not just the client."""
        sandbox = create_sandbox("podman", "img", *dirs)
        command = sandbox.command(["make"], dirs[0], {})
        with patch("reprobuild.builds.sandbox.subprocess.run") as mock_run:
            sandbox.kill(command)
        assert mock_run.call_args[0][0] == ["podman", "kill", command.container_name]
        sandbox.release(command)

    def test_kill_failure_is_logged(self, dirs: tuple[Path, Path, Path]) -> None:
        """A runtime that cannot be executed should not raise from kill."""
        sandbox = create_sandbox("docker", "img", *dirs)
        command = sandbox.command(["make"], dirs[0], {})
        with patch(
            "reprobuild.builds.sandbox.subprocess.run", side_effect=OSError("no docker")
        ):
            sandbox.kill(command)
        sandbox.release(command)


class TestLocalSandbox:
    """Test the host sandbox."""

    def test_kill_is_noop(self, dirs: tuple[Path, Path, Path]) -> None:
        """Local steps are killed by the runner; kill should run nothing."""
        sandbox = LocalSandbox()
        command = sandbox.command(["make"], dirs[0], {})
        with patch("reprobuild.builds.sandbox.subprocess.run") as mock_run:
            sandbox.kill(command)
        mock_run.assert_not_called()
