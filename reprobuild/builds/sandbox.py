"""Execution sandboxes for pipeline steps.

Every step runs through a sandbox. ``ContainerSandbox`` wraps the command in
``docker run --rm`` (or podman) with the workspace, output and compiler
cache directories mounted at fixed paths, so the paths a build sees are the
same on every machine. ``LocalSandbox`` runs directly on the host and is
meant for development.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

# Fixed mount points inside build containers
CONTAINER_SOURCE_DIR = "/build/source"
CONTAINER_OUTPUT_DIR = "/output"
CONTAINER_CCACHE_DIR = "/ccache"

CONTAINER_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Containers started and not yet finished, mapped to their runtime
_running_lock = threading.Lock()
_running: dict[str, str] = {}


class SandboxError(Exception):
    """Raised when a path cannot be mapped into the sandbox."""

    def __init__(self, message: str, code: str = "sandbox_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class Mount:
    """A host directory visible inside the sandbox."""

    host: Path
    target: str
    read_only: bool = False


@dataclass
class SandboxCommand:
    """A command ready to hand to the step runner.

    Attributes:
        argv: Host-side command line.
        cwd: Host working directory (None inside containers).
        env: Environment overrides for the host process.
        container_name: Name of the container, if any.
    """

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    container_name: str | None = None


class LocalSandbox:
    """Run steps directly on the host."""

    def __init__(self) -> None:
        self.mounts: list[Mount] = []

    @property
    def base_path(self) -> str:
        return os.environ.get("PATH", CONTAINER_PATH)

    def path(self, host_path: Path) -> str:
        """Path of ``host_path`` as seen by a step."""
        return str(host_path)

    def command(
        self, argv: list[str], cwd: Path, env: dict[str, str]
    ) -> SandboxCommand:
        return SandboxCommand(argv=list(argv), cwd=cwd, env=dict(env))

    def kill(self, command: SandboxCommand) -> None:
        """Nothing to do; the step runner kills host process groups."""

    def release(self, command: SandboxCommand) -> None:
        """Forget a finished command."""


class ContainerSandbox:
    """Run steps inside a throwaway container.

    Args:
        runtime: Container runtime binary ('docker' or 'podman').
        image: Image providing the target toolchain.
        mounts: Host directories to mount.
        user: ``uid:gid`` to run as, so outputs stay owned by the caller.
    """

    def __init__(
        self,
        runtime: str,
        image: str,
        mounts: list[Mount],
        user: str | None = None,
    ) -> None:
        self.runtime = runtime
        self.image = image
        self.mounts = mounts
        if user is None and hasattr(os, "getuid"):
            user = f"{os.getuid()}:{os.getgid()}"
        self.user = user

    @property
    def base_path(self) -> str:
        return CONTAINER_PATH

    def path(self, host_path: Path) -> str:
        """Translate a host path into the container's filesystem.

        Raises:
            SandboxError: If the path is not under any mount.
        """
        resolved = host_path.resolve()
        for mount in self.mounts:
            host_root = mount.host.resolve()
            if resolved == host_root or host_root in resolved.parents:
                relative = resolved.relative_to(host_root)
                return str(PurePosixPath(mount.target) / relative.as_posix())
        raise SandboxError(f"{host_path} is not visible inside the build container")

    def command(
        self, argv: list[str], cwd: Path, env: dict[str, str]
    ) -> SandboxCommand:
        name = f"reprobuild-{uuid.uuid4().hex[:12]}"
        cmd = [self.runtime, "run", "--rm", "--name", name, "-w", self.path(cwd)]
        if self.user:
            cmd.extend(["--user", self.user])
        for key in sorted(env):
            cmd.extend(["-e", f"{key}={env[key]}"])
        for mount in self.mounts:
            spec = f"{mount.host.resolve()}:{mount.target}"
            if mount.read_only:
                spec += ":ro"
            cmd.extend(["-v", spec])
        cmd.append(self.image)
        cmd.extend(argv)

        with _running_lock:
            _running[name] = self.runtime
        return SandboxCommand(argv=cmd, cwd=None, env={}, container_name=name)

    def kill(self, command: SandboxCommand) -> None:
        """Kill the container of a timed out or interrupted step.

        Killing the ``run`` client leaves the container itself running.
        """
        if command.container_name:
            _kill_container(self.runtime, command.container_name)

    def release(self, command: SandboxCommand) -> None:
        """Forget a finished container."""
        if command.container_name:
            with _running_lock:
                _running.pop(command.container_name, None)


def _kill_container(runtime: str, name: str, timeout: int = 30) -> None:
    logger.warning("Killing build container %s", name)
    try:
        subprocess.run(
            [runtime, "kill", name],
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Failed to kill container %s: %s", name, e)


def kill_running_containers(timeout: int = 30) -> int:
    """Kill every container started by this process that is still running.

    Returns:
        Number of containers a kill was issued for.
    """
    with _running_lock:
        running = dict(_running)
        _running.clear()
    for name, runtime in running.items():
        _kill_container(runtime, name, timeout=timeout)
    return len(running)


Sandbox = LocalSandbox | ContainerSandbox


def create_sandbox(
    runtime: str,
    image: str,
    source_dir: Path,
    output_dir: Path,
    ccache_dir: Path,
) -> Sandbox:
    """Create the sandbox for one target build.

    Args:
        runtime: 'docker', 'podman' or 'none'.
        image: Target container image.
        source_dir: Host workspace holding the source copy.
        output_dir: Host directory receiving the install tree and logs.
        ccache_dir: Host compiler object cache directory.
    """
    if runtime == "none":
        return LocalSandbox()
    return ContainerSandbox(
        runtime=runtime,
        image=image,
        mounts=[
            Mount(source_dir, CONTAINER_SOURCE_DIR),
            Mount(output_dir, CONTAINER_OUTPUT_DIR),
            Mount(ccache_dir, CONTAINER_CCACHE_DIR),
        ],
    )


__all__ = [
    "CONTAINER_CCACHE_DIR",
    "CONTAINER_OUTPUT_DIR",
    "CONTAINER_SOURCE_DIR",
    "ContainerSandbox",
    "LocalSandbox",
    "Mount",
    "Sandbox",
    "SandboxCommand",
    "SandboxError",
    "create_sandbox",
    "kill_running_containers",
]
