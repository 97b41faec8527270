"""Step runner for executing pipeline commands.

This module handles:
- Executing one pipeline step as a subprocess
- Capturing stdout/stderr verbatim to a per-stage log file
- Enforcing step timeouts
- Tracking in-flight processes so an abort can terminate them
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from reprobuild.errors import OUTPUT_TAIL_LINES, tail_lines
from reprobuild.types import BuildStage

logger = logging.getLogger(__name__)

# Processes currently running, shared by every runner in the process
_active_lock = threading.Lock()
_active: set[subprocess.Popen[bytes]] = set()


class StepExecutionError(Exception):
    """Raised when a step cannot be started or exceeds its timeout."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output_tail: str = "",
        code: str = "execution_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output_tail = output_tail
        self.code = code


@dataclass
class StepResult:
    """Result of one executed step.

    Attributes:
        stage: Pipeline stage the step belongs to.
        exit_code: Process exit code.
        log_path: Log file holding the full output.
        output_tail: Last lines of output.
        started_at: Step start time.
        finished_at: Step finish time.
        command: The command that was executed.
    """

    stage: BuildStage
    exit_code: int
    log_path: Path
    output_tail: str
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def read_tail(path: Path, limit: int = OUTPUT_TAIL_LINES) -> str:
    """Return the last ``limit`` lines of a log file, skipping our headers."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    lines = [line for line in text.splitlines() if not line.startswith("# ")]
    return tail_lines("\n".join(lines).strip("\n"), limit)


def signal_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    """Send ``sig`` to the process group led by ``proc``.

    Steps start in their own session, so the group holds the step and every
    compiler or helper it spawned.
    """
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def kill_step(proc: subprocess.Popen[bytes]) -> None:
    """Kill a step's whole process group and reap the step."""
    signal_group(proc, signal.SIGKILL)
    proc.wait()


def terminate_active(grace_period: float = 10.0) -> int:
    """Terminate every in-flight step process and its children.

    Args:
        grace_period: Seconds to wait after SIGTERM before killing.

    Returns:
        Number of processes signalled.
    """
    with _active_lock:
        processes = list(_active)
    for proc in processes:
        if proc.poll() is None:
            logger.warning("Terminating in-flight process %d", proc.pid)
            signal_group(proc, signal.SIGTERM)
    for proc in processes:
        try:
            proc.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            signal_group(proc, signal.SIGKILL)
    return len(processes)


def active_count() -> int:
    """Number of step processes currently running."""
    with _active_lock:
        return len(_active)


class StepRunner:
    """Run pipeline steps with logging and a per-step timeout.

    Args:
        timeout: Step timeout in seconds (None = no timeout).
    """

    def __init__(self, timeout: int | None = None) -> None:
        self.timeout = timeout

    def run(
        self,
        stage: BuildStage,
        argv: list[str],
        log_path: Path,
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> StepResult:
        """Execute a step, appending its output to ``log_path``.

        A non-zero exit code is reported in the result, not raised.

        Raises:
            StepExecutionError: If the step fails to start or times out.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd_str = shlex.join(argv)
        logger.debug("Executing %s step: %s", stage.value, cmd_str)

        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)

        started_at = datetime.now(timezone.utc)
        try:
            with log_path.open("a") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                proc = subprocess.Popen(
                    argv,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=env,
                    start_new_session=True,
                )
                with _active_lock:
                    _active.add(proc)
                try:
                    exit_code = proc.wait(timeout=self.timeout)
                except subprocess.TimeoutExpired as e:
                    kill_step(proc)
                    log_file.write(f"\n# TIMEOUT after {self.timeout} seconds\n")
                    log_file.flush()
                    raise StepExecutionError(
                        f"{stage.value} step timed out after {self.timeout} seconds",
                        exit_code=-1,
                        output_tail=read_tail(log_path),
                        code="step_timeout",
                    ) from e
                except BaseException:
                    # Interrupted while waiting; the step runs in its own
                    # session and would not see the terminal's SIGINT
                    logger.warning(
                        "Killing interrupted %s step (pid %d)", stage.value, proc.pid
                    )
                    kill_step(proc)
                    log_file.write("\n# INTERRUPTED\n")
                    raise
                finally:
                    with _active_lock:
                        _active.discard(proc)
        except OSError as e:
            raise StepExecutionError(
                f"Failed to execute {argv[0]}: {e}",
                code="execution_error",
            ) from e

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code != 0:
            logger.error(
                "%s step failed with exit code %d. See log: %s",
                stage.value,
                exit_code,
                log_path,
            )

        return StepResult(
            stage=stage,
            exit_code=exit_code,
            log_path=log_path,
            output_tail=read_tail(log_path),
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
        )

    def capture(
        self,
        argv: list[str],
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> tuple[int, str]:
        """Run a short auxiliary command and return (exit_code, output)."""
        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)
        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OSError(f"{argv[0]} timed out") from e
        return result.returncode, result.stdout + result.stderr


__all__ = [
    "StepExecutionError",
    "StepResult",
    "StepRunner",
    "active_count",
    "kill_step",
    "read_tail",
    "signal_group",
    "terminate_active",
]
