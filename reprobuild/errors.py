"""Error taxonomy shared across reprobuild.

- ConfigurationError: bad registry or unresolvable commit; aborts a run
  before any build starts.
- PipelineStageError: failure of one pipeline stage; fatal to one target only.
- CacheWriteError: a dependency cache entry could not be published; callers
  log it as a warning and carry on.

Every error carries a machine-readable ``code`` for structured output.
"""

from __future__ import annotations

from reprobuild.types import BuildStage

# Number of trailing output lines kept on stage errors
OUTPUT_TAIL_LINES = 40


class ConfigurationError(Exception):
    """Raised when a run cannot start (bad registry, bad commit, bad args)."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message)
        self.code = code


class PipelineStageError(Exception):
    """Raised when a pipeline stage fails for one target.

    Attributes:
        target_id: Target whose pipeline failed.
        stage: Stage in which the failure originated.
        output_tail: Last lines of the failing step's output.
        exit_code: Exit code of the failing process, if any.
        code: Machine-readable error code.
    """

    default_stage: BuildStage = BuildStage.PENDING
    default_code: str = "pipeline_error"

    def __init__(
        self,
        message: str,
        target_id: str,
        stage: BuildStage | None = None,
        output_tail: str = "",
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.target_id = target_id
        self.stage = stage or self.default_stage
        self.output_tail = output_tail
        self.exit_code = exit_code
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"[{self.target_id}:{self.stage.value}] {self.args[0]}"


class DependencyBuildFailed(PipelineStageError):
    """Building third-party dependencies failed."""

    default_stage = BuildStage.BUILDING_DEPS
    default_code = "dependency_build_failed"


class ConfigureFailed(PipelineStageError):
    """Configuring the application failed (includes a missing toolchain)."""

    default_stage = BuildStage.CONFIGURING
    default_code = "configure_failed"


class CompileFailed(PipelineStageError):
    """Compiling the application failed."""

    default_stage = BuildStage.COMPILING
    default_code = "compile_failed"


class InstallFailed(PipelineStageError):
    """Installing into the per-target prefix failed."""

    default_stage = BuildStage.INSTALLING
    default_code = "install_failed"


class StripFailed(PipelineStageError):
    """Stripping installed binaries failed."""

    default_stage = BuildStage.STRIPPING
    default_code = "strip_failed"


class PackageFailed(PipelineStageError):
    """Creating the release archive failed."""

    default_stage = BuildStage.PACKAGING
    default_code = "package_failed"


class CacheWriteError(Exception):
    """Raised when a dependency cache entry cannot be published."""

    def __init__(self, message: str, code: str = "cache_write_failed") -> None:
        super().__init__(message)
        self.code = code


def tail_lines(text: str, limit: int = OUTPUT_TAIL_LINES) -> str:
    """Return the last ``limit`` lines of ``text``."""
    lines = text.splitlines()
    return "\n".join(lines[-limit:])


__all__ = [
    "OUTPUT_TAIL_LINES",
    "CacheWriteError",
    "CompileFailed",
    "ConfigurationError",
    "ConfigureFailed",
    "DependencyBuildFailed",
    "InstallFailed",
    "PackageFailed",
    "PipelineStageError",
    "StripFailed",
    "tail_lines",
]
