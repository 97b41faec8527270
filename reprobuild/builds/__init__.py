"""Build module.

Runs the per-target build pipeline and orchestrates runs across targets.
"""

from reprobuild.builds.executor import BuildExecutor
from reprobuild.builds.job import BuildJob
from reprobuild.builds.service import Orchestrator, RunOptions, RunReport

__all__ = ["BuildExecutor", "BuildJob", "Orchestrator", "RunOptions", "RunReport"]
