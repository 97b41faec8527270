"""Compiler object cache (ccache) configuration.

The object cache only accelerates recompilation; it must never change the
produced archive. Each target gets its own cache directory, and
``CCACHE_BASEDIR`` rewrites absolute paths so cached objects do not depend
on where the workspace lives.

Every ccache invocation here is advisory: failures are logged and never
fail a build.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

# Runs a command inside the build sandbox, returning (exit_code, output)
CommandFn = Callable[[list[str]], tuple[int, str]]

CCACHE_BINARY = "ccache"

# Statistics reported at the end of a build
REPORTED_STATS = (
    "direct_cache_hit",
    "preprocessed_cache_hit",
    "cache_miss",
    "cache_size_kibibyte",
)

_HUMAN_STATS = {
    "cache hit (direct)": "direct_cache_hit",
    "cache hit (preprocessed)": "preprocessed_cache_hit",
    "cache miss": "cache_miss",
}


def parse_stats(text: str) -> dict[str, int]:
    """Parse ccache statistics output.

    Understands the machine-readable ``--print-stats`` format (tab separated)
    and the older human-readable ``-s`` format.

    Args:
        text: Output of ccache.

    Returns:
        Mapping of statistic name to integer value.
    """
    stats: dict[str, int] = {}
    for line in text.splitlines():
        if "\t" in line:
            name, _, value = line.partition("\t")
            value = value.strip()
            if value.lstrip("-").isdigit():
                stats[name.strip()] = int(value)
            continue
        match = re.match(r"^\s*([a-z][a-z ()]+?)\s{2,}(\d+)\s*$", line)
        if match and match.group(1) in _HUMAN_STATS:
            stats[_HUMAN_STATS[match.group(1)]] = int(match.group(2))
    return stats


class CompilerObjectCache:
    """Per-target ccache settings and statistics.

    Args:
        root: Directory holding one ccache directory per target.
        max_size: Size limit passed to ccache (e.g. '5G').
        enabled: Whether compilation goes through ccache at all.
        launcher_dir: Directory of ccache compiler wrappers.
    """

    def __init__(
        self,
        root: Path,
        max_size: str = "5G",
        enabled: bool = True,
        launcher_dir: str = "/usr/lib/ccache",
    ) -> None:
        self.root = root
        self.max_size = max_size
        self.enabled = enabled
        self.launcher_dir = launcher_dir

    def directory_for(self, target_id: str) -> Path:
        """Host directory of a target's object cache."""
        return self.root / target_id

    def environment(
        self,
        cache_dir: str,
        base_dir: str,
        path: str,
        disabled: bool = False,
    ) -> dict[str, str]:
        """Environment for one build step.

        Args:
            cache_dir: Cache directory as seen by the build step.
            base_dir: Source directory as seen by the build step.
            path: PATH the step would otherwise use.
            disabled: Bypass the cache (no-cache mode).

        Returns:
            Variables to add to the step environment.
        """
        if disabled or not self.enabled:
            return {"CCACHE_DISABLE": "1", "PATH": path}
        return {
            "CCACHE_DIR": cache_dir,
            "CCACHE_BASEDIR": base_dir,
            "CCACHE_MAXSIZE": self.max_size,
            "CCACHE_COMPILERCHECK": "content",
            "CCACHE_NOHASHDIR": "1",
            "PATH": f"{self.launcher_dir}:{path}",
        }

    def zero_stats(self, run: CommandFn) -> bool:
        """Reset statistics before compiling."""
        if not self.enabled:
            return False
        return self._call(run, [CCACHE_BINARY, "--zero-stats"]) is not None

    def collect_stats(self, run: CommandFn) -> dict[str, int]:
        """Collect statistics after compiling; empty if unavailable."""
        if not self.enabled:
            return {}
        output = self._call(run, [CCACHE_BINARY, "--print-stats"])
        if output is None:
            return {}
        stats = parse_stats(output)
        return {name: stats[name] for name in REPORTED_STATS if name in stats}

    def clear(self, target_id: str) -> bool:
        """Delete a target's object cache directory.

        Returns:
            True if a directory was removed.
        """
        directory = self.directory_for(target_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        logger.info("Cleared compiler object cache for %s", target_id)
        return True

    @staticmethod
    def _call(run: CommandFn, argv: list[str]) -> str | None:
        try:
            exit_code, output = run(argv)
        except OSError as e:
            logger.warning("ccache unavailable (%s): %s", " ".join(argv), e)
            return None
        if exit_code != 0:
            logger.warning(
                "ccache command failed with exit code %d: %s", exit_code, " ".join(argv)
            )
            return None
        return output


__all__ = [
    "CCACHE_BINARY",
    "REPORTED_STATS",
    "CommandFn",
    "CompilerObjectCache",
    "parse_stats",
]
