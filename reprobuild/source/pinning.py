"""Commit pinning: resolve a requested revision and materialize its tree.

Two modes are supported:

- ``worktree`` (default): every run gets an isolated, detached
  ``git worktree`` of the resolved commit. The user's checkout is never
  touched, so concurrent runs cannot interfere.
- ``in-place``: the repository itself is checked out at the commit and put
  back on its previous branch or commit afterwards. A working tree with
  modified, untracked or ignored files is refused.

Restoring is best-effort: by the time it runs the artifacts already exist,
so failures are logged and never escalated.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from reprobuild.errors import ConfigurationError

logger = logging.getLogger(__name__)

PinMode = Literal["worktree", "in-place"]


class PinningError(ConfigurationError):
    """Raised when a revision cannot be resolved or checked out."""

    def __init__(self, message: str, code: str = "pinning_error") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class PinnedRevision:
    """A requested revision resolved to an immutable commit.

    Attributes:
        requested_ref: Ref as requested by the caller.
        resolved_commit: Full commit id.
        tree_dir: Directory holding the checked out tree.
        commit_timestamp: Committer time (seconds since epoch); used as the
            build timestamp so archives never depend on wall-clock time.
        prior_ref: Branch or commit to return to (in-place mode only).
        isolated: True when ``tree_dir`` is a dedicated worktree.
    """

    requested_ref: str
    resolved_commit: str
    tree_dir: Path
    commit_timestamp: int
    prior_ref: str | None = None
    isolated: bool = True

    @property
    def short_commit(self) -> str:
        """Abbreviated commit id for display."""
        return self.resolved_commit[:12]


class CommitPinningController:
    """Resolve refs and materialize/restore working trees.

    Args:
        repo_dir: Git repository of the application.
        checkout_root: Parent directory of isolated worktrees.
        mode: 'worktree' or 'in-place'.
        timeout: Timeout for each git command in seconds.
    """

    def __init__(
        self,
        repo_dir: Path,
        checkout_root: Path,
        mode: PinMode = "worktree",
        timeout: int = 300,
    ) -> None:
        self.repo_dir = repo_dir
        self.checkout_root = checkout_root
        self.mode = mode
        self.timeout = timeout

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd or self.repo_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise PinningError(
                f"git {' '.join(args)} failed: {(e.stderr or '').strip()}",
                code="git_error",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise PinningError(
                f"git {' '.join(args)} timed out after {self.timeout}s",
                code="git_timeout",
            ) from e
        except OSError as e:
            raise PinningError(f"Failed to run git: {e}", code="git_unavailable") from e
        return result.stdout.strip()

    def resolve(self, ref: str) -> str:
        """Resolve ``ref`` to a full commit id.

        Raises:
            PinningError: If the ref does not name a commit.
        """
        if not ref or ref.startswith("-"):
            raise PinningError(f"Invalid revision: {ref!r}", code="invalid_ref")
        try:
            return self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        except PinningError as e:
            raise PinningError(
                f"Cannot resolve revision {ref!r} in {self.repo_dir}",
                code="unresolvable_ref",
            ) from e

    def commit_timestamp(self, commit: str) -> int:
        """Committer timestamp of ``commit``."""
        return int(self._git("show", "-s", "--format=%ct", commit))

    def materialize(self, ref: str = "HEAD") -> PinnedRevision:
        """Resolve ``ref`` and make its tree available for building.

        Raises:
            PinningError: On unresolvable refs or unsafe working-tree state.
        """
        commit = self.resolve(ref)
        timestamp = self.commit_timestamp(commit)
        if self.mode == "in-place":
            return self._checkout_in_place(ref, commit, timestamp)
        return self._add_worktree(ref, commit, timestamp)

    def restore(self, pinned: PinnedRevision) -> bool:
        """Return the repository to its prior state.

        Never raises; failures are logged as warnings.

        Returns:
            True if the prior state was restored cleanly.
        """
        try:
            if pinned.isolated:
                self._remove_worktree(pinned.tree_dir)
            elif pinned.prior_ref and pinned.prior_ref != pinned.resolved_commit:
                self._git("checkout", "--quiet", pinned.prior_ref)
                logger.info("Restored %s to %s", self.repo_dir, pinned.prior_ref)
        except (PinningError, OSError) as e:
            logger.warning(
                "Failed to restore working tree after building %s: %s",
                pinned.short_commit,
                e,
            )
            return False
        return True

    @contextmanager
    def pinned(self, ref: str = "HEAD") -> Iterator[PinnedRevision]:
        """Materialize ``ref`` for the duration of the block."""
        revision = self.materialize(ref)
        try:
            yield revision
        finally:
            self.restore(revision)

    def _checkout_in_place(
        self, ref: str, commit: str, timestamp: int
    ) -> PinnedRevision:
        # The whole directory becomes the build input, so untracked and
        # ignored files (stale depends prefixes, old objects) count as dirt
        status = self._git(
            "status", "--porcelain", "--untracked-files=all", "--ignored"
        )
        if status:
            raise PinningError(
                f"Working tree {self.repo_dir} has uncommitted, untracked or "
                "ignored files; clean it (git clean -xdf) or use worktree mode",
                code="dirty_worktree",
            )

        try:
            prior_ref = self._git("symbolic-ref", "--quiet", "--short", "HEAD")
        except PinningError:
            prior_ref = self._git("rev-parse", "HEAD")

        head = self._git("rev-parse", "HEAD")
        if head != commit:
            logger.info("Checking out %s (%s) in place", ref, commit[:12])
            self._git("checkout", "--quiet", "--detach", commit)

        return PinnedRevision(
            requested_ref=ref,
            resolved_commit=commit,
            tree_dir=self.repo_dir,
            commit_timestamp=timestamp,
            prior_ref=prior_ref,
            isolated=False,
        )

    def _add_worktree(self, ref: str, commit: str, timestamp: int) -> PinnedRevision:
        self.checkout_root.mkdir(parents=True, exist_ok=True)
        tree_dir = self.checkout_root / f"{commit[:12]}-{uuid.uuid4().hex[:8]}"
        self._git("worktree", "add", "--detach", str(tree_dir), commit)
        logger.info("Materialized %s (%s) at %s", ref, commit[:12], tree_dir)
        return PinnedRevision(
            requested_ref=ref,
            resolved_commit=commit,
            tree_dir=tree_dir,
            commit_timestamp=timestamp,
            isolated=True,
        )

    def _remove_worktree(self, tree_dir: Path) -> None:
        try:
            self._git("worktree", "remove", "--force", str(tree_dir))
        finally:
            if tree_dir.exists():
                shutil.rmtree(tree_dir)
            self._git("worktree", "prune")
        logger.debug("Removed worktree %s", tree_dir)


__all__ = [
    "CommitPinningController",
    "PinMode",
    "PinnedRevision",
    "PinningError",
]
