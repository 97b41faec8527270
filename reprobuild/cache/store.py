"""Dependency cache manager.

Persistent store of prebuilt third-party dependency trees, keyed by
target id and dependency fingerprint. Layout::

    <root>/<target_id>/<fingerprint-hex>/
        tree/        the cached dependency prefix
        ENTRY.json   completeness marker, written last

Entries are write-once. A new entry is staged in a sibling directory and
published with a single rename, so a crashed or aborted write never leaves
an entry that looks valid. Invalidation is explicit eviction only.

The store assumes the same target is never built twice concurrently by the
same caller; cross-target races cannot happen because the target id is part
of every path.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from reprobuild.cache.fingerprint import CacheKey
from reprobuild.errors import CacheWriteError

logger = logging.getLogger(__name__)

MARKER_NAME = "ENTRY.json"
TREE_DIR = "tree"
STAGING_PREFIX = ".staging-"
EVICTING_PREFIX = ".evicting-"
MARKER_SCHEMA_VERSION = 1


@dataclass
class CacheEntry:
    """A published dependency cache entry.

    Attributes:
        key: Cache key of the entry.
        location: Entry directory.
        size_bytes: Size of the cached tree.
        created_at: When the entry was published.
        last_validated_at: When the entry last passed validation.
    """

    key: CacheKey
    location: Path
    size_bytes: int
    created_at: datetime
    last_validated_at: datetime | None = None

    @property
    def tree_dir(self) -> Path:
        """Directory holding the cached dependency tree."""
        return self.location / TREE_DIR


def tree_size(path: Path) -> int:
    """Total size in bytes of regular files under ``path``."""
    total = 0
    for item in path.rglob("*"):
        if item.is_file() and not item.is_symlink():
            total += item.stat().st_size
    return total


class DependencyCacheManager:
    """Restore, save and evict dependency trees."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def entry_dir(self, key: CacheKey) -> Path:
        """Directory of the entry for ``key`` (whether or not it exists)."""
        return self.root / key.target_id / key.digest

    def lookup(self, key: CacheKey) -> CacheEntry | None:
        """Return the validated entry for ``key``, or None.

        An entry that exists but fails validation is reported as a warning
        and treated as absent. It is not evicted automatically.
        """
        location = self.entry_dir(key)
        if not location.exists():
            return None

        marker = self._read_marker(location)
        problem: str | None = None
        if marker is None:
            problem = "missing or unreadable completeness marker"
        elif marker.get("target_id") != key.target_id:
            problem = f"marker target {marker.get('target_id')!r} does not match"
        elif marker.get("fingerprint") != key.fingerprint:
            problem = "marker fingerprint does not match the dependency recipes"
        elif not (location / TREE_DIR).is_dir():
            problem = "cached tree is missing"

        if problem is not None or marker is None:
            logger.warning("Ignoring corrupt cache entry %s: %s", key, problem)
            return None

        return CacheEntry(
            key=key,
            location=location,
            size_bytes=int(marker.get("size_bytes", 0)),
            created_at=_parse_time(marker.get("created_at")),
            last_validated_at=datetime.now(timezone.utc),
        )

    def restore(self, key: CacheKey, dest: Path) -> CacheEntry | None:
        """Copy the cached tree for ``key`` into ``dest``.

        Args:
            key: Cache key to restore.
            dest: Destination directory; replaced if it exists.

        Returns:
            The restored entry, or None on a miss. A miss is expected and is
            never an error.
        """
        entry = self.lookup(key)
        if entry is None:
            logger.info("Dependency cache miss for %s", key)
            return None

        try:
            if dest.exists():
                shutil.rmtree(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(entry.tree_dir, dest, symlinks=True)
        except OSError as e:
            logger.warning("Failed to restore cache entry %s: %s", key, e)
            shutil.rmtree(dest, ignore_errors=True)
            return None

        logger.info(
            "Restored dependency cache %s (%d bytes) to %s",
            key,
            entry.size_bytes,
            dest,
        )
        return entry

    def save(self, key: CacheKey, source_dir: Path) -> bool:
        """Publish ``source_dir`` as the entry for ``key``.

        Failure is non-fatal: it is logged as a warning and only forfeits
        future acceleration.

        Returns:
            True if an entry for ``key`` is published after the call.
        """
        try:
            self._publish(key, source_dir)
        except CacheWriteError as e:
            logger.warning("Dependency cache not saved for %s: %s", key, e)
            return False
        return True

    def evict(self, key: CacheKey) -> bool:
        """Remove the entry for ``key``.

        Returns:
            True if an entry was removed.
        """
        location = self.entry_dir(key)
        if not location.exists():
            return False
        self._remove(location)
        logger.info("Evicted dependency cache entry %s", key)
        return True

    def evict_target(self, target_id: str) -> int:
        """Remove every entry (and stale staging data) of a target.

        Returns:
            Number of published entries removed.
        """
        target_dir = self.root / target_id
        if not target_dir.is_dir():
            return 0
        removed = 0
        for child in sorted(target_dir.iterdir()):
            if not child.is_dir():
                continue
            if not child.name.startswith("."):
                removed += 1
            self._remove(child)
        logger.info("Evicted %d dependency cache entries for %s", removed, target_id)
        return removed

    def list_entries(self, target_id: str | None = None) -> list[CacheEntry]:
        """List valid published entries, optionally for one target."""
        if not self.root.is_dir():
            return []
        if target_id is not None:
            target_dirs = [self.root / target_id]
        else:
            target_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())

        entries: list[CacheEntry] = []
        for target_dir in target_dirs:
            if not target_dir.is_dir():
                continue
            for location in sorted(target_dir.iterdir()):
                if location.name.startswith(".") or not location.is_dir():
                    continue
                marker = self._read_marker(location)
                if marker is None or not marker.get("fingerprint"):
                    continue
                entry = self.lookup(
                    CacheKey(target_id=target_dir.name, fingerprint=marker["fingerprint"])
                )
                if entry is not None:
                    entries.append(entry)
        return entries

    def total_size(self) -> int:
        """Total size in bytes of the cache root."""
        if not self.root.exists():
            return 0
        return tree_size(self.root)

    def _publish(self, key: CacheKey, source_dir: Path) -> None:
        if not source_dir.is_dir():
            raise CacheWriteError(f"source directory does not exist: {source_dir}")

        final = self.entry_dir(key)
        if final.exists():
            if self.lookup(key) is not None:
                logger.debug("Cache entry %s already published", key)
                return
            raise CacheWriteError(
                f"an invalid entry occupies {final}; evict it before saving"
            )

        staging = final.parent / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
        try:
            staging.mkdir(parents=True)
            shutil.copytree(source_dir, staging / TREE_DIR, symlinks=True)
            marker = {
                "schema_version": MARKER_SCHEMA_VERSION,
                "target_id": key.target_id,
                "fingerprint": key.fingerprint,
                "size_bytes": tree_size(staging / TREE_DIR),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            marker_path = staging / MARKER_NAME
            with marker_path.open("w", encoding="utf-8") as f:
                json.dump(marker, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.rename(staging, final)
        except OSError as e:
            if final.exists() and self.lookup(key) is not None:
                # Another writer published the same generation first
                logger.debug("Cache entry %s published concurrently", key)
                return
            raise CacheWriteError(f"failed to publish {final}: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Saved dependency cache %s (%d bytes)", key, marker["size_bytes"])

    def _remove(self, location: Path) -> None:
        # Rename aside first so a partially deleted entry is never visible
        doomed = location.parent / f"{EVICTING_PREFIX}{uuid.uuid4().hex}"
        try:
            os.rename(location, doomed)
        except OSError:
            doomed = location
        shutil.rmtree(doomed)

    @staticmethod
    def _read_marker(location: Path) -> dict[str, Any] | None:
        marker_path = location / MARKER_NAME
        try:
            with marker_path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        return data


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return datetime.fromtimestamp(0, tz=timezone.utc)


__all__ = [
    "MARKER_NAME",
    "TREE_DIR",
    "CacheEntry",
    "DependencyCacheManager",
    "tree_size",
]
