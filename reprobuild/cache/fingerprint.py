"""Dependency fingerprint and cache key computation.

This module handles:
- Collecting the dependency recipe files of a source tree
- Canonical input snapshot creation from a target and those recipes
- Deterministic hash computation over normalized inputs

A fingerprint identifies an equivalence class of dependency recipes:
two source trees whose recipes hash identically build identical dependency
trees for a given target.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reprobuild.targets.schema import TargetSchema

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "1"

# Directory (relative to the source root) holding dependency recipes
DEPENDS_DIR = "depends"

# Recipe files and directories inside DEPENDS_DIR; build outputs are excluded
DEPENDS_SPEC_FILES = ("Makefile", "funcs.mk", "config.guess", "config.sub")
DEPENDS_SPEC_DIRS = ("packages", "patches", "hosts", "builders")

HASH_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class CacheKey:
    """Key of a dependency cache entry.

    Attributes:
        target_id: Target the dependency tree was built for.
        fingerprint: Hash of the pinned dependency recipes.
    """

    target_id: str
    fingerprint: str

    @property
    def digest(self) -> str:
        """Hex digest without the algorithm prefix (used as directory name)."""
        return self.fingerprint.split(":", 1)[-1]

    def __str__(self) -> str:
        return f"{self.target_id}@{self.digest[:16]}"


@dataclass
class DependencyInputs:
    """Canonical representation of everything that shapes a dependency tree.

    It is serialized to JSON and hashed to produce the fingerprint.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    target_id: str = ""
    host_triple: str = ""
    container_image: str = ""
    depends_flags: list[str] = field(default_factory=list)
    recipes: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def hash_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute the SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def collect_recipes(source_dir: Path) -> dict[str, str]:
    """Hash every dependency recipe file under ``source_dir/depends``.

    Args:
        source_dir: Root of the application source tree.

    Returns:
        Mapping of POSIX path (relative to the depends dir) to SHA-256.
    """
    depends_dir = source_dir / DEPENDS_DIR
    recipes: dict[str, str] = {}
    if not depends_dir.is_dir():
        return recipes

    for name in DEPENDS_SPEC_FILES:
        path = depends_dir / name
        if path.is_file():
            recipes[name] = hash_file(path)

    for dirname in DEPENDS_SPEC_DIRS:
        root = depends_dir / dirname
        if not root.is_dir():
            continue
        for path in sorted(root.rglob("*")):
            if path.is_file():
                recipes[path.relative_to(depends_dir).as_posix()] = hash_file(path)

    return recipes


def create_dependency_inputs(
    target: TargetSchema, source_dir: Path
) -> DependencyInputs:
    """Create canonical dependency inputs for a target and source tree."""
    return DependencyInputs(
        target_id=target.id,
        host_triple=target.host_triple,
        container_image=target.container_image,
        depends_flags=sorted(target.depends_flags),
        recipes=collect_recipes(source_dir),
    )


def compute_fingerprint(inputs: DependencyInputs) -> str:
    """Compute the fingerprint of dependency inputs.

    Returns:
        Fingerprint as 'sha256:<hex>'.
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"sha256:{hashlib.sha256(canonical_json.encode('utf-8')).hexdigest()}"


def compute_cache_key(target: TargetSchema, source_dir: Path) -> CacheKey:
    """Convenience function computing the cache key for a target build."""
    inputs = create_dependency_inputs(target, source_dir)
    return CacheKey(target_id=target.id, fingerprint=compute_fingerprint(inputs))


__all__ = [
    "DEPENDS_DIR",
    "FINGERPRINT_SCHEMA_VERSION",
    "CacheKey",
    "DependencyInputs",
    "collect_recipes",
    "compute_cache_key",
    "compute_fingerprint",
    "create_dependency_inputs",
    "hash_file",
]
