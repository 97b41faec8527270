"""Release manifest generation.

This module handles:
- Building a manifest from the resolved commit and produced archives
- Writing the manifest and a ``sha256sum``-compatible SHA256SUMS file
- Detached signing of the written manifest

Generation is a pure function of its inputs: the timestamp comes from the
commit, entries are sorted by target id and the JSON is written with sorted
keys, so regenerating a manifest yields identical bytes.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from reprobuild.cache.fingerprint import hash_file
from reprobuild.types import ArtifactInfo

if TYPE_CHECKING:
    from reprobuild.attest.signing import Signer

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
CHECKSUMS_FILENAME = "SHA256SUMS"
SIGNATURE_SUFFIX = ".sig"
MANIFEST_SCHEMA_VERSION = 1


class ManifestArtifact(BaseModel):
    """One archive listed in a manifest."""

    model_config = ConfigDict(frozen=True)

    target_id: str
    filename: str
    size_bytes: int
    sha256: str


class Manifest(BaseModel):
    """Attestation of a run: commit plus one checksum per target archive."""

    model_config = ConfigDict(frozen=True)

    schema_version: int = MANIFEST_SCHEMA_VERSION
    commit: str
    timestamp: str
    per_target_checksum: dict[str, str]
    signer_identity: str | None = None
    artifacts: list[ManifestArtifact] = Field(default_factory=list)

    def canonical_bytes(self) -> bytes:
        """Serialized form written to disk and signed."""
        data = self.model_dump(mode="json")
        return (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8")


def describe_archive(target_id: str, path: Path) -> ArtifactInfo:
    """Hash an archive and describe it for a manifest."""
    return ArtifactInfo(
        target_id=target_id,
        filename=path.name,
        path=str(path),
        size_bytes=path.stat().st_size,
        sha256=hash_file(path),
    )


def format_timestamp(epoch_seconds: int) -> str:
    """ISO 8601 UTC rendering of a Unix timestamp."""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def generate_manifest(
    commit: str,
    archives: Iterable[ArtifactInfo],
    timestamp: int,
    signer_identity: str | None = None,
) -> Manifest:
    """Create a manifest for a run.

    Args:
        commit: Resolved commit id.
        archives: Produced archives (one per target).
        timestamp: Commit time in seconds since the epoch.
        signer_identity: Identity of the signer, if the manifest will be signed.

    Returns:
        The manifest.

    Raises:
        ValueError: If two archives claim the same target.
    """
    entries = sorted(archives, key=lambda a: a.target_id)
    checksums: dict[str, str] = {}
    for entry in entries:
        if entry.target_id in checksums:
            raise ValueError(f"Duplicate archive for target {entry.target_id}")
        checksums[entry.target_id] = entry.sha256

    return Manifest(
        commit=commit,
        timestamp=format_timestamp(timestamp),
        per_target_checksum=checksums,
        signer_identity=signer_identity,
        artifacts=[
            ManifestArtifact(
                target_id=a.target_id,
                filename=a.filename,
                size_bytes=a.size_bytes,
                sha256=a.sha256,
            )
            for a in entries
        ],
    )


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def write_manifest(manifest: Manifest, output_path: Path) -> Path:
    """Write a manifest as JSON.

    Args:
        manifest: Manifest to write.
        output_path: Destination file.

    Returns:
        Path to the written file.
    """
    _write_atomic(output_path, manifest.canonical_bytes())
    logger.info("Wrote manifest to %s", output_path)
    return output_path


def write_checksums(manifest: Manifest, output_path: Path) -> Path:
    """Write a SHA256SUMS file readable by ``sha256sum -c``."""
    lines = [
        f"{a.sha256}  {a.filename}\n"
        for a in sorted(manifest.artifacts, key=lambda a: a.filename)
    ]
    _write_atomic(output_path, "".join(lines).encode("utf-8"))
    logger.info("Wrote checksums to %s", output_path)
    return output_path


def load_manifest(path: Path) -> Manifest:
    """Read a manifest written by :func:`write_manifest`."""
    return Manifest.model_validate_json(path.read_text(encoding="utf-8"))


def sign_manifest(manifest_path: Path, signer: Signer) -> Path:
    """Write a detached signature next to a manifest.

    Returns:
        Path to the ``.sig`` file.

    Raises:
        SigningError: If the signer fails.
    """
    signature = signer.sign(manifest_path.read_bytes())
    sig_path = manifest_path.with_name(manifest_path.name + SIGNATURE_SUFFIX)
    _write_atomic(sig_path, signature)
    logger.info("Signed %s as %s", manifest_path.name, signer.identity)
    return sig_path


def remove_attestation(output_root: Path) -> list[Path]:
    """Delete the manifest, checksums and signature in ``output_root``.

    Returns:
        Paths that were removed.
    """
    removed: list[Path] = []
    for name in (
        MANIFEST_FILENAME,
        MANIFEST_FILENAME + SIGNATURE_SUFFIX,
        CHECKSUMS_FILENAME,
    ):
        path = output_root / name
        if path.is_file():
            path.unlink()
            removed.append(path)
    if removed:
        logger.debug("Removed previous attestation files in %s", output_root)
    return removed


__all__ = [
    "CHECKSUMS_FILENAME",
    "MANIFEST_FILENAME",
    "Manifest",
    "ManifestArtifact",
    "describe_archive",
    "format_timestamp",
    "generate_manifest",
    "load_manifest",
    "remove_attestation",
    "sign_manifest",
    "write_checksums",
    "write_manifest",
]
