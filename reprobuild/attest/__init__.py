"""Attestation module.

Generates release manifests (commit plus per-target archive checksums) and
optionally signs them.
"""

from reprobuild.attest.manifest import (
    Manifest,
    generate_manifest,
    load_manifest,
    sign_manifest,
    write_checksums,
    write_manifest,
)
from reprobuild.attest.signing import GpgSigner, HttpSigner, SigningError

__all__ = [
    "GpgSigner",
    "HttpSigner",
    "Manifest",
    "SigningError",
    "generate_manifest",
    "load_manifest",
    "sign_manifest",
    "write_checksums",
    "write_manifest",
]
